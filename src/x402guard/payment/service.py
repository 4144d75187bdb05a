"""
Payment Service - orchestrates the payment lifecycle.

session -> prepare (quote + compliance) -> client signs -> verify
(signature + expiry + compliance) -> execute (dispatch + record).

Spend is recorded only after a chain action has been dispatched, and the
payment record is written before the daily counters move.
"""

import logging
import secrets
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta, UTC
from typing import Any, Callable, Dict, List, Optional, Union

from x402guard.chain.dispatcher import ChainActionDispatcher
from x402guard.chain.gateway import ChainGateway
from x402guard.chain.models import ChainActionResult
from x402guard.chain.units import format_native, to_smallest_unit
from x402guard.config import Settings, settings as default_settings
from x402guard.errors import (
    AddressFormatError,
    ChainExecutionError,
    ConfirmationTimeoutError,
    PaymentRejectedError,
    PolicyViolationError,
    StorageError,
    ValidationError,
)
from x402guard.ledger.models import OUTCOMES_COLLECTION, PAYMENTS_COLLECTION, PaymentRecord
from x402guard.ledger.store import LedgerStore
from x402guard.locks import KeyedLock
from x402guard.payment.models import (
    ExecutionResult,
    PaymentPreview,
    PaymentSession,
    PaymentState,
    PreparedPayment,
    PreviewCosts,
    PreviewPolicy,
    PreviewRisk,
    VerificationResult,
)
from x402guard.policy.models import ComplianceResult, Policy
from x402guard.policy.service import PolicyService
from x402guard.schema import PaymentIntent, SchemaValidator
from x402guard.signature.service import SignatureService


logger = logging.getLogger(__name__)


# Preview scoring
PREVIEW_HIGH_AMOUNT_POINTS = 3
PREVIEW_NON_COMPLIANT_POINTS = 5
PREVIEW_INVALID_RECIPIENT_POINTS = 5
PREVIEW_HIGH_SCORE = 7
PREVIEW_MEDIUM_SCORE = 4

# Upper bound of the randomized first nonce per user
NONCE_START_BOUND = 1_000_000

PaymentDetails = Union[PaymentIntent, Dict[str, Any]]


class PaymentService:
    """
    Payment orchestration.

    Owns in-process state: sessions, per-user nonce counters and the
    idempotency store of executed (user, nonce) pairs. Execution for one
    user is serialised so two concurrent payments cannot both pass the
    daily cap.
    """

    def __init__(
        self,
        policy_service: PolicyService,
        signature_service: SignatureService,
        gateway: ChainGateway,
        dispatcher: ChainActionDispatcher,
        ledger: LedgerStore,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.policy_service = policy_service
        self.signature_service = signature_service
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.settings = settings or default_settings
        self._clock = clock or time.time
        self.validator = SchemaValidator()

        self._sessions: Dict[str, PaymentSession] = {}
        self._nonces: Dict[str, int] = {}
        self._executed: Dict[str, int] = {}  # "user:nonce" -> intent expiry

        self._session_lock = KeyedLock()
        self._nonce_locks = KeyedLock()
        self._execution_locks = KeyedLock()
        self._executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="x402-dispatch")

        logger.info("Payment Service initialized")

    def _now(self) -> int:
        return int(self._clock())

    # ------------------------------------------------------------------
    # Sessions and nonces
    # ------------------------------------------------------------------

    def get_next_nonce(self, user_id: str) -> int:
        """
        Strictly increasing nonce per user.

        The first value is randomized so nonces are not predictable across
        users; it is not a security boundary.
        """
        with self._nonce_locks.hold(user_id):
            current = self._nonces.get(user_id)
            if current is None:
                current = secrets.randbelow(NONCE_START_BOUND)
            nonce = current + 1
            self._nonces[user_id] = nonce
            return nonce

    def initialize_payment_session(self, user_id: str, agent_action: str) -> PaymentSession:
        now = datetime.fromtimestamp(self._clock(), UTC)
        session = PaymentSession(
            session_id=f"session_{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            agent_action=agent_action,
            nonce=self.get_next_nonce(user_id),
            created_at=now,
            expires_at=now + timedelta(minutes=self.settings.session_ttl_minutes),
        )

        with self._session_lock.hold(session.session_id):
            self._sessions[session.session_id] = session

        logger.info(f"Payment session initialized: {session.session_id} ({user_id}, {agent_action})")
        return session.model_copy()

    def get_session(self, session_id: str) -> Optional[PaymentSession]:
        """Active session, or None if unknown or expired (expired ones are evicted)."""
        with self._session_lock.hold(session_id):
            session = self._sessions.get(session_id)
            if session is None:
                return None

            if session.expires_at <= datetime.fromtimestamp(self._clock(), UTC):
                del self._sessions[session_id]
                logger.info(f"Payment session expired: {session_id}")
                return None

            return session.model_copy()

    def end_session(self, session_id: str) -> bool:
        with self._session_lock.hold(session_id):
            removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.info(f"Payment session ended: {session_id}")
        return removed

    # ------------------------------------------------------------------
    # Prepare / verify / execute
    # ------------------------------------------------------------------

    def prepare_payment(
        self,
        amount: str,
        recipient: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PreparedPayment:
        """
        Build a compliant, quoted payment intent. Records no spend.

        metadata carries user_id (required), action, agent_address, token
        and any action-specific chain parameters.

        Raises:
            ValidationError: Malformed recipient, amount or missing user
            PolicyViolationError: The payment breaks the user's policy
            UpstreamUnavailableError: Gas could not be quoted
        """
        metadata = dict(metadata or {})
        if not self.gateway.validate_address(recipient):
            raise AddressFormatError(recipient)

        user_id = metadata.pop("user_id", None)
        if not user_id:
            raise ValidationError("user_id is required to prepare a payment")

        agent = metadata.pop("agent_address", None) or self.signature_service.signer_address
        action = metadata.pop("action", "transfer")
        token = metadata.pop("token", None)

        now = self._now()
        payment = self.validator.validate({
            "user": user_id,
            "agent": agent,
            "action": action,
            "amount": amount,
            "recipient": recipient,
            "token": token,
            "nonce": self.get_next_nonce(user_id),
            "timestamp": now,
            "expires": now + self.settings.intent_ttl_seconds,
            "metadata": metadata,
        })

        compliance = self.policy_service.check_policy_compliance(payment, user_id)
        if not compliance.compliant:
            logger.warning(f"Payment rejected at prepare for {user_id}: {compliance.violations}")
            raise PolicyViolationError(compliance.violations)

        gas_estimate = self.gateway.estimate_gas({
            "from": agent,
            "to": recipient,
            "value": to_smallest_unit(payment.amount),
        })

        logger.info(f"Payment prepared for {user_id}: {amount} -> {recipient}")

        return PreparedPayment(
            payment=payment,
            gas_estimate=gas_estimate,
            warnings=compliance.warnings,
        )

    def verify_payment(self, signature: str, payment_details: PaymentDetails) -> VerificationResult:
        """
        Signature, expiry, then a fresh compliance check.

        Never raises; failures come back as verified=False with an error.
        """
        payment, error = self._parse(payment_details)
        if error is not None:
            return self._rejected(error.message)

        if not self.signature_service.verify_signature(signature, payment):
            return self._rejected("Signature verification failed", payment)

        if not self.signature_service.verify_expiration(payment):
            return self._rejected("Payment approval expired", payment, signature_valid=True)

        compliance = self.policy_service.check_policy_compliance(payment, payment.user)
        if not compliance.compliant:
            return self._rejected(
                f"Policy violation: {', '.join(compliance.violations)}",
                payment,
                signature_valid=True,
                violations=compliance.violations,
            )

        logger.info(f"Payment verified for {payment.user} (nonce {payment.nonce})")

        return VerificationResult(
            success=True,
            verified=True,
            signature_valid=True,
            policy_compliant=True,
            state=PaymentState.VERIFIED,
            payment_details=payment,
        )

    def _rejected(
        self,
        error: str,
        payment: Optional[PaymentIntent] = None,
        signature_valid: bool = False,
        violations: Optional[List[str]] = None,
    ) -> VerificationResult:
        logger.warning(f"Payment verification failed: {error}")
        return VerificationResult(
            success=False,
            verified=False,
            signature_valid=signature_valid,
            error=error,
            violations=violations or [],
            state=PaymentState.REJECTED,
            payment_details=payment,
        )

    def _parse(self, payment_details: PaymentDetails):
        if isinstance(payment_details, PaymentIntent):
            return payment_details, None
        return self.validator.validate_safe(payment_details)

    def execute_payment(self, signature: str, payment_details: PaymentDetails) -> ExecutionResult:
        """
        Verify, dispatch exactly once, then record.

        A dispatch that fails leaves no record and no tracking update. A
        dispatch whose outcome is not observed within the execution timeout
        is recorded with status "unknown" and never retried.

        Raises:
            ValidationError: Malformed payload or unsupported action
            PaymentRejectedError: Bad signature, expired, or already executed
            PolicyViolationError: The payment breaks the user's policy
            ChainExecutionError / UpstreamUnavailableError: Dispatch failed
            StorageError: Dispatched but the payment record could not be written
        """
        payment, error = self._parse(payment_details)
        if error is not None:
            raise error

        if not self.dispatcher.supports(payment.action):
            raise ValidationError(f"Unsupported action: {payment.action}")

        with self._execution_locks.hold(payment.user):
            replay_key = f"{payment.user}:{payment.nonce}"
            if self._already_executed(replay_key):
                logger.warning(f"Duplicate execution rejected: {replay_key}")
                raise PaymentRejectedError("Payment already executed", duplicate=True)

            verification = self.verify_payment(signature, payment)
            if not verification.verified:
                if verification.violations:
                    raise PolicyViolationError(verification.violations)
                raise PaymentRejectedError(verification.error or "Payment verification failed")

            # Reserved before dispatch; released only if nothing can have landed
            broadcast: Dict[str, str] = {}
            self._executed[replay_key] = payment.expires
            try:
                outcome = self._dispatch(payment, broadcast)
            except ChainExecutionError:
                # Rejected by the node, or mined and reverted
                self._executed.pop(replay_key, None)
                raise
            except Exception:
                if "tx_hash" not in broadcast:
                    self._executed.pop(replay_key, None)
                raise

            record = PaymentRecord(
                user_id=payment.user,
                action=payment.action,
                amount=payment.amount,
                recipient=payment.recipient,
                tx_hash=outcome.tx_hash or None,
                status=outcome.status,
                gas_used=outcome.gas_used,
                payment_details=payment.model_dump(mode="json"),
                result=outcome.model_dump(mode="json"),
            )
            try:
                record_id = self.ledger.store(PAYMENTS_COLLECTION, record.model_dump(mode="json"))
            except StorageError:
                logger.error(f"Payment {outcome.tx_hash} dispatched but not recorded for {payment.user}")
                raise

            self.policy_service.record_payment(payment.user, payment)

        state = PaymentState.UNKNOWN if outcome.status == "unknown" else PaymentState.EXECUTED
        logger.info(f"Payment executed for {payment.user}: {outcome.tx_hash} ({outcome.status})")

        return ExecutionResult(
            success=outcome.status == "success",
            executed=True,
            tx_hash=outcome.tx_hash or None,
            status=outcome.status,
            gas_used=outcome.gas_used,
            state=state,
            record_id=record_id,
            payment_details=payment,
        )

    def _dispatch(self, payment: PaymentIntent, broadcast: Dict[str, str]) -> ChainActionResult:
        """Run the chain action under the execution timeout; `broadcast` receives the tx hash."""
        params = {
            **payment.metadata,
            "recipient": payment.recipient,
            "amount": payment.amount,
            "token": payment.token,
        }
        future = self._executor.submit(
            self.dispatcher.execute,
            payment.action,
            params,
            lambda tx_hash: broadcast.update(tx_hash=tx_hash),
        )

        try:
            return future.result(timeout=self.settings.execution_timeout_seconds)
        except FutureTimeoutError:
            tx_hash = broadcast.get("tx_hash", "")
            logger.error(
                f"Dispatch for {payment.user} (nonce {payment.nonce}) timed out; "
                f"status unknown, tx: {tx_hash or 'not broadcast yet'}"
            )
            future.add_done_callback(lambda done: self._record_late_outcome(payment, done))
            return ChainActionResult(tx_hash=tx_hash, status="unknown", details={"reason": "execution timeout"})
        except ConfirmationTimeoutError as e:
            logger.error(f"Confirmation timed out for {e.tx_hash}; status unknown")
            return ChainActionResult(tx_hash=e.tx_hash, status="unknown", details={"reason": "confirmation timeout"})

    def _record_late_outcome(self, payment: PaymentIntent, future: Future) -> None:
        """Append the final outcome of a dispatch abandoned by the execution timeout."""
        outcome: Dict[str, Any] = {"user_id": payment.user, "nonce": payment.nonce}
        error = future.exception()
        if error is None:
            result = future.result()
            outcome.update(tx_hash=result.tx_hash, status=result.status, gas_used=result.gas_used)
        else:
            outcome.update(
                tx_hash=getattr(error, "tx_hash", None),
                status="unknown" if isinstance(error, ConfirmationTimeoutError) else "failed",
                error=str(error),
            )

        try:
            self.ledger.store(OUTCOMES_COLLECTION, outcome)
        except StorageError as e:
            logger.error(f"Late outcome for {payment.user} (nonce {payment.nonce}) not recorded: {e}")
            return

        logger.info(f"Late outcome for {payment.user} (nonce {payment.nonce}): {outcome['status']}")

    def _already_executed(self, key: str) -> bool:
        now = self._now()
        for stale in [k for k, expires in self._executed.items() if expires <= now]:
            del self._executed[stale]
        return key in self._executed

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def get_payment_preview(self, payment_details: Dict[str, Any]) -> PaymentPreview:
        """
        Read-only cost, compliance and risk summary.

        Raises:
            ValidationError: Malformed amount or fields
            UpstreamUnavailableError: Gas could not be quoted
        """
        details = dict(payment_details)
        details.setdefault("nonce", 0)
        payment = self.validator.validate(details)

        compliance = self.policy_service.check_policy_compliance(payment, payment.user)
        amount_wei = to_smallest_unit(payment.amount)

        costs = None
        if self.gateway.validate_address(payment.recipient):
            gas = self.gateway.estimate_gas({
                "from": payment.agent,
                "to": payment.recipient,
                "value": amount_wei,
            })
            costs = PreviewCosts(
                amount=payment.amount,
                gas_cost=gas.estimated_cost_native,
                total_cost=format_native(amount_wei + gas.estimated_cost_wei),
                gas_limit=gas.gas_limit,
                gas_price_gwei=gas.gas_price_gwei,
            )

        return PaymentPreview(
            payment={
                "action": payment.action,
                "amount": payment.amount,
                "recipient": payment.recipient,
                "token": payment.token or self.settings.native_symbol,
            },
            costs=costs,
            policy=PreviewPolicy(
                compliant=compliance.compliant,
                violations=compliance.violations,
                warnings=compliance.warnings,
            ),
            risk=self.assess_risk(payment, compliance),
            expires_at=datetime.fromtimestamp(payment.expires, UTC),
        )

    def assess_risk(self, payment: PaymentIntent, compliance: ComplianceResult) -> PreviewRisk:
        """Additive preview score: >= 7 high, >= 4 medium."""
        score = 0
        warnings: List[str] = []

        threshold = to_smallest_unit(self.settings.preview_high_value_threshold)
        if to_smallest_unit(payment.amount) > threshold:
            score += PREVIEW_HIGH_AMOUNT_POINTS
            warnings.append("High transaction amount")

        if not compliance.compliant:
            score += PREVIEW_NON_COMPLIANT_POINTS
            warnings.append("Policy violations detected")

        if not self.gateway.validate_address(payment.recipient):
            score += PREVIEW_INVALID_RECIPIENT_POINTS
            warnings.append("Invalid recipient address")

        if score >= PREVIEW_HIGH_SCORE:
            level = "high"
        elif score >= PREVIEW_MEDIUM_SCORE:
            level = "medium"
        else:
            level = "low"

        return PreviewRisk(level=level, score=score, warnings=warnings)

    # ------------------------------------------------------------------
    # History and policy
    # ------------------------------------------------------------------

    def get_payment_history(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """
        Recorded payments for a user, newest first.

        Raises:
            StorageError: If the ledger store cannot be read
        """
        history = self.ledger.query(PAYMENTS_COLLECTION, {"user_id": user_id}, limit)
        ordered = sorted(history, key=lambda r: str(r.get("timestamp", "")), reverse=True)

        logger.info(f"Payment history retrieved for {user_id}: {len(ordered)} record(s)")
        return ordered[:limit]

    def create_payment_policy(self, user_id: str, rules: Dict[str, Any]) -> Policy:
        policy = self.policy_service.create_policy(user_id, rules)
        logger.info(f"Payment policy created for {user_id}")
        return policy

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
