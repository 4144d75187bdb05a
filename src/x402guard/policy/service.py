"""Policy Service - per-user spend policy and daily usage.

The single source of truth for what a user may pay and for what they
have already paid today. Compliance is decided by deterministic rules
over (payment, policy, today's usage).
"""

import logging
from datetime import datetime, UTC
from typing import Any, Callable, Dict, List, Optional

from x402guard.chain.gateway import ChainGateway
from x402guard.chain.units import format_native, to_smallest_unit
from x402guard.config import Settings, settings as default_settings
from x402guard.errors import AddressFormatError, StorageError
from x402guard.ledger.models import POLICY_PREFERENCE_KEY
from x402guard.ledger.store import LedgerStore
from x402guard.locks import KeyedLock
from x402guard.policy.models import (
    ComplianceResult,
    DailyTracking,
    PaymentSummary,
    Policy,
    PolicyLimits,
    PolicySummary,
    TodayUsage,
)
from x402guard.policy.rules import ComplianceRule, build_compliance_rules
from x402guard.schema import ActionType, PaymentRequest


logger = logging.getLogger(__name__)


DEFAULT_MAX_DAILY_SPEND = "1"
DEFAULT_MAX_SINGLE_TX = "0.1"
DEFAULT_DAILY_TX_LIMIT = 100


class PolicyService:
    """
    Owns user policies and daily tracking.

    State:
    - policy cache keyed by user (refreshed from the ledger store on miss)
    - daily tracking keyed by "user:YYYY-MM-DD" (UTC)

    Every read-modify-write of one user's state runs under that user's
    lock. Callers always receive copies.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        gateway: ChainGateway,
        settings: Optional[Settings] = None,
        rules: Optional[List[ComplianceRule]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.settings = settings or default_settings
        self.rules = rules if rules is not None else build_compliance_rules(self.settings.native_symbol)
        self._clock = clock or (lambda: datetime.now(UTC))

        self._policies: Dict[str, Policy] = {}
        self._tracking: Dict[str, DailyTracking] = {}
        self._locks = KeyedLock()

        logger.info(f"Policy Service initialized with {len(self.rules)} rules")

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def get_default_policy(self) -> Policy:
        """1 native unit per day, 0.1 per payment, 100 payments per day."""
        return Policy(
            max_daily_spend=to_smallest_unit(DEFAULT_MAX_DAILY_SPEND),
            max_single_tx=to_smallest_unit(DEFAULT_MAX_SINGLE_TX),
            daily_tx_limit=DEFAULT_DAILY_TX_LIMIT,
            allowed_addresses=[],
            denied_addresses=[],
            allowed_actions=[a.value for a in ActionType],
        )

    def get_policy(self, user_id: str) -> Policy:
        """
        Cached policy, else the stored one, else the default.

        Never raises: a storage failure yields the default (not cached, so
        the stored policy is picked up once the store recovers).
        """
        with self._locks.hold(user_id):
            cached = self._policies.get(user_id)
            if cached is not None:
                return cached.model_copy(deep=True)

            try:
                preferences = self.ledger.get_user_preferences(user_id)
                stored = preferences.get(POLICY_PREFERENCE_KEY)
                policy = Policy.model_validate(stored) if stored else self.get_default_policy()
            except Exception as e:
                logger.error(f"Get policy error for {user_id}, using default: {e}")
                return self.get_default_policy()

            self._policies[user_id] = policy
            return policy.model_copy(deep=True)

    def store_policy(self, user_id: str, policy: Policy) -> Policy:
        """
        Write a policy through to the ledger store, then cache it.

        Raises:
            StorageError: If the write fails (the cache is left untouched)
        """
        with self._locks.hold(user_id):
            try:
                self.ledger.store_user_preference(
                    user_id, POLICY_PREFERENCE_KEY, policy.model_dump(mode="json"),
                )
            except StorageError:
                raise
            except Exception as e:
                logger.error(f"Store policy error for {user_id}: {e}")
                raise StorageError(f"Failed to store policy: {e}")

            self._policies[user_id] = policy.model_copy(deep=True)

        logger.info(f"Policy stored for {user_id}")
        return policy.model_copy(deep=True)

    def create_policy(self, user_id: str, rules: Dict[str, Any]) -> Policy:
        """
        Build a full policy from partial rules and store it.

        Native-unit limits may be given as max_daily_spend / max_single_tx
        (decimal strings); everything else defaults.
        """
        base = self.get_default_policy()
        fields: Dict[str, Any] = {}

        for key in ("max_daily_spend", "max_single_tx"):
            if rules.get(key) is not None:
                fields[key] = to_smallest_unit(rules[key])
        if rules.get("daily_tx_limit") is not None:
            fields["daily_tx_limit"] = int(rules["daily_tx_limit"])
        if rules.get("allowed_actions") is not None:
            fields["allowed_actions"] = list(rules["allowed_actions"])
        for key in ("allowed_addresses", "denied_addresses"):
            if rules.get(key) is not None:
                self._validate_addresses(rules[key])
                fields[key] = list(rules[key])

        policy = Policy.model_validate({**base.model_dump(), **fields})
        return self.store_policy(user_id, policy)

    def set_spending_limit(self, user_id: str, limit: str) -> Policy:
        """Set the daily cap from a native-unit amount."""
        limit_wei = to_smallest_unit(limit)

        with self._locks.hold(user_id):
            policy = self.get_policy(user_id)
            policy.max_daily_spend = limit_wei
            policy.updated_at = self._clock()
            stored = self.store_policy(user_id, policy)

        logger.info(f"Spending limit set for {user_id}: {limit} {self.settings.native_symbol}")
        return stored

    def set_allowed_addresses(self, user_id: str, addresses: List[str]) -> Policy:
        """Replace the allowlist. Raises AddressFormatError on the first bad address."""
        return self._replace_addresses(user_id, "allowed_addresses", addresses)

    def set_denied_addresses(self, user_id: str, addresses: List[str]) -> Policy:
        """Replace the denylist. Raises AddressFormatError on the first bad address."""
        return self._replace_addresses(user_id, "denied_addresses", addresses)

    def add_allowed_address(self, user_id: str, address: str) -> Policy:
        with self._locks.hold(user_id):
            current = self.get_policy(user_id).allowed_addresses
            return self._replace_addresses(user_id, "allowed_addresses", current + [address])

    def remove_allowed_address(self, user_id: str, address: str) -> Policy:
        with self._locks.hold(user_id):
            current = self.get_policy(user_id).allowed_addresses
            remaining = [a for a in current if a != address.lower()]
            return self._replace_addresses(user_id, "allowed_addresses", remaining)

    def add_denied_address(self, user_id: str, address: str) -> Policy:
        with self._locks.hold(user_id):
            current = self.get_policy(user_id).denied_addresses
            return self._replace_addresses(user_id, "denied_addresses", current + [address])

    def _replace_addresses(self, user_id: str, field: str, addresses: List[str]) -> Policy:
        self._validate_addresses(addresses)

        with self._locks.hold(user_id):
            policy = self.get_policy(user_id)
            setattr(policy, field, list(dict.fromkeys(a.lower() for a in addresses)))
            policy.updated_at = self._clock()
            stored = self.store_policy(user_id, policy)

        logger.info(f"{field} set for {user_id}: {len(getattr(stored, field))} address(es)")
        return stored

    def _validate_addresses(self, addresses: List[str]) -> None:
        for address in addresses:
            if not self.gateway.validate_address(address):
                raise AddressFormatError(address)

    # ------------------------------------------------------------------
    # Compliance
    # ------------------------------------------------------------------

    def evaluate(self, payment: PaymentRequest, policy: Policy, usage: DailyTracking) -> ComplianceResult:
        """
        Run every rule over (payment, policy, usage).

        Pure: no I/O, no state. Raises ValidationError if the amount cannot
        be converted to the smallest unit.
        """
        amount_wei = to_smallest_unit(payment.amount)
        violations: List[str] = []
        warnings: List[str] = []

        for rule in self.rules:
            passed, finding = rule.evaluate(payment, amount_wei, policy, usage)
            if finding is None:
                continue
            if passed and not finding.blocking:
                warnings.append(finding.message)
            else:
                violations.append(finding.message)
                logger.warning(f"Rule '{rule.name}' failed: {finding.message}")

        return ComplianceResult(
            compliant=not violations,
            violations=violations,
            warnings=warnings,
            policy=policy,
        )

    def check_policy_compliance(self, payment: PaymentRequest, user_id: str) -> ComplianceResult:
        """
        The enforcement gate. Always returns a decision.

        Any internal error becomes a single "Policy check failed" violation.
        """
        try:
            with self._locks.hold(user_id):
                policy = self.get_policy(user_id)
                usage = self._get_tracking(user_id)

            result = self.evaluate(payment, policy, usage)
        except Exception as e:
            logger.error(f"Check policy compliance error for {user_id}: {e}")
            return ComplianceResult(
                compliant=False,
                violations=[f"Policy check failed: {e}"],
                warnings=[],
            )

        logger.info(
            f"Policy compliance checked for {user_id}: "
            f"compliant={result.compliant}, violations={len(result.violations)}"
        )
        return result

    def get_policy_violations(self, payment: PaymentRequest, user_id: str) -> List[str]:
        return self.check_policy_compliance(payment, user_id).violations

    # ------------------------------------------------------------------
    # Daily tracking
    # ------------------------------------------------------------------

    def get_today_key(self) -> str:
        """Today's UTC date, YYYY-MM-DD."""
        return self._clock().astimezone(UTC).strftime("%Y-%m-%d")

    def _tracking_key(self, user_id: str) -> str:
        return f"{user_id}:{self.get_today_key()}"

    def _get_tracking(self, user_id: str) -> DailyTracking:
        tracking = self._tracking.get(self._tracking_key(user_id))
        return tracking.model_copy(deep=True) if tracking else DailyTracking()

    def record_payment(self, user_id: str, payment: PaymentRequest) -> DailyTracking:
        """
        Add an executed payment to today's totals.

        Call exactly once per executed payment; there is no undo.
        """
        amount_wei = to_smallest_unit(payment.amount)

        with self._locks.hold(user_id):
            key = self._tracking_key(user_id)
            tracking = self._tracking.get(key) or DailyTracking()

            tracking.spent_wei += amount_wei
            tracking.tx_count += 1
            tracking.payments.append(PaymentSummary(
                amount=payment.amount,
                recipient=payment.recipient,
                action=payment.action,
                timestamp=self._clock(),
            ))
            self._tracking[key] = tracking
            snapshot = tracking.model_copy(deep=True)

        logger.info(f"Payment recorded for {user_id}: tx_count={snapshot.tx_count}")
        return snapshot

    def get_daily_spending(self, user_id: str) -> int:
        """Smallest-unit amount spent today."""
        with self._locks.hold(user_id):
            return self._get_tracking(user_id).spent_wei

    def get_daily_transaction_count(self, user_id: str) -> int:
        with self._locks.hold(user_id):
            return self._get_tracking(user_id).tx_count

    def get_daily_tracking(self, user_id: str) -> DailyTracking:
        with self._locks.hold(user_id):
            return self._get_tracking(user_id)

    def clear_old_tracking(self) -> int:
        """Drop tracking entries for any day but today. Returns how many."""
        suffix = f":{self.get_today_key()}"
        stale = [key for key in list(self._tracking) if not key.endswith(suffix)]

        for key in stale:
            user_id = key.rsplit(":", 1)[0]
            with self._locks.hold(user_id):
                self._tracking.pop(key, None)

        logger.info(f"Old tracking data cleared: {len(stale)} entries")
        return len(stale)

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def get_policy_summary(self, user_id: str) -> PolicySummary:
        with self._locks.hold(user_id):
            policy = self.get_policy(user_id)
            usage = self._get_tracking(user_id)

        remaining = None
        if policy.max_daily_spend is not None:
            remaining = format_native(max(policy.max_daily_spend - usage.spent_wei, 0))

        remaining_txs = None
        if policy.daily_tx_limit is not None:
            remaining_txs = max(policy.daily_tx_limit - usage.tx_count, 0)

        return PolicySummary(
            user_id=user_id,
            native_symbol=self.settings.native_symbol,
            limits=PolicyLimits(
                max_daily_spend=None if policy.max_daily_spend is None else format_native(policy.max_daily_spend),
                max_single_tx=None if policy.max_single_tx is None else format_native(policy.max_single_tx),
                daily_tx_limit=policy.daily_tx_limit,
            ),
            today=TodayUsage(
                spent=format_native(usage.spent_wei),
                tx_count=usage.tx_count,
                remaining=remaining,
                remaining_txs=remaining_txs,
            ),
            allowed_address_count=len(policy.allowed_addresses),
            denied_address_count=len(policy.denied_addresses),
            allowed_actions=policy.allowed_actions,
        )
