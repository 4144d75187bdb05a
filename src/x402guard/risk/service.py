"""
Risk Assessment Service

Advisory heuristics over a single transaction: gas price, amount,
recipient, balance, frequency and amount patterns. Findings are data;
nothing here blocks a payment except that a CRITICAL level turns
can_execute off for the caller to honour.
"""

import logging
import threading
from collections import deque
from decimal import Decimal, InvalidOperation
from typing import Deque, Dict, List, Optional, Set

from x402guard.chain.gateway import ChainGateway
from x402guard.chain.units import format_native, to_native_unit, to_smallest_unit
from x402guard.config import Settings, settings as default_settings
from x402guard.errors import StorageError, UpstreamUnavailableError, ValidationError
from x402guard.ledger.models import PAYMENTS_COLLECTION
from x402guard.ledger.store import LedgerStore
from x402guard.risk.models import (
    Recommendation,
    RiskAssessment,
    RiskFinding,
    RiskLevel,
    Severity,
    TransactionRiskRequest,
)


logger = logging.getLogger(__name__)


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Thresholds
GAS_SPIKE_FACTOR = Decimal("1.5")
FALLBACK_GAS_PRICE_GWEI = Decimal("5")
GAS_HISTORY_SIZE = 100
UNUSUAL_AMOUNT_FACTOR = 2
UNUSUAL_AMOUNT_FLOOR = Decimal("0.1")
LOW_REMAINING_BALANCE = Decimal("0.01")
HIGH_FREQUENCY_TX_COUNT = 50
ROUND_NUMBER_MIN = Decimal("10")
DUST_AMOUNT = Decimal("0.0001")
AMOUNT_HISTORY_LIMIT = 50
RECIPIENT_HISTORY_LIMIT = 100


def _decimal(value: object) -> Optional[Decimal]:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


class RiskAssessmentService:
    """
    Heuristic transaction scorer.

    Collaborators:
    - ledger store: payment history for amount and recipient checks
    - chain gateway: balance lookups
    - policy service (optional): today's transaction count
    """

    def __init__(
        self,
        ledger: LedgerStore,
        gateway: ChainGateway,
        policy_service=None,
        settings: Optional[Settings] = None,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.policy_service = policy_service
        self.settings = settings or default_settings

        self._bad_addresses: Set[str] = {ZERO_ADDRESS}
        self._gas_history: Deque[Decimal] = deque(maxlen=GAS_HISTORY_SIZE)
        self._lock = threading.Lock()

        self._recommendations: Dict[str, Recommendation] = {
            "high_gas_price": Recommendation(
                type="gas_optimization",
                message="Consider waiting for lower gas prices",
                action="Wait 1-2 hours for gas prices to decrease",
                priority="medium",
            ),
            "unusual_amount": Recommendation(
                type="amount_verification",
                message="Verify the transaction amount is correct",
                action="Double-check the amount before proceeding",
                priority="high",
            ),
            "new_recipient": Recommendation(
                type="recipient_verification",
                message="Verify the recipient address",
                action="Confirm this is the correct recipient address",
                priority="high",
            ),
            "blocked_address": Recommendation(
                type="address_warning",
                message="This address is flagged as suspicious",
                action="Do not proceed with this transaction",
                priority="critical",
            ),
            "insufficient_balance": Recommendation(
                type="add_funds",
                message="Insufficient balance to complete transaction",
                action=f"Add more {self.settings.native_symbol} to your wallet",
                priority="critical",
            ),
            "balance_unavailable": Recommendation(
                type="balance_check",
                message="Balance could not be verified",
                action="Retry once the network is reachable",
                priority="medium",
            ),
            "high_frequency": Recommendation(
                type="rate_limiting",
                message="You are making many transactions",
                action="Consider batching transactions to save on gas",
                priority="low",
            ),
        }

        logger.info("Risk Assessment Service initialized")

    def assess_transaction(self, request: TransactionRiskRequest) -> RiskAssessment:
        """Identify risks, bucket them and attach recommendations."""
        risks = self.identify_risks(request)
        risk_level = self.calculate_risk_level(risks)
        recommendations = self.get_recommendations(request, risks)

        # Feed the observed price into the trailing average
        if request.gas_estimate is not None:
            observed = _decimal(request.gas_estimate.gas_price_gwei)
            if observed is not None:
                self.record_gas_price(observed)

        logger.info(f"Transaction assessed: {risk_level.value} ({len(risks)} risk(s))")

        return RiskAssessment(
            risk_level=risk_level,
            risks=risks,
            recommendations=recommendations,
            can_execute=risk_level != RiskLevel.CRITICAL,
        )

    def identify_risks(self, request: TransactionRiskRequest) -> List[RiskFinding]:
        """Run every check; each contributes zero or more findings."""
        risks: List[RiskFinding] = []

        for finding in (
            self._check_gas_price(request),
            self._check_amount(request),
            self._check_recipient(request),
            self._check_balance(request),
            self._check_frequency(request),
        ):
            if finding is not None:
                risks.append(finding)

        risks.extend(self._check_patterns(request))
        return risks

    @staticmethod
    def calculate_risk_level(risks: List[RiskFinding]) -> RiskLevel:
        """A single finding is enough to raise the level to its bucket."""
        severities = {r.severity for r in risks}
        if Severity.CRITICAL in severities:
            return RiskLevel.CRITICAL
        if Severity.HIGH in severities:
            return RiskLevel.HIGH
        if Severity.MEDIUM in severities:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def get_recommendations(
        self,
        request: TransactionRiskRequest,
        risks: List[RiskFinding],
    ) -> List[Recommendation]:
        if not risks:
            return [Recommendation(
                type="general",
                message="Transaction appears safe",
                action="Proceed with transaction",
                priority="low",
            )]

        present = {r.type for r in risks}
        return [
            rec.model_copy()
            for risk_type, rec in self._recommendations.items()
            if risk_type in present
        ]

    # ------------------------------------------------------------------
    # Gas history
    # ------------------------------------------------------------------

    def record_gas_price(self, gas_price_gwei: Decimal) -> None:
        with self._lock:
            self._gas_history.append(Decimal(gas_price_gwei))

    def get_average_gas_price(self) -> Decimal:
        """Mean of the recorded prices (gwei), or the fallback when empty."""
        with self._lock:
            if not self._gas_history:
                return FALLBACK_GAS_PRICE_GWEI
            return sum(self._gas_history, Decimal(0)) / len(self._gas_history)

    # ------------------------------------------------------------------
    # Known-bad addresses
    # ------------------------------------------------------------------

    def add_bad_address(self, address: str) -> None:
        with self._lock:
            self._bad_addresses.add(address.lower())
        logger.info(f"Bad address added: {address}")

    def remove_bad_address(self, address: str) -> None:
        with self._lock:
            self._bad_addresses.discard(address.lower())
        logger.info(f"Bad address removed: {address}")

    def is_bad_address(self, address: str) -> bool:
        with self._lock:
            return address.lower() in self._bad_addresses

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _payment_history(self, user_id: str, limit: int) -> Optional[List[dict]]:
        try:
            return self.ledger.query(PAYMENTS_COLLECTION, {"user_id": user_id}, limit)
        except StorageError as e:
            logger.error(f"Payment history unavailable for {user_id}: {e}")
            return None

    def _check_gas_price(self, request: TransactionRiskRequest) -> Optional[RiskFinding]:
        if request.gas_estimate is None:
            return None

        current = _decimal(request.gas_estimate.gas_price_gwei)
        if current is None:
            return None

        average = self.get_average_gas_price()
        if current > average * GAS_SPIKE_FACTOR:
            return RiskFinding(
                type="high_gas_price",
                severity=Severity.MEDIUM,
                message=f"High gas price: {current:.2f} Gwei (avg: {average:.2f} Gwei)",
                details={
                    "current": str(current),
                    "average": str(average),
                    "percentage_above": int(round((current / average - 1) * 100)) if average else None,
                },
            )
        return None

    def _check_amount(self, request: TransactionRiskRequest) -> Optional[RiskFinding]:
        if not request.amount or not request.user_id:
            return None

        amount = _decimal(request.amount)
        if amount is None:
            return None

        history = self._payment_history(request.user_id, AMOUNT_HISTORY_LIMIT)
        if history is None:
            return None

        if not history:
            return RiskFinding(
                type="first_transaction",
                severity=Severity.LOW,
                message="This is your first transaction",
                details={"amount": request.amount},
            )

        amounts = [a for a in (_decimal(h.get("amount")) for h in history) if a is not None]
        if not amounts:
            return None

        average = sum(amounts, Decimal(0)) / len(amounts)
        if amount > average * UNUSUAL_AMOUNT_FACTOR and amount > UNUSUAL_AMOUNT_FLOOR:
            symbol = self.settings.native_symbol
            return RiskFinding(
                type="unusual_amount",
                severity=Severity.MEDIUM,
                message=f"Unusual amount: {request.amount} {symbol} (avg: {average:.4f} {symbol})",
                details={
                    "current": request.amount,
                    "average": str(average),
                    "max_previous": str(max(amounts)),
                    "times_above_average": f"{amount / average:.1f}" if average else None,
                },
            )
        return None

    def _check_recipient(self, request: TransactionRiskRequest) -> Optional[RiskFinding]:
        if not request.recipient:
            return None

        if self.is_bad_address(request.recipient):
            return RiskFinding(
                type="blocked_address",
                severity=Severity.CRITICAL,
                message="This address is flagged as suspicious or malicious",
                details={"address": request.recipient, "reason": "Known scam or malicious address"},
            )

        if request.user_id:
            history = self._payment_history(request.user_id, RECIPIENT_HISTORY_LIMIT)
            if history is None:
                return None

            target = request.recipient.lower()
            seen = any((h.get("recipient") or "").lower() == target for h in history)
            if not seen:
                return RiskFinding(
                    type="new_recipient",
                    severity=Severity.LOW,
                    message="This is a new recipient address",
                    details={"address": request.recipient, "first_time": True},
                )
        return None

    def _check_balance(self, request: TransactionRiskRequest) -> Optional[RiskFinding]:
        if not request.from_address or not request.amount:
            return None

        try:
            amount_wei = to_smallest_unit(request.amount)
        except ValidationError:
            return None

        try:
            balance = self.gateway.get_balance(request.from_address)
        except UpstreamUnavailableError as e:
            logger.error(f"Balance check unavailable: {e}")
            return RiskFinding(
                type="balance_unavailable",
                severity=Severity.MEDIUM,
                message="Balance could not be checked: chain unavailable",
                details={"address": request.from_address},
            )
        except ValueError as e:
            logger.warning(f"Balance check skipped: {e}")
            return None

        gas_cost = request.gas_estimate.estimated_cost_wei if request.gas_estimate else 0
        needed = amount_wei + gas_cost
        symbol = self.settings.native_symbol

        if balance.balance_wei < needed:
            return RiskFinding(
                type="insufficient_balance",
                severity=Severity.CRITICAL,
                message=(
                    f"Insufficient balance: need {format_native(needed)} {symbol}, "
                    f"have {balance.balance_native} {symbol}"
                ),
                details={
                    "balance": balance.balance_native,
                    "needed": format_native(needed),
                    "shortfall": format_native(needed - balance.balance_wei),
                },
            )

        remaining = to_native_unit(balance.balance_wei - needed)
        if remaining < LOW_REMAINING_BALANCE:
            return RiskFinding(
                type="low_remaining_balance",
                severity=Severity.LOW,
                message=f"Low remaining balance after transaction: {remaining:.4f} {symbol}",
                details={"remaining": format_native(balance.balance_wei - needed)},
            )
        return None

    def _check_frequency(self, request: TransactionRiskRequest) -> Optional[RiskFinding]:
        if not request.user_id or self.policy_service is None:
            return None

        count = self.policy_service.get_daily_transaction_count(request.user_id)
        if count > HIGH_FREQUENCY_TX_COUNT:
            return RiskFinding(
                type="high_frequency",
                severity=Severity.LOW,
                message=f"High transaction frequency: {count} transactions today",
                details={"daily_count": count},
            )
        return None

    def _check_patterns(self, request: TransactionRiskRequest) -> List[RiskFinding]:
        amount = _decimal(request.amount) if request.amount else None
        if amount is None:
            return []

        risks = []
        if amount >= ROUND_NUMBER_MIN and amount % 10 == 0:
            risks.append(RiskFinding(
                type="round_number",
                severity=Severity.LOW,
                message="Transaction uses a round number - verify amount is correct",
                details={"amount": request.amount},
            ))

        if 0 < amount < DUST_AMOUNT:
            risks.append(RiskFinding(
                type="dust_amount",
                severity=Severity.LOW,
                message="Very small transaction amount detected",
                details={"amount": request.amount},
            ))

        return risks
