"""Recipient allow/deny lists. Both compare lower-cased addresses."""

from typing import Optional, Tuple

from x402guard.policy.models import DailyTracking, Policy, RuleViolation
from x402guard.policy.rules import ComplianceRule
from x402guard.schema import PaymentRequest


class AllowlistRule(ComplianceRule):
    """A non-empty allowlist must contain the recipient."""

    def __init__(self, native_symbol: str = "BNB"):
        super().__init__(
            name="recipient_allowlist",
            description="Recipient must be allow-listed when an allowlist is set",
            native_symbol=native_symbol,
        )

    def evaluate(
        self,
        payment: PaymentRequest,
        amount_wei: int,
        policy: Policy,
        usage: DailyTracking,
    ) -> Tuple[bool, Optional[RuleViolation]]:
        if not policy.allowed_addresses:
            return True, None

        if payment.recipient.lower() not in policy.allowed_addresses:
            return False, self.create_violation(
                "Recipient not in allowlist",
                details={"recipient": payment.recipient},
            )

        return True, None


class DenylistRule(ComplianceRule):
    """The recipient must not be deny-listed, whatever the allowlist says."""

    def __init__(self, native_symbol: str = "BNB"):
        super().__init__(
            name="recipient_denylist",
            description="Recipient must not be deny-listed",
            native_symbol=native_symbol,
        )

    def evaluate(
        self,
        payment: PaymentRequest,
        amount_wei: int,
        policy: Policy,
        usage: DailyTracking,
    ) -> Tuple[bool, Optional[RuleViolation]]:
        if payment.recipient.lower() in policy.denied_addresses:
            return False, self.create_violation(
                "Recipient is in denylist",
                details={"recipient": payment.recipient},
            )

        return True, None
