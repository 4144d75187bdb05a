"""Permitted action kinds."""

from typing import Optional, Tuple

from x402guard.policy.models import DailyTracking, Policy, RuleViolation
from x402guard.policy.rules import ComplianceRule
from x402guard.schema import PaymentRequest


class AllowedActionRule(ComplianceRule):
    """A non-empty allowed_actions list must contain the payment's action."""

    def __init__(self, native_symbol: str = "BNB"):
        super().__init__(
            name="allowed_action",
            description="Action must be permitted by the policy",
            native_symbol=native_symbol,
        )

    def evaluate(
        self,
        payment: PaymentRequest,
        amount_wei: int,
        policy: Policy,
        usage: DailyTracking,
    ) -> Tuple[bool, Optional[RuleViolation]]:
        if not policy.allowed_actions:
            return True, None

        if payment.action not in policy.allowed_actions:
            return False, self.create_violation(
                f"Action '{payment.action}' not allowed",
                details={"action": payment.action, "allowed": policy.allowed_actions},
            )

        return True, None
