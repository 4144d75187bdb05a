"""Base class for compliance rules."""

from abc import ABC, abstractmethod
from typing import Optional, Tuple

from x402guard.chain.units import format_native
from x402guard.policy.models import DailyTracking, Policy, RuleViolation
from x402guard.schema import PaymentRequest


class ComplianceRule(ABC):
    """Abstract base class for policy compliance rules."""

    def __init__(self, name: str, description: str, native_symbol: str = "BNB"):
        """
        Initialize a compliance rule.

        Args:
            name: Unique rule identifier
            description: Human-readable description
            native_symbol: Symbol used when quoting native-unit limits
        """
        self.name = name
        self.description = description
        self.native_symbol = native_symbol

    @abstractmethod
    def evaluate(
        self,
        payment: PaymentRequest,
        amount_wei: int,
        policy: Policy,
        usage: DailyTracking,
    ) -> Tuple[bool, Optional[RuleViolation]]:
        """
        Evaluate the rule against a payment and today's usage.

        Args:
            payment: Candidate payment
            amount_wei: payment.amount in the smallest unit
            policy: The user's policy
            usage: Today's tracking for the user

        Returns:
            Tuple of (passed, finding). A passing rule may still return a
            non-blocking finding, which becomes a warning.
        """

    def create_violation(self, message: str, details: Optional[dict] = None) -> RuleViolation:
        return RuleViolation(rule_name=self.name, message=message, details=details)

    def create_warning(self, message: str, details: Optional[dict] = None) -> RuleViolation:
        return RuleViolation(rule_name=self.name, message=message, blocking=False, details=details)

    def native(self, wei: int) -> str:
        return f"{format_native(wei)} {self.native_symbol}"


def build_compliance_rules(native_symbol: str = "BNB") -> list:
    """The compliance rules in evaluation order."""
    from x402guard.policy.rules.actions import AllowedActionRule
    from x402guard.policy.rules.addresses import AllowlistRule, DenylistRule
    from x402guard.policy.rules.limits import (
        DailySpendLimitRule,
        DailyTransactionLimitRule,
        SingleTransactionLimitRule,
    )

    return [
        SingleTransactionLimitRule(native_symbol),
        DailySpendLimitRule(native_symbol),
        DailyTransactionLimitRule(native_symbol),
        AllowlistRule(native_symbol),
        DenylistRule(native_symbol),
        AllowedActionRule(native_symbol),
    ]
