"""Spend and count limits.

All comparisons are on integers in the smallest unit.
"""

from typing import Optional, Tuple

from x402guard.policy.models import DailyTracking, Policy, RuleViolation
from x402guard.policy.rules import ComplianceRule
from x402guard.schema import PaymentRequest


# Daily usage at or above this share of the cap produces a warning
DAILY_WARNING_PERCENT = 80


class SingleTransactionLimitRule(ComplianceRule):
    """A single payment may not exceed max_single_tx."""

    def __init__(self, native_symbol: str = "BNB"):
        super().__init__(
            name="single_tx_limit",
            description="Amount must not exceed the single transaction limit",
            native_symbol=native_symbol,
        )

    def evaluate(
        self,
        payment: PaymentRequest,
        amount_wei: int,
        policy: Policy,
        usage: DailyTracking,
    ) -> Tuple[bool, Optional[RuleViolation]]:
        if policy.max_single_tx is None:
            return True, None

        if amount_wei > policy.max_single_tx:
            return False, self.create_violation(
                f"Amount exceeds single transaction limit of {self.native(policy.max_single_tx)}",
                details={"amount_wei": str(amount_wei), "limit_wei": str(policy.max_single_tx)},
            )

        return True, None


class DailySpendLimitRule(ComplianceRule):
    """Spent today plus this payment may not exceed max_daily_spend."""

    def __init__(self, native_symbol: str = "BNB"):
        super().__init__(
            name="daily_spend_limit",
            description="Daily spend must not exceed the daily spending limit",
            native_symbol=native_symbol,
        )

    def evaluate(
        self,
        payment: PaymentRequest,
        amount_wei: int,
        policy: Policy,
        usage: DailyTracking,
    ) -> Tuple[bool, Optional[RuleViolation]]:
        cap = policy.max_daily_spend
        if cap is None:
            return True, None

        total = usage.spent_wei + amount_wei
        details = {"spent_wei": str(usage.spent_wei), "total_wei": str(total), "limit_wei": str(cap)}

        if total > cap:
            return False, self.create_violation(
                f"Would exceed daily spending limit of {self.native(cap)}",
                details=details,
            )

        # Inclusive: exactly 80% already warns
        if cap > 0 and total * 100 >= cap * DAILY_WARNING_PERCENT:
            percent = total * 100 // cap
            return True, self.create_warning(
                f"Approaching daily spending limit ({percent}% used)",
                details=details,
            )

        return True, None


class DailyTransactionLimitRule(ComplianceRule):
    """Fails once the day's payment count has reached daily_tx_limit."""

    def __init__(self, native_symbol: str = "BNB"):
        super().__init__(
            name="daily_tx_limit",
            description="Daily payment count must stay below the limit",
            native_symbol=native_symbol,
        )

    def evaluate(
        self,
        payment: PaymentRequest,
        amount_wei: int,
        policy: Policy,
        usage: DailyTracking,
    ) -> Tuple[bool, Optional[RuleViolation]]:
        if policy.daily_tx_limit is None:
            return True, None

        if usage.tx_count >= policy.daily_tx_limit:
            return False, self.create_violation(
                f"Daily transaction limit of {policy.daily_tx_limit} reached",
                details={"tx_count": usage.tx_count, "limit": policy.daily_tx_limit},
            )

        return True, None
