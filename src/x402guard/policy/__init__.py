"""Policy module - per-user spend policies and compliance checks."""

from x402guard.policy.models import (
    ComplianceResult,
    DailyTracking,
    PaymentSummary,
    Policy,
    PolicyLimits,
    PolicySummary,
    RuleViolation,
    TodayUsage,
)
from x402guard.policy.rules import ComplianceRule, build_compliance_rules
from x402guard.policy.service import PolicyService

__all__ = [
    "PolicyService",
    "ComplianceRule",
    "build_compliance_rules",
    "ComplianceResult",
    "DailyTracking",
    "PaymentSummary",
    "Policy",
    "PolicyLimits",
    "PolicySummary",
    "RuleViolation",
    "TodayUsage",
]
