"""Risk module - advisory transaction scoring."""

from x402guard.risk.models import (
    Recommendation,
    RiskAssessment,
    RiskFinding,
    RiskLevel,
    Severity,
    TransactionRiskRequest,
)
from x402guard.risk.service import RiskAssessmentService

__all__ = [
    "RiskAssessmentService",
    "Recommendation",
    "RiskAssessment",
    "RiskFinding",
    "RiskLevel",
    "Severity",
    "TransactionRiskRequest",
]
