"""Payment module - session, prepare, verify, execute and preview."""

from x402guard.payment.models import (
    ExecutionResult,
    PaymentPreview,
    PaymentSession,
    PaymentState,
    PreparedPayment,
    PreviewCosts,
    PreviewPolicy,
    PreviewRisk,
    SessionStatus,
    VerificationResult,
)
from x402guard.payment.service import PaymentService

__all__ = [
    "PaymentService",
    "ExecutionResult",
    "PaymentPreview",
    "PaymentSession",
    "PaymentState",
    "PreparedPayment",
    "PreviewCosts",
    "PreviewPolicy",
    "PreviewRisk",
    "SessionStatus",
    "VerificationResult",
]
