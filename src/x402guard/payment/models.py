"""Payment lifecycle models."""

from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from x402guard.chain.models import GasEstimate
from x402guard.schema import PaymentIntent


class PaymentState(str, Enum):
    """
    Payment attempt states.

    session_initialized -> prepared -> (signed client-side) -> verified
    -> executed. rejected is reachable from prepared or verified; unknown
    means the chain action was dispatched but its outcome was not observed.
    """

    SESSION_INITIALIZED = "session_initialized"
    PREPARED = "prepared"
    VERIFIED = "verified"
    EXECUTED = "executed"
    REJECTED = "rejected"
    UNKNOWN = "unknown"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"
    EXPIRED = "expired"


class PaymentSession(BaseModel):
    """In-memory payment session (30-minute TTL by default)."""

    session_id: str
    user_id: str
    agent_action: str
    nonce: int
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    state: PaymentState = PaymentState.SESSION_INITIALIZED


class PreparedPayment(BaseModel):
    """A compliant, quoted intent ready for client-side signing."""

    payment: PaymentIntent
    gas_estimate: GasEstimate
    policy_compliant: bool = True
    requires_signature: bool = True
    warnings: List[str] = Field(default_factory=list)
    state: PaymentState = PaymentState.PREPARED


class VerificationResult(BaseModel):
    """Outcome of verify_payment. Failures are data, not exceptions."""

    success: bool
    verified: bool
    signature_valid: bool = False
    policy_compliant: bool = False
    error: Optional[str] = None
    violations: List[str] = Field(default_factory=list)
    state: PaymentState
    payment_details: Optional[PaymentIntent] = None


class ExecutionResult(BaseModel):
    """Outcome of a dispatched payment."""

    success: bool
    executed: bool
    tx_hash: Optional[str] = None
    status: str = Field(description="success, failed or unknown")
    gas_used: Optional[int] = None
    state: PaymentState
    record_id: Optional[str] = None
    payment_details: PaymentIntent
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PreviewCosts(BaseModel):
    """Amounts in native unit."""

    amount: str
    gas_cost: str
    total_cost: str
    gas_limit: int
    gas_price_gwei: str


class PreviewPolicy(BaseModel):
    compliant: bool
    violations: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class PreviewRisk(BaseModel):
    """Lightweight preview score (independent of RiskAssessmentService)."""

    level: str = Field(description="low, medium or high")
    score: int
    warnings: List[str] = Field(default_factory=list)


class PaymentPreview(BaseModel):
    payment: Dict[str, Any]
    costs: Optional[PreviewCosts] = Field(
        default=None,
        description="None when the recipient cannot be quoted",
    )
    policy: PreviewPolicy
    risk: PreviewRisk
    expires_at: datetime
