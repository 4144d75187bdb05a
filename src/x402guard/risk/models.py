"""Risk assessment models."""

from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from x402guard.chain.models import GasEstimate


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    """Overall level: the highest severity bucket present."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RiskFinding(BaseModel):
    """One heuristic observation about a transaction."""

    type: str = Field(description="Finding tag, e.g. new_recipient")
    severity: Severity
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class Recommendation(BaseModel):
    type: str
    message: str
    action: str
    priority: str


class TransactionRiskRequest(BaseModel):
    """Transaction to assess. Every field is optional; missing ones skip their check."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = None
    from_address: Optional[str] = Field(default=None, alias="from")
    amount: Optional[str] = None
    recipient: Optional[str] = None
    gas_estimate: Optional[GasEstimate] = None


class RiskAssessment(BaseModel):
    """Advisory result. Only CRITICAL turns can_execute off."""

    risk_level: RiskLevel
    risks: List[RiskFinding] = Field(default_factory=list)
    recommendations: List[Recommendation] = Field(default_factory=list)
    can_execute: bool
    assessed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
