"""Policy and daily-usage models."""

from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator


class Policy(BaseModel):
    """
    Per-user spend policy.

    Limits are integers in the smallest on-chain unit and serialize as
    strings. A limit of None disables that check.
    """

    max_daily_spend: Optional[int] = Field(default=None, ge=0, description="Daily cap (wei)")
    max_single_tx: Optional[int] = Field(default=None, ge=0, description="Per-payment cap (wei)")
    daily_tx_limit: Optional[int] = Field(default=None, ge=0, description="Payments per day")

    allowed_addresses: List[str] = Field(
        default_factory=list,
        description="Recipient allowlist (empty = unrestricted)",
    )
    denied_addresses: List[str] = Field(
        default_factory=list,
        description="Recipient denylist (wins over the allowlist)",
    )
    allowed_actions: List[str] = Field(
        default_factory=list,
        description="Permitted action tags (empty = unrestricted)",
    )

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("max_daily_spend", "max_single_tx", mode="before")
    @classmethod
    def parse_wei(cls, v: Any) -> Any:
        if isinstance(v, float):
            raise ValueError("Limits are integer smallest-unit amounts, not floats")
        if isinstance(v, str):
            if not v.strip().isdigit():
                raise ValueError(f"Malformed limit: {v!r}")
            return int(v)
        return v

    @field_validator("allowed_addresses", "denied_addresses")
    @classmethod
    def lower_addresses(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(a.lower() for a in v))

    @field_validator("allowed_actions")
    @classmethod
    def lower_actions(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(a.strip().lower() for a in v))

    @field_serializer("max_daily_spend", "max_single_tx")
    def serialize_wei(self, v: Optional[int]) -> Optional[str]:
        return None if v is None else str(v)


class PaymentSummary(BaseModel):
    """One recorded payment inside a day's tracking."""

    amount: str
    recipient: str
    action: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class DailyTracking(BaseModel):
    """Running totals for one user on one calendar day."""

    spent_wei: int = 0
    tx_count: int = 0
    payments: List[PaymentSummary] = Field(default_factory=list)

    @field_serializer("spent_wei")
    def serialize_spent(self, v: int) -> str:
        return str(v)


class RuleViolation(BaseModel):
    """Finding from one compliance rule. Non-blocking findings are warnings."""

    rule_name: str = Field(description="Name of the rule")
    message: str = Field(description="Human-readable message")
    blocking: bool = Field(default=True)
    details: Optional[Dict[str, Any]] = Field(default=None)


class ComplianceResult(BaseModel):
    """Decision of the compliance gate."""

    compliant: bool
    violations: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    policy: Optional[Policy] = None


class PolicyLimits(BaseModel):
    max_daily_spend: Optional[str] = None
    max_single_tx: Optional[str] = None
    daily_tx_limit: Optional[int] = None


class TodayUsage(BaseModel):
    spent: str
    tx_count: int
    remaining: Optional[str] = None
    remaining_txs: Optional[int] = None


class PolicySummary(BaseModel):
    """Limits plus today's usage for one user, amounts in native unit."""

    user_id: str
    native_symbol: str
    limits: PolicyLimits
    today: TodayUsage
    allowed_address_count: int
    denied_address_count: int
    allowed_actions: List[str]
