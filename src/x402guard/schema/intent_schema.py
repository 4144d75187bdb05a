"""
Payment Intent Schema Definition

Every payment that reaches the policy engine is expressed as one of these
models. Amounts stay decimal strings in the native unit at this layer; they
are converted to the smallest on-chain unit only for arithmetic.
"""

import time
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# Native-unit amounts carry at most this many fractional digits (wei)
MAX_DECIMALS = 18

DEFAULT_INTENT_TTL_SECONDS = 3600


class ActionType(str, Enum):
    """Chain actions a payment can pay for."""

    TRANSFER = "transfer"
    SWAP = "swap"
    CALL = "call"


def _now() -> int:
    return int(time.time())


class PaymentRequest(BaseModel):
    """What is being paid, to whom, and for which action."""

    action: str = Field(
        default=ActionType.TRANSFER.value,
        description="Action kind tag (transfer, swap, call, ...)",
    )

    amount: str = Field(
        description="Amount as a decimal string in the chain's native unit",
    )

    # Format is checked by the chain gateway, not here: previews must be
    # able to score a malformed recipient.
    recipient: str = Field(
        description="Recipient address",
    )

    token: Optional[str] = Field(
        default=None,
        description="Token contract address (None = native asset)",
    )

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, v: Any) -> str:
        """Amount must be a positive decimal with at most 18 fractional digits."""
        if isinstance(v, float):
            raise ValueError("Amount must be a decimal string, not a float")

        text = str(v).strip()
        try:
            value = Decimal(text)
        except InvalidOperation:
            raise ValueError(f"Malformed amount: {v!r}")

        if not value.is_finite():
            raise ValueError(f"Malformed amount: {v!r}")
        if value <= 0:
            raise ValueError("Payment amount must be positive")
        if -value.as_tuple().exponent > MAX_DECIMALS:
            raise ValueError(f"Amount has more than {MAX_DECIMALS} decimal places")

        return text

    @field_validator("action")
    @classmethod
    def normalize_action(cls, v: str) -> str:
        """Action tags are compared lower-case."""
        if not v or not v.strip():
            raise ValueError("Action cannot be empty")
        return v.strip().lower()


class PaymentIntent(PaymentRequest):
    """
    A single attempted payment, bound to a nonce and an expiry.

    Created by `PaymentService.prepare_payment`, signed client-side and
    passed back for verification and execution. Never persisted as a
    pending intent.
    """

    user: str = Field(description="Paying user (wallet address)")

    agent: Optional[str] = Field(
        default=None,
        description="Delegated signer/executor address",
    )

    nonce: int = Field(
        ge=0,
        description="Per-user monotonically increasing nonce",
    )

    timestamp: int = Field(
        default_factory=_now,
        description="Creation time (unix seconds)",
    )

    expires: Optional[int] = Field(
        default=None,
        description="Expiry (unix seconds), default timestamp + 3600",
    )

    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Action-specific chain parameters (not signed)",
    )

    @model_validator(mode="after")
    def check_expiry_window(self) -> "PaymentIntent":
        if self.expires is None:
            self.expires = self.timestamp + DEFAULT_INTENT_TTL_SECONDS
        if self.expires <= self.timestamp:
            raise ValueError("expires must be later than timestamp")
        return self

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user": "0x5B38Da6a701c568545dCfcB03FcB875f56beddC4",
                    "agent": "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
                    "action": "transfer",
                    "amount": "0.05",
                    "recipient": "0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
                    "nonce": 481516,
                    "timestamp": 1760000000,
                    "expires": 1760003600,
                }
            ]
        }
    }
