"""Schema module for x402 payment intents."""

from x402guard.schema.intent_schema import (
    ActionType,
    PaymentIntent,
    PaymentRequest,
)
from x402guard.schema.validator import SchemaValidator

__all__ = [
    "ActionType",
    "PaymentIntent",
    "PaymentRequest",
    "SchemaValidator",
]
