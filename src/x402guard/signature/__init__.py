"""Signature module - signing and verifying payment intents."""

from x402guard.signature.models import (
    BatchAction,
    ContractCallPayload,
    DecodedSignature,
    MultiActionPayload,
    PaymentPayload,
    SignedPayload,
    TypedDataSignature,
)
from x402guard.signature.service import SignatureService

__all__ = [
    "SignatureService",
    "BatchAction",
    "ContractCallPayload",
    "DecodedSignature",
    "MultiActionPayload",
    "PaymentPayload",
    "SignedPayload",
    "TypedDataSignature",
]
