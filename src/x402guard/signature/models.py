"""Signed payload models."""

from typing import Any, Dict, List

from pydantic import BaseModel, Field


class PaymentPayload(BaseModel):
    """Canonical payment payload. Field order is the signed byte order."""

    user: str
    agent: str
    action: str
    amount: str
    recipient: str
    nonce: int = Field(ge=0)
    timestamp: int
    expires: int


class BatchAction(BaseModel):
    """One action inside a multi-action signature."""

    type: str
    target: str
    value: str = "0"
    data: str = "0x"


class MultiActionPayload(BaseModel):
    agent: str
    actions: List[BatchAction]
    nonce: int = Field(ge=0)
    timestamp: int
    expires: int


class ContractCallPayload(BaseModel):
    agent: str
    contract: str
    method: str
    params: List[Any] = Field(default_factory=list)
    nonce: int = Field(ge=0)
    timestamp: int
    expires: int


class SignedPayload(BaseModel):
    """A signature together with the payload it covers."""

    signature: str = Field(description="0x-prefixed 65-byte signature")
    payload: Dict[str, Any]
    message_hash: str = Field(description="keccak256 of the packed payload")


class DecodedSignature(BaseModel):
    r: str
    s: str
    v: int


class TypedDataSignature(BaseModel):
    """EIP-712 signature plus the typed data that was signed."""

    signature: str
    typed_data: Dict[str, Any]
