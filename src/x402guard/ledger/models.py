"""Ledger models: hash-chained entries and payment records."""

import hashlib
import json
import uuid
from datetime import datetime, UTC
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


PAYMENTS_COLLECTION = "payments"
# Late outcomes of payments first recorded as "unknown"
OUTCOMES_COLLECTION = "payment_outcomes"
POLICY_PREFERENCE_KEY = "payment_policy"

GENESIS_HASH = "genesis"


class LedgerEntry(BaseModel):
    """
    Append-only ledger entry.

    Each entry carries the hash of the entry before it, so editing or
    removing a stored record breaks the chain.
    """

    entry_id: str = Field(
        default_factory=lambda: f"entry_{uuid.uuid4().hex[:12]}",
        description="Unique entry identifier"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the record was stored"
    )
    collection: str = Field(description="Logical collection name")
    record: Dict[str, Any] = Field(description="Stored document")

    previous_hash: str = Field(default=GENESIS_HASH)
    user_id: Optional[str] = Field(default=None)

    _cached_hash: Optional[str] = None

    def compute_hash(self) -> str:
        """SHA-256 over previous_hash, timestamp, collection, record and id."""
        hash_input = json.dumps({
            "previous_hash": self.previous_hash,
            "timestamp": self.timestamp.isoformat(),
            "collection": self.collection,
            "record": self.record,
            "entry_id": self.entry_id,
        }, sort_keys=True, default=str)

        return hashlib.sha256(hash_input.encode()).hexdigest()[:32]

    @property
    def hash(self) -> str:
        if self._cached_hash is None:
            self._cached_hash = self.compute_hash()
        return self._cached_hash


class ChainValidationResult(BaseModel):
    """Result of ledger chain validation."""

    is_valid: bool = Field(description="Whether chain is valid")
    total_entries: int = Field(description="Total entries checked")
    broken_at: Optional[int] = Field(default=None, description="Index where chain broke")
    error_message: Optional[str] = Field(default=None)


class PaymentRecord(BaseModel):
    """Outcome of one executed payment attempt."""

    user_id: str
    action: str
    amount: str = Field(description="Native-unit decimal string")
    recipient: str
    tx_hash: Optional[str] = None
    status: str = Field(description="success, failed or unknown")
    gas_used: Optional[int] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    payment_details: Dict[str, Any] = Field(default_factory=dict)
    result: Dict[str, Any] = Field(default_factory=dict)
