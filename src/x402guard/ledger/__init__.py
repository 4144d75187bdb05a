"""Ledger module - payment history and policy preferences."""

from x402guard.ledger.http_store import HttpLedgerStore
from x402guard.ledger.models import (
    OUTCOMES_COLLECTION,
    PAYMENTS_COLLECTION,
    POLICY_PREFERENCE_KEY,
    ChainValidationResult,
    LedgerEntry,
    PaymentRecord,
)
from x402guard.ledger.store import LedgerStore, SQLiteLedgerStore, create_ledger_store

__all__ = [
    "HttpLedgerStore",
    "LedgerStore",
    "SQLiteLedgerStore",
    "create_ledger_store",
    "ChainValidationResult",
    "LedgerEntry",
    "PaymentRecord",
    "OUTCOMES_COLLECTION",
    "PAYMENTS_COLLECTION",
    "POLICY_PREFERENCE_KEY",
]
