"""Ledger Store - durable records and user preferences."""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

from x402guard.config import Settings, settings as default_settings
from x402guard.errors import StorageError
from x402guard.ledger.models import GENESIS_HASH, ChainValidationResult, LedgerEntry


logger = logging.getLogger(__name__)


class LedgerStore(ABC):
    """Storage contract consumed by the policy and payment services."""

    @abstractmethod
    def store(self, collection: str, record: Dict[str, Any]) -> str:
        """Append a record to a collection, returning its entry id."""

    @abstractmethod
    def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Records whose fields equal every filter value, newest first."""

    @abstractmethod
    def get_user_preferences(self, user_id: str) -> Dict[str, Any]:
        """All preferences stored for a user (empty dict if none)."""

    @abstractmethod
    def store_user_preference(self, user_id: str, key: str, value: Any) -> None:
        """Create or overwrite one preference."""


class SQLiteLedgerStore(LedgerStore):
    """
    Local ledger on SQLite.

    Features:
    - Append-only records, each linked to the previous one by hash
    - validate_chain() detects edited or reordered records
    - Mutable per-user preference table (policies live here)
    - One lock around every statement so request threads can share it
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database. If None, uses in-memory DB.
        """
        self.db_path = db_path or ":memory:"
        self._lock = threading.Lock()

        # Keep persistent connection for in-memory DBs
        self._conn: Optional[sqlite3.Connection] = None
        if self.db_path == ":memory:":
            self._conn = sqlite3.connect(":memory:", check_same_thread=False)

        self._init_db()
        self._last_hash: str = self._get_last_hash()

        logger.info(f"Ledger store initialized: {self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn:
            return self._conn
        return sqlite3.connect(self.db_path)

    def _close_connection(self, conn: sqlite3.Connection) -> None:
        if conn is not self._conn:
            conn.close()

    def _execute(self, sql: str, params: tuple = (), fetch: Optional[str] = None) -> Any:
        """Run one statement under the lock, mapping driver errors to StorageError."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(sql, params)
            if fetch == "one":
                return cursor.fetchone()
            if fetch == "all":
                return cursor.fetchall()
            conn.commit()
            return None
        except sqlite3.Error as e:
            logger.error(f"Ledger store error: {e}")
            raise StorageError(f"Ledger store error: {e}")
        finally:
            self._close_connection(conn)

    def store(self, collection: str, record: Dict[str, Any]) -> str:
        with self._lock:
            entry = LedgerEntry(
                collection=collection,
                record=json.loads(json.dumps(record, default=str)),
                previous_hash=self._last_hash,
                user_id=record.get("user_id"),
            )
            self._execute(
                """INSERT INTO records
                   (entry_id, timestamp, collection, record, previous_hash, hash, user_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    entry.entry_id,
                    entry.timestamp.isoformat(),
                    entry.collection,
                    json.dumps(entry.record),
                    entry.previous_hash,
                    entry.hash,
                    entry.user_id,
                ),
            )
            self._last_hash = entry.hash

        logger.debug(f"Ledger append: {collection} [{entry.entry_id}]")
        return entry.entry_id

    def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        filters = dict(filters or {})

        sql = "SELECT record FROM records WHERE collection = ?"
        params: List[Any] = [collection]
        if "user_id" in filters:
            sql += " AND user_id = ?"
            params.append(filters.pop("user_id"))
        sql += " ORDER BY seq DESC"

        with self._lock:
            rows = self._execute(sql, tuple(params), fetch="all")

        results = []
        for (raw,) in rows:
            record = json.loads(raw)
            if all(record.get(k) == v for k, v in filters.items()):
                results.append(record)
                if len(results) >= limit:
                    break
        return results

    def get_user_preferences(self, user_id: str) -> Dict[str, Any]:
        with self._lock:
            rows = self._execute(
                "SELECT key, value FROM preferences WHERE user_id = ?",
                (user_id,),
                fetch="all",
            )
        return {key: json.loads(value) for key, value in rows}

    def store_user_preference(self, user_id: str, key: str, value: Any) -> None:
        with self._lock:
            self._execute(
                """INSERT INTO preferences (user_id, key, value, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(user_id, key)
                   DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
                (user_id, key, json.dumps(value, default=str), datetime.now(UTC).isoformat()),
            )
        logger.debug(f"Preference stored: {user_id}/{key}")

    def validate_chain(self) -> ChainValidationResult:
        """
        Validate the entire hash chain.

        Recomputes each entry's hash and checks that it links to the
        entry before it.
        """
        with self._lock:
            rows = self._execute(
                """SELECT entry_id, timestamp, collection, record, previous_hash, hash, user_id
                   FROM records ORDER BY seq ASC""",
                fetch="all",
            )

        expected_prev = GENESIS_HASH
        for i, row in enumerate(rows):
            entry = self._row_to_entry(row)

            if entry.previous_hash != expected_prev:
                return ChainValidationResult(
                    is_valid=False,
                    total_entries=len(rows),
                    broken_at=i,
                    error_message=f"Chain broken at entry {i}: expected {expected_prev}, got {entry.previous_hash}",
                )
            if entry.compute_hash() != row[5]:
                return ChainValidationResult(
                    is_valid=False,
                    total_entries=len(rows),
                    broken_at=i,
                    error_message=f"Entry {i} content does not match its hash",
                )
            expected_prev = row[5]

        logger.info(f"Chain validation passed: {len(rows)} entries")
        return ChainValidationResult(is_valid=True, total_entries=len(rows))

    def get_entry_count(self) -> int:
        with self._lock:
            row = self._execute("SELECT COUNT(*) FROM records", fetch="one")
        return row[0]

    def _init_db(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    entry_id TEXT UNIQUE NOT NULL,
                    timestamp TEXT NOT NULL,
                    collection TEXT NOT NULL,
                    record TEXT NOT NULL,
                    previous_hash TEXT NOT NULL,
                    hash TEXT NOT NULL,
                    user_id TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS preferences (
                    user_id TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, key)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_collection_user ON records(collection, user_id)"
            )
            conn.commit()
        finally:
            self._close_connection(conn)

    def _get_last_hash(self) -> str:
        row = self._execute("SELECT hash FROM records ORDER BY seq DESC LIMIT 1", fetch="one")
        return row[0] if row else GENESIS_HASH

    def _row_to_entry(self, row: tuple) -> LedgerEntry:
        return LedgerEntry(
            entry_id=row[0],
            timestamp=datetime.fromisoformat(row[1]),
            collection=row[2],
            record=json.loads(row[3]),
            previous_hash=row[4],
            user_id=row[6],
        )

    def close(self) -> None:
        """Close persistent connection."""
        if self._conn:
            self._conn.close()
            self._conn = None


def create_ledger_store(settings: Optional[Settings] = None) -> LedgerStore:
    """Remote store when a hub URL is configured, local SQLite otherwise."""
    settings = settings or default_settings

    if settings.ledger_url:
        from x402guard.ledger.http_store import HttpLedgerStore
        return HttpLedgerStore(settings.ledger_url, timeout=settings.ledger_timeout)

    return SQLiteLedgerStore(settings.ledger_db_path)
