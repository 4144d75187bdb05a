"""Tests for the ledger stores."""

import json
import sqlite3

import httpx
import pytest

from x402guard.config import Settings
from x402guard.errors import StorageError
from x402guard.ledger import (
    PAYMENTS_COLLECTION,
    HttpLedgerStore,
    SQLiteLedgerStore,
    create_ledger_store,
)

from conftest import OTHER_USER, RECIPIENT, USER


class TestSQLiteLedgerStore:
    """Local hash-chained store."""

    def setup_method(self):
        self.store = SQLiteLedgerStore()

    def teardown_method(self):
        self.store.close()

    def test_store_returns_entry_id(self):
        entry_id = self.store.store(PAYMENTS_COLLECTION, {"user_id": USER, "amount": "0.1"})

        assert entry_id.startswith("entry_")
        assert self.store.get_entry_count() == 1

    def test_query_newest_first(self):
        for amount in ("0.1", "0.2", "0.3"):
            self.store.store(PAYMENTS_COLLECTION, {"user_id": USER, "amount": amount})

        records = self.store.query(PAYMENTS_COLLECTION, {"user_id": USER})

        assert [r["amount"] for r in records] == ["0.3", "0.2", "0.1"]

    def test_query_filters_and_limit(self):
        self.store.store(PAYMENTS_COLLECTION, {"user_id": USER, "status": "success"})
        self.store.store(PAYMENTS_COLLECTION, {"user_id": USER, "status": "failed"})
        self.store.store(PAYMENTS_COLLECTION, {"user_id": OTHER_USER, "status": "success"})
        self.store.store("other", {"user_id": USER, "status": "success"})

        assert len(self.store.query(PAYMENTS_COLLECTION, {"user_id": USER})) == 2
        assert len(self.store.query(PAYMENTS_COLLECTION, {"user_id": USER, "status": "success"})) == 1
        assert len(self.store.query(PAYMENTS_COLLECTION, limit=2)) == 2

    def test_preferences_upsert(self):
        self.store.store_user_preference(USER, "payment_policy", {"a": 1})
        self.store.store_user_preference(USER, "payment_policy", {"a": 2})
        self.store.store_user_preference(USER, "theme", "dark")

        prefs = self.store.get_user_preferences(USER)

        assert prefs == {"payment_policy": {"a": 2}, "theme": "dark"}
        assert self.store.get_user_preferences(OTHER_USER) == {}

    def test_chain_is_valid(self):
        for i in range(5):
            self.store.store(PAYMENTS_COLLECTION, {"user_id": USER, "n": i})

        result = self.store.validate_chain()

        assert result.is_valid is True
        assert result.total_entries == 5

    def test_tampering_breaks_chain(self):
        for i in range(3):
            self.store.store(PAYMENTS_COLLECTION, {"user_id": USER, "amount": "0.1", "n": i})

        self.store._conn.execute(
            "UPDATE records SET record = ? WHERE seq = 2",
            (json.dumps({"user_id": USER, "amount": "99", "n": 1}),),
        )

        result = self.store.validate_chain()

        assert result.is_valid is False
        assert result.broken_at == 1

    def test_file_store_survives_reopen(self, tmp_path):
        path = str(tmp_path / "ledger.db")
        first = SQLiteLedgerStore(path)
        first.store(PAYMENTS_COLLECTION, {"user_id": USER, "n": 1})

        second = SQLiteLedgerStore(path)
        second.store(PAYMENTS_COLLECTION, {"user_id": USER, "n": 2})

        assert second.validate_chain().is_valid is True
        assert second.get_entry_count() == 2

    def test_driver_error_is_storage_error(self):
        self.store.close()
        self.store._conn = sqlite3.connect(":memory:", check_same_thread=False)

        with pytest.raises(StorageError):
            self.store.query(PAYMENTS_COLLECTION)


class TestHttpLedgerStore:
    """Remote ledger hub client."""

    def make_store(self, handler):
        return HttpLedgerStore("https://ledger.test/api", transport=httpx.MockTransport(handler))

    def test_store_posts_record(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": "rec_1"})

        entry_id = self.make_store(handler).store(PAYMENTS_COLLECTION, {"user_id": USER})

        assert entry_id == "rec_1"
        assert seen == {"method": "POST", "path": "/api/collections/payments/records", "body": {"user_id": USER}}

    def test_query_passes_filters(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["user_id"] == USER
            assert request.url.params["limit"] == "10"
            return httpx.Response(200, json={"records": [{"recipient": RECIPIENT}]})

        records = self.make_store(handler).query(PAYMENTS_COLLECTION, {"user_id": USER}, limit=10)

        assert records == [{"recipient": RECIPIENT}]

    def test_preferences(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "PUT":
                assert request.url.path == f"/api/users/{USER}/preferences/payment_policy"
                assert json.loads(request.content) == {"value": {"x": 1}}
                return httpx.Response(204)
            return httpx.Response(200, json={"preferences": {"payment_policy": {"x": 1}}})

        store = self.make_store(handler)
        store.store_user_preference(USER, "payment_policy", {"x": 1})

        assert store.get_user_preferences(USER) == {"payment_policy": {"x": 1}}

    def test_http_error_is_storage_error(self):
        store = self.make_store(lambda request: httpx.Response(500, json={"error": "boom"}))

        with pytest.raises(StorageError):
            store.get_user_preferences(USER)

    def test_transport_error_is_storage_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(StorageError):
            self.make_store(handler).store(PAYMENTS_COLLECTION, {"user_id": USER})


class TestCreateLedgerStore:
    def test_local_by_default(self):
        store = create_ledger_store(Settings(ledger_url=None, ledger_db_path=None))
        assert isinstance(store, SQLiteLedgerStore)

    def test_remote_when_url_configured(self):
        store = create_ledger_store(Settings(ledger_url="https://ledger.test/api"))
        assert isinstance(store, HttpLedgerStore)
        assert store.base_url == "https://ledger.test/api"
