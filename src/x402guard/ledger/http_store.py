"""
HTTP Ledger Store

Client for a remote ledger hub. Every transport or HTTP error surfaces as
StorageError; the policy service decides whether a read may degrade.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from x402guard.errors import StorageError
from x402guard.ledger.store import LedgerStore


logger = logging.getLogger(__name__)


class HttpLedgerStore(LedgerStore):
    """Ledger store backed by a remote hub's REST API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Hub URL, e.g. https://ledger.example.org/api
            timeout: Per-request timeout in seconds
            transport: Custom transport (tests pass httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Ledger hub {method} {path} failed: {e}")
            raise StorageError(f"Ledger hub error: {e}")

        if not response.content:
            return None
        return response.json()

    def store(self, collection: str, record: Dict[str, Any]) -> str:
        data = self._request("POST", f"/collections/{collection}/records", json=record)
        entry_id = (data or {}).get("id", "")
        logger.info(f"Stored record in {collection} [{entry_id}]")
        return entry_id

    def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        params = {**(filters or {}), "limit": limit}
        data = self._request("GET", f"/collections/{collection}/records", params=params)
        return list((data or {}).get("records", []))

    def get_user_preferences(self, user_id: str) -> Dict[str, Any]:
        data = self._request("GET", f"/users/{user_id}/preferences")
        return dict((data or {}).get("preferences", {}))

    def store_user_preference(self, user_id: str, key: str, value: Any) -> None:
        self._request("PUT", f"/users/{user_id}/preferences/{key}", json={"value": value})

    def close(self) -> None:
        self._client.close()
