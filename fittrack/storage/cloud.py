"""HTTP remote store for fittrack.

Talks to the per-account document backend over REST:

    GET   /accounts/{account}/{collection}?since=...   list (tombstones included)
    PUT   /accounts/{account}/{collection}/{id}        upsert by id
    POST  /accounts/{account}/{collection}/{id}/delete mark deleted
    PATCH /accounts/{account}                          profile (last_synced_at)

Zero DB coupling: pure HTTP and document conversion.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from fittrack.errors import OfflineError, RemoteRejectedError
from fittrack.types import RecordKind, format_datetime

from .serializers import from_document, to_document

logger = logging.getLogger(__name__)


def validate_backend_url(url: str, *, allow_localhost_http: bool = True) -> Optional[str]:
    """Validate a backend URL for safe credential transmission.

    Rejects non-http/https schemes, URLs with no host, and remote HTTP
    endpoints (only localhost/127.0.0.1 are allowed over plaintext HTTP).

    Returns:
        The URL unchanged if valid, or ``None`` if rejected.
    """
    if not url:
        return None
    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid backend_url scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid backend_url; missing host.")
        return None
    if parsed.scheme == "http":
        if not allow_localhost_http:
            logger.warning("HTTP not allowed in this context.")
            return None
        host = parsed.hostname or ""
        if host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http backend_url for security.")
            return None
    return url


class HttpRemoteStore:
    """Remote store backed by the fittrack REST backend.

    Args:
        base_url: Backend root URL.
        auth_token: Bearer token sent with every request.
        timeout: Per-request timeout in seconds.
        client: Optional pre-built ``httpx.AsyncClient`` (tests inject one
            with a mock transport).
    """

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if validate_backend_url(base_url) is None:
            raise ValueError(f"Invalid backend URL: {base_url}")
        self.base_url = base_url.rstrip("/")
        self._headers = {"Accept": "application/json"}
        if auth_token:
            self._headers["Authorization"] = f"Bearer {auth_token}"
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpRemoteStore":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _collection_path(self, account_id: str, kind: RecordKind) -> str:
        return f"/accounts/{account_id}/{RecordKind(kind).value}"

    async def _request(
        self,
        method: str,
        path: str,
        kind: str,
        record_id: Optional[str] = None,
        ok_statuses: frozenset = frozenset(),
        **kwargs,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, headers=self._headers, **kwargs)
        except httpx.TransportError as e:
            logger.debug(f"{method} {path} failed: {e}")
            raise OfflineError(f"Could not reach {self.base_url}: {e}") from e

        if response.is_success or response.status_code in ok_statuses:
            return response

        try:
            detail = response.json().get("detail", "")
        except (ValueError, AttributeError):
            detail = response.text[:200]
        raise RemoteRejectedError(kind, record_id, status_code=response.status_code, detail=str(detail))

    async def list_since(
        self, account_id: str, kind: RecordKind, since: Optional[datetime] = None
    ) -> List[Any]:
        kind = RecordKind(kind)
        params = {"since": format_datetime(since)} if since else None
        response = await self._request(
            "GET", self._collection_path(account_id, kind), kind.value, params=params
        )
        payload = response.json()
        documents: List[Dict[str, Any]] = (
            payload.get("records", []) if isinstance(payload, dict) else payload
        )

        records = []
        for doc in documents:
            try:
                records.append(from_document(kind, doc))
            except (TypeError, ValueError, KeyError) as e:
                logger.warning(f"Skipping malformed {kind.value} document {doc.get('id')}: {e}")
        return records

    async def upsert(self, account_id: str, kind: RecordKind, record: Any) -> None:
        kind = RecordKind(kind)
        await self._request(
            "PUT",
            f"{self._collection_path(account_id, kind)}/{record.id}",
            kind.value,
            record.id,
            json=to_document(kind, record),
        )

    async def mark_deleted(
        self, account_id: str, kind: RecordKind, record_id: str, deleted_at: datetime
    ) -> None:
        kind = RecordKind(kind)
        # A document that is already gone counts as deleted
        await self._request(
            "POST",
            f"{self._collection_path(account_id, kind)}/{record_id}/delete",
            kind.value,
            record_id,
            ok_statuses=frozenset({404}),
            json={"deleted_at": format_datetime(deleted_at)},
        )

    async def touch_account(self, account_id: str, synced_at: datetime) -> None:
        await self._request(
            "PATCH",
            f"/accounts/{account_id}",
            "account",
            account_id,
            json={"last_synced_at": format_datetime(synced_at)},
        )
