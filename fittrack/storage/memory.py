"""In-process remote store.

Keeps per-account collections of serialized documents, so two local
stores syncing against the same instance behave like two devices sharing
one cloud account. Used by tests, demos and the multi-device simulation.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from fittrack.errors import OfflineError, RemoteRejectedError
from fittrack.types import RecordKind, format_datetime, utc_now

from .serializers import from_document, to_document

logger = logging.getLogger(__name__)


class InMemoryRemoteStore:
    """Remote store kept in memory.

    Failure injection for tests:
    - ``offline = True`` makes every call raise ``OfflineError``.
    - ``reject(kind, record_id)`` makes writes to that record raise
      ``RemoteRejectedError``.
    """

    def __init__(self):
        # account -> kind -> id -> document
        self._collections: Dict[str, Dict[RecordKind, Dict[str, Dict[str, Any]]]] = {}
        # account -> kind -> id -> server write time
        self._changed_at: Dict[str, Dict[RecordKind, Dict[str, datetime]]] = {}
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.offline = False
        self._rejected: Set[Tuple[RecordKind, str]] = set()
        self.calls: List[Tuple[str, str, Optional[str]]] = []

    def reject(self, kind: RecordKind, record_id: str) -> None:
        self._rejected.add((RecordKind(kind), record_id))

    def accept(self, kind: RecordKind, record_id: str) -> None:
        self._rejected.discard((RecordKind(kind), record_id))

    def _check(self, op: str, kind: RecordKind, record_id: Optional[str] = None) -> None:
        self.calls.append((op, RecordKind(kind).value if kind else "account", record_id))
        if self.offline:
            raise OfflineError("In-memory remote store is offline")
        if record_id is not None and kind and (RecordKind(kind), record_id) in self._rejected:
            raise RemoteRejectedError(RecordKind(kind).value, record_id, detail="rejected")

    def _bucket(self, account_id: str, kind: RecordKind) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(account_id, {}).setdefault(RecordKind(kind), {})

    def _touch(self, account_id: str, kind: RecordKind, record_id: str) -> None:
        self._changed_at.setdefault(account_id, {}).setdefault(RecordKind(kind), {})[
            record_id
        ] = utc_now()

    # === RemoteStore ===

    async def list_since(
        self, account_id: str, kind: RecordKind, since: Optional[datetime] = None
    ) -> List[Any]:
        kind = RecordKind(kind)
        self._check("list", kind)
        changed = self._changed_at.get(account_id, {}).get(kind, {})
        return [
            from_document(kind, doc)
            for record_id, doc in self._bucket(account_id, kind).items()
            if since is None or changed.get(record_id, since) > since
        ]

    async def upsert(self, account_id: str, kind: RecordKind, record: Any) -> None:
        kind = RecordKind(kind)
        self._check("upsert", kind, record.id)
        self._bucket(account_id, kind)[record.id] = to_document(kind, record)
        self._touch(account_id, kind, record.id)

    async def mark_deleted(
        self, account_id: str, kind: RecordKind, record_id: str, deleted_at: datetime
    ) -> None:
        kind = RecordKind(kind)
        self._check("mark_deleted", kind, record_id)
        bucket = self._bucket(account_id, kind)
        doc = bucket.get(record_id)
        if doc is None:
            # Never uploaded: leave a bare tombstone so other devices see the delete
            logger.debug(f"mark_deleted for unknown {kind.value}:{record_id}, writing tombstone")
            doc = bucket[record_id] = {"id": record_id, "owner_id": account_id}
        doc["deleted"] = True
        doc["deleted_at"] = format_datetime(deleted_at)
        self._touch(account_id, kind, record_id)

    async def touch_account(self, account_id: str, synced_at: datetime) -> None:
        self._check("touch_account", None)
        self.accounts.setdefault(account_id, {})["last_synced_at"] = synced_at

    # === Inspection helpers ===

    def document(self, account_id: str, kind: RecordKind, record_id: str) -> Optional[Dict]:
        """Raw stored document, or None."""
        doc = self._bucket(account_id, kind).get(record_id)
        return dict(doc) if doc is not None else None

    def put_document(self, account_id: str, kind: RecordKind, doc: Dict[str, Any]) -> None:
        """Seed a document directly, as if another device had written it."""
        self._bucket(account_id, kind)[doc["id"]] = dict(doc)
        self._touch(account_id, kind, doc["id"])
