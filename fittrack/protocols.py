"""
fittrack Protocol Definitions
=============================

The interface contracts between the sync engine and its collaborators.

Components and their roles:
- LocalStore:           The on-device datastore. Synchronous CRUD + soft delete.
- RemoteStore:          The per-account cloud document store. Async I/O.
- IdentityProvider:     Who is signed in, if anyone.
- ConnectivityProvider: Whether the network is up, and change notifications.

Design principles:
- The sync engine receives every collaborator through its constructor
- Local writes replace a record wholesale inside one transaction
- Remote writes are idempotent by record id and safe to retry in any order
- Network calls are the only suspension points
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from fittrack.types import PersonalRecord, RecordKind

# =============================================================================
# LOCAL STORE
# =============================================================================


@runtime_checkable
class LocalStore(Protocol):
    """Abstract CRUD + soft delete over the five record collections."""

    def list_active(self, kind: RecordKind) -> list[Any]:
        """All records of ``kind`` that are not tombstoned."""
        ...

    def list_unsynced(self, kind: RecordKind) -> list[Any]:
        """Active records of ``kind`` with ``synced_at`` unset."""
        ...

    def list_tombstones(self, kind: RecordKind) -> list[Any]:
        """Soft-deleted records of ``kind`` still awaiting remote acknowledgement."""
        ...

    def get(self, kind: RecordKind, record_id: str) -> Optional[Any]:
        """Get a record by id, including tombstones."""
        ...

    def upsert(self, kind: RecordKind, record: Any) -> str:
        """Insert or wholesale-replace a record exactly as given."""
        ...

    def save(self, kind: RecordKind, record: Any) -> str:
        """Local mutation path: clears ``synced_at`` before upserting."""
        ...

    def soft_delete(self, kind: RecordKind, record_id: str) -> bool:
        """Tombstone a record (or queue a pending deletion for measurements)."""
        ...

    def hard_purge(self, kind: RecordKind, record_id: str) -> bool:
        """Remove a record and everything it owns."""
        ...

    def revive(self, kind: RecordKind, record_id: str) -> bool:
        """Clear a record's tombstone markers."""
        ...

    def mark_synced(self, kind: RecordKind, record_id: str, synced_at: datetime) -> bool:
        """Record that the remote store acknowledged this record."""
        ...

    def get_personal_record(self, exercise_id: str) -> Optional[PersonalRecord]:
        ...

    def list_pending_deletions(self, kind: RecordKind) -> list[tuple[str, datetime]]:
        """(id, deleted_at) pairs for kinds tracked by a pending-deletion list."""
        ...

    def clear_pending_deletion(self, kind: RecordKind, record_id: str) -> bool:
        ...

    def remove_from_sync(self, kind: RecordKind, record_id: str) -> bool:
        """Remove a pending-deletion-tracked record without queueing its deletion."""
        ...

    def pending_upload_count(self) -> int:
        ...

    def get_meta(self, key: str) -> Optional[str]:
        ...

    def set_meta(self, key: str, value: str) -> None:
        ...


# =============================================================================
# REMOTE STORE
# =============================================================================


@runtime_checkable
class RemoteStore(Protocol):
    """Abstract per-account document store.

    Implementations raise ``OfflineError`` on transport failures and
    ``RemoteRejectedError`` when a specific operation is refused.
    """

    async def list_since(
        self, account_id: str, kind: RecordKind, since: Optional[datetime] = None
    ) -> list[Any]:
        """List records (including remote tombstones) changed since ``since``."""
        ...

    async def upsert(self, account_id: str, kind: RecordKind, record: Any) -> None:
        ...

    async def mark_deleted(
        self, account_id: str, kind: RecordKind, record_id: str, deleted_at: datetime
    ) -> None:
        ...

    async def touch_account(self, account_id: str, synced_at: datetime) -> None:
        """Advance the account's remote last-synced-at marker."""
        ...


# =============================================================================
# IDENTITY AND CONNECTIVITY
# =============================================================================


@runtime_checkable
class IdentityProvider(Protocol):
    def current_account_id(self) -> Optional[str]:
        ...


@runtime_checkable
class ConnectivityProvider(Protocol):
    def is_connected(self) -> bool:
        ...

    def on_connectivity_change(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Register ``callback(is_connected)``. Returns an unsubscribe function."""
        ...
