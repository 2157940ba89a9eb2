"""Sync status: state machine, snapshot and observer board."""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    DOWNLOADING = "downloading"
    ERROR = "error"


# Legal state transitions of a full sync
_TRANSITIONS = {
    SyncState.IDLE: {SyncState.UPLOADING},
    SyncState.UPLOADING: {SyncState.DOWNLOADING, SyncState.ERROR},
    SyncState.DOWNLOADING: {SyncState.IDLE, SyncState.ERROR},
    SyncState.ERROR: {SyncState.IDLE},
}


@dataclass(frozen=True)
class SyncStatus:
    """Immutable snapshot handed to status listeners."""

    is_online: bool = False
    is_syncing: bool = False
    last_synced_at: Optional[datetime] = None
    pending_uploads: int = 0
    error: Optional[str] = None
    state: SyncState = SyncState.IDLE


StatusListener = Callable[[SyncStatus], None]


class SyncStatusBoard:
    """Owns the current ``SyncStatus`` and notifies subscribers on change.

    Listeners are called synchronously; one that raises is logged and the
    others still run.
    """

    def __init__(self, status: Optional[SyncStatus] = None):
        self._status = status or SyncStatus()
        self._listeners: List[StatusListener] = []

    @property
    def status(self) -> SyncStatus:
        return self._status

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def update(self, **changes) -> SyncStatus:
        """Apply field changes and notify listeners if anything changed."""
        new_status = replace(self._status, **changes)
        if new_status == self._status:
            return new_status
        self._status = new_status
        self._notify()
        return new_status

    def transition(self, state: SyncState, **changes) -> SyncStatus:
        """Move the state machine, keeping ``is_syncing`` consistent with it."""
        current = self._status.state
        if state != current and state not in _TRANSITIONS[current]:
            raise ValueError(f"Illegal sync state transition {current.value} -> {state.value}")
        syncing = state in (SyncState.UPLOADING, SyncState.DOWNLOADING)
        return self.update(state=state, is_syncing=syncing, **changes)

    def increment_pending(self, by: int = 1) -> SyncStatus:
        return self.update(pending_uploads=self._status.pending_uploads + by)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._status)
            except Exception as e:
                logger.error(f"Sync status listener failed: {e}", exc_info=True)
