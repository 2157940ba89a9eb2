"""
fittrack error taxonomy.

Propagation rules:
- Per-record failures (RemoteRejectedError, NameConflictError) are recovered
  where they happen: the record is logged and left for the next cycle.
- Phase-level failures (OfflineError, or anything that stops a whole phase)
  abort only the remaining phase and are reported as PartialSyncFailure.
- NotAuthenticatedError turns a sync into a no-op, not an error state.
"""

from typing import Optional


class SyncError(Exception):
    """Base for all fittrack sync errors."""

    pass


class NotAuthenticatedError(SyncError):
    """Raised when there is no current account to sync against."""

    def __init__(self, message: str = "No account is signed in"):
        super().__init__(message)


class OfflineError(SyncError):
    """Raised when the remote store cannot be reached.

    Covers both a failed connectivity check before a phase starts and a
    transport failure while a phase is running.
    """

    def __init__(self, message: str = "Remote store is unreachable"):
        super().__init__(message)


class RemoteRejectedError(SyncError):
    """Raised when the remote store refuses a single record operation."""

    def __init__(
        self,
        kind: str,
        record_id: Optional[str],
        status_code: Optional[int] = None,
        detail: str = "",
    ):
        self.kind = kind
        self.record_id = record_id
        self.status_code = status_code
        self.detail = detail
        message = f"Remote rejected {kind}:{record_id}"
        if status_code is not None:
            message += f" (HTTP {status_code})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class NameConflictError(SyncError):
    """Raised by the local store when an active exercise name is already taken."""

    def __init__(self, name: str, existing_id: Optional[str] = None):
        self.name = name
        self.existing_id = existing_id
        super().__init__(f'An exercise with the name "{name.strip()}" already exists')


class PartialSyncFailure(SyncError):
    """A full sync stopped part-way. Counts from completed work are preserved."""

    def __init__(
        self,
        phase: str,
        cause: str,
        uploaded: int = 0,
        downloaded: int = 0,
        conflicts: int = 0,
    ):
        self.phase = phase
        self.cause = cause
        self.uploaded = uploaded
        self.downloaded = downloaded
        self.conflicts = conflicts
        super().__init__(f"Sync failed during {phase}: {cause}")
