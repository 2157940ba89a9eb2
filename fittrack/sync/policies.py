"""
Conflict resolution policies.

Each policy is a pure decision: given the local copy of a record (or None),
the remote copy, and a MergeContext snapshot of local state, it returns a
MergeDecision saying what the download merger should write. Policies never
touch a store.

Rules shared by every policy:
- A remote tombstone purges an active local copy (the remote is already the
  final state, no local tombstone needed).
- A remote record whose id is tombstoned locally is skipped: local delete wins.
  Custom exercises are the exception, see ExerciseRevivalPolicy.
- Records written from the remote are stamped ``synced_at=ctx.now``; records
  renamed during the merge are written dirty so the new name gets uploaded.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set

from fittrack.types import RecordKind, recency

logger = logging.getLogger(__name__)

REVIVED_SUFFIX = "Revived"
IMPORTED_SUFFIX = "Imported"


class MergeAction(str, Enum):
    INSERT = "insert"  # absent locally, write remote
    OVERWRITE = "overwrite"  # present locally, write remote over it
    KEEP_LOCAL = "keep_local"  # present locally, local wins
    SKIP = "skip"  # nothing to do
    REVIVE = "revive"  # local tombstone brought back from the remote
    PURGE = "purge"  # remote deleted it, hard-remove locally


@dataclass
class MergeDecision:
    action: MergeAction
    record: Optional[Any] = None
    reason: str = ""

    @property
    def is_addition(self) -> bool:
        return self.action == MergeAction.INSERT

    @property
    def is_conflict(self) -> bool:
        return self.action in (MergeAction.OVERWRITE, MergeAction.REVIVE)


def normalize_name(name: str) -> str:
    return (name or "").strip().lower()


@dataclass
class MergeContext:
    """Local state snapshot a policy may consult for one collection."""

    kind: RecordKind
    now: datetime
    tombstoned_ids: Set[str] = field(default_factory=set)
    # id -> normalized name of every active local custom exercise
    active_exercise_names: Dict[str, str] = field(default_factory=dict)
    pending_deletion_ids: Set[str] = field(default_factory=set)
    # exercise ids whose local PR is a tombstone awaiting upload
    tombstoned_exercise_ids: Set[str] = field(default_factory=set)

    def is_tombstoned(self, record_id: str) -> bool:
        return record_id in self.tombstoned_ids

    def name_in_use(self, name: str, exclude_id: Optional[str] = None) -> bool:
        wanted = normalize_name(name)
        return any(
            existing == wanted
            for record_id, existing in self.active_exercise_names.items()
            if record_id != exclude_id
        )

    def unique_name(self, name: str, label: str, exclude_id: Optional[str] = None) -> str:
        """``"Squat"`` -> ``"Squat (Revived)"``, then ``"Squat (Revived 2)"``..."""
        base = name.strip()
        candidate = f"{base} ({label})"
        n = 2
        while self.name_in_use(candidate, exclude_id):
            candidate = f"{base} ({label} {n})"
            n += 1
        return candidate

    def claim_name(self, record_id: str, name: str) -> None:
        self.active_exercise_names[record_id] = normalize_name(name)

    def release_name(self, record_id: str) -> None:
        self.active_exercise_names.pop(record_id, None)


class ConflictPolicy:
    """Base policy: remote tombstones purge, local tombstones win."""

    name = "base"

    def resolve(self, local: Optional[Any], remote: Any, ctx: MergeContext) -> MergeDecision:
        if remote.deleted:
            return self._resolve_remote_deletion(local, remote, ctx)
        if ctx.is_tombstoned(remote.id) or (local is not None and local.deleted):
            return MergeDecision(MergeAction.SKIP, reason="deleted locally")
        if local is None:
            return MergeDecision(MergeAction.INSERT, self._accepted(remote, ctx), "new from remote")
        return self._resolve_collision(local, remote, ctx)

    def _resolve_remote_deletion(
        self, local: Optional[Any], remote: Any, ctx: MergeContext
    ) -> MergeDecision:
        if local is not None and not local.deleted:
            return MergeDecision(MergeAction.PURGE, reason="deleted remotely")
        return MergeDecision(MergeAction.SKIP, reason="already deleted")

    def _resolve_collision(self, local: Any, remote: Any, ctx: MergeContext) -> MergeDecision:
        raise NotImplementedError

    @staticmethod
    def _accepted(remote: Any, ctx: MergeContext) -> Any:
        """The remote record as it should be stored locally: acknowledged."""
        return replace(remote, synced_at=ctx.now, deleted=False, deleted_at=None)


class RemoteWins(ConflictPolicy):
    """The cloud copy is authoritative on any id collision."""

    name = "remote_wins"

    def _resolve_collision(self, local: Any, remote: Any, ctx: MergeContext) -> MergeDecision:
        return MergeDecision(MergeAction.OVERWRITE, self._accepted(remote, ctx), "remote wins")


class LastWriteWins(ConflictPolicy):
    """Keep the side with the later recency timestamp.

    Local is kept only when it is strictly newer; equal or missing
    timestamps fall through to the remote copy.
    """

    name = "last_write_wins"

    def _resolve_collision(self, local: Any, remote: Any, ctx: MergeContext) -> MergeDecision:
        local_time = recency(ctx.kind, local)
        remote_time = recency(ctx.kind, remote)
        if local_time and remote_time and local_time > remote_time:
            return MergeDecision(MergeAction.KEEP_LOCAL, reason="local is newer")
        return MergeDecision(
            MergeAction.OVERWRITE, self._accepted(remote, ctx), "remote is newer or equal"
        )


class ExerciseRevivalPolicy(RemoteWins):
    """Remote wins for custom exercises, and active remotes revive local tombstones.

    A revived exercise whose name is now taken by another active exercise is
    renamed with a " (Revived)" suffix and written dirty.
    """

    name = "exercise_revival"

    def resolve(self, local: Optional[Any], remote: Any, ctx: MergeContext) -> MergeDecision:
        if not remote.deleted and local is not None and local.deleted:
            return self._revive(remote, ctx)
        return super().resolve(local, remote, ctx)

    def _revive(self, remote: Any, ctx: MergeContext) -> MergeDecision:
        record = self._accepted(remote, ctx)
        if ctx.name_in_use(record.name, exclude_id=record.id):
            new_name = ctx.unique_name(record.name, REVIVED_SUFFIX, exclude_id=record.id)
            logger.info(f"Revived exercise name conflict for {record.name!r}, renaming to {new_name!r}")
            record = replace(record, name=new_name, synced_at=None)
            return MergeDecision(MergeAction.REVIVE, record, "revived with new name")
        return MergeDecision(MergeAction.REVIVE, record, "revived")


class PendingDeletionPolicy(RemoteWins):
    """Remote wins for collections whose deletions live in a pending list.

    An id still waiting in the local pending-deletion list is skipped so the
    queued delete is not undone by the stale remote copy.
    """

    name = "pending_deletion"

    def resolve(self, local: Optional[Any], remote: Any, ctx: MergeContext) -> MergeDecision:
        if not remote.deleted and remote.id in ctx.pending_deletion_ids:
            return MergeDecision(MergeAction.SKIP, reason="deletion pending upload")
        return super().resolve(local, remote, ctx)


class PersonalRecordPolicy(RemoteWins):
    """Remote wins for personal records, which collide by exercise.

    While the local PR for an exercise is a tombstone waiting to be
    uploaded, a remote PR for that exercise under another id is skipped.
    Writing it would bring back a PR the local history no longer supports.
    """

    name = "personal_record"

    def resolve(self, local: Optional[Any], remote: Any, ctx: MergeContext) -> MergeDecision:
        if (
            not remote.deleted
            and local is None
            and remote.exercise_id in ctx.tombstoned_exercise_ids
        ):
            return MergeDecision(MergeAction.SKIP, reason="exercise PR deletion pending upload")
        return super().resolve(local, remote, ctx)


DEFAULT_POLICIES: Dict[RecordKind, ConflictPolicy] = {
    RecordKind.WORKOUT_SESSION: RemoteWins(),
    RecordKind.PERSONAL_RECORD: PersonalRecordPolicy(),
    RecordKind.WORKOUT_TEMPLATE: LastWriteWins(),
    RecordKind.CUSTOM_EXERCISE: ExerciseRevivalPolicy(),
    RecordKind.BODY_MEASUREMENT: PendingDeletionPolicy(),
}
