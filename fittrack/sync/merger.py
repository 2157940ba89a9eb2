"""Download merger.

Pulls every remote collection for an account, then applies each remote
record to the local store through the conflict policy for its kind.

Fetching is all-or-nothing: if any collection cannot be listed the phase
fails before anything is written. Applying is per record: a record that
cannot be written is logged and skipped.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from fittrack.errors import NameConflictError
from fittrack.protocols import LocalStore, RemoteStore
from fittrack.types import MERGE_ORDER, PENDING_DELETION_KINDS, RecordKind, utc_now

from .policies import (
    DEFAULT_POLICIES,
    IMPORTED_SUFFIX,
    ConflictPolicy,
    MergeAction,
    MergeContext,
    MergeDecision,
    normalize_name,
)

logger = logging.getLogger(__name__)


@dataclass
class MergeReport:
    """What a download pass did to the local store."""

    added: Dict[RecordKind, int] = field(default_factory=dict)
    conflicts_resolved: int = 0
    kept_local: int = 0
    skipped: int = 0
    purged: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def downloaded_count(self) -> int:
        return sum(self.added.values())

    def count_added(self, kind: RecordKind) -> None:
        self.added[kind] = self.added.get(kind, 0) + 1


class DownloadMerger:
    """Applies remote state to the local store via per-kind policies."""

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore,
        policies: Optional[Mapping[RecordKind, ConflictPolicy]] = None,
    ):
        self.local = local
        self.remote = remote
        self.policies = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)

    async def download_and_merge(
        self, account_id: str, since: Optional[datetime] = None
    ) -> MergeReport:
        """Fetch all collections, then merge them in dependency order.

        Raises:
            OfflineError, RemoteRejectedError: a collection could not be listed.
        """
        fetched: Dict[RecordKind, List[Any]] = {}
        for kind in MERGE_ORDER:
            fetched[kind] = await self.remote.list_since(account_id, kind, since)
            logger.debug(f"Fetched {len(fetched[kind])} remote {kind.value}")

        report = MergeReport()
        now = utc_now()
        for kind in MERGE_ORDER:
            self.merge_records(kind, fetched[kind], report, now=now)

        logger.info(
            f"Download complete: added={report.downloaded_count}, "
            f"conflicts={report.conflicts_resolved}, purged={report.purged}, "
            f"kept_local={report.kept_local}"
        )
        return report

    def build_context(self, kind: RecordKind, now: datetime) -> MergeContext:
        """Snapshot the local state the policy for ``kind`` consults."""
        ctx = MergeContext(kind=kind, now=now)
        tombstones = self.local.list_tombstones(kind)
        ctx.tombstoned_ids = {t.id for t in tombstones}
        if kind == RecordKind.CUSTOM_EXERCISE:
            ctx.active_exercise_names = {
                e.id: normalize_name(e.name) for e in self.local.list_active(kind)
            }
        if kind == RecordKind.PERSONAL_RECORD:
            ctx.tombstoned_exercise_ids = {t.exercise_id for t in tombstones}
        if kind in PENDING_DELETION_KINDS:
            ctx.pending_deletion_ids = {
                record_id for record_id, _ in self.local.list_pending_deletions(kind)
            }
        return ctx

    def merge_records(
        self,
        kind: RecordKind,
        remote_records: List[Any],
        report: MergeReport,
        now: Optional[datetime] = None,
    ) -> MergeReport:
        """Merge one collection's remote records into the local store."""
        kind = RecordKind(kind)
        ctx = self.build_context(kind, now or utc_now())
        policy = self.policies[kind]

        # Collapse duplicate ids (last wins), and apply deletions first so
        # names they free up are available to the records that follow.
        unique = list({r.id: r for r in remote_records}.values())
        unique.sort(key=lambda r: not r.deleted)

        for remote in unique:
            try:
                local = self._find_local(kind, remote)
                decision = policy.resolve(local, remote, ctx)
                self._apply(kind, remote, decision, ctx, report)
            except Exception as e:
                logger.error(f"Failed to merge {kind.value}:{remote.id}: {e}", exc_info=True)
                report.errors.append(f"Failed to merge {kind.value}:{remote.id}: {e}")
        return report

    def _find_local(self, kind: RecordKind, remote: Any) -> Optional[Any]:
        if kind == RecordKind.PERSONAL_RECORD and not remote.deleted:
            # Active PRs collide by exercise, whatever their ids. A remote
            # deletion only ever applies to the record with its own id.
            existing = self.local.get_personal_record(remote.exercise_id)
            if existing is not None:
                return existing
        return self.local.get(kind, remote.id)

    def _apply(
        self,
        kind: RecordKind,
        remote: Any,
        decision: MergeDecision,
        ctx: MergeContext,
        report: MergeReport,
    ) -> None:
        action = decision.action

        if action in (MergeAction.INSERT, MergeAction.OVERWRITE, MergeAction.REVIVE):
            self._write(kind, decision.record, ctx)
            if decision.is_addition:
                report.count_added(kind)
            else:
                report.conflicts_resolved += 1
            logger.debug(f"{action.value} {kind.value}:{remote.id} ({decision.reason})")
        elif action == MergeAction.PURGE:
            if kind in PENDING_DELETION_KINDS:
                self.local.remove_from_sync(kind, remote.id)
            else:
                self.local.hard_purge(kind, remote.id)
            ctx.release_name(remote.id)
            report.purged += 1
            logger.info(f"Applied remote deletion for {kind.value}:{remote.id}")
        elif action == MergeAction.KEEP_LOCAL:
            report.kept_local += 1
            logger.debug(f"Kept local {kind.value}:{remote.id} ({decision.reason})")
        else:
            report.skipped += 1
            logger.debug(f"Skipped remote {kind.value}:{remote.id} ({decision.reason})")

    def _write(self, kind: RecordKind, record: Any, ctx: MergeContext) -> None:
        if kind != RecordKind.CUSTOM_EXERCISE:
            self.local.upsert(kind, record)
            return

        try:
            self.local.upsert(kind, record)
        except NameConflictError:
            # One retry under a disambiguated name; the rename must be uploaded
            new_name = ctx.unique_name(record.name, IMPORTED_SUFFIX, exclude_id=record.id)
            logger.info(f"Name conflict for {record.name!r}, importing as {new_name!r}")
            record = replace(record, name=new_name, synced_at=None)
            self.local.upsert(kind, record)
        ctx.claim_name(record.id, record.name)
