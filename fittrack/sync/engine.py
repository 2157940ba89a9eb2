"""Sync orchestrator for fittrack.

SyncEngine runs a full sync as one unit of work (upload everything pending,
then download and merge), owns the sync status, and turns local mutations,
reconnect events and "sync now" requests into tracked background tasks.

Concurrency rules:
- At most one full sync is in flight. A trigger that arrives while one is
  running waits for that run and gets its result.
- Single-record uploads and full syncs share one lock, so an upload never
  interleaves with a merge.
- Connectivity callbacks may arrive from any thread; they are marshalled
  onto the engine's event loop.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from fittrack.config import SyncSettings, get_settings
from fittrack.errors import (
    NotAuthenticatedError,
    OfflineError,
    PartialSyncFailure,
    RemoteRejectedError,
    SyncError,
)
from fittrack.logging_config import log_sync, log_sync_event
from fittrack.protocols import ConnectivityProvider, IdentityProvider, LocalStore, RemoteStore
from fittrack.types import (
    PENDING_DELETION_KINDS,
    PersonalRecord,
    RecordKind,
    WorkoutSession,
    format_datetime,
    parse_datetime,
    utc_now,
)
from fittrack.utils import account_meta_key

from .merger import DownloadMerger
from .policies import ConflictPolicy
from .pr_engine import PersonalRecordEngine
from .status import SyncState, SyncStatus, SyncStatusBoard
from .uploader import UploadReconciler

logger = logging.getLogger(__name__)

LAST_SYNCED_AT = "last_synced_at"


@dataclass
class SyncResult:
    """Outcome of a full sync. Counts from completed phases survive a failure."""

    success: bool = False
    uploaded_count: int = 0
    downloaded_count: int = 0
    conflicts_resolved_count: int = 0
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    phase: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyncEngine:
    """Coordinates uploads, downloads and status for one local store."""

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore,
        identity: IdentityProvider,
        connectivity: ConnectivityProvider,
        pr_engine: Optional[PersonalRecordEngine] = None,
        *,
        settings: Optional[SyncSettings] = None,
        policies: Optional[Mapping[RecordKind, ConflictPolicy]] = None,
    ):
        self.local = local
        self.remote = remote
        self.identity = identity
        self.connectivity = connectivity
        self.pr_engine = pr_engine or PersonalRecordEngine()
        self.settings = settings or get_settings()

        self.status_board = SyncStatusBoard(
            SyncStatus(
                is_online=connectivity.is_connected(),
                last_synced_at=self._load_last_synced_at(),
                pending_uploads=local.pending_upload_count(),
            )
        )
        self.uploader = UploadReconciler(local, remote, connectivity, self.status_board)
        self.merger = DownloadMerger(local, remote, policies)

        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._retry_attempt = 0
        self._retry_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe_connectivity: Optional[Callable[[], None]] = None

    # === Status ===

    def get_sync_status(self) -> SyncStatus:
        return self.status_board.status

    def subscribe(self, listener: Callable[[SyncStatus], None]) -> Callable[[], None]:
        """Register a status listener. Returns an unsubscribe function."""
        return self.status_board.subscribe(listener)

    def _require_account(self) -> str:
        account_id = self.identity.current_account_id()
        if not account_id:
            raise NotAuthenticatedError()
        return account_id

    def _load_last_synced_at(self):
        account_id = self.identity.current_account_id()
        if not account_id:
            return None
        return parse_datetime(self.local.get_meta(account_meta_key(LAST_SYNCED_AT, account_id)))

    def _refresh_pending(self) -> None:
        self.status_board.update(pending_uploads=self.local.pending_upload_count())

    # === Lifecycle ===

    def start(self) -> None:
        """Listen for connectivity changes. Call from inside the running loop."""
        self._loop = asyncio.get_running_loop()
        if self._unsubscribe_connectivity is None:
            self._unsubscribe_connectivity = self.connectivity.on_connectivity_change(
                self._on_connectivity_change
            )
        self.status_board.update(is_online=self.connectivity.is_connected())
        logger.debug("Sync engine started")

    async def stop(self) -> None:
        """Stop listening and cancel every background task."""
        if self._unsubscribe_connectivity is not None:
            self._unsubscribe_connectivity()
            self._unsubscribe_connectivity = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("Sync engine stopped")

    async def wait_for_background_tasks(self) -> None:
        """Wait until no background task (including ones they spawn) remains."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background sync task failed: {task.exception()}", exc_info=task.exception())

    def _on_connectivity_change(self, connected: bool) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._handle_connectivity, connected)

    def _handle_connectivity(self, connected: bool) -> None:
        self.status_board.update(is_online=connected)
        if connected:
            logger.info("Connectivity restored, scheduling full sync")
            self._retry_attempt = 0
            self.request_sync()

    # === Task Submission ===

    def request_sync(self) -> asyncio.Task:
        """Schedule a (coalesced) full sync in the background."""
        return self._spawn(self.trigger_full_sync())

    def submit_upload(self, kind: RecordKind, record: Any) -> asyncio.Task:
        """Schedule a single-record upload in the background."""
        return self._spawn(self.upload_single_record(kind, record))

    def submit_deletion(self, kind: RecordKind, record_id: str) -> asyncio.Task:
        """Schedule a single deletion upload in the background."""
        return self._spawn(self.upload_single_deletion(kind, record_id))

    # === Single Record ===

    async def upload_single_record(self, kind: RecordKind, record: Any) -> bool:
        """Upload one just-mutated record. Never raises for sync failures.

        Returns:
            True if the record reached the remote store.
        """
        try:
            account_id = self._require_account()
        except NotAuthenticatedError:
            logger.debug("Not signed in, upload left pending")
            return False

        if not self.connectivity.is_connected():
            self.status_board.increment_pending()
            return False

        async with self._lock:
            try:
                sent = await self.uploader.upload_record(account_id, kind, record)
            except OfflineError as e:
                logger.info(f"Offline during upload of {kind}:{record.id}: {e}")
                self.status_board.increment_pending()
                return False
            except RemoteRejectedError as e:
                logger.warning(f"Upload rejected, will retry next sync: {e}")
                return False
            self._refresh_pending()
            return sent

    async def upload_single_deletion(self, kind: RecordKind, record_id: str) -> bool:
        """Upload one local deletion; the tombstone is purged on success."""
        kind = RecordKind(kind)
        try:
            account_id = self._require_account()
        except NotAuthenticatedError:
            return False

        if not self.connectivity.is_connected():
            self.status_board.increment_pending()
            return False

        if kind in PENDING_DELETION_KINDS:
            pending = dict(self.local.list_pending_deletions(kind))
            if record_id not in pending:
                return False
            deleted_at = pending[record_id]
        else:
            tombstone = self.local.get(kind, record_id)
            if tombstone is None or not tombstone.deleted:
                return False
            deleted_at = tombstone.deleted_at

        async with self._lock:
            try:
                await self.uploader.upload_deletion(account_id, kind, record_id, deleted_at)
            except OfflineError as e:
                logger.info(f"Offline during deletion of {kind.value}:{record_id}: {e}")
                self.status_board.increment_pending()
                return False
            except RemoteRejectedError as e:
                logger.warning(f"Deletion rejected, tombstone kept for retry: {e}")
                return False
            self._refresh_pending()
            return True

    # === Full Sync ===

    async def trigger_full_sync(self) -> SyncResult:
        """Run a full sync, or join the one already in flight."""
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            logger.debug("Full sync already in flight, joining it")
            return await asyncio.shield(inflight)

        task = self._spawn(self._run_full_sync())
        self._inflight = task
        return await asyncio.shield(task)

    async def _run_full_sync(self) -> SyncResult:
        async with self._lock:
            try:
                return await self._full_sync()
            except Exception as e:
                # Phase errors are handled inside; this is the local store failing
                logger.error(f"Full sync aborted: {e}", exc_info=True)
                self._abort_status(str(e))
                return SyncResult(error=str(e))

    def _abort_status(self, error: str) -> None:
        """Bring the status machine back to Idle after an unexpected failure."""
        board = self.status_board
        if board.status.state in (SyncState.UPLOADING, SyncState.DOWNLOADING):
            board.transition(SyncState.ERROR, error=error)
        if board.status.state == SyncState.ERROR:
            board.transition(SyncState.IDLE)

    async def _full_sync(self) -> SyncResult:
        result = SyncResult()

        try:
            account_id = self._require_account()
        except NotAuthenticatedError:
            logger.debug("Not signed in, full sync skipped")
            result.error = "not_authenticated"
            return result

        board = self.status_board
        board.transition(SyncState.UPLOADING, error=None)

        # Phase 1: upload
        result.phase = "upload"
        try:
            upload = await self.uploader.upload_all(account_id)
        except Exception as e:
            logger.error(f"Upload phase failed: {e}", exc_info=True)
            return self._fail(result, account_id, PartialSyncFailure("upload", str(e)))

        result.uploaded_count = upload.uploaded
        result.errors.extend(upload.failures)

        if upload.skipped_offline:
            result.error = "offline"
            board.transition(SyncState.ERROR, error="offline", is_online=False)
            board.transition(SyncState.IDLE)
            log_sync(account_id, 0, 0, 0, error="offline")
            return result
        if upload.aborted:
            failure = PartialSyncFailure("upload", upload.error or "aborted", uploaded=upload.uploaded)
            return self._fail(result, account_id, failure, offline=True)

        # Phase 2: download and merge
        result.phase = "download"
        board.transition(SyncState.DOWNLOADING, pending_uploads=self.local.pending_upload_count())
        since = None
        if self.settings.incremental_pull:
            since = parse_datetime(self.local.get_meta(account_meta_key(LAST_SYNCED_AT, account_id)))
        try:
            report = await self.merger.download_and_merge(account_id, since)
        except OfflineError as e:
            failure = PartialSyncFailure("download", str(e), uploaded=upload.uploaded)
            return self._fail(result, account_id, failure, offline=True)
        except Exception as e:
            logger.error(f"Download phase failed: {e}", exc_info=True)
            failure = PartialSyncFailure("download", str(e), uploaded=upload.uploaded)
            return self._fail(result, account_id, failure)

        result.downloaded_count = report.downloaded_count
        result.conflicts_resolved_count = report.conflicts_resolved
        result.errors.extend(report.errors)

        synced_at = utc_now()
        self.local.set_meta(account_meta_key(LAST_SYNCED_AT, account_id), format_datetime(synced_at))
        try:
            await self.remote.touch_account(account_id, synced_at)
        except SyncError as e:
            logger.warning(f"Could not update remote last-synced-at marker: {e}")

        result.success = True
        result.phase = None
        self._retry_attempt = 0
        board.transition(
            SyncState.IDLE,
            last_synced_at=synced_at,
            pending_uploads=self.local.pending_upload_count(),
            error=None,
            is_online=self.connectivity.is_connected(),
        )
        logger.info(
            f"Sync complete: uploaded={result.uploaded_count}, "
            f"downloaded={result.downloaded_count}, conflicts={result.conflicts_resolved_count}"
        )
        log_sync(
            account_id,
            result.uploaded_count,
            result.downloaded_count,
            result.conflicts_resolved_count,
        )
        return result

    def _fail(
        self,
        result: SyncResult,
        account_id: str,
        failure: PartialSyncFailure,
        offline: bool = False,
    ) -> SyncResult:
        """Record a phase failure: Error, then back to Idle, keeping partial counts."""
        result.success = False
        result.phase = failure.phase
        result.error = str(failure)
        logger.warning(result.error)

        board = self.status_board
        board.transition(
            SyncState.ERROR,
            error=result.error,
            pending_uploads=self.local.pending_upload_count(),
            is_online=self.connectivity.is_connected(),
        )
        board.transition(SyncState.IDLE)
        log_sync(
            account_id,
            result.uploaded_count,
            result.downloaded_count,
            result.conflicts_resolved_count,
            error=result.error,
        )
        # Offline failures wait for the reconnect event instead
        if not offline:
            self._schedule_retry()
        return result

    def _schedule_retry(self) -> None:
        if self._retry_attempt >= self.settings.max_retry_attempts:
            logger.warning(
                f"Giving up on automatic sync retries after {self._retry_attempt} attempts"
            )
            return
        delay = self.settings.retry_delay(self._retry_attempt)
        self._retry_attempt += 1
        if self._retry_task is not None and not self._retry_task.done():
            self._retry_task.cancel()
        logger.info(f"Retrying sync in {delay:.1f}s (attempt {self._retry_attempt})")
        self._retry_task = self._spawn(self._retry_after(delay))

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_task = None
        await self.trigger_full_sync()

    # === Personal Records ===

    def recalculate_personal_records(self) -> Dict[str, int]:
        """Recompute every PR from local set history and store the changes.

        Unchanged PRs keep their sync state; changed ones become dirty; PRs
        for exercises without any remaining sets are deleted.
        """
        bests = self.pr_engine.recompute(self.local.list_active(RecordKind.WORKOUT_SESSION))
        existing = {pr.exercise_id: pr for pr in self.local.list_active(RecordKind.PERSONAL_RECORD)}
        summary = {"updated": 0, "unchanged": 0, "removed": 0}

        for exercise_id, best in bests.items():
            current = existing.get(exercise_id)
            if current is not None:
                best = replace(best, id=current.id, owner_id=current.owner_id or best.owner_id)
                if self._same_personal_record(current, best):
                    summary["unchanged"] += 1
                    continue
            self.local.save(RecordKind.PERSONAL_RECORD, best)
            summary["updated"] += 1

        for exercise_id, stale in existing.items():
            if exercise_id not in bests:
                self.local.soft_delete(RecordKind.PERSONAL_RECORD, stale.id)
                summary["removed"] += 1

        self._refresh_pending()
        log_sync_event("recalculate_prs", ", ".join(f"{k}={v}" for k, v in summary.items()))
        logger.info(f"Recalculated personal records: {summary}")
        return summary

    @staticmethod
    def _same_personal_record(a: PersonalRecord, b: PersonalRecord) -> bool:
        return (a.weight, a.reps, a.achieved_at, a.session_id) == (
            b.weight,
            b.reps,
            b.achieved_at,
            b.session_id,
        )

    async def complete_workout(self, session: WorkoutSession) -> List[PersonalRecord]:
        """Local write path for a finished workout.

        Saves the session and any PRs it set, then submits their uploads as
        background tasks. Returns the new PRs.
        """
        now = utc_now()
        if session.completed_at is None:
            session.completed_at = now
        if session.duration_seconds is None:
            session.duration_seconds = int((session.completed_at - session.started_at).total_seconds())
        session.total_volume = session.compute_total_volume()

        current = {pr.exercise_id: pr for pr in self.local.list_active(RecordKind.PERSONAL_RECORD)}
        new_records = []
        for pr in self.pr_engine.check_session(session, current):
            existing = current.get(pr.exercise_id)
            if existing is not None:
                pr = replace(pr, id=existing.id)
            new_records.append(pr)

        self.local.save(RecordKind.WORKOUT_SESSION, session)
        for pr in new_records:
            self.local.save(RecordKind.PERSONAL_RECORD, pr)
        self._refresh_pending()

        self.submit_upload(RecordKind.WORKOUT_SESSION, session)
        for pr in new_records:
            self.submit_upload(RecordKind.PERSONAL_RECORD, pr)
        return new_records
