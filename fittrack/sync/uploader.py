"""Upload reconciler.

Pushes dirty records and tombstones from the local store to the remote
store. Each record is its own unit of work: one failure is logged and left
for the next cycle while the rest of the batch carries on. Only a loss of
connectivity aborts the batch.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, List, Optional

from fittrack.errors import OfflineError, RemoteRejectedError
from fittrack.protocols import ConnectivityProvider, LocalStore, RemoteStore
from fittrack.storage.serializers import to_document
from fittrack.types import PENDING_DELETION_KINDS, RecordKind, utc_now

from .status import SyncStatusBoard

logger = logging.getLogger(__name__)

RECORDS = "records"
DELETIONS = "deletions"

# Upload order. Measurement deletions go out before measurement uploads.
UPLOAD_STEPS = (
    (RecordKind.WORKOUT_SESSION, RECORDS),
    (RecordKind.WORKOUT_SESSION, DELETIONS),
    (RecordKind.PERSONAL_RECORD, RECORDS),
    (RecordKind.PERSONAL_RECORD, DELETIONS),
    (RecordKind.BODY_MEASUREMENT, DELETIONS),
    (RecordKind.WORKOUT_TEMPLATE, RECORDS),
    (RecordKind.WORKOUT_TEMPLATE, DELETIONS),
    (RecordKind.CUSTOM_EXERCISE, RECORDS),
    (RecordKind.CUSTOM_EXERCISE, DELETIONS),
    (RecordKind.BODY_MEASUREMENT, RECORDS),
)


@dataclass
class UploadReport:
    """Outcome of one upload pass."""

    uploaded: int = 0
    failures: List[str] = field(default_factory=list)
    skipped_offline: bool = False
    aborted: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.skipped_offline and not self.aborted


class UploadReconciler:
    """Drains dirty records and tombstones to the remote store."""

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore,
        connectivity: ConnectivityProvider,
        status_board: Optional[SyncStatusBoard] = None,
    ):
        self.local = local
        self.remote = remote
        self.connectivity = connectivity
        self.status_board = status_board

    async def upload_all(self, account_id: str) -> UploadReport:
        """Push everything pending. Never raises for per-record failures."""
        report = UploadReport()

        if not self.connectivity.is_connected():
            logger.info("Offline - upload skipped, changes stay queued")
            report.skipped_offline = True
            report.error = "offline"
            if self.status_board is not None:
                self.status_board.increment_pending()
            return report

        for kind, step in UPLOAD_STEPS:
            try:
                if step == RECORDS:
                    await self._upload_records(account_id, kind, report)
                else:
                    await self._upload_deletions(account_id, kind, report)
            except OfflineError as e:
                logger.warning(
                    f"Lost connectivity while uploading {kind.value} {step}: {e} "
                    f"({report.uploaded} uploaded so far)"
                )
                report.aborted = True
                report.error = str(e)
                return report

        logger.debug(
            f"Upload pass complete: uploaded={report.uploaded}, failures={len(report.failures)}"
        )
        return report

    async def _upload_records(self, account_id: str, kind: RecordKind, report: UploadReport):
        for record in self.local.list_unsynced(kind):
            try:
                if await self.upload_record(account_id, kind, record):
                    report.uploaded += 1
            except OfflineError:
                raise
            except RemoteRejectedError as e:
                logger.warning(f"Upload rejected, will retry next sync: {e}")
                report.failures.append(str(e))
            except Exception as e:
                logger.error(f"Error uploading {kind.value}:{record.id}: {e}", exc_info=True)
                report.failures.append(f"Error uploading {kind.value}:{record.id}: {e}")

    async def _upload_deletions(self, account_id: str, kind: RecordKind, report: UploadReport):
        if kind in PENDING_DELETION_KINDS:
            pending = self.local.list_pending_deletions(kind)
        else:
            pending = [(t.id, t.deleted_at) for t in self.local.list_tombstones(kind)]

        for record_id, deleted_at in pending:
            try:
                await self.upload_deletion(account_id, kind, record_id, deleted_at)
                report.uploaded += 1
            except OfflineError:
                raise
            except RemoteRejectedError as e:
                logger.warning(f"Deletion rejected, tombstone kept for retry: {e}")
                report.failures.append(str(e))
            except Exception as e:
                logger.error(f"Error uploading deletion {kind.value}:{record_id}: {e}", exc_info=True)
                report.failures.append(f"Error uploading deletion {kind.value}:{record_id}: {e}")

    async def upload_record(self, account_id: str, kind: RecordKind, record: Any) -> bool:
        """Upsert one record remotely, then mark it synced locally.

        A record that is already synced, tombstoned or missing locally is
        left alone. If the local copy
        changed while the upload was in flight it stays dirty, so the newer
        state goes out on the next pass.

        Returns:
            True if the record was sent to the remote store.

        Raises:
            OfflineError, RemoteRejectedError: from the remote store.
        """
        kind = RecordKind(kind)
        # The stored copy is what gets uploaded
        stored = self.local.get(kind, record.id)
        if stored is None or stored.deleted:
            logger.debug(f"{kind.value}:{record.id} is not active locally, nothing to upload")
            return False
        if stored.synced_at is not None:
            logger.debug(f"{kind.value}:{record.id} already synced, nothing to upload")
            return False

        snapshot = to_document(kind, stored)
        outgoing = replace(stored, owner_id=stored.owner_id or account_id)
        await self.remote.upsert(account_id, kind, outgoing)

        current = self.local.get(kind, record.id)
        if current is not None and not current.deleted and to_document(kind, current) == snapshot:
            self.local.mark_synced(kind, record.id, utc_now())
        else:
            logger.debug(f"{kind.value}:{record.id} changed during upload, left dirty")
        return True

    async def upload_deletion(
        self,
        account_id: str,
        kind: RecordKind,
        record_id: str,
        deleted_at: Optional[datetime] = None,
    ) -> None:
        """Mark a record deleted remotely, then drop the local tombstone.

        The tombstone (or pending-deletion entry) is only removed after the
        remote store acknowledged the deletion.
        """
        kind = RecordKind(kind)
        await self.remote.mark_deleted(account_id, kind, record_id, deleted_at or utc_now())

        if kind in PENDING_DELETION_KINDS:
            self.local.clear_pending_deletion(kind, record_id)
            return

        current = self.local.get(kind, record_id)
        if current is not None and current.deleted:
            self.local.hard_purge(kind, record_id)
            logger.debug(f"Purged tombstone {kind.value}:{record_id} after remote ack")
