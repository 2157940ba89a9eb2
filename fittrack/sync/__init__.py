"""fittrack sync: upload, download/merge, conflict policies and orchestration."""

from .engine import SyncEngine, SyncResult
from .merger import DownloadMerger, MergeReport
from .policies import (
    DEFAULT_POLICIES,
    ConflictPolicy,
    ExerciseRevivalPolicy,
    LastWriteWins,
    MergeAction,
    MergeContext,
    MergeDecision,
    PendingDeletionPolicy,
    PersonalRecordPolicy,
    RemoteWins,
)
from .pr_engine import PersonalRecordEngine, personal_record_id
from .providers import ManualConnectivity, StaticIdentity
from .status import SyncState, SyncStatus, SyncStatusBoard
from .uploader import UploadReconciler, UploadReport

__all__ = [
    # Orchestration
    "SyncEngine",
    "SyncResult",
    "SyncState",
    "SyncStatus",
    "SyncStatusBoard",
    # Phases
    "UploadReconciler",
    "UploadReport",
    "DownloadMerger",
    "MergeReport",
    # Policies
    "ConflictPolicy",
    "RemoteWins",
    "LastWriteWins",
    "ExerciseRevivalPolicy",
    "PendingDeletionPolicy",
    "PersonalRecordPolicy",
    "MergeAction",
    "MergeContext",
    "MergeDecision",
    "DEFAULT_POLICIES",
    # Personal records
    "PersonalRecordEngine",
    "personal_record_id",
    # Providers
    "StaticIdentity",
    "ManualConnectivity",
]
