"""
Shared record types for fittrack.

All synced record dataclasses live here. These are the shared vocabulary
between the local store, the remote store adapters and the sync engine.
Every record carries the same sync envelope: a client-generated ``id``,
an ``owner_id``, ``synced_at`` (None while dirty) and the soft-delete
markers ``deleted`` / ``deleted_at``.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Get the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a client-side record id."""
    return str(uuid.uuid4())


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string, normalising naive values to UTC."""
    if not s:
        return None
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Format a datetime as an ISO string (None passes through)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


# === Enums ===


class RecordKind(str, Enum):
    """The five synced collections.

    Values double as local table names and remote collection names.
    """

    WORKOUT_SESSION = "workout_sessions"
    WORKOUT_TEMPLATE = "workout_templates"
    CUSTOM_EXERCISE = "custom_exercises"
    PERSONAL_RECORD = "personal_records"
    BODY_MEASUREMENT = "body_measurements"


# Kinds that track deletions with a tombstone flag on the record itself.
TOMBSTONE_KINDS = frozenset(
    {
        RecordKind.WORKOUT_SESSION,
        RecordKind.WORKOUT_TEMPLATE,
        RecordKind.CUSTOM_EXERCISE,
        RecordKind.PERSONAL_RECORD,
    }
)

# Kinds that track deletions through a separate pending-deletion id list.
PENDING_DELETION_KINDS = frozenset({RecordKind.BODY_MEASUREMENT})

# Order in which collections are pulled and merged. Exercises and templates
# come first so sessions referencing them land after their targets.
MERGE_ORDER = (
    RecordKind.CUSTOM_EXERCISE,
    RecordKind.WORKOUT_TEMPLATE,
    RecordKind.BODY_MEASUREMENT,
    RecordKind.WORKOUT_SESSION,
    RecordKind.PERSONAL_RECORD,
)


class ExerciseCategory(str, Enum):
    CHEST = "chest"
    BACK = "back"
    SHOULDERS = "shoulders"
    BICEPS = "biceps"
    TRICEPS = "triceps"
    QUADS = "quads"
    HAMSTRINGS = "hamstrings"
    GLUTES = "glutes"
    CALVES = "calves"
    CORE = "core"
    FULL_BODY = "full_body"


class EquipmentType(str, Enum):
    BARBELL = "barbell"
    DUMBBELL = "dumbbell"
    CABLE = "cable"
    MACHINE = "machine"
    BODYWEIGHT = "bodyweight"
    OTHER = "other"


# === Workout Sessions ===


@dataclass
class WorkoutSet:
    """A single logged set."""

    id: str
    set_number: int
    weight: float
    reps: int
    logged_at: datetime
    is_pr: bool = False
    rpe: Optional[float] = None  # Rate of perceived exertion (1-10)


@dataclass
class ExerciseLog:
    """One exercise performed within a session, owning its sets."""

    id: str
    exercise_id: str
    exercise_name: str = ""
    completed_at: Optional[datetime] = None
    sets: List[WorkoutSet] = field(default_factory=list)


@dataclass
class WorkoutSession:
    """A workout session. Owns its exercise logs and their sets exclusively."""

    id: str
    started_at: datetime
    owner_id: Optional[str] = None
    template_id: Optional[str] = None
    template_name: str = ""
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    total_volume: Optional[float] = None
    exercise_logs: List[ExerciseLog] = field(default_factory=list)
    # Sync metadata
    synced_at: Optional[datetime] = None
    deleted: bool = False
    deleted_at: Optional[datetime] = None

    def compute_total_volume(self) -> float:
        return sum(s.weight * s.reps for log in self.exercise_logs for s in log.sets)


# === Templates ===


@dataclass
class TemplateExercise:
    """An exercise reference in a template, in display order."""

    id: str
    exercise_id: str
    display_order: int = 0


@dataclass
class WorkoutTemplate:
    """A workout template: a named, ordered list of exercises."""

    id: str
    name: str
    owner_id: Optional[str] = None
    is_preset: bool = False
    exercises: List[TemplateExercise] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # Sync metadata
    synced_at: Optional[datetime] = None
    deleted: bool = False
    deleted_at: Optional[datetime] = None


# === Custom Exercises ===


@dataclass
class CustomExercise:
    """A user-authored exercise. Names are unique among active exercises."""

    id: str
    name: str
    category: str = ExerciseCategory.FULL_BODY.value
    equipment: str = EquipmentType.OTHER.value
    description: str = ""
    image_url: Optional[str] = None
    owner_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # Sync metadata
    synced_at: Optional[datetime] = None
    deleted: bool = False
    deleted_at: Optional[datetime] = None


# === Personal Records ===


@dataclass
class PersonalRecord:
    """The current best lift for one exercise. Derived from set history."""

    id: str
    exercise_id: str
    weight: float
    reps: int
    achieved_at: datetime
    exercise_name: str = ""
    session_id: Optional[str] = None
    owner_id: Optional[str] = None
    # Sync metadata
    synced_at: Optional[datetime] = None
    deleted: bool = False
    deleted_at: Optional[datetime] = None


# === Body Measurements ===


@dataclass
class BodyMeasurement:
    """A dated snapshot of body metrics."""

    id: str
    measured_at: datetime
    owner_id: Optional[str] = None
    weight: Optional[float] = None
    chest: Optional[float] = None
    waist: Optional[float] = None
    hips: Optional[float] = None
    left_arm: Optional[float] = None
    right_arm: Optional[float] = None
    left_thigh: Optional[float] = None
    right_thigh: Optional[float] = None
    notes: Optional[str] = None
    # Sync metadata
    synced_at: Optional[datetime] = None
    deleted: bool = False
    deleted_at: Optional[datetime] = None


RECORD_TYPES = {
    RecordKind.WORKOUT_SESSION: WorkoutSession,
    RecordKind.WORKOUT_TEMPLATE: WorkoutTemplate,
    RecordKind.CUSTOM_EXERCISE: CustomExercise,
    RecordKind.PERSONAL_RECORD: PersonalRecord,
    RecordKind.BODY_MEASUREMENT: BodyMeasurement,
}

_RECENCY_FIELDS = {
    RecordKind.WORKOUT_SESSION: "started_at",
    RecordKind.WORKOUT_TEMPLATE: "updated_at",
    RecordKind.CUSTOM_EXERCISE: "updated_at",
    RecordKind.PERSONAL_RECORD: "achieved_at",
    RecordKind.BODY_MEASUREMENT: "measured_at",
}


def recency(kind: RecordKind, record: Any) -> Optional[datetime]:
    """Return the kind-specific timestamp used for recency comparisons."""
    return getattr(record, _RECENCY_FIELDS[RecordKind(kind)], None)


def is_dirty(record: Any) -> bool:
    """A record is dirty until the remote store has acknowledged it."""
    return record.synced_at is None
