"""Record <-> document conversion.

Documents are JSON-safe dicts: datetimes become ISO strings and nested
children (exercise logs, sets, template exercises) become lists of dicts.
Both remote adapters store and exchange records in this form.
"""

import logging
from dataclasses import MISSING, asdict, fields
from datetime import datetime, timezone
from typing import Any, Dict

from fittrack.types import (
    RECORD_TYPES,
    ExerciseLog,
    RecordKind,
    TemplateExercise,
    WorkoutSet,
    format_datetime,
    parse_datetime,
)

logger = logging.getLogger(__name__)

_DATETIME_FIELDS = frozenset(
    {
        "started_at",
        "completed_at",
        "logged_at",
        "created_at",
        "updated_at",
        "achieved_at",
        "measured_at",
        "synced_at",
        "deleted_at",
    }
)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def _known(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop unknown keys and parse datetime fields for a dataclass."""
    names = {f.name for f in fields(cls)}
    out = {}
    for key, value in data.items():
        if key not in names:
            continue
        if key in _DATETIME_FIELDS and isinstance(value, str):
            value = parse_datetime(value)
        out[key] = value
    return out


def to_document(kind: RecordKind, record: Any) -> Dict[str, Any]:
    """Serialize a record (and its owned children) to a document."""
    return _jsonable(asdict(record))


def from_document(kind: RecordKind, doc: Dict[str, Any]) -> Any:
    """Build a record from a document, ignoring fields this client doesn't know."""
    kind = RecordKind(kind)
    cls = RECORD_TYPES[kind]
    data = _known(cls, doc)

    if kind == RecordKind.WORKOUT_SESSION:
        logs = []
        for log_doc in doc.get("exercise_logs") or []:
            log_data = _known(ExerciseLog, log_doc)
            log_data["sets"] = [_known(WorkoutSet, s) for s in log_doc.get("sets") or []]
            log_data["sets"] = [WorkoutSet(**s) for s in log_data["sets"]]
            logs.append(ExerciseLog(**log_data))
        data["exercise_logs"] = logs
    elif kind == RecordKind.WORKOUT_TEMPLATE:
        data["exercises"] = [
            TemplateExercise(**_known(TemplateExercise, e)) for e in doc.get("exercises") or []
        ]

    data["deleted"] = bool(data.get("deleted", False))
    if data["deleted"]:
        _pad_tombstone(cls, data)
    return cls(**data)


# Placeholders for required fields a bare tombstone document doesn't carry
_TOMBSTONE_PLACEHOLDERS = {"name": "", "exercise_id": "", "weight": 0.0, "reps": 0}


def _pad_tombstone(cls, data: Dict[str, Any]) -> None:
    """Fill required fields missing from a tombstone written without its record."""
    stamp = data.get("deleted_at") or datetime.fromtimestamp(0, tz=timezone.utc)
    for f in fields(cls):
        if f.name in data or f.default is not MISSING or f.default_factory is not MISSING:
            continue
        if f.name in _DATETIME_FIELDS:
            data[f.name] = stamp
        elif f.name in _TOMBSTONE_PLACEHOLDERS:
            data[f.name] = _TOMBSTONE_PLACEHOLDERS[f.name]
