"""SQLite storage backend for fittrack.

Local-first storage with:
- One SQLite file holding all five synced collections
- Soft-delete tombstones (and a pending-deletion list for measurements)
- Sync metadata for cloud synchronization
"""

import contextlib
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional, Tuple

from fittrack.errors import NameConflictError
from fittrack.types import (
    PENDING_DELETION_KINDS,
    TOMBSTONE_KINDS,
    BodyMeasurement,
    CustomExercise,
    ExerciseLog,
    PersonalRecord,
    RecordKind,
    TemplateExercise,
    WorkoutSession,
    WorkoutSet,
    WorkoutTemplate,
    format_datetime,
    parse_datetime,
    utc_now,
)
from fittrack.utils import get_fittrack_home

from .schema import init_db, validate_table_name

logger = logging.getLogger(__name__)

# Column used to order list results, per collection
_ORDER_BY = {
    RecordKind.WORKOUT_SESSION: "started_at DESC",
    RecordKind.WORKOUT_TEMPLATE: "name COLLATE NOCASE",
    RecordKind.CUSTOM_EXERCISE: "name COLLATE NOCASE",
    RecordKind.PERSONAL_RECORD: "achieved_at DESC",
    RecordKind.BODY_MEASUREMENT: "measured_at DESC",
}


class SQLiteLocalStore:
    """SQLite-based local store for the five synced collections.

    Every write replaces a record wholesale inside a single transaction, so a
    reader never observes a half-written record. Sessions and templates own
    their child rows and rewrite them in the same transaction.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path else get_fittrack_home() / "fittrack.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            init_db(conn=conn, db_path=self.db_path)

    def close(self):
        """Connections are per-operation; nothing to release."""
        pass

    def _now(self) -> str:
        return format_datetime(utc_now())

    @staticmethod
    def _table(kind: RecordKind) -> str:
        return validate_table_name(RecordKind(kind).value)

    # === Row Converters ===

    def _row_to_set(self, row: sqlite3.Row) -> WorkoutSet:
        return WorkoutSet(
            id=row["id"],
            set_number=row["set_number"],
            weight=row["weight"],
            reps=row["reps"],
            rpe=row["rpe"],
            is_pr=bool(row["is_pr"]),
            logged_at=parse_datetime(row["logged_at"]),
        )

    def _row_to_session(self, conn: sqlite3.Connection, row: sqlite3.Row) -> WorkoutSession:
        logs = []
        log_rows = conn.execute(
            "SELECT * FROM exercise_logs WHERE session_id = ? ORDER BY position",
            (row["id"],),
        ).fetchall()
        for log_row in log_rows:
            set_rows = conn.execute(
                "SELECT * FROM sets WHERE exercise_log_id = ? ORDER BY set_number",
                (log_row["id"],),
            ).fetchall()
            logs.append(
                ExerciseLog(
                    id=log_row["id"],
                    exercise_id=log_row["exercise_id"],
                    exercise_name=log_row["exercise_name"] or "",
                    completed_at=parse_datetime(log_row["completed_at"]),
                    sets=[self._row_to_set(s) for s in set_rows],
                )
            )
        return WorkoutSession(
            id=row["id"],
            owner_id=row["owner_id"],
            template_id=row["template_id"],
            template_name=row["template_name"] or "",
            started_at=parse_datetime(row["started_at"]),
            completed_at=parse_datetime(row["completed_at"]),
            duration_seconds=row["duration_seconds"],
            total_volume=row["total_volume"],
            exercise_logs=logs,
            synced_at=parse_datetime(row["synced_at"]),
            deleted=bool(row["deleted"]),
            deleted_at=parse_datetime(row["deleted_at"]),
        )

    def _row_to_template(self, conn: sqlite3.Connection, row: sqlite3.Row) -> WorkoutTemplate:
        exercise_rows = conn.execute(
            "SELECT * FROM template_exercises WHERE template_id = ? ORDER BY display_order",
            (row["id"],),
        ).fetchall()
        return WorkoutTemplate(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            is_preset=bool(row["is_preset"]),
            exercises=[
                TemplateExercise(
                    id=e["id"], exercise_id=e["exercise_id"], display_order=e["display_order"]
                )
                for e in exercise_rows
            ],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
            synced_at=parse_datetime(row["synced_at"]),
            deleted=bool(row["deleted"]),
            deleted_at=parse_datetime(row["deleted_at"]),
        )

    def _row_to_exercise(self, row: sqlite3.Row) -> CustomExercise:
        return CustomExercise(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            category=row["category"],
            equipment=row["equipment"],
            description=row["description"] or "",
            image_url=row["image_url"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
            synced_at=parse_datetime(row["synced_at"]),
            deleted=bool(row["deleted"]),
            deleted_at=parse_datetime(row["deleted_at"]),
        )

    def _row_to_personal_record(self, row: sqlite3.Row) -> PersonalRecord:
        return PersonalRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            exercise_id=row["exercise_id"],
            exercise_name=row["exercise_name"] or "",
            weight=row["weight"],
            reps=row["reps"],
            achieved_at=parse_datetime(row["achieved_at"]),
            session_id=row["session_id"],
            synced_at=parse_datetime(row["synced_at"]),
            deleted=bool(row["deleted"]),
            deleted_at=parse_datetime(row["deleted_at"]),
        )

    def _row_to_measurement(self, row: sqlite3.Row) -> BodyMeasurement:
        return BodyMeasurement(
            id=row["id"],
            owner_id=row["owner_id"],
            measured_at=parse_datetime(row["measured_at"]),
            weight=row["weight"],
            chest=row["chest"],
            waist=row["waist"],
            hips=row["hips"],
            left_arm=row["left_arm"],
            right_arm=row["right_arm"],
            left_thigh=row["left_thigh"],
            right_thigh=row["right_thigh"],
            notes=row["notes"],
            synced_at=parse_datetime(row["synced_at"]),
            deleted=bool(row["deleted"]),
            deleted_at=parse_datetime(row["deleted_at"]),
        )

    def _row_to_record(self, conn: sqlite3.Connection, kind: RecordKind, row: sqlite3.Row) -> Any:
        if kind == RecordKind.WORKOUT_SESSION:
            return self._row_to_session(conn, row)
        if kind == RecordKind.WORKOUT_TEMPLATE:
            return self._row_to_template(conn, row)
        if kind == RecordKind.CUSTOM_EXERCISE:
            return self._row_to_exercise(row)
        if kind == RecordKind.PERSONAL_RECORD:
            return self._row_to_personal_record(row)
        return self._row_to_measurement(row)

    def _select(self, kind: RecordKind, where: str, params: tuple = ()) -> List[Any]:
        kind = RecordKind(kind)
        table = self._table(kind)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE {where} ORDER BY {_ORDER_BY[kind]}", params
            ).fetchall()
            return [self._row_to_record(conn, kind, row) for row in rows]

    # === Queries ===

    def list_active(self, kind: RecordKind) -> List[Any]:
        return self._select(kind, "deleted = 0")

    def list_unsynced(self, kind: RecordKind) -> List[Any]:
        return self._select(kind, "deleted = 0 AND synced_at IS NULL")

    def list_tombstones(self, kind: RecordKind) -> List[Any]:
        """Tombstoned records with ``deleted_at`` set.

        Measurements are never tombstoned; their deletions live in the
        pending-deletion list instead.
        """
        if RecordKind(kind) not in TOMBSTONE_KINDS:
            return []
        return self._select(kind, "deleted = 1 AND deleted_at IS NOT NULL")

    def get(self, kind: RecordKind, record_id: str) -> Optional[Any]:
        records = self._select(kind, "id = ?", (record_id,))
        return records[0] if records else None

    def get_personal_record(self, exercise_id: str) -> Optional[PersonalRecord]:
        records = self._select(
            RecordKind.PERSONAL_RECORD, "exercise_id = ? AND deleted = 0", (exercise_id,)
        )
        return records[0] if records else None

    def find_exercise_by_name(
        self, name: str, owner_id: Optional[str] = None, exclude_id: Optional[str] = None
    ) -> Optional[CustomExercise]:
        """Case-insensitive lookup among active exercises of an owner."""
        with self._connect() as conn:
            row = self._find_name_conflict(conn, name, owner_id, exclude_id)
            return self._row_to_exercise(row) if row else None

    # === Writes ===

    def upsert(self, kind: RecordKind, record: Any) -> str:
        """Insert or wholesale-replace a record exactly as given.

        Raises:
            NameConflictError: an active custom exercise of the same owner
                already uses this name (case-insensitive, trimmed).
        """
        kind = RecordKind(kind)
        with self._connect() as conn:
            if kind == RecordKind.WORKOUT_SESSION:
                self._write_session(conn, record)
            elif kind == RecordKind.WORKOUT_TEMPLATE:
                self._write_template(conn, record)
            elif kind == RecordKind.CUSTOM_EXERCISE:
                self._write_exercise(conn, record)
            elif kind == RecordKind.PERSONAL_RECORD:
                self._write_personal_record(conn, record)
            else:
                self._write_measurement(conn, record)
        return record.id

    def save(self, kind: RecordKind, record: Any) -> str:
        """Local mutation path: marks the record dirty, then upserts it.

        Stamps ``updated_at`` (and a missing ``created_at``) on kinds that
        carry them. The record is modified in place.
        """
        kind = RecordKind(kind)
        if kind in (RecordKind.WORKOUT_TEMPLATE, RecordKind.CUSTOM_EXERCISE):
            now = utc_now()
            record.updated_at = now
            if record.created_at is None:
                record.created_at = now
        record.synced_at = None
        return self.upsert(kind, record)

    def _find_name_conflict(
        self,
        conn: sqlite3.Connection,
        name: str,
        owner_id: Optional[str],
        exclude_id: Optional[str],
    ) -> Optional[sqlite3.Row]:
        # Unowned rows were created on this device before sign-in and count
        # against whichever account is signed in.
        return conn.execute(
            """SELECT * FROM custom_exercises
               WHERE deleted = 0 AND id != ?
               AND (owner_id IS ? OR owner_id IS NULL OR ? IS NULL)
               AND LOWER(TRIM(name)) = LOWER(TRIM(?))
               LIMIT 1""",
            (exclude_id or "", owner_id, owner_id, name),
        ).fetchone()

    def _write_session(self, conn: sqlite3.Connection, s: WorkoutSession):
        conn.execute(
            "DELETE FROM sets WHERE exercise_log_id IN "
            "(SELECT id FROM exercise_logs WHERE session_id = ?)",
            (s.id,),
        )
        conn.execute("DELETE FROM exercise_logs WHERE session_id = ?", (s.id,))
        conn.execute(
            """INSERT OR REPLACE INTO workout_sessions
               (id, owner_id, template_id, template_name, started_at, completed_at,
                duration_seconds, total_volume, synced_at, deleted, deleted_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                s.id,
                s.owner_id,
                s.template_id,
                s.template_name,
                format_datetime(s.started_at),
                format_datetime(s.completed_at),
                s.duration_seconds,
                s.total_volume,
                format_datetime(s.synced_at),
                1 if s.deleted else 0,
                format_datetime(s.deleted_at),
            ),
        )
        for position, log in enumerate(s.exercise_logs):
            conn.execute(
                """INSERT INTO exercise_logs
                   (id, session_id, exercise_id, exercise_name, completed_at, position)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    log.id,
                    s.id,
                    log.exercise_id,
                    log.exercise_name,
                    format_datetime(log.completed_at),
                    position,
                ),
            )
            for ws in log.sets:
                conn.execute(
                    """INSERT INTO sets
                       (id, exercise_log_id, set_number, weight, reps, rpe, is_pr, logged_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        ws.id,
                        log.id,
                        ws.set_number,
                        ws.weight,
                        ws.reps,
                        ws.rpe,
                        1 if ws.is_pr else 0,
                        format_datetime(ws.logged_at),
                    ),
                )

    def _write_template(self, conn: sqlite3.Connection, t: WorkoutTemplate):
        conn.execute("DELETE FROM template_exercises WHERE template_id = ?", (t.id,))
        conn.execute(
            """INSERT OR REPLACE INTO workout_templates
               (id, owner_id, name, is_preset, created_at, updated_at,
                synced_at, deleted, deleted_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                t.id,
                t.owner_id,
                t.name,
                1 if t.is_preset else 0,
                format_datetime(t.created_at),
                format_datetime(t.updated_at),
                format_datetime(t.synced_at),
                1 if t.deleted else 0,
                format_datetime(t.deleted_at),
            ),
        )
        for e in t.exercises:
            conn.execute(
                """INSERT INTO template_exercises (id, template_id, exercise_id, display_order)
                   VALUES (?, ?, ?, ?)""",
                (e.id, t.id, e.exercise_id, e.display_order),
            )

    def _write_exercise(self, conn: sqlite3.Connection, e: CustomExercise):
        if not e.deleted:
            existing = self._find_name_conflict(conn, e.name, e.owner_id, e.id)
            if existing is not None:
                raise NameConflictError(e.name, existing_id=existing["id"])
        conn.execute(
            """INSERT OR REPLACE INTO custom_exercises
               (id, owner_id, name, category, equipment, description, image_url,
                created_at, updated_at, synced_at, deleted, deleted_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                e.id,
                e.owner_id,
                e.name.strip(),
                e.category,
                e.equipment,
                e.description,
                e.image_url,
                format_datetime(e.created_at),
                format_datetime(e.updated_at),
                format_datetime(e.synced_at),
                1 if e.deleted else 0,
                format_datetime(e.deleted_at),
            ),
        )

    def _write_personal_record(self, conn: sqlite3.Connection, pr: PersonalRecord):
        # One active row per exercise: an active PR arriving under another id
        # replaces it. Tombstones stay until their deletion is acknowledged.
        if not pr.deleted:
            conn.execute(
                "DELETE FROM personal_records WHERE exercise_id = ? AND id != ? AND deleted = 0",
                (pr.exercise_id, pr.id),
            )
        conn.execute(
            """INSERT OR REPLACE INTO personal_records
               (id, owner_id, exercise_id, exercise_name, weight, reps, achieved_at,
                session_id, synced_at, deleted, deleted_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                pr.id,
                pr.owner_id,
                pr.exercise_id,
                pr.exercise_name,
                pr.weight,
                pr.reps,
                format_datetime(pr.achieved_at),
                pr.session_id,
                format_datetime(pr.synced_at),
                1 if pr.deleted else 0,
                format_datetime(pr.deleted_at),
            ),
        )

    def _write_measurement(self, conn: sqlite3.Connection, m: BodyMeasurement):
        conn.execute(
            """INSERT OR REPLACE INTO body_measurements
               (id, owner_id, weight, chest, waist, hips, left_arm, right_arm,
                left_thigh, right_thigh, notes, measured_at, synced_at, deleted, deleted_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                m.id,
                m.owner_id,
                m.weight,
                m.chest,
                m.waist,
                m.hips,
                m.left_arm,
                m.right_arm,
                m.left_thigh,
                m.right_thigh,
                m.notes,
                format_datetime(m.measured_at),
                format_datetime(m.synced_at),
                1 if m.deleted else 0,
                format_datetime(m.deleted_at),
            ),
        )

    # === Deletion ===

    def soft_delete(self, kind: RecordKind, record_id: str) -> bool:
        """Tombstone a record.

        Measurements are removed right away and their id is queued in the
        pending-deletion list until the remote store acknowledges it.
        Returns False if there was no active record to delete.
        """
        kind = RecordKind(kind)
        table = self._table(kind)
        now = self._now()
        with self._connect() as conn:
            if kind in PENDING_DELETION_KINDS:
                cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
                if cursor.rowcount == 0:
                    return False
                conn.execute(
                    """INSERT OR REPLACE INTO pending_deletions (table_name, record_id, deleted_at)
                       VALUES (?, ?, ?)""",
                    (table, record_id, now),
                )
                return True

            cursor = conn.execute(
                f"""UPDATE {table} SET deleted = 1, deleted_at = ?, synced_at = NULL
                    WHERE id = ? AND deleted = 0""",
                (now, record_id),
            )
            return cursor.rowcount > 0

    def hard_purge(self, kind: RecordKind, record_id: str) -> bool:
        """Remove a record and every row it owns."""
        kind = RecordKind(kind)
        table = self._table(kind)
        with self._connect() as conn:
            if kind == RecordKind.WORKOUT_SESSION:
                conn.execute(
                    "DELETE FROM sets WHERE exercise_log_id IN "
                    "(SELECT id FROM exercise_logs WHERE session_id = ?)",
                    (record_id,),
                )
                conn.execute("DELETE FROM exercise_logs WHERE session_id = ?", (record_id,))
            elif kind == RecordKind.WORKOUT_TEMPLATE:
                conn.execute("DELETE FROM template_exercises WHERE template_id = ?", (record_id,))
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def revive(self, kind: RecordKind, record_id: str) -> bool:
        table = self._table(kind)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET deleted = 0, deleted_at = NULL WHERE id = ?",
                (record_id,),
            )
            return cursor.rowcount > 0

    def mark_synced(self, kind: RecordKind, record_id: str, synced_at: datetime) -> bool:
        table = self._table(kind)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET synced_at = ? WHERE id = ?",
                (format_datetime(synced_at), record_id),
            )
            return cursor.rowcount > 0

    # === Pending Deletions ===

    def list_pending_deletions(self, kind: RecordKind) -> List[Tuple[str, datetime]]:
        table = self._table(kind)
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT record_id, deleted_at FROM pending_deletions "
                "WHERE table_name = ? ORDER BY deleted_at",
                (table,),
            ).fetchall()
        return [(row["record_id"], parse_datetime(row["deleted_at"])) for row in rows]

    def clear_pending_deletion(self, kind: RecordKind, record_id: str) -> bool:
        table = self._table(kind)
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM pending_deletions WHERE table_name = ? AND record_id = ?",
                (table, record_id),
            )
            return cursor.rowcount > 0

    def remove_from_sync(self, kind: RecordKind, record_id: str) -> bool:
        """Delete a record locally without queueing its deletion for upload."""
        table = self._table(kind)
        with self._connect() as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    # === Sync Status ===

    def pending_upload_count(self) -> int:
        """Dirty records + tombstones + pending deletions across all collections."""
        total = 0
        with self._connect() as conn:
            for kind in RecordKind:
                table = self._table(kind)
                total += conn.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE deleted = 0 AND synced_at IS NULL"
                ).fetchone()[0]
                if kind in TOMBSTONE_KINDS:
                    total += conn.execute(
                        f"SELECT COUNT(*) FROM {table} WHERE deleted = 1 AND deleted_at IS NOT NULL"
                    ).fetchone()[0]
            total += conn.execute("SELECT COUNT(*) FROM pending_deletions").fetchone()[0]
        return total

    def get_meta(self, key: str) -> Optional[str]:
        """Get a sync metadata value."""
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        """Set a sync metadata value."""
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, self._now()),
            )
