"""Tests for the SQLite local store.

Tests:
- Dirty tracking through save / mark_synced
- Wholesale replacement of sessions and their owned rows
- Tombstones, hard purge cascade, revive
- Pending deletions for body measurements
- Case-insensitive exercise name uniqueness
- One personal record per exercise
- Sync metadata and pending upload counts
- Legacy schema migration
"""

import sqlite3
from datetime import timedelta

import pytest
from factories import T0, make_exercise, make_measurement, make_session, make_template

from fittrack.errors import NameConflictError
from fittrack.storage import SQLiteLocalStore
from fittrack.storage.schema import SCHEMA_VERSION, validate_table_name
from fittrack.types import PersonalRecord, RecordKind, WorkoutSet, new_id

SESSION = RecordKind.WORKOUT_SESSION
TEMPLATE = RecordKind.WORKOUT_TEMPLATE
EXERCISE = RecordKind.CUSTOM_EXERCISE
PR = RecordKind.PERSONAL_RECORD
MEASUREMENT = RecordKind.BODY_MEASUREMENT


def _pr(exercise_id="ex-bench", weight=100.0, reps=5, pr_id=None):
    return PersonalRecord(
        id=pr_id or new_id(),
        exercise_id=exercise_id,
        weight=weight,
        reps=reps,
        achieved_at=T0,
    )


class TestDirtyTracking:
    """save() marks records dirty, mark_synced() clears it."""

    def test_save_marks_dirty(self, store):
        session = make_session()
        session.synced_at = T0
        store.save(SESSION, session)

        assert session.synced_at is None
        assert [s.id for s in store.list_unsynced(SESSION)] == [session.id]

    def test_mark_synced_clears_dirty(self, store):
        session = make_session()
        store.save(SESSION, session)

        assert store.mark_synced(SESSION, session.id, T0)

        assert store.list_unsynced(SESSION) == []
        assert store.get(SESSION, session.id).synced_at == T0

    def test_upsert_keeps_sync_state_as_given(self, store):
        exercise = make_exercise(synced_at=T0)
        store.upsert(EXERCISE, exercise)

        assert store.get(EXERCISE, exercise.id).synced_at == T0
        assert store.list_unsynced(EXERCISE) == []

    def test_save_stamps_template_timestamps(self, store):
        template = make_template()
        template.created_at = None
        store.save(TEMPLATE, template)

        stored = store.get(TEMPLATE, template.id)
        assert stored.created_at is not None
        assert template.updated_at != T0
        assert stored.updated_at == template.updated_at

    def test_get_missing_returns_none(self, store):
        assert store.get(SESSION, "nope") is None


class TestSessionStorage:
    """Sessions own their exercise logs and sets."""

    def test_round_trip_preserves_children(self, store):
        session = make_session(sets=[(60.0, 10), (70.0, 8), (80.0, 5)])
        session.exercise_logs[0].sets[1].rpe = 8.5
        store.save(SESSION, session)

        stored = store.get(SESSION, session.id)
        log = stored.exercise_logs[0]
        assert log.exercise_name == "Bench Press"
        assert [(s.weight, s.reps) for s in log.sets] == [(60.0, 10), (70.0, 8), (80.0, 5)]
        assert log.sets[1].rpe == 8.5
        assert stored.started_at == T0

    def test_write_replaces_children_wholesale(self, store):
        session = make_session(sets=[(60.0, 10), (70.0, 8)])
        store.save(SESSION, session)

        session.exercise_logs[0].sets = [
            WorkoutSet(id=new_id(), set_number=1, weight=90.0, reps=3, logged_at=T0)
        ]
        store.save(SESSION, session)

        stored = store.get(SESSION, session.id)
        assert [(s.weight, s.reps) for s in stored.exercise_logs[0].sets] == [(90.0, 3)]

    def test_list_active_newest_first(self, store):
        older = make_session(started_at=T0)
        newer = make_session(started_at=T0 + timedelta(days=1))
        store.save(SESSION, older)
        store.save(SESSION, newer)

        assert [s.id for s in store.list_active(SESSION)] == [newer.id, older.id]


class TestTombstones:
    """Soft delete, purge and revive."""

    def test_soft_delete_hides_and_dirties(self, store):
        session = make_session()
        store.save(SESSION, session)
        store.mark_synced(SESSION, session.id, T0)

        assert store.soft_delete(SESSION, session.id)

        assert store.list_active(SESSION) == []
        tombstone = store.get(SESSION, session.id)
        assert tombstone.deleted
        assert tombstone.deleted_at is not None
        assert tombstone.synced_at is None
        assert [t.id for t in store.list_tombstones(SESSION)] == [session.id]

    def test_soft_delete_twice_is_noop(self, store):
        session = make_session()
        store.save(SESSION, session)

        assert store.soft_delete(SESSION, session.id)
        assert not store.soft_delete(SESSION, session.id)

    def test_tombstone_survives_reopen(self, temp_db):
        """A tombstone whose deletion never reached the remote is still there after restart."""
        first = SQLiteLocalStore(temp_db)
        session = make_session()
        first.save(SESSION, session)
        first.soft_delete(SESSION, session.id)
        first.close()

        reopened = SQLiteLocalStore(temp_db)
        assert reopened.list_active(SESSION) == []
        assert [t.id for t in reopened.list_tombstones(SESSION)] == [session.id]

    def test_hard_purge_cascades_to_children(self, store, temp_db):
        session = make_session(sets=[(60.0, 10), (70.0, 8)])
        store.save(SESSION, session)

        assert store.hard_purge(SESSION, session.id)

        assert store.get(SESSION, session.id) is None
        conn = sqlite3.connect(temp_db)
        try:
            assert conn.execute("SELECT COUNT(*) FROM exercise_logs").fetchone()[0] == 0
            assert conn.execute("SELECT COUNT(*) FROM sets").fetchone()[0] == 0
        finally:
            conn.close()

    def test_hard_purge_template_removes_exercise_refs(self, store, temp_db):
        template = make_template()
        store.save(TEMPLATE, template)

        store.hard_purge(TEMPLATE, template.id)

        conn = sqlite3.connect(temp_db)
        try:
            assert conn.execute("SELECT COUNT(*) FROM template_exercises").fetchone()[0] == 0
        finally:
            conn.close()

    def test_revive_clears_tombstone(self, store):
        exercise = make_exercise()
        store.save(EXERCISE, exercise)
        store.soft_delete(EXERCISE, exercise.id)

        assert store.revive(EXERCISE, exercise.id)

        revived = store.get(EXERCISE, exercise.id)
        assert not revived.deleted
        assert revived.deleted_at is None


class TestPendingDeletions:
    """Body measurements are removed at once and queued for remote deletion."""

    def test_soft_delete_measurement_queues_id(self, store):
        m = make_measurement()
        store.save(MEASUREMENT, m)

        assert store.soft_delete(MEASUREMENT, m.id)

        assert store.get(MEASUREMENT, m.id) is None
        assert store.list_tombstones(MEASUREMENT) == []
        pending = store.list_pending_deletions(MEASUREMENT)
        assert [record_id for record_id, _ in pending] == [m.id]
        assert pending[0][1] is not None

    def test_soft_delete_unknown_measurement(self, store):
        assert not store.soft_delete(MEASUREMENT, "missing")
        assert store.list_pending_deletions(MEASUREMENT) == []

    def test_clear_pending_deletion(self, store):
        m = make_measurement()
        store.save(MEASUREMENT, m)
        store.soft_delete(MEASUREMENT, m.id)

        assert store.clear_pending_deletion(MEASUREMENT, m.id)
        assert store.list_pending_deletions(MEASUREMENT) == []

    def test_remove_from_sync_does_not_queue(self, store):
        m = make_measurement()
        store.save(MEASUREMENT, m)

        assert store.remove_from_sync(MEASUREMENT, m.id)

        assert store.get(MEASUREMENT, m.id) is None
        assert store.list_pending_deletions(MEASUREMENT) == []


class TestExerciseNames:
    """Active custom exercise names are unique per owner, case-insensitively."""

    def test_duplicate_name_rejected(self, store):
        store.save(EXERCISE, make_exercise("Squat"))

        with pytest.raises(NameConflictError) as exc_info:
            store.save(EXERCISE, make_exercise("  sQuAt "))
        assert '"sQuAt"' in str(exc_info.value)
        assert exc_info.value.existing_id is not None

    def test_name_stored_trimmed(self, store):
        exercise = make_exercise("  Front Squat  ")
        store.save(EXERCISE, exercise)

        assert store.get(EXERCISE, exercise.id).name == "Front Squat"

    def test_resave_same_record_allowed(self, store):
        exercise = make_exercise("Squat")
        store.save(EXERCISE, exercise)
        exercise.description = "Back squat"

        store.save(EXERCISE, exercise)

        assert store.get(EXERCISE, exercise.id).description == "Back squat"

    def test_deleted_name_is_free(self, store):
        old = make_exercise("Squat")
        store.save(EXERCISE, old)
        store.soft_delete(EXERCISE, old.id)

        new = make_exercise("Squat")
        store.save(EXERCISE, new)

        assert [e.id for e in store.list_active(EXERCISE)] == [new.id]

    def test_other_owner_may_reuse_name(self, store):
        store.save(EXERCISE, make_exercise("Squat", owner_id="acct-a"))
        store.save(EXERCISE, make_exercise("Squat", owner_id="acct-b"))

        assert len(store.list_active(EXERCISE)) == 2

    def test_unowned_exercise_conflicts_with_owned(self, store):
        store.save(EXERCISE, make_exercise("Squat"))

        with pytest.raises(NameConflictError):
            store.upsert(EXERCISE, make_exercise("SQUAT", owner_id="acct-a"))

    def test_find_exercise_by_name(self, store):
        exercise = make_exercise("Deadlift")
        store.save(EXERCISE, exercise)

        assert store.find_exercise_by_name("deadlift").id == exercise.id
        assert store.find_exercise_by_name("deadlift", exclude_id=exercise.id) is None


class TestPersonalRecords:
    """At most one personal record row per exercise."""

    def test_new_id_replaces_existing_row(self, store):
        store.upsert(PR, _pr(pr_id="pr-old", weight=100.0))
        store.upsert(PR, _pr(pr_id="pr-new", weight=105.0))

        current = store.get_personal_record("ex-bench")
        assert current.id == "pr-new"
        assert current.weight == 105.0
        assert store.get(PR, "pr-old") is None

    def test_get_personal_record_ignores_tombstones(self, store):
        record = _pr()
        store.save(PR, record)
        store.soft_delete(PR, record.id)

        assert store.get_personal_record("ex-bench") is None

    def test_tombstone_kept_when_new_pr_written(self, store):
        """A PR deletion waiting for upload is not replaced by a new PR for the exercise."""
        store.save(PR, _pr(pr_id="pr-old", weight=100.0))
        store.soft_delete(PR, "pr-old")

        store.upsert(PR, _pr(pr_id="pr-new", weight=105.0))

        assert store.get_personal_record("ex-bench").id == "pr-new"
        assert [t.id for t in store.list_tombstones(PR)] == ["pr-old"]

    def test_tombstone_write_leaves_active_pr(self, store):
        store.upsert(PR, _pr(pr_id="pr-new", weight=105.0))
        stale = _pr(pr_id="pr-old")
        stale.deleted = True
        stale.deleted_at = T0

        store.upsert(PR, stale)

        assert store.get_personal_record("ex-bench").id == "pr-new"
        assert store.get(PR, "pr-old").deleted

    def test_two_active_prs_for_one_exercise_rejected(self, temp_db, store):
        store.upsert(PR, _pr(pr_id="pr-a"))
        conn = sqlite3.connect(temp_db)
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute(
                    "INSERT INTO personal_records (id, exercise_id, weight, reps, achieved_at, deleted)"
                    " VALUES ('pr-b', 'ex-bench', 1.0, 1, '2025-01-06', 0)"
                )
        finally:
            conn.close()


class TestSyncMeta:
    """Metadata values and the pending upload counter."""

    def test_meta_round_trip(self, store):
        assert store.get_meta("last_synced_at:acct-1") is None

        store.set_meta("last_synced_at:acct-1", "2026-01-05T09:00:00+00:00")
        store.set_meta("last_synced_at:acct-1", "2026-01-06T09:00:00+00:00")

        assert store.get_meta("last_synced_at:acct-1") == "2026-01-06T09:00:00+00:00"

    def test_pending_upload_count(self, store):
        session = make_session()
        exercise = make_exercise()
        m = make_measurement()
        store.save(SESSION, session)
        store.save(EXERCISE, exercise)
        store.save(MEASUREMENT, m)
        assert store.pending_upload_count() == 3

        store.mark_synced(SESSION, session.id, T0)
        assert store.pending_upload_count() == 2

        # A pending deletion replaces the dirty measurement in the count
        store.soft_delete(MEASUREMENT, m.id)
        assert store.pending_upload_count() == 2

        # A tombstone counts until its deletion is acknowledged
        store.soft_delete(SESSION, session.id)
        assert store.pending_upload_count() == 3


class TestSchema:
    """Schema setup and migration."""

    def test_version_recorded(self, store, temp_db):
        conn = sqlite3.connect(temp_db)
        try:
            assert conn.execute("SELECT version FROM schema_version").fetchone()[0] == SCHEMA_VERSION
        finally:
            conn.close()

    def test_validate_table_name(self):
        assert validate_table_name("workout_sessions") == "workout_sessions"
        with pytest.raises(ValueError):
            validate_table_name("sessions; DROP TABLE sets")

    def test_legacy_database_gains_sync_columns(self, temp_db):
        conn = sqlite3.connect(temp_db)
        conn.executescript(
            """
            CREATE TABLE workout_sessions (
                id TEXT PRIMARY KEY,
                owner_id TEXT,
                template_id TEXT,
                template_name TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                duration_seconds INTEGER,
                total_volume REAL
            );
            CREATE TABLE custom_exercises (
                id TEXT PRIMARY KEY,
                owner_id TEXT,
                name TEXT NOT NULL,
                category TEXT,
                equipment TEXT,
                description TEXT,
                created_at TEXT,
                updated_at TEXT
            );
            INSERT INTO custom_exercises (id, name, category, equipment)
                VALUES ('ex-old', 'Curl', 'biceps', 'dumbbell');
            """
        )
        conn.commit()
        conn.close()

        store = SQLiteLocalStore(temp_db)

        legacy = store.get(EXERCISE, "ex-old")
        assert legacy.name == "Curl"
        assert legacy.image_url is None
        assert not legacy.deleted
        # Pre-sync rows have never been uploaded
        assert [e.id for e in store.list_unsynced(EXERCISE)] == ["ex-old"]

        session = make_session()
        store.save(SESSION, session)
        assert store.get(SESSION, session.id) is not None

    def test_unique_exercise_constraint_migrated(self, temp_db):
        """Older personal_records tables are rebuilt so tombstones can sit beside an active PR."""
        conn = sqlite3.connect(temp_db)
        conn.executescript(
            """
            CREATE TABLE workout_sessions (id TEXT PRIMARY KEY, started_at TEXT NOT NULL);
            CREATE TABLE personal_records (
                id TEXT PRIMARY KEY,
                owner_id TEXT,
                exercise_id TEXT NOT NULL UNIQUE,
                exercise_name TEXT,
                weight REAL NOT NULL,
                reps INTEGER NOT NULL,
                achieved_at TEXT NOT NULL,
                session_id TEXT
            );
            INSERT INTO personal_records (id, exercise_id, weight, reps, achieved_at)
                VALUES ('pr-old', 'ex-bench', 100.0, 5, '2025-01-06T09:00:00+00:00');
            """
        )
        conn.commit()
        conn.close()

        store = SQLiteLocalStore(temp_db)

        migrated = store.get_personal_record("ex-bench")
        assert migrated.id == "pr-old"
        assert migrated.synced_at is None

        store.soft_delete(PR, "pr-old")
        store.upsert(PR, _pr(pr_id="pr-new", weight=105.0))
        assert store.get_personal_record("ex-bench").id == "pr-new"
        assert store.get(PR, "pr-old").deleted
        store.close()
