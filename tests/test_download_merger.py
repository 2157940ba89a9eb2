"""Tests for the download merger.

Remote state is seeded straight into an InMemoryRemoteStore as documents,
the way another device would have left it.
"""

import sqlite3
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from factories import ACCOUNT, T0, make_exercise, make_measurement, make_session, make_template

from fittrack.errors import OfflineError
from fittrack.storage import to_document
from fittrack.sync import DownloadMerger, MergeReport
from fittrack.types import PersonalRecord, RecordKind

SESSION = RecordKind.WORKOUT_SESSION
TEMPLATE = RecordKind.WORKOUT_TEMPLATE
EXERCISE = RecordKind.CUSTOM_EXERCISE
PR = RecordKind.PERSONAL_RECORD
MEASUREMENT = RecordKind.BODY_MEASUREMENT


@pytest.fixture
def merger(store, remote):
    return DownloadMerger(store, remote)


def seed(remote, kind, record):
    remote.put_document(ACCOUNT, kind, to_document(kind, replace(record, owner_id=ACCOUNT)))


class TestInserts:
    """Records absent locally are added as already synced."""

    @pytest.mark.asyncio
    async def test_new_records_added(self, store, remote, merger):
        session = make_session()
        seed(remote, SESSION, session)
        seed(remote, MEASUREMENT, make_measurement())
        seed(remote, EXERCISE, make_exercise("Hip Thrust"))

        report = await merger.download_and_merge(ACCOUNT)

        assert report.downloaded_count == 3
        assert report.added[SESSION] == 1
        stored = store.get(SESSION, session.id)
        assert stored.synced_at is not None
        assert stored.owner_id == ACCOUNT
        assert len(stored.exercise_logs[0].sets) == 1
        assert store.pending_upload_count() == 0

    @pytest.mark.asyncio
    async def test_empty_remote(self, store, merger):
        report = await merger.download_and_merge(ACCOUNT)

        assert report.downloaded_count == 0
        assert report.errors == []

    @pytest.mark.asyncio
    async def test_other_accounts_not_visible(self, store, remote, merger):
        remote.put_document("acct-2", SESSION, to_document(SESSION, make_session()))

        await merger.download_and_merge(ACCOUNT)

        assert store.list_active(SESSION) == []


class TestDeletions:
    """Local deletes win; remote deletes purge."""

    @pytest.mark.asyncio
    async def test_local_tombstone_wins(self, store, remote, merger):
        session = make_session()
        store.save(SESSION, session)
        store.soft_delete(SESSION, session.id)
        seed(remote, SESSION, session)

        report = await merger.download_and_merge(ACCOUNT)

        assert store.list_active(SESSION) == []
        assert store.get(SESSION, session.id).deleted
        assert report.skipped == 1

    @pytest.mark.asyncio
    async def test_remote_tombstone_purges(self, store, remote, merger):
        session = make_session()
        store.save(SESSION, session)
        seed(remote, SESSION, replace(session, deleted=True, deleted_at=T0))

        report = await merger.download_and_merge(ACCOUNT)

        assert store.get(SESSION, session.id) is None
        assert report.purged == 1
        assert report.downloaded_count == 0

    @pytest.mark.asyncio
    async def test_remote_tombstone_for_unknown_record(self, store, remote, merger):
        seed(remote, TEMPLATE, replace(make_template(), deleted=True, deleted_at=T0))

        report = await merger.download_and_merge(ACCOUNT)

        assert store.list_active(TEMPLATE) == []
        assert store.list_tombstones(TEMPLATE) == []
        assert report.skipped == 1

    @pytest.mark.asyncio
    async def test_measurement_pending_deletion_not_undone(self, store, remote, merger):
        m = make_measurement()
        store.save(MEASUREMENT, m)
        store.soft_delete(MEASUREMENT, m.id)
        seed(remote, MEASUREMENT, m)

        await merger.download_and_merge(ACCOUNT)

        assert store.get(MEASUREMENT, m.id) is None
        assert [record_id for record_id, _ in store.list_pending_deletions(MEASUREMENT)] == [m.id]

    @pytest.mark.asyncio
    async def test_remote_measurement_deletion(self, store, remote, merger):
        m = make_measurement()
        store.upsert(MEASUREMENT, replace(m, synced_at=T0))
        seed(remote, MEASUREMENT, replace(m, deleted=True, deleted_at=T0))

        await merger.download_and_merge(ACCOUNT)

        assert store.get(MEASUREMENT, m.id) is None
        # Already deleted remotely, nothing to upload
        assert store.list_pending_deletions(MEASUREMENT) == []


class TestTemplates:
    """Templates merge last-write-wins on updated_at."""

    @pytest.mark.asyncio
    async def test_newer_local_kept(self, store, remote, merger):
        local = make_template(name="Local", updated_at=T0 + timedelta(hours=2), template_id="t-1")
        store.upsert(TEMPLATE, local)
        seed(remote, TEMPLATE, make_template(name="Remote", updated_at=T0, template_id="t-1"))

        report = await merger.download_and_merge(ACCOUNT)

        assert store.get(TEMPLATE, "t-1").name == "Local"
        assert report.kept_local == 1
        assert report.conflicts_resolved == 0

    @pytest.mark.asyncio
    async def test_newer_remote_wins(self, store, remote, merger):
        store.upsert(TEMPLATE, make_template(name="Local", updated_at=T0, template_id="t-1"))
        remote_template = make_template(
            name="Remote",
            updated_at=T0 + timedelta(hours=2),
            template_id="t-1",
            exercise_ids=("ex-deadlift",),
        )
        seed(remote, TEMPLATE, remote_template)

        report = await merger.download_and_merge(ACCOUNT)

        stored = store.get(TEMPLATE, "t-1")
        assert stored.name == "Remote"
        assert [e.exercise_id for e in stored.exercises] == ["ex-deadlift"]
        assert report.conflicts_resolved == 1


class TestCustomExercises:
    """Revival and name disambiguation."""

    @pytest.mark.asyncio
    async def test_zombie_revived(self, store, remote, merger):
        exercise = make_exercise("Squat", exercise_id="ex-a")
        store.save(EXERCISE, exercise)
        store.soft_delete(EXERCISE, "ex-a")
        seed(remote, EXERCISE, exercise)

        report = await merger.download_and_merge(ACCOUNT)

        revived = store.get(EXERCISE, "ex-a")
        assert not revived.deleted
        assert revived.name == "Squat"
        assert revived.synced_at is not None
        assert report.conflicts_resolved == 1

    @pytest.mark.asyncio
    async def test_zombie_revived_with_new_name(self, store, remote, merger):
        zombie = make_exercise("Squat", exercise_id="ex-a")
        store.save(EXERCISE, zombie)
        store.soft_delete(EXERCISE, "ex-a")
        store.save(EXERCISE, make_exercise("squat", exercise_id="ex-b"))
        seed(remote, EXERCISE, zombie)

        await merger.download_and_merge(ACCOUNT)

        revived = store.get(EXERCISE, "ex-a")
        assert not revived.deleted
        assert revived.name == "Squat (Revived)"
        assert revived.synced_at is None
        names = sorted(e.name.lower() for e in store.list_active(EXERCISE))
        assert names == ["squat", "squat (revived)"]

    @pytest.mark.asyncio
    async def test_import_renamed_on_conflict(self, store, remote, merger):
        store.save(EXERCISE, make_exercise("Squat", exercise_id="ex-local"))
        seed(remote, EXERCISE, make_exercise("SQUAT", exercise_id="ex-remote"))

        report = await merger.download_and_merge(ACCOUNT)

        imported = store.get(EXERCISE, "ex-remote")
        assert imported.name == "SQUAT (Imported)"
        assert imported.synced_at is None
        assert report.added[EXERCISE] == 1
        assert report.errors == []

    @pytest.mark.asyncio
    async def test_two_imports_get_distinct_names(self, store, remote, merger):
        store.save(EXERCISE, make_exercise("Squat", exercise_id="ex-local"))
        seed(remote, EXERCISE, make_exercise("Squat", exercise_id="ex-r1"))
        seed(remote, EXERCISE, make_exercise("Squat", exercise_id="ex-r2"))

        await merger.download_and_merge(ACCOUNT)

        names = sorted(e.name for e in store.list_active(EXERCISE))
        assert names == ["Squat", "Squat (Imported 2)", "Squat (Imported)"]

    @pytest.mark.asyncio
    async def test_remote_delete_frees_name_first(self, store, remote, merger):
        old = make_exercise("Squat", exercise_id="ex-old")
        store.upsert(EXERCISE, replace(old, synced_at=T0))
        seed(remote, EXERCISE, make_exercise("Squat", exercise_id="ex-new"))
        seed(remote, EXERCISE, replace(old, deleted=True, deleted_at=T0))

        await merger.download_and_merge(ACCOUNT)

        assert store.get(EXERCISE, "ex-old") is None
        assert store.get(EXERCISE, "ex-new").name == "Squat"


class TestPersonalRecords:
    @pytest.mark.asyncio
    async def test_remote_pr_replaces_local_for_same_exercise(self, store, remote, merger):
        store.save(
            PR,
            PersonalRecord(id="pr-local", exercise_id="ex-bench", weight=80.0, reps=5, achieved_at=T0),
        )
        seed(
            remote,
            PR,
            PersonalRecord(
                id="pr-remote",
                exercise_id="ex-bench",
                weight=85.0,
                reps=3,
                achieved_at=T0 + timedelta(days=1),
            ),
        )

        report = await merger.download_and_merge(ACCOUNT)

        current = store.get_personal_record("ex-bench")
        assert current.id == "pr-remote"
        assert current.weight == 85.0
        assert store.get(PR, "pr-local") is None
        assert report.conflicts_resolved == 1

    def test_local_tombstone_survives_remote_pr_for_same_exercise(self, store, merger):
        """An unsent PR deletion is not overwritten by another remote PR for the exercise."""
        store.save(PR, PersonalRecord(id="pr-a", exercise_id="ex-x", weight=80.0, reps=5, achieved_at=T0))
        store.soft_delete(PR, "pr-a")
        remote_a = PersonalRecord(id="pr-a", exercise_id="ex-x", weight=80.0, reps=5, achieved_at=T0)
        remote_b = replace(remote_a, id="pr-b", weight=90.0)

        report = merger.merge_records(PR, [remote_a, remote_b], MergeReport())

        assert store.get(PR, "pr-a").deleted
        assert store.get(PR, "pr-b") is None
        assert store.get_personal_record("ex-x") is None
        assert [t.id for t in store.list_tombstones(PR)] == ["pr-a"]
        assert report.skipped == 2

    def test_remote_deletion_under_other_id_leaves_local_pr(self, store, merger):
        store.save(PR, PersonalRecord(id="pr-b", exercise_id="ex-x", weight=90.0, reps=3, achieved_at=T0))
        gone = PersonalRecord(
            id="pr-a", exercise_id="ex-x", weight=80.0, reps=5, achieved_at=T0, deleted=True, deleted_at=T0
        )

        report = merger.merge_records(PR, [gone], MergeReport())

        assert store.get_personal_record("ex-x").id == "pr-b"
        assert report.purged == 0
        assert report.skipped == 1

    def test_remote_deletion_purges_matching_pr(self, store, merger):
        store.upsert(PR, PersonalRecord(id="pr-a", exercise_id="ex-x", weight=80.0, reps=5, achieved_at=T0))
        gone = PersonalRecord(
            id="pr-a", exercise_id="ex-x", weight=80.0, reps=5, achieved_at=T0, deleted=True, deleted_at=T0
        )

        report = merger.merge_records(PR, [gone], MergeReport())

        assert store.get(PR, "pr-a") is None
        assert report.purged == 1


class TestMergeRecords:
    """Per-collection merge behaviour."""

    def test_duplicate_ids_last_wins(self, store, merger):
        first = make_template(name="First", template_id="t-1")
        second = replace(first, name="Second")

        report = merger.merge_records(TEMPLATE, [first, second], MergeReport())

        assert report.added[TEMPLATE] == 1
        assert [t.name for t in store.list_active(TEMPLATE)] == ["Second"]

    def test_session_overwrite_replaces_children(self, store, merger):
        local = make_session(sets=[(60.0, 10), (70.0, 8)])
        store.save(SESSION, local)
        remote = replace(local, exercise_logs=make_session(sets=[(90.0, 2)]).exercise_logs)

        report = merger.merge_records(SESSION, [remote], MergeReport())

        stored = store.get(SESSION, local.id)
        assert [(s.weight, s.reps) for s in stored.exercise_logs[0].sets] == [(90.0, 2)]
        assert report.conflicts_resolved == 1

    def test_write_failure_isolated(self, store, merger, monkeypatch):
        good = make_session()
        bad = make_session()
        upsert = store.upsert

        def flaky_upsert(kind, record):
            if record.id == bad.id:
                raise sqlite3.OperationalError("disk I/O error")
            return upsert(kind, record)

        monkeypatch.setattr(store, "upsert", flaky_upsert)

        report = merger.merge_records(SESSION, [bad, good], MergeReport())

        assert len(report.errors) == 1
        assert bad.id in report.errors[0]
        assert [s.id for s in store.list_active(SESSION)] == [good.id]


class TestFetchFailure:
    """Fetching is all-or-nothing."""

    @pytest.mark.asyncio
    async def test_nothing_written_when_a_collection_fails(self, store, remote, merger):
        seed(remote, EXERCISE, make_exercise("Hip Thrust"))
        list_since = remote.list_since

        async def failing_list(account_id, kind, since=None):
            if kind == PR:
                raise OfflineError("connection dropped")
            return await list_since(account_id, kind, since)

        remote.list_since = AsyncMock(side_effect=failing_list)

        with pytest.raises(OfflineError):
            await merger.download_and_merge(ACCOUNT)

        assert store.list_active(EXERCISE) == []
