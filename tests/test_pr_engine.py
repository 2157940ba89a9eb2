"""Tests for personal record derivation."""

import random
from dataclasses import replace
from datetime import timedelta

from factories import T0, make_session

from fittrack.sync import PersonalRecordEngine, personal_record_id
from fittrack.types import PersonalRecord


def _bests(sessions):
    return {
        exercise_id: (pr.weight, pr.reps)
        for exercise_id, pr in PersonalRecordEngine().recompute(sessions).items()
    }


class TestSelectionRule:
    """Heavier wins; at equal weight more reps win; exact ties keep the earlier set."""

    def test_same_weight_more_reps_wins(self):
        session = make_session(sets=[(80.0, 5), (80.0, 8), (75.0, 10)])

        assert _bests([session]) == {"ex-bench": (80.0, 8)}

    def test_heavier_beats_more_reps(self):
        session = make_session(sets=[(60.0, 20), (100.0, 1)])

        assert _bests([session]) == {"ex-bench": (100.0, 1)}

    def test_exact_tie_keeps_earlier(self):
        early = make_session(sets=[(80.0, 5)], started_at=T0)
        late = make_session(sets=[(80.0, 5)], started_at=T0 + timedelta(days=7))

        pr = PersonalRecordEngine().recompute([late, early])["ex-bench"]

        assert pr.session_id == early.id
        assert pr.achieved_at == early.exercise_logs[0].sets[0].logged_at

    def test_zero_rep_sets_ignored(self):
        session = make_session(sets=[(140.0, 0), (100.0, 3)])

        assert _bests([session]) == {"ex-bench": (100.0, 3)}

    def test_deleted_sessions_ignored(self):
        live = make_session(sets=[(80.0, 5)])
        gone = replace(make_session(sets=[(120.0, 5)]), deleted=True)

        assert _bests([live, gone]) == {"ex-bench": (80.0, 5)}

    def test_one_record_per_exercise(self):
        bench = make_session(sets=[(80.0, 5)])
        squat = make_session(sets=[(120.0, 5)], exercise_id="ex-squat", exercise_name="Squat")

        prs = PersonalRecordEngine().recompute([bench, squat])

        assert set(prs) == {"ex-bench", "ex-squat"}
        assert prs["ex-squat"].exercise_name == "Squat"


class TestRecompute:
    """Full recompute is deterministic."""

    def _history(self):
        return [
            make_session(sets=[(60.0, 10), (70.0, 8)], started_at=T0),
            make_session(sets=[(80.0, 5), (80.0, 8)], started_at=T0 + timedelta(days=2)),
            make_session(sets=[(75.0, 10), (80.0, 8)], started_at=T0 + timedelta(days=4)),
            make_session(
                sets=[(100.0, 5)],
                started_at=T0 + timedelta(days=4),
                exercise_id="ex-squat",
                exercise_name="Squat",
            ),
        ]

    def test_idempotent(self):
        sessions = self._history()
        engine = PersonalRecordEngine()

        assert engine.recompute(sessions) == engine.recompute(sessions)

    def test_order_independent(self):
        sessions = self._history()
        expected = PersonalRecordEngine().recompute(sessions)

        shuffled = list(sessions)
        random.Random(7).shuffle(shuffled)

        assert PersonalRecordEngine().recompute(shuffled) == expected
        assert PersonalRecordEngine().recompute(list(reversed(sessions))) == expected

    def test_ids_are_deterministic(self):
        prs = PersonalRecordEngine().recompute(self._history())

        assert prs["ex-bench"].id == personal_record_id(None, "ex-bench")
        assert personal_record_id("acct-1", "ex-bench") != personal_record_id("acct-2", "ex-bench")

    def test_empty_history(self):
        assert PersonalRecordEngine().recompute([]) == {}


class TestCheckSession:
    """Incremental check of a just-completed workout."""

    def test_first_workout_sets_pr_and_flags_set(self):
        session = make_session(sets=[(80.0, 5), (80.0, 8), (75.0, 10)])

        new = PersonalRecordEngine().check_session(session, {})

        assert [(pr.weight, pr.reps) for pr in new] == [(80.0, 8)]
        flags = [s.is_pr for s in session.exercise_logs[0].sets]
        assert flags == [False, True, False]

    def test_no_pr_when_current_is_better(self):
        current = {
            "ex-bench": PersonalRecord(
                id="pr-1", exercise_id="ex-bench", weight=90.0, reps=3, achieved_at=T0
            )
        }
        session = make_session(sets=[(85.0, 5)])

        assert PersonalRecordEngine().check_session(session, current) == []
        assert not session.exercise_logs[0].sets[0].is_pr

    def test_equal_to_current_is_not_a_pr(self):
        current = {
            "ex-bench": PersonalRecord(
                id="pr-1", exercise_id="ex-bench", weight=80.0, reps=5, achieved_at=T0
            )
        }
        session = make_session(sets=[(80.0, 5)])

        assert PersonalRecordEngine().check_session(session, current) == []

    def test_agrees_with_recompute(self):
        previous = make_session(sets=[(80.0, 5)], started_at=T0)
        engine = PersonalRecordEngine()
        current = engine.recompute([previous])

        latest = make_session(sets=[(80.0, 6), (82.5, 2)], started_at=T0 + timedelta(days=3))
        new = engine.check_session(latest, current)

        assert [(pr.weight, pr.reps) for pr in new] == [(82.5, 2)]
        assert engine.recompute([previous, latest])["ex-bench"] == new[0]
