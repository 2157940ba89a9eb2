"""Personal record derivation.

A personal record is the best set ever logged for an exercise: heavier wins,
and at equal weight more reps win. Equal weight and reps keep the earlier
set. PRs are derived data, so any device holding the same set history
derives the same PRs, ids included.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from fittrack.types import PersonalRecord, WorkoutSession

logger = logging.getLogger(__name__)

PR_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_DNS, "personal-records.fittrack")


def personal_record_id(owner_id: Optional[str], exercise_id: str) -> str:
    """Deterministic PR id for an (owner, exercise) pair."""
    return str(uuid.uuid5(PR_NAMESPACE, f"{owner_id or ''}:{exercise_id}"))


@dataclass
class _Candidate:
    exercise_id: str
    exercise_name: str
    weight: float
    reps: int
    achieved_at: datetime
    session_id: str
    owner_id: Optional[str]
    set_id: str


class PersonalRecordEngine:
    """Pure reducer from set history to one best record per exercise."""

    @staticmethod
    def is_better(candidate, best) -> bool:
        """True if ``candidate`` beats ``best``. Both need ``weight`` and ``reps``."""
        if best is None:
            return True
        if candidate.weight != best.weight:
            return candidate.weight > best.weight
        return candidate.reps > best.reps

    def _candidates(self, sessions: Iterable[WorkoutSession]) -> List[_Candidate]:
        candidates = []
        for session in sessions:
            if session.deleted:
                continue
            for log in session.exercise_logs:
                for ws in log.sets:
                    if ws.reps < 1:
                        continue
                    candidates.append(
                        _Candidate(
                            exercise_id=log.exercise_id,
                            exercise_name=log.exercise_name,
                            weight=ws.weight,
                            reps=ws.reps,
                            achieved_at=ws.logged_at,
                            session_id=session.id,
                            owner_id=session.owner_id,
                            set_id=ws.id,
                        )
                    )
        # Chronological, so a strict comparison keeps the earliest of equal sets
        candidates.sort(key=lambda c: (c.achieved_at, c.session_id, c.set_id))
        return candidates

    def _to_record(self, c: _Candidate) -> PersonalRecord:
        return PersonalRecord(
            id=personal_record_id(c.owner_id, c.exercise_id),
            exercise_id=c.exercise_id,
            exercise_name=c.exercise_name,
            weight=c.weight,
            reps=c.reps,
            achieved_at=c.achieved_at,
            session_id=c.session_id,
            owner_id=c.owner_id,
        )

    def recompute(self, sessions: Iterable[WorkoutSession]) -> Dict[str, PersonalRecord]:
        """Full recompute over all sessions. Result is independent of input order."""
        bests: Dict[str, _Candidate] = {}
        for candidate in self._candidates(sessions):
            if self.is_better(candidate, bests.get(candidate.exercise_id)):
                bests[candidate.exercise_id] = candidate
        return {exercise_id: self._to_record(c) for exercise_id, c in bests.items()}

    def check_session(
        self, session: WorkoutSession, current: Dict[str, PersonalRecord]
    ) -> List[PersonalRecord]:
        """Find the PRs a just-completed session sets against ``current``.

        Winning sets are flagged ``is_pr=True`` on the session in place.
        Returns the new PersonalRecords (at most one per exercise).
        """
        session_bests: Dict[str, tuple] = {}
        for log in session.exercise_logs:
            for ws in sorted(log.sets, key=lambda s: (s.logged_at, s.set_number)):
                if ws.reps < 1:
                    continue
                best = session_bests.get(log.exercise_id)
                if best is None or self.is_better(ws, best[1]):
                    session_bests[log.exercise_id] = (log, ws)

        new_records = []
        for exercise_id, (log, ws) in session_bests.items():
            if not self.is_better(ws, current.get(exercise_id)):
                continue
            ws.is_pr = True
            record = self._to_record(
                _Candidate(
                    exercise_id=exercise_id,
                    exercise_name=log.exercise_name,
                    weight=ws.weight,
                    reps=ws.reps,
                    achieved_at=ws.logged_at,
                    session_id=session.id,
                    owner_id=session.owner_id,
                    set_id=ws.id,
                )
            )
            logger.info(
                f"New PR for {log.exercise_name or exercise_id}: {ws.weight} x {ws.reps}"
            )
            new_records.append(record)
        return new_records

