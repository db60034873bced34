# toolbox_recs/profiles.py
"""
UserProfile persistence.

Two writers touch a profile: the real-time path in the collector and the
preference endpoint. Writes are optimistic: read the row with its version,
compute the new state, and UPDATE only if the version is unchanged. A lost
race is retried a bounded number of times; profiles of different subjects
never contend.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Tuple

import numpy as np
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from .config import PROFILE_UPDATE_RETRIES, REALTIME_ALPHA
from .errors import ConcurrentUpdateError
from .logging_setup import get_logger
from .models import ExperimentAssignment, FeedbackSignal, UserProfile, utcnow
from .store import get_session

logger = get_logger("toolbox_recs.profiles")


@dataclass(frozen=True)
class ProfileSnapshot:
    subject_id: str
    vector: Tuple[float, ...]
    preferences: FrozenSet[str]
    activity_level: int
    version: int

    @classmethod
    def from_row(cls, row: UserProfile) -> "ProfileSnapshot":
        return cls(
            subject_id=row.subject_id,
            vector=tuple(float(x) for x in (row.embedding or [])),
            preferences=frozenset(row.explicit_preferences or []),
            activity_level=row.activity_level,
            version=row.version,
        )


def blend(current: Iterable[float], target: Iterable[float], alpha: float) -> list:
    """Move current toward target by alpha, keeping unit length."""
    cur = np.asarray(list(current), dtype=np.float64)
    tgt = np.asarray(list(target), dtype=np.float64)
    if cur.size == 0 or cur.shape != tgt.shape or not np.linalg.norm(cur):
        out = tgt
    else:
        out = (1.0 - alpha) * cur + alpha * tgt
    n = np.linalg.norm(out)
    return (out / n).tolist() if n else out.tolist()


class ProfileStore:
    def __init__(self, session_factory: Callable[[], Session] = get_session, retries: int = PROFILE_UPDATE_RETRIES):
        self.session_factory = session_factory
        self.retries = retries

    def get(self, subject_id: str) -> Optional[ProfileSnapshot]:
        with self.session_factory() as s:
            row = s.get(UserProfile, subject_id)
            return ProfileSnapshot.from_row(row) if row else None

    def _mutate(self, subject_id: str, change: Callable[[Optional[UserProfile]], Dict]) -> ProfileSnapshot:
        """
        Optimistic read-modify-write. change() receives the current row (or None)
        and returns the column values to store.
        """
        for attempt in range(1, self.retries + 1):
            with self.session_factory() as s:
                row = s.get(UserProfile, subject_id)
                if row is None:
                    values = change(None)
                    s.add(UserProfile(subject_id=subject_id, version=1, updated_at=utcnow(), **values))
                    try:
                        s.commit()
                    except IntegrityError:
                        s.rollback()
                        logger.info("PROFILE_CONFLICT", extra={"subject": subject_id[:8], "attempt": attempt})
                        continue
                    return self.get(subject_id)

                expected = row.version
                values = change(row)
                result = s.exec(
                    update(UserProfile)
                    .where(UserProfile.subject_id == subject_id, UserProfile.version == expected)
                    .values(version=expected + 1, updated_at=utcnow(), **values)
                )
                s.commit()
                if result.rowcount == 1:
                    return self.get(subject_id)
            logger.info("PROFILE_CONFLICT", extra={"subject": subject_id[:8], "attempt": attempt})
        raise ConcurrentUpdateError(f"profile {subject_id[:8]} kept changing underneath {self.retries} attempts")

    def apply_interaction(self, subject_id: str, item_vector, strength: float, alpha: float = REALTIME_ALPHA) -> ProfileSnapshot:
        """Real-time path: pull the profile vector toward the item the subject engaged with."""
        step = alpha * max(0.0, min(1.0, strength))

        def change(row: Optional[UserProfile]) -> Dict:
            if row is None:
                return {"embedding": blend([], item_vector, step), "explicit_preferences": [], "activity_level": 1}
            return {"embedding": blend(row.embedding or [], item_vector, step), "activity_level": row.activity_level + 1}

        return self._mutate(subject_id, change)

    def set_preferences(self, subject_id: str, categories: Iterable[str]) -> ProfileSnapshot:
        prefs = sorted({c.strip().lower() for c in categories if c and c.strip()})

        def change(row: Optional[UserProfile]) -> Dict:
            if row is None:
                return {"embedding": [], "explicit_preferences": prefs, "activity_level": 0}
            return {"explicit_preferences": prefs}

        return self._mutate(subject_id, change)

    def put(self, subject_id: str, vector, preferences: Iterable[str] = (), activity_level: int = 0) -> ProfileSnapshot:
        """Overwrite a profile (batch rebuilds and seeding)."""
        vec = [float(x) for x in vector]
        prefs = sorted(set(preferences))

        def change(row: Optional[UserProfile]) -> Dict:
            return {"embedding": vec, "explicit_preferences": prefs, "activity_level": activity_level}

        return self._mutate(subject_id, change)

    def erase(self, subject_id: str) -> Dict[str, int]:
        """Erasure request: drop the profile and every stored signal of the subject."""
        with self.session_factory() as s:
            profiles = s.exec(delete(UserProfile).where(UserProfile.subject_id == subject_id)).rowcount
            signals = s.exec(delete(FeedbackSignal).where(FeedbackSignal.subject_id == subject_id)).rowcount
            assignments = s.exec(delete(ExperimentAssignment).where(ExperimentAssignment.subject_id == subject_id)).rowcount
            s.commit()
        logger.info("PROFILE_ERASED", extra={"subject": subject_id[:8], "profiles": profiles, "signals": signals})
        return {"profiles": profiles, "signals": signals, "assignments": assignments}
