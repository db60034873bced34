# tests/test_profiles.py
import numpy as np
import pytest
from sqlmodel import select

from toolbox_recs.errors import ConcurrentUpdateError
from toolbox_recs.models import ExperimentAssignment, FeedbackSignal
from toolbox_recs.profiles import ProfileStore, blend
from toolbox_recs.store import get_session


def test_blend_moves_toward_target_and_normalizes():
    out = blend([1.0, 0.0], [0.0, 1.0], 0.5)
    assert np.linalg.norm(out) == pytest.approx(1.0)
    assert out[0] == pytest.approx(out[1])
    assert blend([], [3.0, 4.0], 0.2) == pytest.approx([0.6, 0.8])


def test_interaction_creates_then_updates_profile():
    store = ProfileStore()
    first = store.apply_interaction("s1", [1.0, 0.0], strength=0.9)
    second = store.apply_interaction("s1", [0.0, 1.0], strength=0.9)
    assert (first.version, second.version) == (1, 2)
    assert second.activity_level == 2
    assert 0 < second.vector[1] < second.vector[0]


def test_preferences_are_normalized():
    snap = ProfileStore().set_preferences("s1", ["Design", " ai-tools ", "design", ""])
    assert snap.preferences == frozenset({"design", "ai-tools"})


def test_lost_update_is_retried():
    store = ProfileStore(retries=3)
    store.put("s1", [1.0, 0.0])
    rival = ProfileStore()
    calls = []

    def change(row):
        calls.append(row.version)
        if len(calls) == 1:
            # someone else commits between our read and our write
            rival.set_preferences("s1", ["design"])
        return {"activity_level": row.activity_level + 1}

    snap = store._mutate("s1", change)

    assert calls == [1, 2]
    assert snap.version == 3
    assert snap.preferences == frozenset({"design"})


def test_conflict_gives_up_after_bounded_retries():
    store = ProfileStore(retries=2)
    store.put("s1", [1.0, 0.0])
    rival = ProfileStore()

    def always_conflicting(row):
        rival.set_preferences("s1", ["x"])
        return {"activity_level": 99}

    with pytest.raises(ConcurrentUpdateError):
        store._mutate("s1", always_conflicting)


def test_erasure_removes_profile_signals_and_assignments():
    store = ProfileStore()
    store.put("s1", [1.0, 0.0], ["design"])
    store.put("s2", [0.0, 1.0])
    with get_session() as s:
        for i, status in enumerate(["pending", "aggregated", "archived"]):
            s.add(FeedbackSignal(subject_id="s1", kind="implicit", target_id="x", strength=0.5,
                                 idempotency_key=f"k{i}", status=status))
        s.add(FeedbackSignal(subject_id="s2", kind="implicit", target_id="x", strength=0.5, idempotency_key="other"))
        s.add(ExperimentAssignment(experiment_id="e1", subject_id="s1", variant="control"))
        s.commit()

    removed = store.erase("s1")

    assert removed == {"profiles": 1, "signals": 3, "assignments": 1}
    assert store.get("s1") is None
    assert store.get("s2") is not None
    with get_session() as s:
        assert [r.subject_id for r in s.exec(select(FeedbackSignal)).all()] == ["s2"]
