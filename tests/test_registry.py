# tests/test_registry.py
import pytest

from toolbox_recs.errors import InvalidTransition, NotFoundError
from toolbox_recs.ranker import default_weights
from toolbox_recs.registry import ACTIVE, CANARY, DRAFT, RETIRED, ModelRegistry, stable_bucket


@pytest.fixture()
def registry():
    reg = ModelRegistry()
    reg.bootstrap("default", "idx-1")
    return reg


def draft(reg, bias=0.1):
    w = default_weights()
    w["category_bias"]["design"] = bias
    return reg.create_draft("default", w, "idx-1", history=[], parent_id=reg.active_version_id("default"))


def test_bootstrap_is_idempotent(registry):
    first = registry.active_version_id("default")
    registry.bootstrap("default", "idx-1")
    assert registry.active_version_id("default") == first
    assert registry.get_version(first).status == ACTIVE


def test_unknown_surface():
    with pytest.raises(NotFoundError):
        ModelRegistry().snapshot("nope")


def test_snapshots_are_swapped_not_mutated(registry):
    before = registry.snapshot("default")
    row = draft(registry)
    registry.start_canary(row.id)
    registry.set_canary_percent("default", 25)
    after = registry.snapshot("default")

    assert before.canary is None and before.canary_percent == 0
    assert after.canary.version_id == row.id and after.canary_percent == 25
    assert after.generation > before.generation
    with pytest.raises(TypeError):
        after.canary.weights["category_bias"]["design"] = 1.0


def test_promotion_retires_previous_active(registry):
    old = registry.active_version_id("default")
    row = draft(registry)
    registry.start_canary(row.id)
    assert registry.get_version(row.id).status == CANARY
    registry.promote_canary("default")

    assert registry.active_version_id("default") == row.id
    assert registry.get_version(row.id).status == ACTIVE
    assert registry.get_version(old).status == RETIRED
    assert [e.action for e in registry.audit_log("default")][-1] == "promoted"


def test_transitions_are_forward_only(registry):
    row = draft(registry)
    registry.retire(row.id, reason="test")
    assert registry.get_version(row.id).status == RETIRED
    with pytest.raises(InvalidTransition):
        registry.start_canary(row.id)
    with pytest.raises(InvalidTransition):
        registry.retire(registry.active_version_id("default"), reason="no")


def test_one_canary_per_surface(registry):
    a, b = draft(registry), draft(registry, 0.2)
    registry.start_canary(a.id)
    with pytest.raises(InvalidTransition):
        registry.start_canary(b.id)
    assert registry.get_version(b.id).status == DRAFT


def test_rollback_restores_pointer_and_audits(registry):
    old = registry.active_version_id("default")
    row = draft(registry)
    registry.start_canary(row.id)
    registry.set_canary_percent("default", 50)

    snap = registry.rollback_canary("default", "error rate up", {"error_rate": 0.2})

    assert snap.canary is None and snap.active.version_id == old
    assert registry.get_version(row.id).status == RETIRED
    entry = registry.audit_log("default")[-1]
    assert entry.action == "canary_rollback"
    assert entry.payload["percent"] == 50


def test_canary_bucket_is_stable_and_respects_percent(registry):
    row = draft(registry)
    registry.start_canary(row.id)
    registry.set_canary_percent("default", 25)
    snap = registry.snapshot("default")
    subjects = [f"s{i}" for i in range(2000)]
    on_canary = [s for s in subjects if snap.model_for(s).version_id == row.id]
    assert 0.2 < len(on_canary) / len(subjects) < 0.3
    assert all(snap.model_for(s).version_id == row.id for s in on_canary)
    assert 0 <= stable_bucket("anything") < 100


def test_index_refresh_refused_during_rollout(registry):
    row = draft(registry)
    registry.start_canary(row.id)
    with pytest.raises(InvalidTransition):
        registry.refresh_index("default", "idx-2")
