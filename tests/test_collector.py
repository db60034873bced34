# tests/test_collector.py
import json

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from toolbox_recs.collector import SignalCollector, explicit_strength, implicit_strength, parse_event
from toolbox_recs.errors import ValidationError
from toolbox_recs.models import FeedbackSignal
from toolbox_recs.privacy import pseudonymize
from toolbox_recs.schema import ExplicitRawSignal, ImplicitRawSignal
from toolbox_recs.store import get_session


def event(key, token="alice", target="x-ai", kind="implicit", raw=None, **extra):
    return {
        "subjectToken": token,
        "kind": kind,
        "targetId": target,
        "rawSignal": raw if raw is not None else {"clicked": True, "dwellSeconds": 45, "refinedQuery": True},
        "idempotencyKey": key,
        **extra,
    }


def test_implicit_strength_components():
    assert implicit_strength(ImplicitRawSignal(clicked=True)) == pytest.approx(0.3)
    assert implicit_strength(ImplicitRawSignal(dwell_seconds=12)) == pytest.approx(0.2)
    assert implicit_strength(ImplicitRawSignal(clicked=True, dwell_seconds=40, refined_query=True)) == pytest.approx(0.8)


def test_implicit_strength_is_capped_at_one():
    raw = ImplicitRawSignal(clicked=True, dwell_seconds=600, refined_query=True, completed=True)
    assert implicit_strength(raw) == 1.0


def test_explicit_strength_from_rating_like_or_value():
    assert explicit_strength(ExplicitRawSignal(rating=1)) == 0.0
    assert explicit_strength(ExplicitRawSignal(rating=5)) == 1.0
    assert explicit_strength(ExplicitRawSignal(liked=False)) == 0.0
    assert explicit_strength(ExplicitRawSignal(strength=0.25)) == 0.25


def test_malformed_events_are_rejected():
    with pytest.raises(ValidationError):
        parse_event(event("k1", kind="explicit", raw={"rating": 4, "liked": True}))
    with pytest.raises(ValidationError):
        parse_event(event("k2", kind="explicit", raw={"strength": 1.5}))
    with pytest.raises(ValidationError) as e:
        parse_event({"kind": "implicit"})
    assert e.value.errors


def test_submit_persists_pseudonymous_signal(services, seed_catalog):
    seed_catalog(services)
    ack = services.collector.submit(event("k1"))
    assert ack.accepted and not ack.duplicate
    assert ack.strength == pytest.approx(0.8)

    with get_session() as s:
        row = s.get(FeedbackSignal, ack.signal_id)
    assert row.subject_id == pseudonymize("alice")
    assert row.subject_id != "alice"
    assert row.status == "pending"
    assert len(services.queue) == 1


def test_same_idempotency_key_is_stored_once(services, seed_catalog):
    seed_catalog(services)
    first = services.collector.submit(event("dup"))
    second = services.collector.submit(event("dup"))
    assert second.duplicate and second.signal_id == first.signal_id
    with get_session() as s:
        assert len(s.exec(select(FeedbackSignal)).all()) == 1
    assert len(services.queue) == 1


def test_strong_signal_updates_profile_in_real_time(services, seed_catalog):
    seed_catalog(services)
    services.collector.submit(event("k1", token="bob"))
    snap = services.profiles.get(pseudonymize("bob"))
    assert snap is not None and snap.activity_level == 1
    assert len(snap.vector) == 4


def test_weak_signal_only_takes_the_batch_path(services, seed_catalog):
    seed_catalog(services)
    services.collector.submit(event("k1", token="carol", raw={"clicked": True}))
    assert services.profiles.get(pseudonymize("carol")) is None
    assert len(services.queue) == 1


def test_storage_outage_dead_letters_the_event(services, mocker, tmp_path):
    sink_path = tmp_path / "dead_letter.jsonl"
    collector = SignalCollector(
        services.queue, services.profiles, services.provider,
        dead_letters=services.dead_letters, retry_sleep=lambda _s: None,
    )
    persist = mocker.patch.object(
        collector, "_persist",
        side_effect=OperationalError("INSERT", {}, Exception("database is locked")),
    )

    ack = collector.submit(event("k-out", token="dave"))

    assert not ack.accepted
    assert persist.call_count >= 2
    lines = sink_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["kind"] == "feedback"
    assert record["payload"]["subjectId"] == pseudonymize("dave")
    assert "subjectToken" not in record["payload"]
    assert len(services.queue) == 0


def test_experiment_context_records_engagement(services, seed_catalog, mocker):
    seed_catalog(services)
    record = mocker.patch.object(services.experiments, "record_for_subject")
    services.collector.submit(event("k1", context={"experimentId": "exp-1"}))
    record.assert_called_once()
    exp_id, subject_id, metric, value = record.call_args.args
    assert (exp_id, metric) == ("exp-1", "engagement")
    assert value == pytest.approx(0.8)


def test_catalog_provider_hands_out_stored_vectors(services, seed_catalog):
    seed_catalog(services)
    assert services.provider.item_vector("x-ai") == pytest.approx([0.6, 0.8, 0.0, 0.0])
    assert services.provider.item_vector("missing") is None
