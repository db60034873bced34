# tests/test_canary.py
import time

import pytest
from sqlalchemy.exc import OperationalError

from toolbox_recs.canary import CANCELLED, PROMOTED, ROLLED_BACK, CanaryController
from toolbox_recs.metrics import GuardrailMetrics, ServingMetrics, check_guardrails
from toolbox_recs.errors import ExperimentGuardrailViolation
from toolbox_recs.ranker import default_weights
from toolbox_recs.registry import ACTIVE, CANARY, RETIRED, ModelRegistry
from toolbox_recs.store import get_session

HEALTHY = GuardrailMetrics(error_rate=0.01, latency_ms=40.0, samples=200)
SPIKE = GuardrailMetrics(error_rate=0.20, latency_ms=45.0, samples=200)


@pytest.fixture()
def registry():
    reg = ModelRegistry()
    reg.bootstrap("default", "idx-1")
    return reg


def candidate(reg):
    return reg.create_draft("default", default_weights(), "idx-1", [], reg.active_version_id("default")).id


def test_guardrail_check():
    check_guardrails(HEALTHY, HEALTHY, 0.02, 1.25)
    with pytest.raises(ExperimentGuardrailViolation):
        check_guardrails(HEALTHY, SPIKE, 0.02, 1.25)
    slow = GuardrailMetrics(error_rate=0.01, latency_ms=80.0, samples=10)
    with pytest.raises(ExperimentGuardrailViolation):
        check_guardrails(HEALTHY, slow, 0.02, 1.25)


def test_error_spike_at_25_percent_rolls_back_on_first_check(registry):
    previous = registry.active_version_id("default")
    cand = candidate(registry)
    checks_at_25 = []

    def metrics(version_id):
        snap = registry.snapshot("default")
        if version_id == cand and snap.canary_percent >= 25:
            checks_at_25.append(version_id)
            return SPIKE
        return HEALTHY

    controller = CanaryController(registry, metrics, stages=(5, 25, 50, 100), dwell_seconds=0.05, check_interval=0.01)
    run = controller.run(cand)

    assert run.state == ROLLED_BACK
    assert run.percent == 25
    assert len(checks_at_25) == 1
    snap = registry.snapshot("default")
    assert snap.active.version_id == previous and snap.canary is None
    assert registry.get_version(cand).status == RETIRED
    entry = registry.audit_log("default")[-1]
    assert entry.action == "canary_rollback"
    assert entry.model_version_id == cand
    assert entry.payload["percent"] == 25


def test_clean_rollout_promotes_through_every_stage(registry):
    previous = registry.active_version_id("default")
    cand = candidate(registry)
    controller = CanaryController(registry, lambda _v: HEALTHY, stages=(5, 25, 50, 100), dwell_seconds=0.0, check_interval=0.01)

    run = controller.run(cand)

    assert run.state == PROMOTED
    assert registry.active_version_id("default") == cand
    assert registry.get_version(cand).status == ACTIVE
    assert registry.get_version(previous).status == RETIRED
    stages = [e.payload["percent"] for e in registry.audit_log("default") if e.action == "canary_stage"]
    assert stages == [5, 25, 50, 100]


def test_cancel_restores_previous_version(registry):
    previous = registry.active_version_id("default")
    cand = candidate(registry)
    controller = CanaryController(registry, ServingMetrics().snapshot, stages=(5, 100), dwell_seconds=30, check_interval=0.01)

    run = controller.start(cand)
    time.sleep(0.05)
    controller.cancel("default")

    assert not run.thread.is_alive()
    assert run.state == CANCELLED
    assert registry.snapshot("default").active.version_id == previous
    assert registry.snapshot("default").canary is None
    assert registry.get_version(cand).status == RETIRED
    assert controller.status("default") is run


def test_cancel_during_the_last_check_is_honoured(registry):
    previous = registry.active_version_id("default")
    cand = candidate(registry)
    controller = None

    def metrics(_version_id):
        if registry.snapshot("default").canary_percent == 100:
            controller.status("default").cancel_event.set()
        return HEALTHY

    controller = CanaryController(registry, metrics, stages=(5, 100), dwell_seconds=0.0, check_interval=0.01)
    run = controller.run(cand)

    assert run.state == CANCELLED
    assert run.percent == 100
    assert registry.active_version_id("default") == previous
    assert registry.get_version(cand).status == RETIRED


class FlakySessions:
    def __init__(self):
        self.broken = False

    def __call__(self):
        if self.broken:
            raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))
        return get_session()


def test_rollback_that_cannot_be_persisted_still_ends_the_run(mocker):
    sessions = FlakySessions()
    registry = ModelRegistry(session_factory=sessions, retry_sleep=lambda _s: None)
    registry.bootstrap("default", "idx-1")
    previous = registry.active_version_id("default")
    cand = candidate(registry)

    def metrics(version_id):
        if version_id == cand and registry.snapshot("default").canary_percent >= 25:
            sessions.broken = True
            return SPIKE
        return HEALTHY

    controller = CanaryController(registry, metrics, stages=(5, 25, 100), dwell_seconds=0.0, check_interval=0.01)
    alerts = mocker.patch("toolbox_recs.registry.alerts")
    run = controller.run(cand)

    assert run.state == ROLLED_BACK
    assert "not persisted" in run.reason
    assert run.finished_at is not None
    snap = registry.snapshot("default")
    assert snap.canary is None and snap.active.version_id == previous
    assert alerts.critical.call_args[0][0] == "ALERT_ROLLBACK_NOT_PERSISTED"

    sessions.broken = False
    assert registry.get_version(cand).status == CANARY

    restarted = ModelRegistry()
    restarted.bootstrap("default", "idx-1")
    assert restarted.get_version(cand).status == RETIRED
    assert restarted.active_version_id("default") == previous
    entry = [e for e in restarted.audit_log("default") if e.model_version_id == cand][-1]
    assert entry.action == "canary_rollback"
