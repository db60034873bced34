# toolbox_recs/canary.py
"""
Staged canary rollout with automatic rollback.

Traffic to the new version steps through CANARY_STAGES. During each stage's
dwell the guardrails are checked every CANARY_CHECK_INTERVAL seconds against
the version being replaced. A regression, a cancellation or an unexpected
error all end the same way: traffic back on the previous active version,
canary retired, audit entry written.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Sequence

from .config import (
    CANARY_CHECK_INTERVAL, CANARY_DWELL_SECONDS, CANARY_MAX_ERROR_RATE_DELTA, CANARY_MAX_LATENCY_RATIO,
    CANARY_STAGES,
)
from .errors import ExperimentGuardrailViolation, TransientStorageError
from .logging_setup import get_logger
from .metrics import GuardrailMetrics, ServingMetrics, check_guardrails
from .models import utcnow
from .registry import ModelRegistry

logger = get_logger("toolbox_recs.canary")

RUNNING, PROMOTED, ROLLED_BACK, CANCELLED, FAILED = "running", "promoted", "rolled_back", "cancelled", "failed"

MetricsSource = Callable[[str], GuardrailMetrics]


@dataclass
class CanaryRun:
    surface: str
    version_id: str
    previous_id: str
    state: str = RUNNING
    percent: int = 0
    reason: str = ""
    checks: int = 0
    started_at: str = field(default_factory=lambda: utcnow().isoformat())
    finished_at: Optional[str] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    thread: Optional[threading.Thread] = field(default=None, repr=False)

    def as_dict(self) -> Dict:
        return {
            "surface": self.surface,
            "versionId": self.version_id,
            "previousId": self.previous_id,
            "state": self.state,
            "percent": self.percent,
            "reason": self.reason,
            "checks": self.checks,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
        }


class CanaryController:
    def __init__(
        self,
        registry: ModelRegistry,
        metrics_source: Optional[MetricsSource] = None,
        stages: Sequence[int] = CANARY_STAGES,
        dwell_seconds: float = CANARY_DWELL_SECONDS,
        check_interval: float = CANARY_CHECK_INTERVAL,
        max_error_delta: float = CANARY_MAX_ERROR_RATE_DELTA,
        max_latency_ratio: float = CANARY_MAX_LATENCY_RATIO,
    ):
        self.registry = registry
        self.metrics_source = metrics_source or ServingMetrics().snapshot
        self.stages = [int(p) for p in stages]
        self.dwell_seconds = dwell_seconds
        self.check_interval = check_interval
        self.max_error_delta = max_error_delta
        self.max_latency_ratio = max_latency_ratio
        self._runs: Dict[str, CanaryRun] = {}
        self._lock = threading.Lock()

    # ---- public API ----

    def begin(self, version_id: str) -> CanaryRun:
        """Put version_id on the canary slot (0% traffic). Raises InvalidTransition if the slot is taken."""
        snap = self.registry.start_canary(version_id)
        run = CanaryRun(surface=snap.surface, version_id=version_id, previous_id=snap.active.version_id)
        with self._lock:
            self._runs[snap.surface] = run
        logger.info("CANARY_BEGIN", extra={"surface": run.surface, "version": version_id, "stages": self.stages})
        return run

    def run(self, version_id: str) -> CanaryRun:
        """Whole rollout in the calling thread."""
        run = self.begin(version_id)
        self._drive(run)
        return run

    def start(self, version_id: str) -> CanaryRun:
        """Whole rollout in a background thread; returns immediately."""
        run = self.begin(version_id)
        run.thread = threading.Thread(target=self._drive, args=(run,), name=f"canary-{run.surface}", daemon=True)
        run.thread.start()
        return run

    def cancel(self, surface: str, timeout: Optional[float] = 5.0) -> Optional[CanaryRun]:
        run = self._runs.get(surface)
        if run is None or run.state != RUNNING:
            return run
        run.cancel_event.set()
        if run.thread is not None and run.thread is not threading.current_thread():
            run.thread.join(timeout)
        logger.info("CANARY_CANCEL_REQUESTED", extra={"surface": surface, "version": run.version_id})
        return run

    def status(self, surface: str) -> Optional[CanaryRun]:
        return self._runs.get(surface)

    # ---- internals ----

    def _check(self, run: CanaryRun) -> None:
        run.checks += 1
        candidate = self.metrics_source(run.version_id)
        if candidate.samples == 0:
            return
        check_guardrails(
            self.metrics_source(run.previous_id),
            candidate,
            max_error_delta=self.max_error_delta,
            max_latency_ratio=self.max_latency_ratio,
            stage_percent=run.percent,
        )

    def _finish(self, run: CanaryRun, state: str, reason: str = "") -> None:
        run.state = state
        run.reason = reason
        run.finished_at = utcnow().isoformat()

    def _revert(self, run: CanaryRun, state: str, reason: str, metrics: Optional[Dict] = None) -> None:
        """Traffic back to the previous version; the run ends in `state` even if the audit write fails."""
        try:
            self.registry.rollback_canary(run.surface, reason, metrics)
        except TransientStorageError as e:
            # serving is already restored; the registry has raised the alert
            reason = f"{reason} (rollback not persisted: {e})"
        finally:
            self._finish(run, state, reason)

    def _drive(self, run: CanaryRun) -> None:
        try:
            for percent in self.stages:
                run.percent = percent
                self.registry.set_canary_percent(run.surface, percent)
                deadline = time.monotonic() + self.dwell_seconds
                while True:
                    self._check(run)
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    if run.cancel_event.wait(min(self.check_interval, remaining)):
                        break
                if run.cancel_event.is_set():
                    self._revert(run, CANCELLED, "cancelled", {"percent": percent})
                    return
            self.registry.promote_canary(run.surface)
            self._finish(run, PROMOTED)
            logger.info("CANARY_PROMOTED", extra={"surface": run.surface, "version": run.version_id})
        except ExperimentGuardrailViolation as e:
            self._revert(run, ROLLED_BACK, str(e), {"percent": e.stage_percent, **e.metrics})
        except Exception as e:
            logger.exception("CANARY_FAILED", extra={"surface": run.surface, "version": run.version_id, "handled": True})
            self._revert(run, FAILED, f"error: {type(e).__name__}: {e}")
