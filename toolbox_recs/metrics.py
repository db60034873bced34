# toolbox_recs/metrics.py
"""Rolling guardrail metrics (error rate, latency) per served model version."""
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Tuple
import statistics
import threading

from .config import METRICS_WINDOW
from .errors import ExperimentGuardrailViolation


@dataclass(frozen=True)
class GuardrailMetrics:
    error_rate: float
    latency_ms: float
    samples: int


class ServingMetrics:
    def __init__(self, window: int = METRICS_WINDOW):
        self.window = window
        self._samples: Dict[str, Deque[Tuple[bool, float]]] = {}
        self._lock = threading.Lock()

    def record(self, version_id: str, latency_ms: float, error: bool = False) -> None:
        with self._lock:
            buf = self._samples.get(version_id)
            if buf is None:
                buf = self._samples[version_id] = deque(maxlen=self.window)
            buf.append((bool(error), float(latency_ms)))

    def snapshot(self, version_id: str) -> GuardrailMetrics:
        with self._lock:
            buf = list(self._samples.get(version_id, ()))
        if not buf:
            return GuardrailMetrics(error_rate=0.0, latency_ms=0.0, samples=0)
        errors = sum(1 for e, _ in buf if e)
        return GuardrailMetrics(
            error_rate=errors / len(buf),
            latency_ms=statistics.median(l for _, l in buf),
            samples=len(buf),
        )

    def reset(self, version_id: str) -> None:
        with self._lock:
            self._samples.pop(version_id, None)


def check_guardrails(
    baseline: GuardrailMetrics,
    candidate: GuardrailMetrics,
    max_error_delta: float,
    max_latency_ratio: float,
    stage_percent: int = 0,
) -> None:
    """Raise ExperimentGuardrailViolation if the candidate regressed against the baseline."""
    details = {
        "baseline_error_rate": round(baseline.error_rate, 6),
        "candidate_error_rate": round(candidate.error_rate, 6),
        "baseline_latency_ms": round(baseline.latency_ms, 3),
        "candidate_latency_ms": round(candidate.latency_ms, 3),
        "candidate_samples": candidate.samples,
    }
    delta = candidate.error_rate - baseline.error_rate
    if delta > max_error_delta:
        raise ExperimentGuardrailViolation(
            f"error rate up {delta:.4f} (limit {max_error_delta})", stage_percent, details
        )
    if baseline.latency_ms > 0:
        ratio = candidate.latency_ms / baseline.latency_ms
        if ratio > max_latency_ratio:
            raise ExperimentGuardrailViolation(
                f"latency x{ratio:.2f} (limit x{max_latency_ratio})", stage_percent, details
            )
