# toolbox_recs/experiments.py
"""
A/B experiments between model versions of one surface.

Assignment is a pure function of (experiment, subject) and is persisted on
first sight, so a subject never changes variant mid-experiment. Evaluation
waits for every variant to reach the minimum sample size, then runs a Welch
t-test on the primary success metric and checks the guardrail metrics.
"""
from __future__ import annotations

import hashlib
import math
import statistics
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from scipy import stats
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .config import (
    EXPERIMENT_MIN_SAMPLES, GUARDRAIL_ERROR_RATE_TOLERANCE, GUARDRAIL_LATENCY_TOLERANCE, SIGNIFICANCE_LEVEL,
)
from .errors import ExperimentGuardrailViolation, InvalidTransition, NotFoundError, ValidationError
from .logging_setup import get_logger
from .metrics import GuardrailMetrics, check_guardrails
from .models import Experiment, ExperimentAssignment, ExperimentObservation, ModelVersion, utcnow
from .registry import DRAFT, ModelRegistry
from .store import get_session

logger = get_logger("toolbox_recs.experiments")

RUNNING, CLOSED = "running", "closed"
PROMOTE, ROLLBACK, PENDING, SUPERSEDED = "promote", "rollback", "pending", "superseded"


def assignment_point(experiment_id: str, subject_id: str) -> float:
    """Uniform point in [0, 1) derived from SHA-256 of 'experiment_id:subject_id'."""
    digest = hashlib.sha256(f"{experiment_id}:{subject_id}".encode("utf-8")).hexdigest()
    return int(digest[:15], 16) / float(16 ** 15)


def pick_variant(split: Dict[str, float], point: float) -> str:
    names = sorted(split)
    acc = 0.0
    for name in names:
        acc += split[name]
        if point < acc:
            return name
    return names[-1]


@dataclass
class ExperimentDecision:
    experiment_id: str
    decision: str  # promote | rollback | pending
    reason: str = ""
    metric: Optional[str] = None
    baseline_mean: Optional[float] = None
    treatment: Optional[str] = None
    treatment_mean: Optional[float] = None
    p_value: Optional[float] = None
    samples: Dict[str, int] = field(default_factory=dict)


class ExperimentManager:
    def __init__(
        self,
        registry: ModelRegistry,
        session_factory: Callable[[], Session] = get_session,
        on_promote: Optional[Callable[[str], object]] = None,
        metrics_source: Optional[Callable[[str], GuardrailMetrics]] = None,
        min_samples: int = EXPERIMENT_MIN_SAMPLES,
        alpha: float = SIGNIFICANCE_LEVEL,
    ):
        self.registry = registry
        self.session_factory = session_factory
        self.on_promote = on_promote
        self.metrics_source = metrics_source
        self.min_samples = min_samples
        self.alpha = alpha

    # ---- lifecycle ----

    def create_experiment(
        self,
        variants: Dict[str, str],
        traffic_split: Dict[str, float],
        success_metrics: Sequence[str],
        surface: str,
        baseline: str = "control",
    ) -> Experiment:
        if len(variants) < 2:
            raise ValidationError("an experiment needs at least two variants")
        if baseline not in variants:
            raise ValidationError(f"baseline variant {baseline!r} is not one of the variants")
        if set(traffic_split) != set(variants):
            raise ValidationError("traffic split must name exactly the variants")
        if any(v < 0 for v in traffic_split.values()) or not math.isclose(sum(traffic_split.values()), 1.0, abs_tol=1e-6):
            raise ValidationError("traffic split must be non-negative and sum to 1")
        if not success_metrics:
            raise ValidationError("at least one success metric is required")
        for version_id in variants.values():
            row = self.registry.get_version(version_id)
            if row.surface != surface:
                raise ValidationError(f"model version {version_id} belongs to surface {row.surface!r}")

        with self.session_factory() as s:
            exp = Experiment(
                surface=surface,
                variants=dict(variants),
                baseline=baseline,
                traffic_split={k: float(v) for k, v in traffic_split.items()},
                success_metrics=list(success_metrics),
            )
            s.add(exp)
            s.commit()
            s.refresh(exp)
            s.expunge(exp)
        logger.info("EXPERIMENT_CREATED", extra={"experiment_id": exp.id, "surface": surface, "variants": dict(variants)})
        return exp

    def propose(self, candidate: ModelVersion) -> Experiment:
        """Baseline (current active) vs. a freshly trained draft, 50/50."""
        active_id = self.registry.snapshot(candidate.surface).active.version_id
        for old in self.running_for_surface(candidate.surface):
            self._close(old.id, SUPERSEDED)
            for name, version_id in old.variants.items():
                if name != old.baseline and self.registry.get_version(version_id).status == DRAFT:
                    self.registry.retire(version_id, reason=f"superseded by {candidate.id}")
        return self.create_experiment(
            variants={"control": active_id, "candidate": candidate.id},
            traffic_split={"control": 0.5, "candidate": 0.5},
            success_metrics=["engagement"],
            surface=candidate.surface,
            baseline="control",
        )

    def get(self, experiment_id: str) -> Experiment:
        with self.session_factory() as s:
            exp = s.get(Experiment, experiment_id)
            if exp is None:
                raise NotFoundError(f"experiment {experiment_id!r} not found")
            s.expunge(exp)
            return exp

    def running_for_surface(self, surface: str) -> List[Experiment]:
        with self.session_factory() as s:
            rows = s.exec(
                select(Experiment).where(Experiment.surface == surface, Experiment.status == RUNNING)
                .order_by(Experiment.created_at)
            ).all()
            for r in rows:
                s.expunge(r)
            return list(rows)

    def running(self) -> List[Experiment]:
        with self.session_factory() as s:
            rows = s.exec(select(Experiment).where(Experiment.status == RUNNING)).all()
            for r in rows:
                s.expunge(r)
            return list(rows)

    def _close(self, experiment_id: str, decision: str) -> None:
        with self.session_factory() as s:
            exp = s.get(Experiment, experiment_id)
            exp.status = CLOSED
            exp.decision = decision
            exp.closed_at = utcnow()
            s.add(exp)
            s.commit()
        logger.info("EXPERIMENT_CLOSED", extra={"experiment_id": experiment_id, "decision": decision})

    # ---- assignment & observations ----

    def assign(self, subject_id: str, experiment_id: str) -> str:
        with self.session_factory() as s:
            existing = s.get(ExperimentAssignment, (experiment_id, subject_id))
            if existing is not None:
                return existing.variant
            exp = s.get(Experiment, experiment_id)
            if exp is None:
                raise NotFoundError(f"experiment {experiment_id!r} not found")
            if exp.status != RUNNING:
                raise InvalidTransition(f"experiment {experiment_id} is closed")
            variant = pick_variant(exp.traffic_split, assignment_point(experiment_id, subject_id))
            s.add(ExperimentAssignment(experiment_id=experiment_id, subject_id=subject_id, variant=variant))
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                return s.get(ExperimentAssignment, (experiment_id, subject_id)).variant
            return variant

    def variant_model(self, experiment_id: str, subject_id: str, surface: str) -> Optional[Tuple[str, str]]:
        """(variant, model version id) for a subject, or None if the experiment does not apply."""
        try:
            exp = self.get(experiment_id)
        except NotFoundError:
            return None
        if exp.status != RUNNING or exp.surface != surface:
            return None
        variant = self.assign(subject_id, experiment_id)
        return variant, exp.variants[variant]

    def record(
        self,
        experiment_id: str,
        metric: str,
        value: float,
        subject_id: Optional[str] = None,
        variant: Optional[str] = None,
    ) -> ExperimentObservation:
        exp = self.get(experiment_id)
        if exp.status != RUNNING:
            raise InvalidTransition(f"experiment {experiment_id} is closed")
        if variant is None:
            if subject_id is None:
                raise ValidationError("an observation needs a subject or a variant")
            variant = self.assign(subject_id, experiment_id)
        elif variant not in exp.variants:
            raise ValidationError(f"unknown variant {variant!r}")
        with self.session_factory() as s:
            obs = ExperimentObservation(experiment_id=experiment_id, variant=variant, metric=metric, value=float(value))
            s.add(obs)
            s.commit()
            s.refresh(obs)
            s.expunge(obs)
            return obs

    def record_for_subject(self, experiment_id: str, subject_id: str, metric: str, value: float) -> ExperimentObservation:
        return self.record(experiment_id, metric, value, subject_id=subject_id)

    def _observations(self, experiment_id: str) -> Dict[str, Dict[str, List[float]]]:
        out: Dict[str, Dict[str, List[float]]] = {}
        with self.session_factory() as s:
            rows = s.exec(
                select(ExperimentObservation).where(ExperimentObservation.experiment_id == experiment_id)
            ).all()
            for r in rows:
                out.setdefault(r.variant, {}).setdefault(r.metric, []).append(r.value)
        return out

    def summary(self, experiment_id: str) -> Dict[str, Dict[str, Dict[str, float]]]:
        """variant -> metric -> {n, mean}"""
        return {
            variant: {m: {"n": len(v), "mean": sum(v) / len(v)} for m, v in metrics.items() if v}
            for variant, metrics in self._observations(experiment_id).items()
        }

    # ---- decision ----

    def _guardrail_view(self, version_id: str, values: Dict[str, List[float]]) -> GuardrailMetrics:
        """Live serving metrics of the version; posted error_rate/latency_ms observations when it has served nothing."""
        if self.metrics_source is not None:
            live = self.metrics_source(version_id)
            if live.samples > 0:
                return live
        err = values.get("error_rate") or []
        lat = values.get("latency_ms") or []
        return GuardrailMetrics(
            error_rate=sum(err) / len(err) if err else 0.0,
            latency_ms=sum(lat) / len(lat) if lat else 0.0,
            samples=len(err) + len(lat),
        )

    @staticmethod
    def _welch_p(treatment: List[float], baseline: List[float]) -> float:
        p = float(stats.ttest_ind(treatment, baseline, equal_var=False).pvalue)
        if math.isnan(p):
            # both samples constant: any difference at all is certain
            return 0.0 if statistics.fmean(treatment) != statistics.fmean(baseline) else 1.0
        return p

    def evaluate(self, experiment_id: str) -> ExperimentDecision:
        exp = self.get(experiment_id)
        if exp.status != RUNNING:
            raise InvalidTransition(f"experiment {experiment_id} is already closed ({exp.decision})")
        metric = exp.success_metrics[0]
        obs = self._observations(experiment_id)
        samples = {v: len(obs.get(v, {}).get(metric, [])) for v in exp.variants}
        decision = ExperimentDecision(experiment_id=experiment_id, decision=PENDING, metric=metric, samples=samples)

        short = [v for v, n in samples.items() if n < self.min_samples]
        if short:
            decision.reason = f"waiting for samples: {', '.join(sorted(short))}"
            return decision

        base_values = obs[exp.baseline][metric]
        decision.baseline_mean = statistics.fmean(base_values)
        treatments = sorted(
            (v for v in exp.variants if v != exp.baseline),
            key=lambda v: (-statistics.fmean(obs[v][metric]), v),
        )
        best = treatments[0]
        treat_values = obs[best][metric]
        decision.treatment = best
        decision.treatment_mean = statistics.fmean(treat_values)
        decision.p_value = self._welch_p(treat_values, base_values)

        try:
            check_guardrails(
                self._guardrail_view(exp.variants[exp.baseline], obs.get(exp.baseline, {})),
                self._guardrail_view(exp.variants[best], obs.get(best, {})),
                max_error_delta=GUARDRAIL_ERROR_RATE_TOLERANCE,
                max_latency_ratio=1.0 + GUARDRAIL_LATENCY_TOLERANCE,
            )
            guardrail_ok = True
        except ExperimentGuardrailViolation as e:
            guardrail_ok = False
            decision.reason = f"guardrail: {e}"

        significant = decision.p_value < self.alpha and decision.treatment_mean > decision.baseline_mean
        candidate_id = exp.variants[best]
        if significant and guardrail_ok:
            if self.on_promote is not None:
                try:
                    self.on_promote(candidate_id)
                except InvalidTransition as e:
                    # another rollout owns the surface; try again on the next evaluation
                    decision.reason = f"promotion blocked: {e}"
                    logger.warning("EXPERIMENT_PROMOTION_BLOCKED", extra={"experiment_id": experiment_id, "error": str(e)})
                    return decision
            decision.decision = PROMOTE
            decision.reason = decision.reason or "significant improvement"
        else:
            if not decision.reason:
                decision.reason = f"not significant (p={decision.p_value:.4f})" if decision.p_value >= self.alpha else "treatment not better"
            decision.decision = ROLLBACK
            if self.registry.get_version(candidate_id).status == DRAFT:
                self.registry.retire(candidate_id, reason=f"experiment {experiment_id}: {decision.reason}")

        self._close(experiment_id, decision.decision)
        logger.info(
            "EXPERIMENT_DECIDED",
            extra={"experiment_id": experiment_id, "decision": decision.decision, "p_value": decision.p_value,
                   "treatment": best, "reason": decision.reason},
        )
        return decision

    def evaluate_all(self) -> List[ExperimentDecision]:
        out = []
        for exp in self.running():
            try:
                out.append(self.evaluate(exp.id))
            except InvalidTransition:
                continue
        return out


