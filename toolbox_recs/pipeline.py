# toolbox_recs/pipeline.py
"""
Learning Pipeline.

aggregation -> filtering -> signal extraction -> model update -> validation -> deployment

Every stage implements process(input) -> (output, confidence) and consumes the
previous stage's output. A confidence below MIN_STAGE_CONFIDENCE stops the run
with that stage named as the reason. No stage touches the serving pointer:
the best a run can do is leave a draft ModelVersion for the experiment manager.
"""
from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlmodel import Session

from .aggregator import Batch, FeedbackAggregator
from .config import DEFAULT_SURFACE, MIN_STAGE_CONFIDENCE, MIN_VALIDATION_ACCURACY
from .errors import ModelValidationError, PrivacyBudgetExhausted
from .index import IndexStore
from .logging_setup import get_logger
from .models import ModelVersion, PipelineRun, utcnow
from .privacy import PrivacyProcessor, PrivatizedAggregate
from .ranker import (
    TrainingExample, adaptive_learning_rate, apply_feedback, evaluate, volatility, weight_delta,
)
from .registry import ModelRegistry
from .store import get_session

logger = get_logger("toolbox_recs.pipeline")

SUCCEEDED, ABORTED, REJECTED, DEFERRED, FAILED = "succeeded", "aborted", "rejected", "deferred", "failed"


# ---- stage payloads ----

@dataclass
class RunRequest:
    run_id: str
    surface: str
    now: datetime


@dataclass
class Aggregated:
    request: RunRequest
    batch: Batch


@dataclass
class Filtered:
    request: RunRequest
    batch: Batch
    aggregates: List[PrivatizedAggregate]


@dataclass
class Extracted:
    request: RunRequest
    examples: List[TrainingExample]
    parent_id: str
    index_ref: str


@dataclass
class Candidate:
    request: RunRequest
    weights: Dict[str, Any]
    parent_id: str
    index_ref: str
    stats: Dict[str, float]


@dataclass
class Validated:
    candidate: Candidate
    metrics: Dict[str, float]


@dataclass
class PipelineResult:
    run_id: str
    status: str
    reason: str = ""
    confidences: Dict[str, float] = field(default_factory=dict)
    metrics: Dict[str, Any] = field(default_factory=dict)
    candidate_id: Optional[str] = None


# ---- stages ----

class Stage:
    name = "stage"

    def process(self, data: Any) -> Tuple[Any, float]:
        raise NotImplementedError


class AggregationStage(Stage):
    name = "aggregation"

    def __init__(self, aggregator: FeedbackAggregator):
        self.aggregator = aggregator

    def process(self, request: RunRequest) -> Tuple[Aggregated, float]:
        batch = self.aggregator.collect(request.now)
        self.aggregator.aggregate(batch)
        return Aggregated(request, batch), (1.0 if batch.groups else 0.0)


class FilteringStage(Stage):
    """Quality filters, then the privacy boundary."""
    name = "filtering"

    def __init__(self, aggregator: FeedbackAggregator, privacy: PrivacyProcessor):
        self.aggregator = aggregator
        self.privacy = privacy

    def process(self, data: Aggregated) -> Tuple[Filtered, float]:
        confidence = self.aggregator.quality_filter(data.batch)
        if confidence < MIN_STAGE_CONFIDENCE:
            # don't spend privacy budget on a batch that is about to be thrown away
            return Filtered(data.request, data.batch, []), confidence
        aggregates = self.privacy.privatize(data.batch.kept, now=data.request.now.replace(tzinfo=timezone.utc).timestamp())
        return Filtered(data.request, data.batch, aggregates), confidence


class SignalExtractionStage(Stage):
    name = "extraction"

    def __init__(self, registry: ModelRegistry, indexes: IndexStore):
        self.registry = registry
        self.indexes = indexes

    def process(self, data: Filtered) -> Tuple[Extracted, float]:
        active = self.registry.snapshot(data.request.surface).active
        index = self.indexes.get(active.index_ref)
        examples = []
        total = mapped = 0.0
        for agg in data.aggregates:
            total += agg.count
            pos = index.position(agg.target_id)
            if pos is None:
                continue
            mapped += agg.count
            examples.append(TrainingExample(
                item_id=agg.target_id,
                category=index.categories[pos],
                freshness=float(index.freshness[pos]),
                popularity=float(index.popularity[pos]),
                target=agg.avg_strength,
                weight=agg.count,
            ))
        confidence = mapped / total if total else 0.0
        return Extracted(data.request, examples, active.version_id, active.index_ref), confidence


class ModelUpdateStage(Stage):
    name = "model_update"

    def __init__(self, registry: ModelRegistry):
        self.registry = registry

    def process(self, data: Extracted) -> Tuple[Candidate, float]:
        base = self.registry.load(data.parent_id).weights_dict()
        vol = volatility(data.examples)
        batch_size = sum(e.weight for e in data.examples)
        lr = adaptive_learning_rate(batch_size, vol)
        weights = apply_feedback(base, data.examples, lr)
        stats = {
            "examples": float(len(data.examples)),
            "batch_size": round(batch_size, 3),
            "volatility": round(vol, 4),
            "learning_rate": round(lr, 4),
            "weight_delta": round(weight_delta(base, weights), 6),
        }
        return Candidate(data.request, weights, data.parent_id, data.index_ref, stats), 1.0 / (1.0 + vol)


class ValidationStage(Stage):
    name = "validation"

    def __init__(self, evaluation_set: Sequence[Dict], min_accuracy: float = MIN_VALIDATION_ACCURACY):
        self.evaluation_set = list(evaluation_set)
        self.min_accuracy = min_accuracy

    def process(self, data: Candidate) -> Tuple[Validated, float]:
        metrics = evaluate(data.weights, self.evaluation_set)
        if metrics["accuracy"] < self.min_accuracy:
            raise ModelValidationError(
                f"accuracy {metrics['accuracy']:.3f} < {self.min_accuracy}",
                metrics={**metrics, **data.stats},
            )
        return Validated(data, metrics), metrics["accuracy"]


class DeploymentStage(Stage):
    """Persist the candidate as a draft and hand it over. Never touches serving."""
    name = "deployment"

    def __init__(self, registry: ModelRegistry, on_candidate: Optional[Callable[[ModelVersion], Any]] = None):
        self.registry = registry
        self.on_candidate = on_candidate

    def process(self, data: Validated) -> Tuple[ModelVersion, float]:
        c = data.candidate
        parent = self.registry.get_version(c.parent_id)
        entry = {
            "run_id": c.request.run_id,
            "at": utcnow().isoformat(),
            "parent_id": c.parent_id,
            "metrics": data.metrics,
            **c.stats,
        }
        row = self.registry.create_draft(
            surface=c.request.surface,
            weights=c.weights,
            index_ref=c.index_ref,
            history=list(parent.training_history or []) + [entry],
            parent_id=c.parent_id,
        )
        if self.on_candidate is not None:
            self.on_candidate(row)
        return row, 1.0


# ---- runner ----

_locks: Dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()


def pipeline_lock(pipeline_id: str) -> threading.Lock:
    with _locks_guard:
        lock = _locks.get(pipeline_id)
        if lock is None:
            lock = _locks[pipeline_id] = threading.Lock()
        return lock


class LearningPipeline:
    def __init__(
        self,
        stages: Sequence[Stage],
        aggregator: FeedbackAggregator,
        pipeline_id: Optional[str] = None,
        surface: str = DEFAULT_SURFACE,
        min_confidence: float = MIN_STAGE_CONFIDENCE,
        session_factory: Callable[[], Session] = get_session,
    ):
        self.stages = list(stages)
        self.aggregator = aggregator
        self.surface = surface
        self.pipeline_id = pipeline_id or f"learning:{surface}"
        self.min_confidence = min_confidence
        self.session_factory = session_factory

    def _record(self, run: PipelineRun) -> None:
        with self.session_factory() as s:
            s.merge(run)
            s.commit()

    def run(self, now: Optional[datetime] = None) -> PipelineResult:
        """
        One pipeline run. Overlapping calls for the same pipeline id wait for
        the running one to finish instead of running side by side.
        """
        lock = pipeline_lock(self.pipeline_id)
        if not lock.acquire(blocking=False):
            logger.info("PIPELINE_QUEUED", extra={"pipeline_id": self.pipeline_id})
            lock.acquire()
        try:
            return self._run(now or utcnow())
        finally:
            lock.release()

    def _run(self, now: datetime) -> PipelineResult:
        run_id = uuid.uuid4().hex[:12]
        t0 = time.perf_counter()

        def X(**fields):
            return {"run_id": run_id, "pipeline_id": self.pipeline_id, **fields}

        record = PipelineRun(id=run_id, pipeline_id=self.pipeline_id, started_at=utcnow())
        self._record(record)
        logger.info("PIPELINE_START", extra=X(step="start"))

        result = PipelineResult(run_id=run_id, status=SUCCEEDED)
        batch: Optional[Batch] = None
        data: Any = RunRequest(run_id=run_id, surface=self.surface, now=now)
        try:
            for stage in self.stages:
                t_stage = time.perf_counter()
                data, confidence = stage.process(data)
                result.confidences[stage.name] = round(float(confidence), 4)
                if isinstance(data, Aggregated):
                    batch = data.batch
                logger.info(
                    "STAGE_DONE",
                    extra=X(step=stage.name, confidence=round(confidence, 4),
                            elapsed_ms=round((time.perf_counter() - t_stage) * 1000)),
                )
                if confidence < self.min_confidence:
                    result.status = ABORTED
                    result.reason = f"{stage.name} confidence {confidence:.3f} < {self.min_confidence}"
                    logger.warning("PIPELINE_ABORTED", extra=X(step=stage.name, reason=result.reason))
                    break
            else:
                result.candidate_id = data.id
                result.metrics = dict(data.training_history[-1]) if data.training_history else {}
        except PrivacyBudgetExhausted as e:
            result.status = DEFERRED
            result.reason = str(e)
            logger.warning("PIPELINE_DEFERRED", extra=X(step="filtering", reason=str(e), remaining=e.remaining))
        except ModelValidationError as e:
            result.status = REJECTED
            result.reason = str(e)
            result.metrics = dict(e.metrics)
            logger.warning("CANDIDATE_REJECTED", extra=X(step="validation", reason=str(e), metrics=e.metrics))
        except Exception as e:
            result.status = FAILED
            result.reason = f"{type(e).__name__}: {e}"
            logger.exception("PIPELINE_FAILED", extra=X(step="fatal", handled=True, error=type(e).__name__))

        # Deferred and failed runs leave their signals pending for the next window
        if batch is not None and batch.signals and result.status in (SUCCEEDED, REJECTED, ABORTED):
            self.aggregator.finalize(batch, run_id, consumed=result.status in (SUCCEEDED, REJECTED))

        record.status = result.status
        record.reason = result.reason
        record.stage_confidences = result.confidences
        record.metrics = result.metrics
        record.candidate_id = result.candidate_id
        record.finished_at = utcnow()
        self._record(record)
        logger.info(
            "PIPELINE_END",
            extra=X(step="end", status=result.status, reason=result.reason,
                    total_elapsed_ms=round((time.perf_counter() - t0) * 1000)),
        )
        return result


def build_pipeline(
    aggregator: FeedbackAggregator,
    privacy: PrivacyProcessor,
    registry: ModelRegistry,
    indexes: IndexStore,
    evaluation_set: Sequence[Dict],
    surface: str = DEFAULT_SURFACE,
    on_candidate: Optional[Callable[[ModelVersion], Any]] = None,
    min_accuracy: float = MIN_VALIDATION_ACCURACY,
) -> LearningPipeline:
    stages: List[Stage] = [
        AggregationStage(aggregator),
        FilteringStage(aggregator, privacy),
        SignalExtractionStage(registry, indexes),
        ModelUpdateStage(registry),
        ValidationStage(evaluation_set, min_accuracy),
        DeploymentStage(registry, on_candidate),
    ]
    return LearningPipeline(stages, aggregator, surface=surface)
