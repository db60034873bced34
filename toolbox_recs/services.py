# toolbox_recs/services.py
"""
Wiring. One Services object holds the long-lived collaborators (queue,
registry, indexes, metrics, controllers) that the routers, the scheduler and
the lifespan share.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Set

import numpy as np

from .aggregator import FeedbackAggregator
from .canary import CanaryController
from .catalog import load_items
from .collector import SignalCollector
from .config import (
    AUTO_EXPERIMENT, CANARY_CHECK_INTERVAL, CANARY_DWELL_SECONDS, CANARY_STAGES, DEAD_LETTER_PATH,
    DEFAULT_SURFACE, EVALUATION_SET_PATH, PRIVACY_SENSITIVITY_LEVEL,
)
from .engine import RecommendationEngine
from .experiments import ExperimentManager
from .index import EmbeddingIndex, IndexStore, build_index
from .logging_setup import get_logger
from .metrics import ServingMetrics
from .pipeline import LearningPipeline, PipelineResult, build_pipeline
from .privacy import BudgetAccountant, PrivacyProcessor
from .profiles import ProfileStore
from .providers import CapabilityPredicate, CatalogEmbeddingProvider, EmbeddingProvider, deny_gated
from .ranker import load_evaluation_set
from .registry import ModelRegistry, ServingSnapshot
from .signal_queue import SignalQueue
from .store import DeadLetterSink

logger = get_logger("toolbox_recs.services")


class Services:
    def __init__(
        self,
        has_capability: CapabilityPredicate = deny_gated,
        provider: Optional[EmbeddingProvider] = None,
        rng: Optional[np.random.Generator] = None,
        evaluation_set: Optional[Sequence[Dict]] = None,
        sensitivity_level: str = PRIVACY_SENSITIVITY_LEVEL,
        accountant: Optional[BudgetAccountant] = None,
        canary_stages: Sequence[int] = CANARY_STAGES,
        canary_dwell_seconds: float = CANARY_DWELL_SECONDS,
        canary_check_interval: float = CANARY_CHECK_INTERVAL,
        auto_experiment: bool = AUTO_EXPERIMENT,
        dead_letter_path: str = DEAD_LETTER_PATH,
    ):
        self.queue = SignalQueue()
        self.indexes = IndexStore()
        self.registry = ModelRegistry()
        self.profiles = ProfileStore()
        self.metrics = ServingMetrics()
        self.provider = provider or CatalogEmbeddingProvider()
        self.dead_letters = DeadLetterSink(dead_letter_path)
        self.canary = CanaryController(
            self.registry,
            metrics_source=self.metrics.snapshot,
            stages=canary_stages,
            dwell_seconds=canary_dwell_seconds,
            check_interval=canary_check_interval,
        )
        self.experiments = ExperimentManager(
            self.registry, on_promote=self.canary.start, metrics_source=self.metrics.snapshot,
        )
        self.collector = SignalCollector(
            self.queue, self.profiles, self.provider,
            experiments=self.experiments, dead_letters=self.dead_letters,
        )
        self.aggregator = FeedbackAggregator(self.queue)
        self.privacy = PrivacyProcessor(
            sensitivity_level=sensitivity_level,
            accountant=accountant or BudgetAccountant(),
            rng=rng or np.random.default_rng(),
        )
        self.engine = RecommendationEngine(
            self.registry, self.indexes, self.profiles,
            has_capability=has_capability, experiments=self.experiments, metrics=self.metrics,
        )
        self.evaluation_set = list(evaluation_set) if evaluation_set is not None else load_evaluation_set(EVALUATION_SET_PATH)
        self.auto_experiment = auto_experiment
        self._pipelines: Dict[str, LearningPipeline] = {}

    # ---- catalog & models ----

    def rebuild_index(self, surface: str = DEFAULT_SURFACE) -> EmbeddingIndex:
        """Build a fresh index from the catalog table and serve the active model against it."""
        index = build_index(load_items())
        self.indexes.put(index)
        if surface in self.registry.surfaces():
            self.registry.refresh_index(surface, index.ref)
        else:
            self.registry.bootstrap(surface, index.ref)
        self.indexes.retain(self.live_index_refs())
        return index

    def live_index_refs(self) -> Set[str]:
        """Indexes something can still be served from: active and canary models, running experiment variants."""
        refs = set()
        for surface in self.registry.surfaces():
            snap = self.registry.snapshot(surface)
            refs.update(m.index_ref for m in (snap.active, snap.canary) if m is not None)
        for exp in self.experiments.running():
            for version_id in exp.variants.values():
                refs.add(self.registry.load(version_id).index_ref)
        return refs

    def bootstrap(self, surfaces: Sequence[str] = (DEFAULT_SURFACE,)) -> List[ServingSnapshot]:
        snaps = []
        for surface in surfaces:
            self.rebuild_index(surface)
            snaps.append(self.registry.snapshot(surface))
        logger.info("SERVICES_READY", extra={"surfaces": list(surfaces)})
        return snaps

    # ---- learning ----

    def pipeline(self, surface: str = DEFAULT_SURFACE) -> LearningPipeline:
        p = self._pipelines.get(surface)
        if p is None:
            p = self._pipelines[surface] = build_pipeline(
                self.aggregator, self.privacy, self.registry, self.indexes, self.evaluation_set,
                surface=surface,
                on_candidate=self.experiments.propose if self.auto_experiment else None,
            )
        return p

    def run_pipeline(self, surface: str = DEFAULT_SURFACE) -> PipelineResult:
        return self.pipeline(surface).run()


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = Services()
    return _services


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services
