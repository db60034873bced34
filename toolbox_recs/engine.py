# toolbox_recs/engine.py
"""
Recommendation Engine.

Serving never writes model state: each request pins one ServingSnapshot (or
one experiment variant), one profile snapshot and one index, so identical
inputs give identical ordered output.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import ANN_CANDIDATES, DEFAULT_LIMIT, DEFAULT_SURFACE, DIVERSITY_MAX_PER_CATEGORY
from .errors import NotFoundError
from .index import EmbeddingIndex, IndexStore
from .logging_setup import get_logger
from .metrics import ServingMetrics
from .privacy import pseudonymize
from .profiles import ProfileSnapshot, ProfileStore
from .providers import CapabilityPredicate, deny_gated
from .ranker import composite_score, explain
from .registry import LoadedModel, ModelRegistry

logger = get_logger("toolbox_recs.engine")

FALLBACK_REASON = "popular right now"


@dataclass(frozen=True)
class Recommendation:
    candidate_id: str
    score: float
    reasoning: str
    rank: int


@dataclass
class RecommendationResult:
    items: List[Recommendation]
    model_version: Optional[str]
    fallback: bool = False
    surface: str = DEFAULT_SURFACE
    experiment_id: Optional[str] = None
    variant: Optional[str] = None
    debug: Dict[str, Any] = field(default_factory=dict)


class RecommendationEngine:
    def __init__(
        self,
        registry: ModelRegistry,
        indexes: IndexStore,
        profiles: ProfileStore,
        has_capability: CapabilityPredicate = deny_gated,
        experiments=None,
        metrics: Optional[ServingMetrics] = None,
        candidates: int = ANN_CANDIDATES,
        max_per_category: int = DIVERSITY_MAX_PER_CATEGORY,
    ):
        self.registry = registry
        self.indexes = indexes
        self.profiles = profiles
        self.has_capability = has_capability
        self.experiments = experiments
        self.metrics = metrics or ServingMetrics()
        self.candidates = candidates
        self.max_per_category = max_per_category

    # ---- model choice ----

    def _choose_model(self, surface: str, subject_id: str, context: Dict[str, Any]) -> Tuple[LoadedModel, Optional[str], Optional[str]]:
        experiment_id = context.get("experimentId")
        if experiment_id and self.experiments is not None:
            chosen = self.experiments.variant_model(str(experiment_id), subject_id, surface)
            if chosen is not None:
                variant, version_id = chosen
                return self.registry.load(version_id), str(experiment_id), variant
        return self.registry.snapshot(surface).model_for(subject_id), None, None

    # ---- filters ----

    def _allowed(self, index: EmbeddingIndex, row: int, subject_token: str, blocked: frozenset) -> bool:
        if index.categories[row] in blocked or index.item_ids[row] in blocked:
            return False
        if index.gated[row] and not self.has_capability(subject_token, index.item_ids[row]):
            return False
        return True

    def _diversify(self, index: EmbeddingIndex, scored: Sequence[Tuple[float, int, str]], limit: int) -> List[Tuple[float, int, str]]:
        """Greedy top-N that never holds more than max_per_category items of one category."""
        per_category: Dict[str, int] = {}
        out = []
        for entry in scored:
            cat = index.categories[entry[1]]
            if per_category.get(cat, 0) >= self.max_per_category:
                continue
            per_category[cat] = per_category.get(cat, 0) + 1
            out.append(entry)
            if len(out) >= limit:
                break
        return out

    @staticmethod
    def _blocked(context: Dict[str, Any]) -> frozenset:
        blocked = list(context.get("blockedCategories") or []) + list(context.get("excludeItems") or [])
        return frozenset(str(b) for b in blocked)

    # ---- paths ----

    def _personalized(
        self,
        model: LoadedModel,
        profile: Optional[ProfileSnapshot],
        subject_token: str,
        context: Dict[str, Any],
        limit: int,
    ) -> List[Recommendation]:
        if profile is None or not profile.vector:
            raise NotFoundError("no profile vector for subject")
        index = self.indexes.get(model.index_ref)
        blocked = self._blocked(context)
        weights = model.weights

        scored = []
        for row, similarity in index.search(profile.vector, self.candidates):
            if not self._allowed(index, row, subject_token, blocked):
                continue
            category = index.categories[row]
            item_id = index.item_ids[row]
            features = {
                "similarity": similarity,
                "freshness": float(index.freshness[row]),
                "popularity": float(index.popularity[row]),
                "preference": 1.0 if category in profile.preferences else 0.0,
            }
            score = round(composite_score(features, weights, category, item_id), 6)
            scored.append((score, row, explain(features, weights, category)))

        scored.sort(key=lambda e: (-e[0], int(index.id_rank[e[1]])))
        picked = self._diversify(index, scored, limit)
        return [
            Recommendation(index.item_ids[row], score, reason, rank)
            for rank, (score, row, reason) in enumerate(picked, start=1)
        ]

    def _popular(self, surface: str, subject_token: str, context: Dict[str, Any], limit: int) -> Tuple[List[Recommendation], Optional[str]]:
        index = None
        version_id = None
        try:
            active = self.registry.snapshot(surface).active
            version_id = active.version_id
            index = self.indexes.get(active.index_ref)
        except NotFoundError:
            index = self.indexes.latest()
        if index is None:
            return [], version_id

        blocked = self._blocked(context)
        scored = [
            (round(float(index.popularity[row]), 6), row, FALLBACK_REASON)
            for row in index.by_popularity()
            if self._allowed(index, row, subject_token, blocked)
        ]
        picked = self._diversify(index, scored, limit)
        items = [
            Recommendation(index.item_ids[row], score, reason, rank)
            for rank, (score, row, reason) in enumerate(picked, start=1)
        ]
        return items, version_id

    def recommend(self, subject_token: str, context: Optional[Dict[str, Any]] = None, limit: int = DEFAULT_LIMIT) -> RecommendationResult:
        context = dict(context or {})
        surface = str(context.get("surface") or DEFAULT_SURFACE)
        subject_id = pseudonymize(subject_token)
        t0 = time.perf_counter()

        model = None
        try:
            model, experiment_id, variant = self._choose_model(surface, subject_id, context)
            profile = self.profiles.get(subject_id)
            items = self._personalized(model, profile, subject_token, context, limit)
            result = RecommendationResult(
                items=items,
                model_version=model.version_id,
                surface=surface,
                experiment_id=experiment_id,
                variant=variant,
            )
            error = False
        except Exception as e:
            # Serving never fails the caller: degrade to non-personalized
            error = not isinstance(e, NotFoundError)
            log = logger.exception if error else logger.info
            log("RECOMMEND_FALLBACK", extra={"surface": surface, "reason": f"{type(e).__name__}: {e}", "handled": True})
            items, version_id = self._popular(surface, subject_token, context, limit)
            result = RecommendationResult(items=items, model_version=version_id, fallback=True, surface=surface)

        latency_ms = (time.perf_counter() - t0) * 1000
        served_by = model.version_id if model is not None else result.model_version
        if served_by:
            self.metrics.record(served_by, latency_ms, error=error)
        logger.debug(
            "RECOMMEND_OK",
            extra={"surface": surface, "model_version": result.model_version, "items": len(result.items),
                   "fallback": result.fallback, "elapsed_ms": round(latency_ms, 2)},
        )
        return result
