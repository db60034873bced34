# toolbox_recs/index.py
"""
Immutable cosine-similarity index over catalog embeddings.

An index is built once from a catalog snapshot and never mutated: its arrays
are flagged read-only, and a catalog change produces a new index with a new
ref. Model versions point at an index by ref, so a serving snapshot always
pairs weights with exactly the vectors they were validated against.
"""
from __future__ import annotations

import hashlib
import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .config import FRESHNESS_HALF_LIFE_DAYS
from .errors import NotFoundError
from .logging_setup import get_logger
from .models import utcnow

logger = get_logger("toolbox_recs.index")


def _normalize_rows(m: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(m, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return m / norms


def freshness_score(published_at: Optional[datetime], now: datetime, half_life_days: float = FRESHNESS_HALF_LIFE_DAYS) -> float:
    if published_at is None:
        return 0.0
    age_days = max(0.0, (now - published_at).total_seconds() / 86400.0)
    return 0.5 ** (age_days / half_life_days)


@dataclass(frozen=True, eq=False)
class EmbeddingIndex:
    ref: str
    item_ids: Tuple[str, ...]
    categories: Tuple[str, ...]
    gated: Tuple[bool, ...]
    matrix: np.ndarray  # (n, d), rows L2-normalised
    popularity: np.ndarray  # (n,), log-scaled to [0, 1]
    raw_popularity: Tuple[int, ...]
    freshness: np.ndarray  # (n,), [0, 1] relative to built_at
    id_rank: np.ndarray  # tie-break order by item id
    built_at: datetime

    @property
    def dim(self) -> int:
        return int(self.matrix.shape[1]) if self.matrix.size else 0

    def __len__(self) -> int:
        return len(self.item_ids)

    def position(self, item_id: str) -> Optional[int]:
        try:
            return self.item_ids.index(item_id)
        except ValueError:
            return None

    def search(self, query: Sequence[float], k: int) -> List[Tuple[int, float]]:
        """
        Top-k rows by cosine similarity as (row, cosine) pairs.
        Ties resolve by item id so equal inputs always give equal order.
        """
        if not len(self):
            return []
        q = np.asarray(query, dtype=np.float64)
        if q.shape != (self.dim,):
            raise ValueError(f"query has dim {q.shape}, index has dim {self.dim}")
        qn = np.linalg.norm(q)
        if qn == 0:
            raise ValueError("zero query vector")
        sims = self.matrix @ (q / qn)
        order = np.lexsort((self.id_rank, -np.round(sims, 12)))
        top = order[: max(0, k)]
        return [(int(i), float(sims[i])) for i in top]

    def by_popularity(self) -> List[int]:
        return [int(i) for i in np.lexsort((self.id_rank, -self.popularity))]


def build_index(items: Sequence, now: Optional[datetime] = None) -> EmbeddingIndex:
    """
    Build an index from catalog rows (anything with id, category, gated,
    popularity, published_at and embedding). Items without a vector are skipped.
    """
    now = now or utcnow()
    rows = sorted([it for it in items if it.embedding], key=lambda it: it.id)
    dims = {len(it.embedding) for it in rows}
    if len(dims) > 1:
        raise ValueError(f"embedding dimensions differ: {sorted(dims)}")

    ids = tuple(it.id for it in rows)
    matrix = _normalize_rows(np.asarray([it.embedding for it in rows], dtype=np.float64)) if rows else np.zeros((0, 0))
    raw_pop = tuple(int(it.popularity or 0) for it in rows)
    max_pop = max(raw_pop) if raw_pop else 0
    denom = math.log1p(max_pop) if max_pop > 0 else 1.0
    popularity = np.asarray([math.log1p(p) / denom for p in raw_pop], dtype=np.float64)
    freshness = np.asarray([freshness_score(it.published_at, now) for it in rows], dtype=np.float64)
    id_rank = np.arange(len(ids))  # ids are already sorted

    digest = hashlib.sha256()
    for it in rows:
        digest.update(it.id.encode("utf-8"))
        digest.update(it.category.encode("utf-8"))
        digest.update(np.asarray(it.embedding, dtype=np.float64).tobytes())
    digest.update(repr(raw_pop).encode("utf-8"))
    ref = f"idx-{digest.hexdigest()[:16]}"

    for arr in (matrix, popularity, freshness, id_rank):
        arr.setflags(write=False)

    index = EmbeddingIndex(
        ref=ref,
        item_ids=ids,
        categories=tuple(it.category for it in rows),
        gated=tuple(bool(it.gated) for it in rows),
        matrix=matrix,
        popularity=popularity,
        raw_popularity=raw_pop,
        freshness=freshness,
        id_rank=id_rank,
        built_at=now,
    )
    logger.info("INDEX_BUILT", extra={"ref": ref, "items": len(ids), "dim": index.dim})
    return index


class IndexStore:
    """Versioned holder of built indexes, keyed by ref."""

    def __init__(self):
        self._indexes: Dict[str, EmbeddingIndex] = {}
        self._lock = threading.Lock()
        self.latest_ref: Optional[str] = None

    def put(self, index: EmbeddingIndex) -> str:
        with self._lock:
            self._indexes[index.ref] = index
            self.latest_ref = index.ref
        return index.ref

    def get(self, ref: str) -> EmbeddingIndex:
        index = self._indexes.get(ref)
        if index is None:
            raise NotFoundError(f"embedding index {ref!r} is not loaded")
        return index

    def latest(self) -> Optional[EmbeddingIndex]:
        return self._indexes.get(self.latest_ref) if self.latest_ref else None

    def retain(self, refs: Iterable[str]) -> List[str]:
        """Drop every index not in refs (the latest one always stays). Returns the evicted refs."""
        with self._lock:
            keep = set(refs)
            if self.latest_ref:
                keep.add(self.latest_ref)
            evicted = [ref for ref in self._indexes if ref not in keep]
            self._indexes = {ref: idx for ref, idx in self._indexes.items() if ref in keep}
        if evicted:
            logger.info("INDEX_EVICTED", extra={"evicted": evicted, "loaded": len(self._indexes)})
        return evicted

    def __len__(self) -> int:
        return len(self._indexes)
