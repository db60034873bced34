# toolbox_recs/aggregator.py
"""
Feedback Aggregator.

Collects one window of pending signals (queue first, then whatever the log
still holds as pending), groups them by (kind, target), and applies the
quality filters. Nothing is written until the pipeline run decides what
happened to the batch: a deferred or crashed run leaves every signal pending
so the next window sees it again.
"""
from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from sqlalchemy import update
from sqlmodel import Session, select

from .config import AGGREGATION_MAX_BATCH, MIN_GROUP_COUNT, OUTLIER_Z
from .logging_setup import get_logger
from .models import AggregatedSignal, FeedbackSignal, new_id, utcnow
from .signal_queue import SignalQueue
from .store import get_session

logger = get_logger("toolbox_recs.aggregator")


@dataclass(frozen=True)
class SignalGroup:
    aggregated_id: str
    group_key: str
    kind: str
    target_id: str
    count: int
    avg_strength: float
    consensus_level: float
    time_start: datetime
    time_end: datetime
    subjects: FrozenSet[str]
    signal_ids: Tuple[str, ...]


@dataclass
class Batch:
    signals: List[FeedbackSignal]
    cutoff: datetime
    groups: List[SignalGroup] = field(default_factory=list)
    kept: List[SignalGroup] = field(default_factory=list)
    dropped: Dict[str, str] = field(default_factory=dict)  # group_key -> reason

    @property
    def size(self) -> int:
        return len(self.signals)


def consensus(strengths: Sequence[float]) -> float:
    """1 when everyone agrees; 0 at the widest possible spread on [0, 1]."""
    if len(strengths) < 2:
        return 1.0
    return max(0.0, min(1.0, 1.0 - 2.0 * statistics.pstdev(strengths)))


class FeedbackAggregator:
    def __init__(
        self,
        queue: SignalQueue,
        session_factory: Callable[[], Session] = get_session,
        max_batch: int = AGGREGATION_MAX_BATCH,
        min_count: int = MIN_GROUP_COUNT,
        outlier_z: float = OUTLIER_Z,
    ):
        self.queue = queue
        self.session_factory = session_factory
        self.max_batch = max_batch
        self.min_count = min_count
        self.outlier_z = outlier_z

    def collect(self, now: Optional[datetime] = None) -> Batch:
        cutoff = now or utcnow()
        queued = set(self.queue.drain(self.max_batch))
        with self.session_factory() as s:
            rows: Dict[str, FeedbackSignal] = {}
            if queued:
                for r in s.exec(select(FeedbackSignal).where(FeedbackSignal.id.in_(list(queued)))).all():
                    if r.status == "pending":
                        rows[r.id] = r
            # back-fill: anything the queue dropped or never saw
            room = self.max_batch - len(rows)
            if room > 0:
                backlog = s.exec(
                    select(FeedbackSignal)
                    .where(FeedbackSignal.status == "pending", FeedbackSignal.timestamp <= cutoff)
                    .order_by(FeedbackSignal.timestamp, FeedbackSignal.id)
                    .limit(room + len(rows))
                ).all()
                for r in backlog:
                    if len(rows) >= self.max_batch:
                        break
                    rows.setdefault(r.id, r)
            for r in rows.values():
                s.expunge(r)
        signals = sorted(rows.values(), key=lambda r: (r.timestamp, r.id))
        logger.info("BATCH_COLLECTED", extra={"signals": len(signals), "from_queue": len(queued)})
        return Batch(signals=signals, cutoff=cutoff)

    def aggregate(self, batch: Batch) -> List[SignalGroup]:
        buckets: Dict[Tuple[str, str], List[FeedbackSignal]] = {}
        for sig in batch.signals:
            buckets.setdefault((sig.kind, sig.target_id), []).append(sig)
        groups = []
        for (kind, target), sigs in sorted(buckets.items()):
            strengths = [min(1.0, max(0.0, s.strength)) for s in sigs]
            groups.append(SignalGroup(
                aggregated_id=new_id(),
                group_key=f"{kind}:{target}",
                kind=kind,
                target_id=target,
                count=len(sigs),
                avg_strength=sum(strengths) / len(strengths),
                consensus_level=consensus(strengths),
                time_start=min(s.timestamp for s in sigs),
                time_end=max(s.timestamp for s in sigs),
                subjects=frozenset(s.subject_id for s in sigs),
                signal_ids=tuple(s.id for s in sigs),
            ))
        batch.groups = groups
        return groups

    def quality_filter(self, batch: Batch) -> float:
        """
        Drop thin groups and avg-strength outliers. Returns the stage confidence:
        share of signals that survived times their count-weighted consensus.
        """
        dropped: Dict[str, str] = {}
        kept = []
        for g in batch.groups:
            if g.count < self.min_count:
                dropped[g.group_key] = f"count {g.count} < {self.min_count}"
            else:
                kept.append(g)

        if len(kept) >= 3:
            values = [g.avg_strength for g in kept]
            mu = statistics.fmean(values)
            sd = statistics.pstdev(values)
            if sd > 0:
                survivors = []
                for g in kept:
                    z = (g.avg_strength - mu) / sd
                    if abs(z) > self.outlier_z:
                        dropped[g.group_key] = f"outlier z={z:.2f}"
                    else:
                        survivors.append(g)
                kept = survivors

        batch.kept = kept
        batch.dropped = dropped
        total = sum(g.count for g in batch.groups)
        retained = sum(g.count for g in kept)
        if not total or not retained:
            return 0.0
        mean_consensus = sum(g.consensus_level * g.count for g in kept) / retained
        confidence = (retained / total) * mean_consensus
        logger.info(
            "QUALITY_FILTERED",
            extra={"groups": len(batch.groups), "kept": len(kept), "dropped": len(dropped), "confidence": round(confidence, 4)},
        )
        return confidence

    def finalize(self, batch: Batch, run_id: str, consumed: bool) -> List[AggregatedSignal]:
        """
        Persist the batch outcome: aggregates as consumed (fed a training run)
        or discarded, and every signal of the batch as aggregated.
        """
        kept_keys = {g.group_key for g in batch.kept}
        now = utcnow()
        rows = []
        with self.session_factory() as s:
            for g in batch.groups:
                status = "consumed" if consumed and g.group_key in kept_keys else "discarded"
                row = AggregatedSignal(
                    id=g.aggregated_id,
                    group_key=g.group_key,
                    kind=g.kind,
                    target_id=g.target_id,
                    count=g.count,
                    avg_strength=g.avg_strength,
                    consensus_level=g.consensus_level,
                    time_start=g.time_start,
                    time_end=g.time_end,
                    distinct_subjects=len(g.subjects),
                    status=status,
                    run_id=run_id,
                )
                s.add(row)
                rows.append(row)
            ids = [sig.id for sig in batch.signals]
            for i in range(0, len(ids), 500):
                s.exec(
                    update(FeedbackSignal)
                    .where(FeedbackSignal.id.in_(ids[i:i + 500]), FeedbackSignal.status == "pending")
                    .values(status="aggregated", aggregated_at=now)
                )
            s.commit()
            for r in rows:
                s.refresh(r)
                s.expunge(r)
        logger.info("BATCH_FINALIZED", extra={"run_id": run_id, "groups": len(rows), "consumed": consumed})
        return rows
