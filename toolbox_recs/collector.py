# toolbox_recs/collector.py
"""
Signal Collector: validate -> pseudonymize -> score -> persist -> enqueue.

High-confidence signals additionally nudge the subject's profile right away
(real-time path); everything also flows to the aggregator (batch path).
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Union
import time

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .config import DWELL_THRESHOLD_SECONDS, REALTIME_STRENGTH_THRESHOLD
from .errors import RecsError, TransientStorageError, ValidationError
from .logging_setup import get_logger
from .models import FeedbackSignal, new_id, utcnow
from .privacy import pseudonymize
from .profiles import ProfileStore
from .providers import EmbeddingProvider
from .schema import ExplicitRawSignal, FeedbackAck, FeedbackIn, ImplicitRawSignal
from .signal_queue import SignalQueue
from .store import DeadLetterSink, get_session, with_storage_retry

logger = get_logger("toolbox_recs.collector")

# Contribution of each implicit behaviour to strength
CLICK_WEIGHT = 0.3
DWELL_WEIGHT = 0.4
REFINE_WEIGHT = 0.1
COMPLETION_WEIGHT = 0.3


def implicit_strength(raw: ImplicitRawSignal, dwell_threshold: float = DWELL_THRESHOLD_SECONDS) -> float:
    s = 0.0
    if raw.clicked:
        s += CLICK_WEIGHT
    if raw.dwell_seconds >= dwell_threshold:
        s += DWELL_WEIGHT
    elif raw.dwell_seconds >= dwell_threshold / 3.0:
        s += DWELL_WEIGHT / 2.0
    if raw.refined_query:
        s += REFINE_WEIGHT
    if raw.completed:
        s += COMPLETION_WEIGHT
    return min(1.0, s)


def explicit_strength(raw: ExplicitRawSignal) -> float:
    if raw.rating is not None:
        return (raw.rating - 1) / 4.0
    if raw.liked is not None:
        return 1.0 if raw.liked else 0.0
    return float(raw.strength)


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, float(x)))


def _as_naive_utc(ts: Optional[datetime]) -> datetime:
    if ts is None:
        return utcnow()
    if ts.tzinfo is not None:
        return ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def parse_event(event: Union[FeedbackIn, Dict[str, Any]]) -> Tuple[FeedbackIn, float]:
    """Schema validation and strength. Raises ValidationError, never retried."""
    try:
        ev = event if isinstance(event, FeedbackIn) else FeedbackIn.model_validate(event)
        if ev.kind == "implicit":
            strength = implicit_strength(ImplicitRawSignal.model_validate(ev.raw_signal))
        else:
            strength = explicit_strength(ExplicitRawSignal.model_validate(ev.raw_signal))
    except PydanticValidationError as e:
        raise ValidationError("malformed feedback event", errors=e.errors(include_url=False)) from e
    return ev, clamp01(strength)


class SignalCollector:
    def __init__(
        self,
        queue: SignalQueue,
        profiles: ProfileStore,
        provider: EmbeddingProvider,
        experiments=None,
        dead_letters: Optional[DeadLetterSink] = None,
        session_factory: Callable[[], Session] = get_session,
        realtime_threshold: float = REALTIME_STRENGTH_THRESHOLD,
        retry_sleep: Callable[[float], None] = time.sleep,
    ):
        self.queue = queue
        self.profiles = profiles
        self.provider = provider
        self.experiments = experiments
        self.dead_letters = dead_letters or DeadLetterSink()
        self.session_factory = session_factory
        self.realtime_threshold = realtime_threshold
        self.retry_sleep = retry_sleep

    def _persist(self, values: Dict[str, Any]) -> Tuple[str, bool]:
        """Insert unless the idempotency key is known. Returns (signal_id, duplicate)."""
        key = values["idempotency_key"]
        with self.session_factory() as s:
            existing = s.exec(select(FeedbackSignal).where(FeedbackSignal.idempotency_key == key)).first()
            if existing is not None:
                return existing.id, True
            # fresh row per attempt: a failed session may leave the old one in limbo
            signal = FeedbackSignal(**values)
            s.add(signal)
            try:
                s.commit()
            except IntegrityError:
                # lost the race against an identical submission
                s.rollback()
                existing = s.exec(select(FeedbackSignal).where(FeedbackSignal.idempotency_key == key)).first()
                if existing is None:
                    raise
                return existing.id, True
            return signal.id, False

    def submit(self, event: Union[FeedbackIn, Dict[str, Any]]) -> FeedbackAck:
        ev, strength = parse_event(event)
        subject_id = pseudonymize(ev.subject_token)
        values = {
            "id": new_id(),
            "subject_id": subject_id,
            "kind": ev.kind,
            "target_id": ev.target_id,
            "strength": strength,
            "timestamp": _as_naive_utc(ev.timestamp),
            "context": dict(ev.context),
            "idempotency_key": ev.idempotency_key,
        }

        try:
            signal_id, duplicate = with_storage_retry(
                lambda: self._persist(values), op="feedback_insert", sleep=self.retry_sleep
            )
        except TransientStorageError as e:
            payload = ev.model_dump(mode="json", by_alias=True, exclude={"subject_token"})
            payload["subjectId"] = subject_id
            self.dead_letters.write("feedback", payload, str(e))
            return FeedbackAck(accepted=False, duplicate=False, signal_id=None, strength=strength)

        if duplicate:
            logger.info("FEEDBACK_DUPLICATE", extra={"signal_id": signal_id, "target": ev.target_id})
            return FeedbackAck(accepted=True, duplicate=True, signal_id=signal_id, strength=strength)

        self.queue.put(signal_id)
        logger.info(
            "FEEDBACK_ACCEPTED",
            extra={"signal_id": signal_id, "kind": ev.kind, "target": ev.target_id, "strength": round(strength, 3)},
        )

        if strength > self.realtime_threshold:
            self._realtime_update(subject_id, ev.target_id, strength)

        experiment_id = ev.context.get("experimentId")
        if experiment_id and self.experiments is not None:
            try:
                self.experiments.record_for_subject(str(experiment_id), subject_id, "engagement", strength)
            except RecsError as e:
                logger.warning("EXPERIMENT_OBSERVATION_SKIPPED", extra={"experiment_id": experiment_id, "error": str(e)})

        return FeedbackAck(accepted=True, duplicate=False, signal_id=signal_id, strength=strength)

    def _realtime_update(self, subject_id: str, target_id: str, strength: float) -> None:
        # Best effort: the batch path will still learn from this signal
        try:
            vector = self.provider.item_vector(target_id)
            if not vector:
                logger.debug("REALTIME_SKIPPED_NO_VECTOR", extra={"target": target_id})
                return
            snap = self.profiles.apply_interaction(subject_id, vector, strength)
            logger.debug("REALTIME_PROFILE_UPDATED", extra={"subject": subject_id[:8], "version": snap.version})
        except Exception as e:
            logger.exception("REALTIME_UPDATE_FAILED", extra={"handled": True, "target": target_id, "error": type(e).__name__})
