# toolbox_recs/registry.py
"""
ModelVersion lifecycle and the serving pointer.

Each surface has one immutable ServingSnapshot (active model, optional canary
and its traffic share). Writers build a new snapshot and swap the reference;
readers grab the current reference once per request and never see a half
applied change. Status changes hit the database first, then the pointer.
"""
from __future__ import annotations

import copy
import hashlib
import threading
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlmodel import Session, select

from .errors import InvalidTransition, NotFoundError, TransientStorageError
from .logging_setup import get_logger
from .models import AuditEntry, ModelVersion, utcnow
from .ranker import default_weights
from .store import get_session, with_storage_retry

logger = get_logger("toolbox_recs.registry")
alerts = get_logger("toolbox_recs.alerts")

DRAFT, CANARY, ACTIVE, RETIRED = "draft", "canary", "active", "retired"

# Forward only. Retired versions are kept for audit and rollback reference.
ALLOWED_TRANSITIONS = {
    DRAFT: {CANARY, RETIRED},
    CANARY: {ACTIVE, RETIRED},
    ACTIVE: {RETIRED},
    RETIRED: set(),
}


def stable_bucket(key: str, buckets: int = 100) -> int:
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % buckets


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class LoadedModel:
    version_id: str
    surface: str
    weights: Mapping[str, Any]
    index_ref: str

    @classmethod
    def from_row(cls, row: ModelVersion, index_ref: Optional[str] = None) -> "LoadedModel":
        return cls(row.id, row.surface, _freeze(copy.deepcopy(row.weights)), index_ref or row.embedding_index_ref)

    def weights_dict(self) -> Dict[str, Any]:
        return _thaw(self.weights)


@dataclass(frozen=True)
class ServingSnapshot:
    surface: str
    active: LoadedModel
    canary: Optional[LoadedModel] = None
    canary_percent: int = 0
    generation: int = 0

    def model_for(self, subject_id: str) -> LoadedModel:
        if self.canary is not None and self.canary_percent > 0:
            if stable_bucket(f"{self.surface}:canary:{subject_id}") < self.canary_percent:
                return self.canary
        return self.active


class ModelRegistry:
    def __init__(
        self,
        session_factory: Callable[[], Session] = get_session,
        retry_sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.retry_sleep = retry_sleep
        self._snapshots: Dict[str, ServingSnapshot] = {}
        self._write_lock = threading.RLock()

    # ---- reads (lock-free) ----

    def snapshot(self, surface: str) -> ServingSnapshot:
        snap = self._snapshots.get(surface)
        if snap is None:
            raise NotFoundError(f"surface {surface!r} has no active model")
        return snap

    def surfaces(self) -> List[str]:
        return sorted(self._snapshots)

    def get_version(self, version_id: str) -> ModelVersion:
        with self.session_factory() as s:
            row = s.get(ModelVersion, version_id)
            if row is None:
                raise NotFoundError(f"model version {version_id!r} not found")
            s.expunge(row)
            return row

    def load(self, version_id: str) -> LoadedModel:
        for snap in list(self._snapshots.values()):
            for m in (snap.active, snap.canary):
                if m is not None and m.version_id == version_id:
                    return m
        return LoadedModel.from_row(self.get_version(version_id))

    def active_version_id(self, surface: str) -> Optional[str]:
        snap = self._snapshots.get(surface)
        return snap.active.version_id if snap else None

    # ---- writes ----

    def _swap(self, surface: str, **changes) -> ServingSnapshot:
        old = self._snapshots.get(surface)
        if old is None:
            new = ServingSnapshot(surface=surface, **changes)
        else:
            fields = {"active": old.active, "canary": old.canary, "canary_percent": old.canary_percent}
            fields.update(changes)
            new = ServingSnapshot(surface=surface, generation=old.generation + 1, **fields)
        # copy-on-write: the dict object itself is replaced, never mutated
        self._snapshots = {**self._snapshots, surface: new}
        return new

    def _transition(self, row: ModelVersion, new_status: str) -> None:
        if new_status not in ALLOWED_TRANSITIONS[row.status]:
            raise InvalidTransition(f"{row.id}: {row.status} -> {new_status} is not allowed")
        row.status = new_status

    def _audit(self, s: Session, surface: str, action: str, version_id: Optional[str], payload: Optional[Dict] = None) -> None:
        s.add(AuditEntry(surface=surface, action=action, model_version_id=version_id, payload=payload or {}))

    def bootstrap(self, surface: str, index_ref: str, weights: Optional[Dict] = None) -> ServingSnapshot:
        """Load the active version of a surface, creating a baseline one on first start."""
        with self._write_lock, self.session_factory() as s:
            current = self._snapshots.get(surface)
            if current is None or current.canary is None:
                # no rollout is in flight, so any 'canary' row is left over from a rollback that never got persisted
                for orphan in s.exec(
                    select(ModelVersion).where(ModelVersion.surface == surface, ModelVersion.status == CANARY)
                ).all():
                    self._transition(orphan, RETIRED)
                    s.add(orphan)
                    self._audit(s, surface, "canary_rollback", orphan.id, {"reason": "orphaned canary retired at bootstrap"})
                    alerts.warning("CANARY_ORPHAN_RETIRED", extra={"surface": surface, "version": orphan.id})
            row = s.exec(
                select(ModelVersion).where(ModelVersion.surface == surface, ModelVersion.status == ACTIVE)
            ).first()
            if row is None:
                row = ModelVersion(
                    surface=surface,
                    weights=weights or default_weights(),
                    embedding_index_ref=index_ref,
                    training_history=[{"event": "bootstrap", "at": utcnow().isoformat()}],
                    status=ACTIVE,
                )
                s.add(row)
                self._audit(s, surface, "bootstrap", row.id, {"index_ref": index_ref})
                logger.info("MODEL_BOOTSTRAPPED", extra={"surface": surface, "version": row.id})
            elif row.embedding_index_ref != index_ref:
                self._audit(s, surface, "index_rebased", row.id, {"from": row.embedding_index_ref, "to": index_ref})
                row.embedding_index_ref = index_ref
                s.add(row)
            s.commit()
            s.refresh(row)
            return self._swap(surface, active=LoadedModel.from_row(row), canary=None, canary_percent=0)

    def refresh_index(self, surface: str, index_ref: str) -> ServingSnapshot:
        """Catalog changed: keep the weights, serve them against the new index."""
        with self._write_lock:
            snap = self.snapshot(surface)
            if snap.canary is not None:
                # A catalog change mid-rollout would compare two different indexes
                raise InvalidTransition(f"surface {surface!r} has a canary in flight")
            return self.bootstrap(surface, index_ref)

    def create_draft(self, surface: str, weights: Dict, index_ref: str, history: List[Dict], parent_id: Optional[str]) -> ModelVersion:
        with self.session_factory() as s:
            row = ModelVersion(
                surface=surface,
                weights=weights,
                embedding_index_ref=index_ref,
                training_history=history,
                status=DRAFT,
                parent_id=parent_id,
            )
            s.add(row)
            self._audit(s, surface, "draft_created", row.id, {"parent_id": parent_id})
            s.commit()
            s.refresh(row)
            s.expunge(row)
        logger.info("MODEL_DRAFT_CREATED", extra={"surface": surface, "version": row.id, "parent": parent_id})
        return row

    def start_canary(self, version_id: str) -> ServingSnapshot:
        with self._write_lock, self.session_factory() as s:
            row = s.get(ModelVersion, version_id)
            if row is None:
                raise NotFoundError(f"model version {version_id!r} not found")
            snap = self.snapshot(row.surface)
            if snap.canary is not None:
                raise InvalidTransition(f"surface {row.surface!r} already has canary {snap.canary.version_id}")
            self._transition(row, CANARY)
            s.add(row)
            self._audit(s, row.surface, "canary_started", row.id, {"previous_active": snap.active.version_id})
            s.commit()
            s.refresh(row)
            return self._swap(row.surface, canary=LoadedModel.from_row(row, snap.active.index_ref), canary_percent=0)

    def set_canary_percent(self, surface: str, percent: int) -> ServingSnapshot:
        with self._write_lock:
            snap = self.snapshot(surface)
            if snap.canary is None:
                raise InvalidTransition(f"surface {surface!r} has no canary")
            with self.session_factory() as s:
                self._audit(s, surface, "canary_stage", snap.canary.version_id, {"percent": percent})
                s.commit()
            logger.info("CANARY_STAGE", extra={"surface": surface, "version": snap.canary.version_id, "percent": percent})
            return self._swap(surface, canary_percent=int(percent))

    def promote_canary(self, surface: str) -> ServingSnapshot:
        with self._write_lock:
            snap = self.snapshot(surface)
            if snap.canary is None:
                raise InvalidTransition(f"surface {surface!r} has no canary")
            with self.session_factory() as s:
                new_row = s.get(ModelVersion, snap.canary.version_id)
                old_row = s.get(ModelVersion, snap.active.version_id)
                self._transition(new_row, ACTIVE)
                self._transition(old_row, RETIRED)
                s.add(new_row)
                s.add(old_row)
                self._audit(s, surface, "promoted", new_row.id, {"retired": old_row.id})
                s.commit()
            logger.info("MODEL_PROMOTED", extra={"surface": surface, "version": snap.canary.version_id, "retired": snap.active.version_id})
            return self._swap(surface, active=snap.canary, canary=None, canary_percent=0)

    def rollback_canary(self, surface: str, reason: str, metrics: Optional[Dict] = None) -> ServingSnapshot:
        with self._write_lock:
            snap = self.snapshot(surface)
            if snap.canary is None:
                return snap
            # Pointer first: traffic must be off the canary even if the database write fails
            new = self._swap(surface, canary=None, canary_percent=0)
            version_id = snap.canary.version_id
            payload = {
                "reason": reason,
                "percent": snap.canary_percent,
                "restored": snap.active.version_id,
                "metrics": metrics or {},
            }

            def persist() -> None:
                with self.session_factory() as s:
                    row = s.get(ModelVersion, version_id)
                    if row.status != RETIRED:
                        self._transition(row, RETIRED)
                        s.add(row)
                    self._audit(s, surface, "canary_rollback", version_id, payload)
                    s.commit()

            try:
                with_storage_retry(persist, op="canary_rollback", sleep=self.retry_sleep)
            except TransientStorageError as e:
                # the row stays 'canary' until the next bootstrap retires it
                alerts.critical(
                    "ALERT_ROLLBACK_NOT_PERSISTED",
                    extra={"surface": surface, "version": version_id, "reason": reason, "error": str(e)},
                )
                raise
            alerts.warning("CANARY_ROLLED_BACK", extra={"surface": surface, "version": version_id, "reason": reason})
            return new

    def retire(self, version_id: str, reason: str) -> None:
        with self._write_lock, self.session_factory() as s:
            row = s.get(ModelVersion, version_id)
            if row is None:
                raise NotFoundError(f"model version {version_id!r} not found")
            if row.status == ACTIVE:
                raise InvalidTransition("retire the active version by promoting another one")
            if row.status == RETIRED:
                return
            self._transition(row, RETIRED)
            s.add(row)
            self._audit(s, row.surface, "retired", row.id, {"reason": reason})
            s.commit()

    def audit_log(self, surface: str) -> List[AuditEntry]:
        with self.session_factory() as s:
            rows = s.exec(select(AuditEntry).where(AuditEntry.surface == surface).order_by(AuditEntry.id)).all()
            for r in rows:
                s.expunge(r)
            return list(rows)
