# toolbox_recs/privacy.py
"""
Pseudonymization and the Laplace mechanism.

Raw subject tokens never leave the collector: they are replaced by a keyed
one-way hash. Before aggregates reach the learning pipeline their numeric
fields get Laplace noise and the subject ids are re-hashed with a salt that
rotates every privacy window, so nothing in the training path can be linked
back to a person or across windows.
"""
from __future__ import annotations

import hashlib
import hmac
import threading
import time
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional

import numpy as np

from .config import (
    PSEUDONYM_SALT, PRIVACY_EPSILON, PRIVACY_SENSITIVITY_LEVEL,
    PRIVACY_WINDOW_BUDGET, PRIVACY_WINDOW_SECONDS,
)
from .errors import PrivacyBudgetExhausted
from .logging_setup import get_logger

logger = get_logger("toolbox_recs.privacy")


def pseudonymize(token: str, salt: str = PSEUDONYM_SALT) -> str:
    return hmac.new(salt.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()[:32]


def laplace_noise(value: float, sensitivity: float, epsilon: float, rng: np.random.Generator) -> float:
    """value + Lap(sensitivity / epsilon)"""
    return float(value + rng.laplace(0.0, sensitivity / epsilon))


@dataclass(frozen=True)
class PrivatizedAggregate:
    aggregated_id: str
    group_key: str
    kind: str
    target_id: str
    count: float
    avg_strength: float
    consensus_level: float
    subjects: FrozenSet[str]
    epsilon: float


class BudgetAccountant:
    """
    Tracks epsilon spent per fixed time window. Groups inside one batch are
    disjoint (parallel composition), so a batch costs epsilon once per noised field.
    """

    def __init__(self, budget: float = PRIVACY_WINDOW_BUDGET, window_seconds: int = PRIVACY_WINDOW_SECONDS):
        self.budget = budget
        self.window_seconds = window_seconds
        self._spent: Dict[int, float] = {}
        self._lock = threading.Lock()

    def window_id(self, now: Optional[float] = None) -> int:
        return int((time.time() if now is None else now) // self.window_seconds)

    def remaining(self, now: Optional[float] = None) -> float:
        with self._lock:
            return self.budget - self._spent.get(self.window_id(now), 0.0)

    def charge(self, cost: float, now: Optional[float] = None) -> int:
        wid = self.window_id(now)
        with self._lock:
            spent = self._spent.get(wid, 0.0)
            if spent + cost > self.budget + 1e-12:
                raise PrivacyBudgetExhausted(
                    f"privacy budget exhausted for window {wid}",
                    window_id=wid, remaining=self.budget - spent,
                )
            self._spent[wid] = spent + cost
            # Old windows can never be charged again
            for old in [w for w in self._spent if w < wid]:
                del self._spent[old]
        return wid


class PrivacyProcessor:
    NOISED_FIELDS = 2  # count, avg_strength

    def __init__(
        self,
        sensitivity_level: str = PRIVACY_SENSITIVITY_LEVEL,
        accountant: Optional[BudgetAccountant] = None,
        rng: Optional[np.random.Generator] = None,
        secret: str = PSEUDONYM_SALT,
    ):
        if sensitivity_level not in PRIVACY_EPSILON:
            raise ValueError(f"unknown sensitivity level: {sensitivity_level}")
        self.sensitivity_level = sensitivity_level
        self.epsilon = PRIVACY_EPSILON[sensitivity_level]
        self.accountant = accountant or BudgetAccountant()
        self.rng = rng or np.random.default_rng()
        self._secret = secret

    def batch_cost(self) -> float:
        return self.epsilon * self.NOISED_FIELDS

    def _window_salt(self, window_id: int) -> str:
        return hmac.new(self._secret.encode("utf-8"), f"window:{window_id}".encode("utf-8"), hashlib.sha256).hexdigest()

    def privatize_one(self, group, window_salt: str) -> PrivatizedAggregate:
        count = max(int(group.count), 1)
        noisy_count = max(0.0, laplace_noise(count, 1.0, self.epsilon, self.rng))
        noisy_avg = laplace_noise(group.avg_strength, 1.0 / count, self.epsilon, self.rng)
        return PrivatizedAggregate(
            aggregated_id=group.aggregated_id,
            group_key=group.group_key,
            kind=group.kind,
            target_id=group.target_id,
            count=noisy_count,
            avg_strength=min(1.0, max(0.0, noisy_avg)),
            consensus_level=group.consensus_level,
            subjects=frozenset(pseudonymize(s, window_salt) for s in group.subjects),
            epsilon=self.epsilon,
        )

    def privatize(self, groups: Iterable, now: Optional[float] = None) -> List[PrivatizedAggregate]:
        """
        Charge the window budget, then noise every group.
        Raises PrivacyBudgetExhausted without touching the groups when the window is spent.
        """
        groups = list(groups)
        wid = self.accountant.charge(self.batch_cost(), now)
        salt = self._window_salt(wid)
        out = [self.privatize_one(g, salt) for g in groups]
        logger.info(
            "PRIVACY_APPLIED",
            extra={"groups": len(out), "epsilon": self.epsilon, "window_id": wid,
                   "remaining_budget": round(self.accountant.remaining(now), 4)},
        )
        return out
