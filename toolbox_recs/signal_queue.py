# toolbox_recs/signal_queue.py
"""
Bounded hand-off between the Signal Collector and the Feedback Aggregator.

Only signal ids travel through the queue; the signal itself is already in the
event log with status=pending. When the queue is full the overflow policy
decides what is dropped from the queue, and the aggregator picks the dropped
ids up again from the log, so overflow costs latency, never data.
"""
from collections import deque
from typing import Deque, List
import threading

from .config import QUEUE_MAX_SIZE, QUEUE_OVERFLOW_POLICY
from .logging_setup import get_logger

logger = get_logger("toolbox_recs.queue")

REJECT_NEW = "reject_new"
DROP_OLDEST = "drop_oldest"


class SignalQueue:
    def __init__(self, maxsize: int = QUEUE_MAX_SIZE, policy: str = QUEUE_OVERFLOW_POLICY):
        if policy not in (REJECT_NEW, DROP_OLDEST):
            raise ValueError(f"unknown overflow policy: {policy}")
        if maxsize < 1:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self.policy = policy
        self._items: Deque[str] = deque()
        self._lock = threading.Lock()
        self.overflowed = 0

    def put(self, signal_id: str) -> bool:
        """Returns False when the id itself was not enqueued (reject_new on a full queue)."""
        with self._lock:
            if len(self._items) < self.maxsize:
                self._items.append(signal_id)
                return True
            self.overflowed += 1
            if self.policy == DROP_OLDEST:
                dropped = self._items.popleft()
                self._items.append(signal_id)
                logger.warning("QUEUE_OVERFLOW", extra={"policy": self.policy, "dropped": dropped, "size": self.maxsize})
                return True
        logger.warning("QUEUE_OVERFLOW", extra={"policy": self.policy, "dropped": signal_id, "size": self.maxsize})
        return False

    def drain(self, max_items: int) -> List[str]:
        with self._lock:
            n = min(max_items, len(self._items))
            return [self._items.popleft() for _ in range(n)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
