"""
store.py
========
Database gateway for the recommendation service.

It does four things:
1) Creates the connection "engine" from DB_URL (SQLite by default; any SQLAlchemy URL works).
2) Creates tables (once) from the SQLModel classes in models.py.
3) Opens database Sessions (a unit of work/transaction).
4) Wraps storage calls in bounded exponential backoff and dead-letters what still fails.

The storage engine itself is a collaborator: everything above it only relies on
an append-only signal log, a key-value profile table and versioned model rows.
"""

from sqlmodel import SQLModel, Session, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar
import json
import threading
import time

from .config import (
    DB_URL, DEAD_LETTER_PATH,
    STORAGE_RETRY_ATTEMPTS, STORAGE_RETRY_BASE_DELAY, STORAGE_RETRY_MAX_DELAY,
)
from .errors import TransientStorageError
from .logging_setup import get_logger

logger = get_logger("toolbox_recs.store")
alerts = get_logger("toolbox_recs.alerts")

T = TypeVar("T")


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # One shared connection for in-memory databases, otherwise every
        # connection would see its own empty database.
        if url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(
                url, echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(url, echo=False, pool_pre_ping=True)


# The engine is the "connection factory" and pool. Create it once and reuse it.
engine = make_engine(DB_URL)


def init_db() -> None:
    """
    Create all tables from the SQLModel classes in models.py.
    Safe to call on every startup: it only creates missing tables.
    """
    from . import models  # noqa: F401  (import just to register models with SQLModel)

    SQLModel.metadata.create_all(engine)


def reset_db() -> None:
    """Drop and recreate every table. Only meant for tests and local tooling."""
    from . import models  # noqa: F401

    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)


def get_session() -> Session:
    """
    Open a database Session bound to our engine.

    Usage pattern:
      with get_session() as session:
          session.add(obj)
          session.commit()
    """
    return Session(engine)


# ---- Retry & dead letters ----

def with_storage_retry(
    fn: Callable[[], T],
    *,
    op: str = "storage",
    attempts: int = STORAGE_RETRY_ATTEMPTS,
    base_delay: float = STORAGE_RETRY_BASE_DELAY,
    max_delay: float = STORAGE_RETRY_MAX_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run fn(), retrying transient storage failures with exponential backoff.
    Raises the last TransientStorageError once attempts are exhausted.
    """
    last: Optional[TransientStorageError] = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except OperationalError as e:
            last = TransientStorageError(f"{op}: {e.orig if e.orig is not None else e}")
        except TransientStorageError as e:
            last = e
        if attempt < attempts:
            delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
            logger.warning(
                "STORAGE_RETRY",
                extra={"op": op, "attempt": attempt, "delay_s": delay, "error": str(last)},
            )
            sleep(delay)
    assert last is not None
    raise last


class DeadLetterSink:
    """
    Append-only JSONL file for events that could not be stored.
    Kept outside the database: it is written when the database is the problem.
    """

    def __init__(self, path: str = DEAD_LETTER_PATH):
        self.path = Path(path)
        self._lock = threading.Lock()
        self.count = 0

    def write(self, kind: str, payload: Dict[str, Any], error: str) -> None:
        record = {"kind": kind, "payload": payload, "error": error, "ts": time.time()}
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(record, default=str) + "\n")
            self.count += 1
        alerts.critical("ALERT_DEAD_LETTER", extra={"kind": kind, "error": error, "path": str(self.path)})
