# toolbox_recs/workflow.py
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import uuid
import time

from sqlalchemy import update

from .config import DEFAULT_SURFACE, SIGNAL_RETENTION_DAYS
from .models import FeedbackSignal, utcnow
from .store import get_session
from .logging_setup import get_logger
from .services import Services, get_services

logger = get_logger("toolbox_recs.workflow")


def run_learning_cycle(surface: str = DEFAULT_SURFACE, services: Optional[Services] = None) -> Dict[str, Any]:
    """
    One scheduled learning cycle for a surface:
    - run the learning pipeline over the pending signal window
    - summarize the outcome for the job log
    The pipeline records its own PipelineRun; this wrapper only adds timing
    and the fatal-error log for the scheduler.
    """
    services = services or get_services()
    cycle_id = uuid.uuid4().hex[:8]

    def X(**fields):
        return {"cycle_id": cycle_id, "surface": surface, **fields}

    logger.info("LEARNING_CYCLE_START", extra=X(step="start", queued=len(services.queue)))
    t0 = time.perf_counter()
    try:
        result = services.run_pipeline(surface)
        summary = {
            "run_id": result.run_id,
            "status": result.status,
            "reason": result.reason,
            "candidate_id": result.candidate_id,
            "confidences": result.confidences,
        }
        logger.info(
            "LEARNING_CYCLE_DONE",
            extra=X(step="end", total_elapsed_ms=round((time.perf_counter() - t0) * 1000), **summary),
        )
        return summary
    except Exception as e:
        logger.exception(
            "LEARNING_CYCLE_FATAL",
            extra=X(
                step="fatal",
                handled=False,
                error=type(e).__name__,
                total_elapsed_ms=round((time.perf_counter() - t0) * 1000),
            ),
        )
        raise


def evaluate_experiments(services: Optional[Services] = None) -> List[Dict[str, Any]]:
    services = services or get_services()
    decisions = services.experiments.evaluate_all()
    out = [
        {"experiment_id": d.experiment_id, "decision": d.decision, "reason": d.reason, "p_value": d.p_value}
        for d in decisions
    ]
    logger.info("EXPERIMENTS_EVALUATED", extra={"count": len(out), "decided": sum(1 for d in out if d["decision"] != "pending")})
    return out


def archive_signals(retention_days: int = SIGNAL_RETENTION_DAYS, now: Optional[datetime] = None) -> int:
    """Mark aggregated signals older than the retention window as archived. Pending ones are never touched."""
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    t0 = time.perf_counter()
    with get_session() as s:
        res = s.exec(
            update(FeedbackSignal)
            .where(FeedbackSignal.status == "aggregated", FeedbackSignal.timestamp < cutoff)
            .values(status="archived")
        )
        s.commit()
        archived = res.rowcount or 0
    logger.info(
        "SIGNALS_ARCHIVED",
        extra={"archived": archived, "cutoff": cutoff.isoformat(), "elapsed_ms": round((time.perf_counter() - t0) * 1000)},
    )
    return archived
