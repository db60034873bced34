# toolbox_recs/scheduler.py
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MAX_INSTANCES
import pytz

from .config import AGGREGATION_WINDOW_SECONDS, ARCHIVE_HOUR, DEFAULT_SURFACE, EXPERIMENT_EVAL_MINUTES, TIMEZONE
from .workflow import archive_signals, evaluate_experiments, run_learning_cycle
from .logging_setup import get_logger

logger = get_logger("toolbox_recs.scheduler")
scheduler = BackgroundScheduler()


def _job_listener(event):
    if event.code == EVENT_JOB_MAX_INSTANCES:
        # previous run still going; the pipeline lock would have queued it anyway
        logger.warning("JOB_SKIPPED_OVERLAP", extra={"job_id": event.job_id, "run_time": str(event.scheduled_run_times)})
    elif event.exception:
        logger.exception(
            "JOB_ERROR",
            extra={"handled": False, "job_id": event.job_id, "run_time": str(event.scheduled_run_time)}
        )
    else:
        logger.info(
            "JOB_OK",
            extra={"job_id": event.job_id, "run_time": str(event.scheduled_run_time)}
        )


def add_jobs(surfaces=(DEFAULT_SURFACE,)):
    tz = pytz.timezone(TIMEZONE)
    for surface in surfaces:
        scheduler.add_job(
            run_learning_cycle,
            IntervalTrigger(seconds=AGGREGATION_WINDOW_SECONDS, timezone=tz),
            kwargs={"surface": surface},
            id=f"learning_cycle:{surface}",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
    scheduler.add_job(
        evaluate_experiments,
        IntervalTrigger(minutes=EXPERIMENT_EVAL_MINUTES, timezone=tz),
        id="experiment_evaluation",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        archive_signals,
        CronTrigger(hour=ARCHIVE_HOUR, minute=0, timezone=tz),
        id="signal_archive",
        replace_existing=True,
    )
    scheduler.add_listener(_job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MAX_INSTANCES)
    logger.info(
        f"Jobs registered: learning every {AGGREGATION_WINDOW_SECONDS}s, experiments every "
        f"{EXPERIMENT_EVAL_MINUTES}m, archive at {ARCHIVE_HOUR:02d}:00 {TIMEZONE}"
    )


def start_scheduler():
    if not scheduler.running:
        scheduler.start()
        logger.info("APScheduler started")


def shutdown_scheduler(wait: bool = False):
    if scheduler.running:
        scheduler.shutdown(wait=wait)
        logger.info("APScheduler stopped")
