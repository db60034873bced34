# toolbox_recs/lifespan.py
from contextlib import asynccontextmanager
from fastapi import FastAPI

from .config import DEFAULT_SURFACE, SCHEDULER_ENABLED
from .logging_setup import get_logger
from .store import init_db
from .services import get_services
from .scheduler import add_jobs, start_scheduler, shutdown_scheduler

logger = get_logger("toolbox_recs.lifespan")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # ---- Startup ----
    logger.info("APP STARTUP")
    init_db()
    services = get_services()
    services.bootstrap((DEFAULT_SURFACE,))
    app.state.services = services

    if SCHEDULER_ENABLED and not getattr(app.state, "scheduler_started", False):
        logger.info("Registering scheduler jobs")
        add_jobs((DEFAULT_SURFACE,))
        start_scheduler()
        app.state.scheduler_started = True
        logger.info("Scheduler started")

    yield

    # ---- Shutdown ----
    logger.info("APP SHUTDOWN")
    for surface in services.registry.surfaces():
        # a half-finished rollout goes back to the previous version
        services.canary.cancel(surface)
    if getattr(app.state, "scheduler_started", False):
        logger.info("Stopping scheduler")
        shutdown_scheduler(wait=False)
        app.state.scheduler_started = False
