# toolbox_recs/routers/health.py
from fastapi import APIRouter, Depends

from ..logging_setup import get_logger
from ..services import Services, get_services

logger = get_logger("toolbox_recs.routes.health")

router = APIRouter()


@router.get("/health")
def health(services: Services = Depends(get_services)):
    logger.debug("Health check invoked")
    return {
        "status": "ok",
        "surfaces": {s: services.registry.active_version_id(s) for s in services.registry.surfaces()},
        "queued": len(services.queue),
        "deadLetters": services.dead_letters.count,
    }


@router.get("/")
def read_root():
    logger.debug("Root hit")
    return {"status": "ok", "message": "Toolbox recommendations API"}
