# toolbox_recs/routers/admin.py
import os
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, status

from ..catalog import upsert_items
from ..config import DEFAULT_SURFACE
from ..errors import NotFoundError
from ..logging_setup import get_logger
from ..schema import CatalogUpsertIn
from ..services import Services, get_services
from ..workflow import run_learning_cycle

logger = get_logger("toolbox_recs.routes.admin")

router = APIRouter(prefix="/admin", tags=["Admin"])


# --- Simple API key gate ---
def require_admin(x_api_key: Optional[str] = Header(default=None)) -> None:
    expected = os.getenv("ADMIN_API_KEY", "")
    if not expected:
        # Fail closed if the key was never configured
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfigured: ADMIN_API_KEY not set."
        )
    if x_api_key != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


@router.post("/catalog", summary="Upsert catalog items and rebuild the embedding index")
def upsert_catalog(body: CatalogUpsertIn, _: None = Depends(require_admin), services: Services = Depends(get_services)):
    n = upsert_items(body.items)
    index = services.rebuild_index(body.surface)
    logger.info("CATALOG_REFRESHED", extra={"items": n, "index_ref": index.ref, "surface": body.surface})
    return {
        "upserted": n,
        "indexRef": index.ref,
        "indexSize": len(index),
        "activeVersion": services.registry.active_version_id(body.surface),
    }


@router.post("/pipeline/run", summary="Run one learning cycle now")
def run_pipeline(surface: str = DEFAULT_SURFACE, _: None = Depends(require_admin), services: Services = Depends(get_services)):
    return run_learning_cycle(surface, services)


@router.get("/canary/{surface}", summary="Serving pointer and rollout state of a surface")
def canary_status(surface: str, _: None = Depends(require_admin), services: Services = Depends(get_services)):
    snap = services.registry.snapshot(surface)
    run = services.canary.status(surface)
    return {
        "surface": surface,
        "activeVersion": snap.active.version_id,
        "canaryVersion": snap.canary.version_id if snap.canary else None,
        "canaryPercent": snap.canary_percent,
        "rollout": run.as_dict() if run else None,
    }


@router.post("/canary/{surface}/cancel", summary="Cancel a running rollout and restore the previous version")
def cancel_canary(surface: str, _: None = Depends(require_admin), services: Services = Depends(get_services)):
    run = services.canary.cancel(surface)
    if run is None:
        raise NotFoundError(f"no rollout for surface {surface!r}")
    return run.as_dict()
