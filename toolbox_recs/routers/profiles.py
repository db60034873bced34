# toolbox_recs/routers/profiles.py
from fastapi import APIRouter, Depends

from ..logging_setup import get_logger
from ..privacy import pseudonymize
from ..schema import PreferencesIn
from ..services import Services, get_services
from .admin import require_admin

logger = get_logger("toolbox_recs.routes.profiles")

router = APIRouter(prefix="/profiles", tags=["Profiles"])


@router.put("/preferences")
def update_preferences(body: PreferencesIn, services: Services = Depends(get_services)):
    logger.info("Updating preferences")
    snap = services.profiles.set_preferences(pseudonymize(body.subject_token), body.categories)
    return {"ok": True, "categories": sorted(snap.preferences), "version": snap.version}


@router.delete("/{subject_token}")
def erase_profile(subject_token: str, _: None = Depends(require_admin), services: Services = Depends(get_services)):
    removed = services.profiles.erase(pseudonymize(subject_token))
    return {"erased": True, **removed}
