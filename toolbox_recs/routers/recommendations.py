# toolbox_recs/routers/recommendations.py
from fastapi import APIRouter, Depends

from ..logging_setup import get_logger
from ..schema import RecommendationOut, RecommendationQuery, RecommendationResponse
from ..services import Services, get_services

logger = get_logger("toolbox_recs.routes.recommendations")

router = APIRouter(prefix="/recommendations", tags=["Recommendations"])


@router.post("", response_model=RecommendationResponse)
def recommend(body: RecommendationQuery, services: Services = Depends(get_services)):
    result = services.engine.recommend(body.subject_token, body.context, body.limit)
    return RecommendationResponse(
        items=[RecommendationOut(item_id=r.candidate_id, score=r.score, reason=r.reasoning) for r in result.items],
        model_version=result.model_version,
        fallback=result.fallback,
    )
