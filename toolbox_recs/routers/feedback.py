# toolbox_recs/routers/feedback.py
from fastapi import APIRouter, Depends

from ..logging_setup import get_logger
from ..schema import FeedbackAck, FeedbackIn
from ..services import Services, get_services

logger = get_logger("toolbox_recs.routes.feedback")

router = APIRouter(prefix="/feedback", tags=["Feedback"])


@router.post("", response_model=FeedbackAck)
def post_feedback(body: FeedbackIn, services: Services = Depends(get_services)):
    logger.debug(f"Feedback received: kind={body.kind} target={body.target_id}")
    return services.collector.submit(body)
