# toolbox_recs/routers/experiments.py
from fastapi import APIRouter, Depends

from ..logging_setup import get_logger
from ..privacy import pseudonymize
from ..schema import AssignIn, ExperimentIn, ObservationIn
from ..services import Services, get_services
from .admin import require_admin

logger = get_logger("toolbox_recs.routes.experiments")

router = APIRouter(prefix="/experiments", tags=["Experiments"])


def _experiment_out(exp, summary=None) -> dict:
    return {
        "id": exp.id,
        "surface": exp.surface,
        "variants": exp.variants,
        "baseline": exp.baseline,
        "trafficSplit": exp.traffic_split,
        "successMetrics": exp.success_metrics,
        "status": exp.status,
        "decision": exp.decision,
        "createdAt": exp.created_at.isoformat(),
        "closedAt": exp.closed_at.isoformat() if exp.closed_at else None,
        "summary": summary or {},
    }


@router.post("", status_code=201)
def create_experiment(body: ExperimentIn, _: None = Depends(require_admin), services: Services = Depends(get_services)):
    exp = services.experiments.create_experiment(
        variants=body.variants,
        traffic_split=body.traffic_split,
        success_metrics=body.success_metrics,
        surface=body.surface,
        baseline=body.baseline,
    )
    return _experiment_out(exp)


@router.get("/{experiment_id}")
def get_experiment(experiment_id: str, services: Services = Depends(get_services)):
    exp = services.experiments.get(experiment_id)
    return _experiment_out(exp, services.experiments.summary(experiment_id))


@router.post("/{experiment_id}/assign")
def assign(experiment_id: str, body: AssignIn, services: Services = Depends(get_services)):
    exp = services.experiments.get(experiment_id)
    variant = services.experiments.assign(pseudonymize(body.subject_token), experiment_id)
    return {"experimentId": experiment_id, "variant": variant, "modelVersion": exp.variants[variant]}


@router.post("/{experiment_id}/observations", status_code=201)
def record_observation(experiment_id: str, body: ObservationIn, services: Services = Depends(get_services)):
    subject_id = pseudonymize(body.subject_token) if body.subject_token else None
    obs = services.experiments.record(experiment_id, body.metric, body.value, subject_id=subject_id, variant=body.variant)
    return {"id": obs.id, "variant": obs.variant, "metric": obs.metric, "value": obs.value}


@router.post("/{experiment_id}/evaluate")
def evaluate(experiment_id: str, _: None = Depends(require_admin), services: Services = Depends(get_services)):
    d = services.experiments.evaluate(experiment_id)
    return {
        "experimentId": d.experiment_id,
        "decision": d.decision,
        "reason": d.reason,
        "metric": d.metric,
        "treatment": d.treatment,
        "baselineMean": d.baseline_mean,
        "treatmentMean": d.treatment_mean,
        "pValue": d.p_value,
        "samples": d.samples,
    }
