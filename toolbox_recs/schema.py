from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime


class _Camel(BaseModel):
    # Wire format is camelCase; Python code uses snake_case
    model_config = ConfigDict(populate_by_name=True)


# ---- Feedback ingestion ----

class ImplicitRawSignal(_Camel):
    clicked: bool = False
    dwell_seconds: float = Field(default=0.0, ge=0, alias="dwellSeconds")
    refined_query: bool = Field(default=False, alias="refinedQuery")
    completed: bool = False


class ExplicitRawSignal(_Camel):
    rating: Optional[int] = Field(default=None, ge=1, le=5)  # 1..5 stars
    liked: Optional[bool] = None
    strength: Optional[float] = Field(default=None, ge=0, le=1)

    @model_validator(mode="after")
    def _exactly_one(self):
        given = [v for v in (self.rating, self.liked, self.strength) if v is not None]
        if len(given) != 1:
            raise ValueError("explicit rawSignal needs exactly one of rating, liked, strength")
        return self


class FeedbackIn(_Camel):
    subject_token: str = Field(min_length=1, alias="subjectToken")
    kind: Literal["implicit", "explicit"]
    target_id: str = Field(min_length=1, alias="targetId")
    raw_signal: Dict[str, Any] = Field(alias="rawSignal")
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None
    idempotency_key: str = Field(min_length=1, alias="idempotencyKey")


class FeedbackAck(_Camel):
    accepted: bool
    duplicate: bool = False
    signal_id: Optional[str] = Field(default=None, alias="signalId")
    strength: Optional[float] = None


# ---- Recommendations ----

class RecommendationQuery(_Camel):
    subject_token: str = Field(min_length=1, alias="subjectToken")
    context: Dict[str, Any] = Field(default_factory=dict)
    limit: int = Field(default=10, ge=1, le=100)


class RecommendationOut(_Camel):
    item_id: str = Field(alias="itemId")
    score: float
    reason: str


class RecommendationResponse(_Camel):
    items: List[RecommendationOut]
    model_version: Optional[str] = Field(default=None, alias="modelVersion")
    fallback: bool = False


# ---- Profiles ----

class PreferencesIn(_Camel):
    subject_token: str = Field(min_length=1, alias="subjectToken")
    categories: List[str] = Field(default_factory=list)


# ---- Experiments ----

class ExperimentIn(_Camel):
    variants: Dict[str, str]  # name -> model version id
    traffic_split: Dict[str, float] = Field(alias="trafficSplit")
    success_metrics: List[str] = Field(min_length=1, alias="successMetrics")
    surface: str = "default"
    baseline: str = "control"


class ObservationIn(_Camel):
    metric: str
    value: float
    subject_token: Optional[str] = Field(default=None, alias="subjectToken")
    variant: Optional[str] = None


class AssignIn(_Camel):
    subject_token: str = Field(min_length=1, alias="subjectToken")


# ---- Catalog (admin) ----

class CatalogItemIn(_Camel):
    id: str
    title: str = ""
    category: str
    gated: bool = False
    popularity: int = Field(default=0, ge=0)
    published_at: Optional[datetime] = Field(default=None, alias="publishedAt")
    embedding: List[float] = Field(min_length=1)


class CatalogUpsertIn(_Camel):
    items: List[CatalogItemIn]
    surface: str = "default"
