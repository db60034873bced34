from typing import Optional, List
from sqlmodel import SQLModel, Field, Column, JSON
from datetime import datetime, timezone
import uuid


def utcnow() -> datetime:
    # Naive UTC: SQLite drops tzinfo on the way back anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


# ---- Event log ----

class FeedbackSignal(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    subject_id: str = Field(index=True)  # pseudonymous
    kind: str  # implicit | explicit
    target_id: str = Field(index=True)
    strength: float
    timestamp: datetime = Field(default_factory=utcnow, index=True)
    context: dict = Field(default_factory=dict, sa_column=Column(JSON))
    idempotency_key: str = Field(unique=True, index=True)
    status: str = Field(default="pending", index=True)  # pending | aggregated | archived
    aggregated_at: Optional[datetime] = None


class AggregatedSignal(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    group_key: str = Field(index=True)  # "<kind>:<target_id>"
    kind: str
    target_id: str
    count: int
    avg_strength: float
    consensus_level: float
    time_start: datetime
    time_end: datetime
    distinct_subjects: int = 0
    status: str = Field(default="pending", index=True)  # pending | consumed | discarded
    run_id: Optional[str] = None


# ---- Profiles & catalog ----

class UserProfile(SQLModel, table=True):
    subject_id: str = Field(primary_key=True)
    embedding: List[float] = Field(default_factory=list, sa_column=Column(JSON))
    explicit_preferences: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    activity_level: int = 0
    version: int = 0
    updated_at: datetime = Field(default_factory=utcnow)


class CatalogItem(SQLModel, table=True):
    id: str = Field(primary_key=True)
    title: str = ""
    category: str = Field(index=True)  # ai-tools | automation | productivity | marketing | development | design
    gated: bool = False  # subscriber-only
    popularity: int = 0  # launch / click count
    published_at: Optional[datetime] = None
    embedding: List[float] = Field(default_factory=list, sa_column=Column(JSON))


# ---- Models & rollout ----

class ModelVersion(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    surface: str = Field(index=True)
    weights: dict = Field(default_factory=dict, sa_column=Column(JSON))
    embedding_index_ref: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    training_history: list = Field(default_factory=list, sa_column=Column(JSON))
    status: str = Field(default="draft", index=True)  # draft | canary | active | retired
    parent_id: Optional[str] = None


class AuditEntry(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    surface: str = Field(index=True)
    action: str  # e.g. canary_started, canary_rollback, promoted
    model_version_id: Optional[str] = None
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)


class PipelineRun(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    pipeline_id: str = Field(index=True)
    status: str = "running"  # running | succeeded | aborted | rejected | deferred | failed
    reason: str = ""
    stage_confidences: dict = Field(default_factory=dict, sa_column=Column(JSON))
    metrics: dict = Field(default_factory=dict, sa_column=Column(JSON))
    candidate_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None


# ---- Experiments ----

class Experiment(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    surface: str = Field(index=True)
    variants: dict = Field(default_factory=dict, sa_column=Column(JSON))  # name -> ModelVersion.id
    baseline: str = "control"
    traffic_split: dict = Field(default_factory=dict, sa_column=Column(JSON))  # name -> share
    success_metrics: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    status: str = Field(default="running", index=True)  # running | closed
    decision: Optional[str] = None  # promote | rollback
    created_at: datetime = Field(default_factory=utcnow)
    closed_at: Optional[datetime] = None


class ExperimentAssignment(SQLModel, table=True):
    experiment_id: str = Field(primary_key=True)
    subject_id: str = Field(primary_key=True)
    variant: str
    assigned_at: datetime = Field(default_factory=utcnow)


class ExperimentObservation(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    experiment_id: str = Field(index=True)
    variant: str
    metric: str
    value: float
    ts: datetime = Field(default_factory=utcnow)
