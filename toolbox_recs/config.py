import os
from dotenv import load_dotenv
from pathlib import Path

# Go up one level from toolbox_recs/ to root/
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


def _floats(raw: str):
    return [float(x) for x in raw.split(",") if x.strip()]


# Storage
DB_URL = os.getenv("DB_URL", "sqlite:///toolbox_recs.db")
STORAGE_RETRY_ATTEMPTS = int(os.getenv("STORAGE_RETRY_ATTEMPTS", "4"))
STORAGE_RETRY_BASE_DELAY = float(os.getenv("STORAGE_RETRY_BASE_DELAY", "0.05"))
STORAGE_RETRY_MAX_DELAY = float(os.getenv("STORAGE_RETRY_MAX_DELAY", "1.0"))
DEAD_LETTER_PATH = os.getenv("DEAD_LETTER_PATH", "logs/dead_letter.jsonl")

# Identity
PSEUDONYM_SALT = os.getenv("PSEUDONYM_SALT", "change-me")

# Signal collection
DWELL_THRESHOLD_SECONDS = float(os.getenv("DWELL_THRESHOLD_SECONDS", "30"))
REALTIME_STRENGTH_THRESHOLD = float(os.getenv("REALTIME_STRENGTH_THRESHOLD", "0.7"))
REALTIME_ALPHA = float(os.getenv("REALTIME_ALPHA", "0.2"))
PROFILE_UPDATE_RETRIES = int(os.getenv("PROFILE_UPDATE_RETRIES", "5"))
QUEUE_MAX_SIZE = int(os.getenv("QUEUE_MAX_SIZE", "10000"))
QUEUE_OVERFLOW_POLICY = os.getenv("QUEUE_OVERFLOW_POLICY", "reject_new")
SIGNAL_RETENTION_DAYS = int(os.getenv("SIGNAL_RETENTION_DAYS", "30"))

# Aggregation
AGGREGATION_WINDOW_SECONDS = int(os.getenv("AGGREGATION_WINDOW_SECONDS", "60"))
AGGREGATION_MAX_BATCH = int(os.getenv("AGGREGATION_MAX_BATCH", "5000"))
MIN_GROUP_COUNT = int(os.getenv("MIN_GROUP_COUNT", "10"))
OUTLIER_Z = float(os.getenv("OUTLIER_Z", "3.0"))
MIN_STAGE_CONFIDENCE = float(os.getenv("MIN_STAGE_CONFIDENCE", "0.3"))

# Privacy
PRIVACY_EPSILON = {
    "low": float(os.getenv("PRIVACY_EPSILON_LOW", "1.0")),
    "medium": float(os.getenv("PRIVACY_EPSILON_MEDIUM", "0.5")),
    "high": float(os.getenv("PRIVACY_EPSILON_HIGH", "0.1")),
}
PRIVACY_SENSITIVITY_LEVEL = os.getenv("PRIVACY_SENSITIVITY_LEVEL", "medium")
PRIVACY_WINDOW_BUDGET = float(os.getenv("PRIVACY_WINDOW_BUDGET", "4.0"))
PRIVACY_WINDOW_SECONDS = int(os.getenv("PRIVACY_WINDOW_SECONDS", "3600"))

# Learning
BASE_LEARNING_RATE = float(os.getenv("BASE_LEARNING_RATE", "0.5"))
LR_REFERENCE_BATCH = int(os.getenv("LR_REFERENCE_BATCH", "50"))
NEUTRAL_STRENGTH = float(os.getenv("NEUTRAL_STRENGTH", "0.5"))
MIN_VALIDATION_ACCURACY = float(os.getenv("MIN_VALIDATION_ACCURACY", "0.8"))
DECISION_THRESHOLD = float(os.getenv("DECISION_THRESHOLD", "0.5"))
EVALUATION_SET_PATH = os.getenv(
    "EVALUATION_SET_PATH",
    str(Path(__file__).resolve().parent / "data" / "evaluation_set.json"),
)

# Serving
DEFAULT_SURFACE = os.getenv("DEFAULT_SURFACE", "default")
ANN_CANDIDATES = int(os.getenv("ANN_CANDIDATES", "100"))
DIVERSITY_MAX_PER_CATEGORY = int(os.getenv("DIVERSITY_MAX_PER_CATEGORY", "3"))
DEFAULT_LIMIT = int(os.getenv("DEFAULT_LIMIT", "10"))
FRESHNESS_HALF_LIFE_DAYS = float(os.getenv("FRESHNESS_HALF_LIFE_DAYS", "30"))
METRICS_WINDOW = int(os.getenv("METRICS_WINDOW", "500"))

# Experiments & rollout
EXPERIMENT_MIN_SAMPLES = int(os.getenv("EXPERIMENT_MIN_SAMPLES", "100"))
SIGNIFICANCE_LEVEL = float(os.getenv("SIGNIFICANCE_LEVEL", "0.05"))
GUARDRAIL_ERROR_RATE_TOLERANCE = float(os.getenv("GUARDRAIL_ERROR_RATE_TOLERANCE", "0.01"))
GUARDRAIL_LATENCY_TOLERANCE = float(os.getenv("GUARDRAIL_LATENCY_TOLERANCE", "0.10"))
AUTO_EXPERIMENT = os.getenv("AUTO_EXPERIMENT", "true").lower() == "true"
CANARY_STAGES = [int(x) for x in _floats(os.getenv("CANARY_STAGES", "5,25,50,100"))]
CANARY_DWELL_SECONDS = float(os.getenv("CANARY_DWELL_SECONDS", "600"))
CANARY_CHECK_INTERVAL = float(os.getenv("CANARY_CHECK_INTERVAL", "30"))
CANARY_MAX_ERROR_RATE_DELTA = float(os.getenv("CANARY_MAX_ERROR_RATE_DELTA", "0.02"))
CANARY_MAX_LATENCY_RATIO = float(os.getenv("CANARY_MAX_LATENCY_RATIO", "1.25"))

# Scheduler
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
TIMEZONE = os.getenv("TIMEZONE", "America/New_York")
ARCHIVE_HOUR = int(os.getenv("ARCHIVE_HOUR", "3"))
EXPERIMENT_EVAL_MINUTES = int(os.getenv("EXPERIMENT_EVAL_MINUTES", "15"))
