# toolbox_recs/logging_setup.py
import logging
from logging.config import dictConfig
from logging import LogRecord
from pathlib import Path
import contextvars
import os

# ---- Correlation ID (set per request by the middleware) ----
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")

# Attributes every LogRecord has; anything else came in through extra={...}
_RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime", "request_id"}


class RequestIdFilter(logging.Filter):
    def filter(self, record: LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True


class EventFormatter(logging.Formatter):
    """
    Standard line plus the structured fields passed via extra=, e.g.

        ... | PIPELINE_RUN_DONE | run_id=ab12 status=succeeded stage=deployment
    """

    def format(self, record: LogRecord) -> str:
        line = super().format(record)
        fields = {k: v for k, v in vars(record).items() if k not in _RESERVED and not k.startswith("_")}
        if not fields:
            return line
        rendered = " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
        head, sep, tail = line.partition("\n")  # keep tracebacks below the fields
        return f"{head} | {rendered}{sep}{tail}"


# ---- Paths & levels ----
BASE_DIR = Path(__file__).resolve().parents[1]
LOG_DIR = Path(os.getenv("LOG_DIR", BASE_DIR / "logs"))
LOG_FILE = LOG_DIR / "toolbox_recs.log"
ALERT_FILE = LOG_DIR / "alerts.log"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def _rotating(path: Path, level: str = "NOTSET") -> dict:
    return {
        "class": "logging.handlers.TimedRotatingFileHandler",
        "formatter": "events",
        "filters": ["request_id"],
        "filename": str(path),
        "when": "midnight",
        "backupCount": 14,
        "encoding": "utf-8",
        "level": level,
    }


def setup_logging() -> Path:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    dictConfig({
        "version": 1,
        "disable_existing_loggers": False,

        "filters": {
            "request_id": {"()": RequestIdFilter},
        },

        "formatters": {
            "events": {
                "()": EventFormatter,
                "format": "%(asctime)s | %(levelname)s | %(name)s | req=%(request_id)s | %(message)s",
            },
            "uvicorn_access": {
                "format": "%(asctime)s | %(levelname)s | %(message)s"
            },
        },

        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "events",
                "filters": ["request_id"],
            },
            "file": _rotating(LOG_FILE),
            # operator-facing: storage outages, dead letters, canary rollbacks
            "alerts_file": _rotating(ALERT_FILE, level="WARNING"),
            "uvicorn_console": {
                "class": "logging.StreamHandler",
                "formatter": "uvicorn_access",
            },
        },

        "loggers": {
            # toolbox_recs.collector, toolbox_recs.canary, ... propagate here
            "toolbox_recs": {"handlers": ["console", "file"], "level": LOG_LEVEL, "propagate": False},

            # independent of LOG_LEVEL
            "toolbox_recs.alerts": {"handlers": ["alerts_file"], "level": "WARNING", "propagate": True},

            "apscheduler": {"handlers": ["console", "file"], "level": "INFO", "propagate": False},
            "uvicorn.error": {"handlers": ["uvicorn_console", "file"], "level": "INFO", "propagate": False},
            "uvicorn.access": {"handlers": ["uvicorn_console", "file"], "level": "INFO", "propagate": False},
        },

        "root": {"handlers": ["console", "file"], "level": LOG_LEVEL},
    })

    logging.getLogger("toolbox_recs").info(f"Logging to: {LOG_FILE} (alerts: {ALERT_FILE})")
    return LOG_FILE


def get_logger(name: str = "toolbox_recs") -> logging.Logger:
    return logging.getLogger(name)
