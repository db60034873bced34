# toolbox_recs/errors.py
"""
Error taxonomy for the recommendation pipeline.

Each class maps to one recovery policy:
- ValidationError:              reject the input, never retry
- TransientStorageError:        retry with backoff, then dead-letter
- ModelValidationError:         drop the candidate, keep the active model
- ExperimentGuardrailViolation: roll the canary back automatically
- PrivacyBudgetExhausted:       defer the batch to the next window
"""
from typing import Any, Dict, Optional


class RecsError(Exception):
    """Base class for every error raised by toolbox_recs."""


class ValidationError(RecsError):
    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


class TransientStorageError(RecsError):
    pass


class ConcurrentUpdateError(TransientStorageError):
    """Optimistic version check kept failing for one profile."""


class NotFoundError(RecsError):
    pass


class InvalidTransition(RecsError):
    pass


class ModelValidationError(RecsError):
    def __init__(self, message: str, metrics: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.metrics = metrics or {}


class ExperimentGuardrailViolation(RecsError):
    def __init__(self, message: str, stage_percent: int = 0, metrics: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.stage_percent = stage_percent
        self.metrics = metrics or {}


class PrivacyBudgetExhausted(RecsError):
    def __init__(self, message: str, window_id: int = 0, remaining: float = 0.0):
        super().__init__(message)
        self.window_id = window_id
        self.remaining = remaining
