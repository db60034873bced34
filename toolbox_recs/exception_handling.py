# toolbox_recs/exception_handling.py
from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .errors import (
    ExperimentGuardrailViolation, InvalidTransition, ModelValidationError, NotFoundError,
    PrivacyBudgetExhausted, RecsError, TransientStorageError, ValidationError,
)
from .logging_setup import get_logger

logger = get_logger("toolbox_recs.exceptions")

# most specific first
STATUS_BY_ERROR = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (InvalidTransition, 409),
    (ModelValidationError, 409),
    (ExperimentGuardrailViolation, 409),
    (PrivacyBudgetExhausted, 503),
    (TransientStorageError, 503),
)


def _clean_errors(errors) -> list:
    # pydantic error dicts may carry non-JSON context (the exception object itself)
    return [
        {"loc": list(e.get("loc", ())), "msg": str(e.get("msg", "")), "type": str(e.get("type", ""))}
        for e in errors
    ]


async def http_exception_handler(request: Request, exc: HTTPException):
    logger.warning(
        "HTTP_EXCEPTION",
        extra={"handled": True, "path": str(request.url.path), "status_code": exc.status_code},
    )
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    logger.info(
        "REQUEST_INVALID",
        extra={"handled": True, "path": str(request.url.path), "status_code": 422},
    )
    return JSONResponse({"detail": _clean_errors(exc.errors())}, status_code=422)


async def recs_error_handler(request: Request, exc: RecsError):
    status_code = next((code for cls, code in STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    body = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, ValidationError) and exc.errors:
        body["errors"] = _clean_errors(exc.errors)
    log = logger.exception if status_code >= 500 else logger.warning
    log(
        "RECS_ERROR",
        extra={"handled": True, "path": str(request.url.path), "status_code": status_code, "error": type(exc).__name__},
    )
    return JSONResponse(body, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(
        "UNHANDLED_EXCEPTION",
        extra={"handled": False, "path": str(request.url.path)},
    )
    return JSONResponse({"detail": "Internal Server Error"}, status_code=500)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register all exception handlers in one place.
    Call from toolbox_recs/main.py after creating the FastAPI app.
    """
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(RecsError, recs_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
