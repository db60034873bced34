# toolbox_recs/middleware.py
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from .logging_setup import request_id_var, get_logger

logger = get_logger("toolbox_recs.http")

# polled by load balancers; only worth a line at DEBUG
QUIET_PATHS = {"/health"}


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        # Reuse an upstream id so one request can be followed across services
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
        token = request_id_var.set(req_id)
        path = request.url.path
        log = logger.debug if path in QUIET_PATHS else logger.info

        start = time.perf_counter()
        response: Optional[Response] = None
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = req_id
            return response
        except Exception:
            logger.exception("REQUEST_EXCEPTION", extra={"method": request.method, "path": path})
            raise
        finally:
            log(
                "REQUEST",
                extra={
                    "method": request.method,
                    "path": path,
                    "status_code": getattr(response, "status_code", 500),
                    "elapsed_ms": round((time.perf_counter() - start) * 1000, 1),
                },
            )
            request_id_var.reset(token)
