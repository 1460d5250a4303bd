"""
Request and run context.

Generates or propagates X-Request-ID headers and stores the request ID in a
ContextVar so all downstream code can access it. Pipeline tasks bind their
run ID the same way, so every log line emitted while a run executes is
attributable to that run.
"""

import time
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

_request_id_var: ContextVar[str] = ContextVar("request_id", default="")
_run_id_var: ContextVar[str] = ContextVar("run_id", default="")


def get_request_id() -> str:
    """Get the current request ID from context."""
    return _request_id_var.get()


def get_run_id() -> str:
    """Get the ID of the run whose pipeline is executing in this context."""
    return _run_id_var.get()


@contextmanager
def bind_run_id(run_id: str):
    token = _run_id_var.set(run_id)
    try:
        yield
    finally:
        _run_id_var.reset(token)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid4().hex
        token = _request_id_var.set(request_id)

        start_time = time.time()
        try:
            response = await call_next(request)
        finally:
            duration_ms = round((time.time() - start_time) * 1000, 2)
            _request_id_var.reset(token)

        response.headers["X-Request-ID"] = request_id

        # For SSE responses this measures time-to-headers, not stream lifetime
        logger.info(
            "%s %s %s %.0fms",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            extra={"duration_ms": duration_ms},
        )

        return response
