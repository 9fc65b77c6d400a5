"""
Request logging middleware.

Tags each request with a request id (taken from X-Request-ID when the caller
sends one), binds it into the structlog context, records request metrics and
logs one line per request. Health and metrics probes log at debug.
"""
import time
from uuid import uuid4

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from chatrelay.logging_config import get_logger
from chatrelay.routes.metrics import track_request

logger = get_logger(component="http")

REQUEST_ID_HEADER = "X-Request-ID"
PROBE_PATHS = frozenset({"/health", "/metrics"})


def _route_template(request: Request) -> str:
    # templated path keeps metric label cardinality bounded
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            elapsed = time.perf_counter() - started
            track_request(request.method, _route_template(request), 500, elapsed)
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round(elapsed * 1000, 2),
                error=str(e),
            )
            raise
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        elapsed = time.perf_counter() - started
        track_request(request.method, _route_template(request), response.status_code, elapsed)
        response.headers[REQUEST_ID_HEADER] = request_id

        log = logger.debug if request.url.path in PROBE_PATHS else logger.info
        log(
            "request_completed",
            request_id=request_id,
            user_id=getattr(request.state, "user_id", None),
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(elapsed * 1000, 2),
        )
        return response
