"""
BuzzSync Backend — Access Logging Middleware
==============================================

What:  One log line per request: method, path, status, duration, request id.
Who:   Applied to every request except the load balancer's /health probe.

Privacy:
    Logged:     method, path, status, duration, client IP, request id
    Not logged: query strings (cursors, search text), bodies (SQL and
                parameters), Cookie / Authorization headers
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from buzzsync.middleware.request_id import request_id_var

logger = logging.getLogger("buzzsync.access")

_QUIET_PATHS = frozenset({"/health"})


def _level_for(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Access log with severity by status class (5xx ERROR, 4xx WARNING, else INFO).

    Duration covers everything downstream, including time spent waiting for
    a pooled connection, so slow lines here are the first sign of saturation.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in _QUIET_PATHS:
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000

        client_ip = request.client.host if request.client else "unknown"
        rid = request_id_var.get("") or getattr(request.state, "request_id", "")
        status = response.status_code

        logger.log(
            _level_for(status),
            "%s %s %d %.1fms [%s] from %s",
            request.method,
            path,
            status,
            duration_ms,
            rid,
            client_ip,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
            },
        )
        return response
