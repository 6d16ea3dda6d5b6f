"""
BuzzSync Backend — Request ID Middleware
==========================================

What:  Tags every request with a correlation id, echoed as X-Request-ID.
Why:   Error bodies carry the id, so a user's bug report can be matched to the
       exact log lines of the failed sync or transaction.
How:   Reuses a well-formed client-supplied X-Request-ID (the mobile client
       generates one per sync cycle), otherwise mints a short random id.
       The id lives in a ContextVar for loggers and exception handlers.
"""

import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Client ids end up in log lines; keep them short and boring.
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def _new_request_id() -> str:
    return uuid.uuid4().hex[:12]


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Behavior:
        1. Accept X-Request-ID from the client if it matches [A-Za-z0-9._-]{1,64}
        2. Otherwise generate a 12-char hex id
        3. Store in the ContextVar and on request.state
        4. Echo it on the response
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        supplied = request.headers.get("X-Request-ID", "")
        rid = supplied if _VALID_REQUEST_ID.match(supplied) else _new_request_id()

        token = request_id_var.set(rid)
        request.state.request_id = rid
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = rid
        return response
