"""
Request context middleware.

Binds a request id into structlog's context variables so every log line
emitted while handling a request can be correlated, and echoes it back
in the X-Request-ID response header.
"""

import secrets
from typing import Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a request id to the logging context and the response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or secrets.token_hex(8)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=request.url.path,
            method=request.method,
        )

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()

        response.headers[REQUEST_ID_HEADER] = request_id
        # Verification tokens must never be cached by intermediaries
        response.headers["Cache-Control"] = "no-store"
        return response
