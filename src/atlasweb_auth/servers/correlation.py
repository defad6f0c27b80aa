"""Correlation ID middleware for request tracing.

Takes the caller's ``X-Correlation-ID`` (or generates one) per incoming HTTP
request, sets it in ``request.state.correlation_id`` for handlers, echoes it
on the response and binds it into ``structlog.contextvars`` so every log
record emitted while serving the request carries it.

Secrets MUST NOT be logged. A generated correlation ID is a random UUID4 hex
string.
"""

from __future__ import annotations

import logging
import re
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

_HEADER_NAME = "X-Correlation-ID"
_logger = logging.getLogger("atlasweb-auth.correlation")

# Caller-supplied ids end up in logs and headers; keep them short and plain
_VALID_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that attaches a per-request correlation ID."""

    def __init__(self, app: ASGIApp, header_name: str = _HEADER_NAME) -> None:
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        incoming = request.headers.get(self.header_name)
        if incoming and _VALID_ID.match(incoming):
            correlation_id = incoming
        else:
            if incoming:
                _logger.debug("Ignoring malformed %s header", self.header_name)
            correlation_id = uuid.uuid4().hex

        request.state.correlation_id = correlation_id
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("correlation_id")
        response.headers[self.header_name] = correlation_id
        return response
