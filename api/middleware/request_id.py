# api/middleware/request_id.py
from __future__ import annotations

import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from api.core.logging import set_request_id

REQUEST_ID_HEADER = "X-Request-ID"


def resolve_request_id(request: Request) -> str:
    """Reuse a caller-supplied id (request, correlation or W3C trace id) or mint one."""
    for header in (REQUEST_ID_HEADER, "X-Correlation-ID"):
        value = request.headers.get(header)
        if value:
            return value[:128]

    traceparent = request.headers.get("traceparent", "")
    if traceparent.startswith("00-") and len(traceparent) >= 35:
        return traceparent[3:35]

    return str(uuid.uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Binds a request id into the structlog context and echoes it back."""

    async def dispatch(self, request: Request, call_next):
        request_id = resolve_request_id(request)
        request.state.request_id = request_id
        set_request_id(request_id)

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
