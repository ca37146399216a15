"""Tracing helpers for FastAPI.

Adds a request-level trace middleware that injects/propagates `X-Request-ID`
so every log line emitted while serving a request carries the same id.
"""

from .logging import set_request_id
from fastapi import Request, Response
from typing import Callable, Awaitable
import uuid

REQUEST_ID_HEADER = "X-Request-ID"


async def trace_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    """Correlate a request with its log lines.

    Uses the caller's `X-Request-ID` when present (a fresh UUIDv4 otherwise),
    exposes it to `JSONFormatter` for the duration of the request and echoes
    it back on the response.

    Args:
        request: Incoming FastAPI request.
        call_next: Downstream handler.

    Returns:
        The downstream response carrying the request id header.
    """
    rid = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    set_request_id(rid)
    try:
        response = await call_next(request)
    finally:
        set_request_id(None)
    response.headers[REQUEST_ID_HEADER] = rid
    return response
