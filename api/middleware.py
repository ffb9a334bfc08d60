# ============================================================================
# File: api/middleware.py
# ============================================================================

import re
import time
import uuid
import logging
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger(__name__)

# Caller-supplied ids are echoed back only when they look like ids
REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")

# Long-lived SSE streams; their "latency" is the stream lifetime
UNLOGGED_PREFIXES = ("/sync/progress",)


def resolve_request_id(request: Request) -> str:
    incoming = request.headers.get("X-Request-ID")
    if incoming and REQUEST_ID_PATTERN.match(incoming):
        return incoming
    return f"req_{uuid.uuid4().hex[:12]}"


def request_id_of(request: Request) -> str:
    """Request id set by the middleware, or a fresh one outside it"""
    return getattr(request.state, "request_id", None) or resolve_request_id(request)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Injects:
    - request_id (X-Request-ID, honoured when the caller sends one)
    - api_latency_ms

    Sync-triggering calls (POST) are logged at INFO, reads at DEBUG.
    """

    async def dispatch(self, request: Request, call_next):
        request.state.request_id = resolve_request_id(request)
        started = time.perf_counter()

        response: Response = await call_next(request)

        latency_ms = int((time.perf_counter() - started) * 1000)
        response.headers["X-Request-ID"] = request.state.request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)

        path = request.url.path
        if not path.startswith(UNLOGGED_PREFIXES):
            level = logging.INFO if request.method == "POST" or response.status_code >= 400 else logging.DEBUG
            logger.log(
                level,
                f"[{request.state.request_id}] {request.method} {path} -> "
                f"{response.status_code} ({latency_ms}ms)"
            )

        return response
