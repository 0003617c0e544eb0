# ============================================================================
# File: api/middleware.py
# ============================================================================

import logging
import re
import time
import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger("dataflow.access")

# trigger tokens travel in the path
TOKEN_PATH = re.compile(r"^(/triggers/api/)[^/]+")


def loggable_path(path: str) -> str:
    return TOKEN_PATH.sub(r"\1***", path)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Injects:
    - request_id (reuses an incoming X-Request-ID)
    - api_latency_ms

    and writes one access log line per request with the caller's user id.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.perf_counter()

        # Attach request_id to request state
        request.state.request_id = request_id

        response: Response = await call_next(request)

        # for event streams this is the time to the first byte
        latency_ms = int((time.perf_counter() - start_time) * 1000)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)

        logger.info(
            f"[{request_id}] {request.method} {loggable_path(request.url.path)} -> {response.status_code} "
            f"({latency_ms} ms, user={request.headers.get('X-User-Id', '-')})"
        )
        return response
