"""
Request correlation for the dashboard API.

Every request gets a request id (echoed or generated). Clients running a
household session may also send ``x-session-id`` so API calls made during
that session can be matched with the session's own logs.
"""
import logging
import time
from typing import Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from larder.core.logging import request_id_ctx_var, latency_bucket_ms

logger = logging.getLogger("larder")

MAX_ID_LENGTH = 128


def _clean_id(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip()
    if not value or len(value) > MAX_ID_LENGTH:
        return None
    return value


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach request_id (and the caller's session_id) to each request and log completion."""

    def __init__(self, app, header_name: str = "x-request-id", session_header_name: str = "x-session-id"):
        super().__init__(app)
        self.header_name = header_name
        self.session_header_name = session_header_name

    async def dispatch(self, request, call_next):
        rid = _clean_id(request.headers.get(self.header_name)) or str(uuid4())
        session_id = _clean_id(request.headers.get(self.session_header_name))
        request.state.request_id = rid
        request.state.session_id = session_id
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        duration_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = rid
        if session_id:
            response.headers[self.session_header_name] = session_id

        logger.info(
            "request.complete",
            extra={
                "request_id": rid,
                "session_id": session_id,
                "path": request.url.path,
                "method": request.method,
                "status": getattr(response, "status_code", None),
                "latency_bucket": latency_bucket_ms(duration_ms),
            },
        )
        return response
