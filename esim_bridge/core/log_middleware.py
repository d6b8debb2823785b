"""
FastAPI middleware for request ID injection.

Injects request_id into contextvars so structlog processors automatically
include it in every log entry, and logs one line per completed request.
"""
from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from esim_bridge.core.structured_logging import request_id_var

logger = logging.getLogger(__name__)


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Inject request_id into contextvars for every request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        rid_token = request_id_var.set(req_id)

        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            status_code = response.status_code if response else None
            logger.info(
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.path": request.url.path,
                    "http.status_code": status_code,
                    "duration_ms": duration_ms,
                },
            )
            request_id_var.reset(rid_token)

        response.headers["x-request-id"] = req_id
        return response
