"""
FastAPI exception handler for BridgeError.

render_error() is the single place that turns a BridgeError into an HTTP
status and JSON body; the webhook orchestrator uses it directly and the
exception handler uses it for errors raised from dependencies.
"""

import logging
from typing import Any, Dict, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse

from esim_bridge.core.errors import BridgeError
from esim_bridge.core.errors.registry import error_registry

logger = logging.getLogger(__name__)


def render_error(exc: BridgeError) -> Tuple[int, Dict[str, Any]]:
    """Log exc and return (http_status, json_body) for it."""
    entry = error_registry.get(exc.code)

    if entry is None:
        logger.error(
            "unregistered_error_code",
            extra={"error.code": exc.code, "error.message": exc.detail},
        )
        return 500, {
            "error": {
                "code": exc.code,
                "title": "Internal error",
                "message": "An unexpected error occurred.",
                "retryable": False,
                "user_action_required": False,
                "remediation": [],
            }
        }

    log_extra = {
        "error.code": exc.code,
        "error.kind": type(exc).__name__,
        "error.message": exc.detail,
        "error.retryable": entry.retryable,
        **{f"error.ctx.{k}": v for k, v in exc.context.items()},
    }
    _severity_to_log_fn(entry.severity)(entry.title, extra=log_extra)

    body: Dict[str, Any] = {
        "code": entry.code,
        "title": entry.title,
        "message": entry.safe_message,
        "retryable": entry.retryable,
        "user_action_required": entry.user_action_required,
        "remediation": entry.remediation,
    }
    if entry.expose_detail and exc.detail:
        body["detail"] = exc.detail
    return entry.http_status, {"error": body}


async def bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
    """Convert BridgeError into a structured JSON response."""
    status_code, content = render_error(exc)
    return JSONResponse(status_code=status_code, content=content)


def _severity_to_log_fn(severity: str):
    return {
        "DEBUG": logger.debug,
        "INFO": logger.info,
        "WARN": logger.warning,
        "ERROR": logger.error,
        "CRITICAL": logger.critical,
    }.get(severity, logger.error)
