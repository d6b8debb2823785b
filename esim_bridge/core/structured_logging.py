"""
Structured logging with structlog.

Configures structlog to output JSON lines, optionally with file rotation.
Backward-compatible with stdlib logging — modules keep using
logging.getLogger(__name__) and get enriched with structlog processors.
"""
from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import time
from contextvars import ContextVar

import structlog

# ── Context vars for correlation ──────────────────────────────────────
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
event_key_var: ContextVar[str | None] = ContextVar("event_key", default=None)
transaction_id_var: ContextVar[str | None] = ContextVar("transaction_id", default=None)

APP_VERSION = "1.2.0"
SERVICE_NAME = "esim-bridge"

_startup_time: float = time.time()


def get_uptime_s() -> float:
    return time.time() - _startup_time


def _inject_context(logger_name: str, method_name: str, event_dict: dict) -> dict:
    """Structlog processor: inject correlation context from contextvars."""
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = APP_VERSION

    rid = request_id_var.get(None)
    if rid:
        event_dict["request_id"] = rid

    key = event_key_var.get(None)
    if key:
        event_dict["event_key"] = key

    tx = transaction_id_var.get(None)
    if tx:
        event_dict["transaction_id"] = tx

    return event_dict


def _lowercase_level(logger_name: str, method_name: str, event_dict: dict) -> dict:
    level = event_dict.get("level")
    if level:
        event_dict["level"] = level.lower()
    return event_dict


def setup_logging(
    log_level: str | int = logging.INFO,
    log_dir: str | None = None,
    log_file: str = "esim-bridge.jsonl",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
) -> None:
    """Initialize structlog + stdlib logging with JSON output.

    Call once at startup. After this, both structlog.get_logger() and
    logging.getLogger() produce JSON-formatted output with correlation context.
    A rotating file handler is added only when log_dir is given.
    """
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        _lowercase_level,
        structlog.stdlib.add_logger_name,
        _inject_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        # stdlib records: carry `extra={...}` fields into the JSON line
        foreign_pre_chain=[*shared_processors, structlog.stdlib.ExtraAdder()],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )

    file_handler = None
    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                os.path.join(log_dir, log_file),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
        except OSError:
            # Unwritable log dir: stay on stderr, never crash
            file_handler = None

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)
    root.addHandler(console_handler)
    if file_handler:
        root.addHandler(file_handler)

    for noisy in ("httpcore", "httpx", "asyncio", "watchfiles"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
