from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI

from esim_bridge.config import settings
from esim_bridge.routers import admin, health, webhooks
from esim_bridge.core.structured_logging import APP_VERSION, setup_logging
from esim_bridge.core.errors import BridgeError
from esim_bridge.core.errors.registry import error_registry
from esim_bridge.core.errors.middleware import bridge_error_handler
from esim_bridge.core.log_middleware import CorrelationMiddleware
from esim_bridge.services.idempotency_ledger import get_ledger, ledger_sweep_loop
from esim_bridge.services.stats_service import get_stats_service, stats_flush_loop

# Initialize structured logging before any logger calls
setup_logging(log_level=settings.log_level, log_dir=settings.log_dir)

logger = logging.getLogger(__name__)

API_TITLE = "eSIM Bridge"

API_DESCRIPTION = """
## eSIM Bridge - Sellauth → eSIMAccess fulfillment

Receives Sellauth dynamic-delivery webhooks, orders the eSIM package from
eSIMAccess, waits for the profile and answers with the delivery text.
Repeated deliveries of the same purchase never order twice.
"""


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup validation, background tasks and shutdown flush.
    """
    logger.info("Starting eSIM Bridge v%s on port %d...", APP_VERSION, settings.port)

    error_registry.load()

    missing = settings.missing_required()
    if missing:
        logger.critical("Missing required environment variables: %s", ", ".join(missing))
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

    worst_case = settings.worst_case_poll_s()
    if settings.ledger_retention_s <= worst_case:
        logger.warning(
            "ESIM_BRIDGE_LEDGER_RETENTION_S=%d does not exceed the worst-case poll time "
            "(%.0fs); in-flight orders could be evicted",
            settings.ledger_retention_s, worst_case,
        )

    ledger = get_ledger()
    stats = get_stats_service()

    sweep_task = asyncio.create_task(ledger_sweep_loop(ledger, settings.ledger_sweep_interval_s))
    flush_task = asyncio.create_task(stats_flush_loop(stats, settings.stats_flush_interval_s))

    yield

    # Shutdown
    logger.info("Shutting down eSIM Bridge...")
    for task in (sweep_task, flush_task):
        task.cancel()
    for task in (sweep_task, flush_task):
        try:
            await task
        except asyncio.CancelledError:
            pass

    await asyncio.to_thread(stats.flush)
    logger.info("Statistics flushed")


app = FastAPI(
    title=API_TITLE,
    description=API_DESCRIPTION,
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(CorrelationMiddleware)
app.add_exception_handler(BridgeError, bridge_error_handler)

app.include_router(health.router, tags=["health"])
app.include_router(webhooks.router, tags=["webhooks"])
app.include_router(admin.router, tags=["admin"])


def run() -> None:
    """Console entry point."""
    import uvicorn

    # uvicorn has no per-request timeout: a webhook may legitimately wait for
    # the whole poll budget. timeout_keep_alive only applies to idle sockets.
    uvicorn.run(
        "esim_bridge.main:app",
        host="0.0.0.0",
        port=settings.port,
        log_config=None,
        workers=1,
    )
