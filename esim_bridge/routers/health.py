"""
Liveness endpoints. No authentication, no network calls.

- GET /        — plain-text wake-up check used by the hosting platform
- GET /health  — version and uptime as JSON
"""
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from esim_bridge.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s

router = APIRouter()


@router.get("/", response_class=PlainTextResponse)
async def root():
    return "Bot is awake and ready."


@router.get("/health")
async def health_check():
    return {
        "status": "ok",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
