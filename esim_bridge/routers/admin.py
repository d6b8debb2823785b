"""
Admin Router
============

Operator endpoints, all behind HTTP Basic auth:
1. GET    /admin               — HTML dashboard (orders, eSIMs, errors, uptime)
2. GET    /admin/stats         — the same numbers as JSON
3. GET    /admin/ledger/{key}  — inspect one idempotency record
4. DELETE /admin/ledger/{key}  — forget a record so the next delivery re-orders

(4) is the only way out of the ERROR state. Check the provider dashboard for
an already allocated eSIM before using it.
"""

import html
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from esim_bridge.auth.admin_auth import require_admin
from esim_bridge.core.structured_logging import get_uptime_s
from esim_bridge.services.idempotency_ledger import IdempotencyLedger, get_ledger
from esim_bridge.services.stats_service import StatsService, get_stats_service

logger = logging.getLogger(__name__)

DASHBOARD_PATH = Path(__file__).resolve().parent.parent / "static" / "dashboard.html"

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


class StatsResponse(BaseModel):
    total_orders: int
    total_esims: int
    last_order_at: Optional[str] = None
    errors: int
    ledger_size: int
    uptime_s: float


class LedgerRecordResponse(BaseModel):
    key: str
    state: str
    created_at: str
    has_result: bool


def _format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    clock = f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{days}d {clock}" if days else clock


@router.get("", response_class=HTMLResponse, summary="Admin dashboard")
async def dashboard(
    stats: StatsService = Depends(get_stats_service),
    ledger: IdempotencyLedger = Depends(get_ledger),
):
    data = stats.get_stats()
    replacements = {
        "{{TOTAL_ORDERS}}": data["total_orders"],
        "{{TOTAL_ESIMS}}": data["total_esims"],
        "{{ERRORS}}": data["errors"],
        "{{LAST_ORDER}}": data["last_order_at"] or "never",
        "{{LEDGER_SIZE}}": len(ledger),
        "{{UPTIME}}": _format_uptime(get_uptime_s()),
    }
    try:
        page = DASHBOARD_PATH.read_text(encoding="utf-8")
    except OSError as e:
        logger.error("Dashboard template unreadable: %s", e)
        return HTMLResponse("Dashboard Error", status_code=500)

    for placeholder, value in replacements.items():
        page = page.replace(placeholder, html.escape(str(value)))
    return HTMLResponse(page)


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    stats: StatsService = Depends(get_stats_service),
    ledger: IdempotencyLedger = Depends(get_ledger),
):
    return StatsResponse(
        **stats.get_stats(),
        ledger_size=len(ledger),
        uptime_s=round(get_uptime_s(), 1),
    )


@router.get("/ledger/{key:path}", response_model=LedgerRecordResponse)
async def get_ledger_record(key: str, ledger: IdempotencyLedger = Depends(get_ledger)):
    record = await ledger.get(key)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No record for key")
    return LedgerRecordResponse(
        key=key,
        state=record.state.value,
        created_at=datetime.fromtimestamp(record.created_at, tz=timezone.utc).isoformat(),
        has_result=record.result is not None,
    )


@router.delete("/ledger/{key:path}", status_code=status.HTTP_204_NO_CONTENT)
async def reset_ledger_record(
    key: str,
    ledger: IdempotencyLedger = Depends(get_ledger),
    admin: str = Depends(require_admin),
):
    if not await ledger.delete(key):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No record for key")
    logger.warning("Ledger record reset by %s: %s", admin, key)
