import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from esim_bridge.auth.signature import verify_signature
from esim_bridge.services.fulfillment_orchestrator import (
    FulfillmentOrchestrator,
    get_orchestrator,
)

router = APIRouter()

logger = logging.getLogger(__name__)


@router.post(
    "/webhook",
    summary="Sellauth Webhook",
    description=(
        "Dynamic delivery webhook. Orders the eSIM package given by `packageCode`, "
        "waits until it is provisioned and returns the delivery text. "
        "200 = delivered; 500 = Sellauth should retry later."
    ),
    dependencies=[Depends(verify_signature)],
)
async def sellauth_webhook(
    request: Request,
    package_code: Optional[str] = Query(None, alias="packageCode"),
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
) -> Response:
    raw_body = await request.body()

    # A dropped connection must not abandon a placed order: the task runs to
    # a terminal ledger state even if this request is cancelled.
    task = asyncio.create_task(orchestrator.handle(package_code, raw_body))
    result = await asyncio.shield(task)

    if result.delivered:
        return PlainTextResponse(result.body, status_code=200)
    return JSONResponse(status_code=result.status_code, content=result.body)
