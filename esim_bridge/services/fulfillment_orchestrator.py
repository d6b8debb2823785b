"""
Fulfillment Orchestrator
========================

Turns one verified Sellauth webhook into an HTTP answer:

  validate → derive key → ledger.reserve(key)
     absent      → order + poll → render → ledger DONE   → 200 text/plain
     DONE        → cached delivery text                  → 200 text/plain
     PROCESSING  → DuplicateInFlight                     → 500 JSON
     ERROR       → PreviousAttemptFailed                 → 500 JSON

An ERROR record is never re-ordered automatically: the provider may already
have allocated (and charged for) the profile. An operator clears the key via
the admin API once they have checked.

Sellauth treats 200 as delivered and retries on anything else, so 200 is only
ever returned with real eSIM data in the body.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

from esim_bridge.config import settings
from esim_bridge.core.errors import (
    BridgeError,
    DuplicateInFlight,
    EventValidationError,
    PreviousAttemptFailed,
)
from esim_bridge.core.errors.middleware import render_error
from esim_bridge.core.structured_logging import event_key_var
from esim_bridge.services.idempotency_ledger import (
    FulfillmentRecord,
    FulfillmentState,
    IdempotencyLedger,
    derive_event_key,
    get_ledger,
)
from esim_bridge.services.message_composer import MessageComposer
from esim_bridge.services.provisioning_client import (
    MAX_QUANTITY,
    EsimAccessClient,
    ProvisioningError,
    get_provisioning_client,
)
from esim_bridge.services.stats_service import StatsService, get_stats_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FulfillmentResponse:
    status_code: int
    body: Union[str, dict]

    @property
    def delivered(self) -> bool:
        return self.status_code == 200


def parse_quantity(value: Any) -> int:
    """Whole number in [1, MAX_QUANTITY]; raises EventValidationError otherwise."""
    quantity: Optional[int] = None
    if isinstance(value, bool):
        quantity = None
    elif isinstance(value, int):
        quantity = value
    elif isinstance(value, float) and value.is_integer():
        quantity = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        quantity = int(value.strip())

    if quantity is None or not 1 <= quantity <= MAX_QUANTITY:
        raise EventValidationError(
            "ESB-VAL-002",
            detail=f"quantity {value!r} is not a whole number in 1..{MAX_QUANTITY}",
        )
    return quantity


def validate_event(package_code: Optional[str], raw_body: bytes) -> Tuple[dict, int]:
    """Pure validation, no ledger or provider access. Returns (payload, quantity)."""
    if not package_code or not package_code.strip():
        raise EventValidationError("ESB-VAL-001", detail="packageCode query parameter missing")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        raise EventValidationError("ESB-VAL-003", detail="body is not a JSON object")

    item = payload.get("item")
    raw_quantity = item.get("quantity") if isinstance(item, dict) else None
    # Sellauth omits quantity for single-item purchases
    quantity = 1 if raw_quantity is None else parse_quantity(raw_quantity)
    return payload, quantity


class FulfillmentOrchestrator:
    def __init__(
        self,
        ledger: IdempotencyLedger,
        client: EsimAccessClient,
        composer: MessageComposer,
        stats: Optional[StatsService] = None,
    ):
        self._ledger = ledger
        self._client = client
        self._composer = composer
        self._stats = stats

    async def handle(self, package_code: Optional[str], raw_body: bytes) -> FulfillmentResponse:
        try:
            payload, quantity = validate_event(package_code, raw_body)
        except EventValidationError as e:
            return self._error_response(e)

        package_code = package_code.strip()
        key = derive_event_key(raw_body, payload)
        key_token = event_key_var.set(key)
        try:
            existing = await self._ledger.reserve(key)
            if existing is not None:
                return self._from_record(key, existing)
            return await self._fulfill(key, package_code, quantity)
        finally:
            event_key_var.reset(key_token)

    def _from_record(self, key: str, record: FulfillmentRecord) -> FulfillmentResponse:
        if record.state is FulfillmentState.DONE:
            logger.info("Replaying completed delivery for %s", key)
            return FulfillmentResponse(200, record.result or "")
        if record.state is FulfillmentState.PROCESSING:
            return self._error_response(DuplicateInFlight(key))
        return self._error_response(PreviousAttemptFailed(key))

    async def _fulfill(self, key: str, package_code: str, quantity: int) -> FulfillmentResponse:
        logger.info("New order for %s: package=%s quantity=%d", key, package_code, quantity)
        try:
            esims = await self._client.order_and_poll(package_code, quantity)
            message = self._composer.render(esims)
        except ProvisioningError as e:
            await self._ledger.mark_error(key)
            self._record_error()
            return self._error_response(e)
        except asyncio.CancelledError:
            # Order may already be placed: never leave the key in PROCESSING
            logger.warning("Fulfillment cancelled for %s; marking as failed", key)
            await self._ledger.mark_error(key)
            self._record_error()
            raise
        except Exception as e:
            # Unknown failure after the order may have been placed: same as a
            # provisioning error, the key must land in a terminal state.
            logger.error("Unexpected fulfillment failure for %s: %s", key, e, exc_info=True)
            await self._ledger.mark_error(key)
            self._record_error()
            return self._error_response(BridgeError("ESB-SYS-001", detail=f"{type(e).__name__}: {e}"))

        await self._ledger.mark_done(key, message)
        response = FulfillmentResponse(200, message)
        logger.info("Delivered %d eSIM(s) for %s", len(esims), key)

        if self._stats is not None:
            try:
                self._stats.record_order(len(esims))
            except Exception as e:
                logger.warning("Stats update failed: %s", e)
        return response

    def _record_error(self) -> None:
        if self._stats is None:
            return
        try:
            self._stats.record_error()
        except Exception as e:
            logger.warning("Stats update failed: %s", e)

    @staticmethod
    def _error_response(exc: BridgeError) -> FulfillmentResponse:
        status_code, body = render_error(exc)
        return FulfillmentResponse(status_code, body)


# ---------------------------------------------------------------------------
# Module-level singleton + FastAPI dependency
# ---------------------------------------------------------------------------
_orchestrator: Optional[FulfillmentOrchestrator] = None


def get_composer() -> MessageComposer:
    if settings.templates_path:
        return MessageComposer.from_yaml(settings.templates_path)
    return MessageComposer()


def get_orchestrator() -> FulfillmentOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = FulfillmentOrchestrator(
            ledger=get_ledger(),
            client=get_provisioning_client(),
            composer=get_composer(),
            stats=get_stats_service(),
        )
    return _orchestrator
