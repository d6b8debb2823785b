"""
Idempotency Ledger
==================

Process-local map from an event key to a FulfillmentRecord
{state, result, created_at}. Guarantees that one purchase is provisioned at
most once, no matter how often Sellauth re-delivers the webhook.

Event keys:
  invoice:<id>       — invoice_id / order_id from the webhook body
  body:<sha256[:32]> — digest of the raw request bytes when neither is present

All reads and writes go through one asyncio.Lock, shared with the periodic
sweep, so a check-and-set in reserve() can never interleave with another
request or with eviction.

Not shared across processes: a multi-instance deployment needs an external
store with conditional puts behind the same interface.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from esim_bridge.config import settings

logger = logging.getLogger(__name__)

# Checked in this order; first non-empty wins
ORDER_ID_FIELDS = ("invoice_id", "order_id")
BODY_DIGEST_LENGTH = 32


class FulfillmentState(str, Enum):
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class FulfillmentRecord:
    state: FulfillmentState
    created_at: float
    result: Optional[str] = None


def derive_event_key(raw_body: bytes, payload: Any = None) -> str:
    """Stable key for one logical purchase.

    `payload` is the already-parsed body (parsed from raw_body when omitted).
    The fallback hashes raw_body exactly as received, never a re-serialization.
    """
    if payload is None:
        try:
            payload = json.loads(raw_body)
        except ValueError:
            payload = None

    if isinstance(payload, dict):
        for field in ORDER_ID_FIELDS:
            value = payload.get(field)
            if isinstance(value, bool) or value is None:
                continue
            if isinstance(value, (str, int)) and str(value).strip():
                return f"invoice:{str(value).strip()}"

    digest = hashlib.sha256(raw_body).hexdigest()[:BODY_DIGEST_LENGTH]
    return f"body:{digest}"


class IdempotencyLedger:
    """Serialized in-memory ledger with time-based eviction."""

    def __init__(
        self,
        retention_s: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._records: Dict[str, FulfillmentRecord] = {}
        self._lock = asyncio.Lock()
        self._retention_s = retention_s if retention_s is not None else settings.ledger_retention_s
        self._clock = clock

    async def get(self, key: str) -> Optional[FulfillmentRecord]:
        async with self._lock:
            return self._records.get(key)

    async def put(self, key: str, record: FulfillmentRecord) -> None:
        async with self._lock:
            existing = self._records.get(key)
            if existing is not None and existing.state is FulfillmentState.DONE:
                if record != existing:
                    # DONE is terminal; its cached delivery text never changes
                    logger.error("Refusing to overwrite completed record for %s", key)
                return
            self._records[key] = record

    async def reserve(self, key: str) -> Optional[FulfillmentRecord]:
        """Atomic check-and-set.

        Returns the existing record if there is one. Otherwise stores a fresh
        PROCESSING record and returns None: the caller now owns the order.
        """
        async with self._lock:
            existing = self._records.get(key)
            if existing is not None:
                return existing
            self._records[key] = FulfillmentRecord(
                state=FulfillmentState.PROCESSING, created_at=self._clock(),
            )
            return None

    async def mark_done(self, key: str, result: str) -> None:
        await self.put(key, FulfillmentRecord(FulfillmentState.DONE, self._clock(), result))

    async def mark_error(self, key: str) -> None:
        await self.put(key, FulfillmentRecord(FulfillmentState.ERROR, self._clock()))

    async def delete(self, key: str) -> bool:
        """Operator reset: forget `key` so the next delivery orders again."""
        async with self._lock:
            return self._records.pop(key, None) is not None

    async def sweep(self) -> int:
        """Evict records older than the retention window, regardless of state."""
        cutoff = self._clock() - self._retention_s
        async with self._lock:
            expired = [k for k, r in self._records.items() if r.created_at < cutoff]
            for key in expired:
                record = self._records.pop(key)
                if record.state is FulfillmentState.PROCESSING:
                    logger.warning("Evicting record still marked processing: %s", key)
        if expired:
            logger.info("Ledger sweep evicted %d record(s)", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)


async def ledger_sweep_loop(ledger: IdempotencyLedger, interval_s: float) -> None:
    """Background task: sweep on a fixed period, independent of traffic."""
    while True:
        await asyncio.sleep(interval_s)
        try:
            await ledger.sweep()
        except Exception as e:
            logger.error("Ledger sweep failed: %s", e, exc_info=True)


# ---------------------------------------------------------------------------
# Module-level singleton + FastAPI dependency
# ---------------------------------------------------------------------------
_ledger: Optional[IdempotencyLedger] = None


def get_ledger() -> IdempotencyLedger:
    global _ledger
    if _ledger is None:
        _ledger = IdempotencyLedger()
    return _ledger
