"""
Tests for the idempotency ledger: key derivation, check-and-set, terminal
DONE records and time-based eviction.
"""

import asyncio
import json

import pytest

from esim_bridge.services.idempotency_ledger import (
    FulfillmentRecord,
    FulfillmentState,
    IdempotencyLedger,
    derive_event_key,
    ledger_sweep_loop,
)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ===========================================================================
# derive_event_key()
# ===========================================================================

class TestDeriveEventKey:
    def test_invoice_id_wins_regardless_of_formatting(self):
        a = b'{"invoice_id": "inv_123", "item": {"quantity": 1}}'
        b = b'{\n  "item": {"quantity":1},\n  "invoice_id":"inv_123", "email": "x@y.z"\n}'
        assert derive_event_key(a) == derive_event_key(b) == "invoice:inv_123"

    def test_invoice_id_has_priority_over_order_id(self):
        body = b'{"order_id": "ord_9", "invoice_id": "inv_1"}'
        assert derive_event_key(body) == "invoice:inv_1"

    def test_order_id_used_when_invoice_id_missing(self):
        assert derive_event_key(b'{"order_id": 4711}') == "invoice:4711"

    def test_empty_identifier_falls_through(self):
        body = b'{"invoice_id": "  ", "order_id": "ord_2"}'
        assert derive_event_key(body) == "invoice:ord_2"

    def test_identical_raw_bodies_share_key(self):
        body = b'{"item": {"quantity": 2}, "email": "buyer@example.com"}'
        key = derive_event_key(body)
        assert key.startswith("body:")
        assert len(key) == len("body:") + 32
        assert derive_event_key(body) == key

    def test_fallback_hashes_raw_bytes_not_reserialized_json(self):
        compact = b'{"a":1,"b":2}'
        spaced = b'{"a": 1, "b": 2}'
        assert json.loads(compact) == json.loads(spaced)
        assert derive_event_key(compact) != derive_event_key(spaced)

    def test_different_bodies_differ(self):
        assert derive_event_key(b'{"email": "a@x"}') != derive_event_key(b'{"email": "b@x"}')

    def test_preparsed_payload_is_used(self):
        raw = b'{"invoice_id": "inv_7"}'
        assert derive_event_key(raw, {"invoice_id": "inv_7"}) == "invoice:inv_7"

    def test_non_json_body_hashes(self):
        assert derive_event_key(b"not json").startswith("body:")


# ===========================================================================
# IdempotencyLedger
# ===========================================================================

class TestLedger:
    @pytest.mark.asyncio
    async def test_reserve_claims_absent_key(self):
        clock = FakeClock()
        ledger = IdempotencyLedger(retention_s=3600, clock=clock)

        assert await ledger.reserve("invoice:1") is None

        record = await ledger.get("invoice:1")
        assert record.state is FulfillmentState.PROCESSING
        assert record.result is None
        assert record.created_at == clock.now

    @pytest.mark.asyncio
    async def test_reserve_returns_existing(self):
        ledger = IdempotencyLedger(retention_s=3600)
        await ledger.reserve("invoice:1")

        existing = await ledger.reserve("invoice:1")
        assert existing is not None
        assert existing.state is FulfillmentState.PROCESSING

    @pytest.mark.asyncio
    async def test_concurrent_reserve_has_one_winner(self):
        ledger = IdempotencyLedger(retention_s=3600)

        results = await asyncio.gather(*(ledger.reserve("invoice:1") for _ in range(50)))

        assert sum(1 for r in results if r is None) == 1

    @pytest.mark.asyncio
    async def test_done_is_terminal(self):
        ledger = IdempotencyLedger(retention_s=3600)
        await ledger.reserve("k")
        await ledger.mark_done("k", "ICCID: 1")

        await ledger.mark_error("k")
        await ledger.put("k", FulfillmentRecord(FulfillmentState.DONE, 0.0, "other text"))

        record = await ledger.get("k")
        assert record.state is FulfillmentState.DONE
        assert record.result == "ICCID: 1"

    @pytest.mark.asyncio
    async def test_mark_error_clears_result(self):
        ledger = IdempotencyLedger(retention_s=3600)
        await ledger.reserve("k")
        await ledger.mark_error("k")

        record = await ledger.get("k")
        assert record.state is FulfillmentState.ERROR
        assert record.result is None

    @pytest.mark.asyncio
    async def test_delete_resets_key(self):
        ledger = IdempotencyLedger(retention_s=3600)
        await ledger.reserve("k")
        await ledger.mark_error("k")

        assert await ledger.delete("k") is True
        assert await ledger.delete("k") is False
        assert await ledger.reserve("k") is None

    @pytest.mark.asyncio
    async def test_sweep_evicts_old_records_in_any_state(self):
        clock = FakeClock()
        ledger = IdempotencyLedger(retention_s=100, clock=clock)
        await ledger.reserve("processing")
        await ledger.reserve("done")
        await ledger.mark_done("done", "text")
        await ledger.reserve("error")
        await ledger.mark_error("error")

        clock.now += 50
        await ledger.reserve("fresh")

        clock.now += 60  # first three are 110s old, "fresh" is 60s old
        evicted = await ledger.sweep()

        assert evicted == 3
        assert len(ledger) == 1
        assert await ledger.get("fresh") is not None
        assert await ledger.get("done") is None

    @pytest.mark.asyncio
    async def test_sweep_keeps_records_within_window(self):
        clock = FakeClock()
        ledger = IdempotencyLedger(retention_s=100, clock=clock)
        await ledger.reserve("k")

        clock.now += 99
        assert await ledger.sweep() == 0
        assert await ledger.get("k") is not None

    @pytest.mark.asyncio
    async def test_sweep_loop_evicts_without_traffic(self):
        clock = FakeClock()
        ledger = IdempotencyLedger(retention_s=100, clock=clock)
        await ledger.reserve("old")
        await ledger.mark_error("old")
        clock.now += 101

        task = asyncio.create_task(ledger_sweep_loop(ledger, 0.01))
        for _ in range(100):
            if len(ledger) == 0:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(ledger) == 0

    @pytest.mark.asyncio
    async def test_sweep_loop_keeps_running_after_failure(self):
        ledger = IdempotencyLedger(retention_s=100)
        calls = []

        async def flaky_sweep():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return 0

        ledger.sweep = flaky_sweep
        task = asyncio.create_task(ledger_sweep_loop(ledger, 0.01))
        for _ in range(100):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(calls) >= 2
