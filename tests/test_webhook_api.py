"""
Tests for the HTTP surface — /webhook, /, /health, /admin/*.

Signature checks, plain-text delivery vs JSON errors, Basic auth on the
admin routes and the operator ledger reset.
"""

import json
import random
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from esim_bridge.auth.signature import compute_signature
from esim_bridge.main import app
from esim_bridge.services.fulfillment_orchestrator import FulfillmentOrchestrator, get_orchestrator
from esim_bridge.services.idempotency_ledger import IdempotencyLedger, get_ledger
from esim_bridge.services.message_composer import MessageComposer
from esim_bridge.services.provisioning_client import (
    ProvisionedEsim,
    ProvisioningError,
    ProvisioningErrorKind,
)
from esim_bridge.services.stats_service import StatsService, get_stats_service

SECRET = "test-sellauth-secret"
ADMIN_AUTH = ("admin", "test-admin-password")


def _signed(payload: dict):
    body = json.dumps(payload).encode()
    return body, {"x-signature": compute_signature(SECRET, body), "content-type": "application/json"}


@pytest.fixture
def ledger():
    return IdempotencyLedger(retention_s=3600)


@pytest.fixture
def stats(tmp_path):
    return StatsService(path=str(tmp_path / "stats.json"))


@pytest.fixture
def provider_client():
    client = MagicMock()
    client.order_and_poll = AsyncMock(return_value=[ProvisionedEsim("ABC123", "https://x/y")])
    return client


@pytest.fixture
def client(ledger, stats, provider_client):
    orchestrator = FulfillmentOrchestrator(
        ledger, provider_client, MessageComposer(rng=random.Random(3)), stats,
    )
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_stats_service] = lambda: stats
    yield TestClient(app)
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Liveness
# ---------------------------------------------------------------------------

class TestLiveness:
    def test_root_is_plain_text(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.text == "Bot is awake and ready."
        assert response.headers["content-type"].startswith("text/plain")

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "ok"
        assert data["service"] == "esim-bridge"


# ---------------------------------------------------------------------------
# Signature
# ---------------------------------------------------------------------------

class TestSignature:
    def test_missing_signature(self, client, provider_client):
        response = client.post("/webhook?packageCode=PKG1", content=b'{"invoice_id": "1"}')
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "ESB-SEC-001"
        provider_client.order_and_poll.assert_not_awaited()

    def test_wrong_signature(self, client, provider_client):
        body, headers = _signed({"invoice_id": "1"})
        headers["x-signature"] = compute_signature("other-secret", body)
        response = client.post("/webhook?packageCode=PKG1", content=body, headers=headers)
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "ESB-SEC-002"
        provider_client.order_and_poll.assert_not_awaited()

    def test_signature_covers_exact_bytes(self, client):
        body, headers = _signed({"invoice_id": "1"})
        response = client.post("/webhook?packageCode=PKG1", content=body + b" ", headers=headers)
        assert response.status_code == 401


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

class TestWebhook:
    def test_delivery_is_plain_text(self, client, provider_client):
        body, headers = _signed({"invoice_id": "inv_1", "item": {"quantity": 1}})

        response = client.post("/webhook?packageCode=PKG1", content=body, headers=headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "ABC123" in response.text
        assert "https://x/y" in response.text
        provider_client.order_and_poll.assert_awaited_once_with("PKG1", 1)

    def test_replay_is_identical(self, client, provider_client):
        body, headers = _signed({"invoice_id": "inv_2"})

        first = client.post("/webhook?packageCode=PKG1", content=body, headers=headers)
        second = client.post("/webhook?packageCode=PKG1", content=body, headers=headers)

        assert first.status_code == second.status_code == 200
        assert first.text == second.text
        assert provider_client.order_and_poll.await_count == 1

    def test_bad_quantity_is_json_400(self, client, provider_client):
        body, headers = _signed({"invoice_id": "inv_3", "item": {"quantity": 11}})

        response = client.post("/webhook?packageCode=PKG1", content=body, headers=headers)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ESB-VAL-002"
        provider_client.order_and_poll.assert_not_awaited()

    def test_missing_package_code(self, client):
        body, headers = _signed({"invoice_id": "inv_4"})
        response = client.post("/webhook", content=body, headers=headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ESB-VAL-001"

    def test_provider_failure_is_json_500(self, client, provider_client):
        provider_client.order_and_poll = AsyncMock(
            side_effect=ProvisioningError(ProvisioningErrorKind.TIMEOUT, "not ready after 60 attempts"),
        )
        body, headers = _signed({"invoice_id": "inv_5"})

        first = client.post("/webhook?packageCode=PKG1", content=body, headers=headers)
        second = client.post("/webhook?packageCode=PKG1", content=body, headers=headers)

        assert first.status_code == 500
        assert first.json()["error"]["code"] == "ESB-PRV-004"
        assert second.status_code == 500
        assert second.json()["error"]["code"] == "ESB-LDG-002"
        assert provider_client.order_and_poll.await_count == 1


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

class TestAdmin:
    def test_requires_credentials(self, client):
        response = client.get("/admin")
        assert response.status_code == 401
        assert "Basic" in response.headers["www-authenticate"]

    def test_wrong_password(self, client):
        response = client.get("/admin/stats", auth=("admin", "nope"))
        assert response.status_code == 401

    def test_dashboard_renders(self, client, stats):
        stats.record_order(2)
        response = client.get("/admin", auth=ADMIN_AUTH)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert "{{TOTAL_ORDERS}}" not in response.text

    def test_stats_json(self, client, stats, ledger):
        stats.record_order(3)
        stats.record_error()
        data = client.get("/admin/stats", auth=ADMIN_AUTH).json()
        assert data["total_orders"] == 1
        assert data["total_esims"] == 3
        assert data["errors"] == 1
        assert data["ledger_size"] == 0

    def test_ledger_lookup_and_reset(self, client, provider_client):
        provider_client.order_and_poll = AsyncMock(
            side_effect=[
                ProvisioningError(ProvisioningErrorKind.QUERY_REJECTED, "provider error 310241: cancelled"),
                [ProvisionedEsim("DEF456", None)],
            ],
        )
        body, headers = _signed({"invoice_id": "inv_6"})
        client.post("/webhook?packageCode=PKG1", content=body, headers=headers)

        record = client.get("/admin/ledger/invoice:inv_6", auth=ADMIN_AUTH)
        assert record.status_code == 200
        assert record.json()["state"] == "error"

        assert client.delete("/admin/ledger/invoice:inv_6", auth=ADMIN_AUTH).status_code == 204
        assert client.get("/admin/ledger/invoice:inv_6", auth=ADMIN_AUTH).status_code == 404

        retry = client.post("/webhook?packageCode=PKG1", content=body, headers=headers)
        assert retry.status_code == 200
        assert "DEF456" in retry.text

    def test_reset_unknown_key(self, client):
        assert client.delete("/admin/ledger/invoice:none", auth=ADMIN_AUTH).status_code == 404
