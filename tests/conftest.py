"""
Pytest configuration for eSIM Bridge tests.
Sets required environment variables before any esim_bridge import.
"""

import os
import tempfile

# Required secrets — must be set before esim_bridge.config is imported
os.environ.setdefault("ESIM_BRIDGE_SELLAUTH_SECRET", "test-sellauth-secret")
os.environ.setdefault("ESIM_BRIDGE_ESIM_ACCESS_CODE", "test-access-code")
os.environ.setdefault("ESIM_BRIDGE_ADMIN_USERNAME", "admin")
os.environ.setdefault("ESIM_BRIDGE_ADMIN_PASSWORD", "test-admin-password")

# Keep stats.json out of the working tree
_test_data_dir = tempfile.mkdtemp(prefix="esim_bridge_test_")
os.environ.setdefault("ESIM_BRIDGE_STATS_PATH", os.path.join(_test_data_dir, "stats.json"))

from unittest.mock import AsyncMock

import httpx
import pytest

# Load error registry so BridgeError renders with the right HTTP status codes
from esim_bridge.core.errors.registry import error_registry
error_registry.load()

from esim_bridge.services.provisioning_client import EsimAccessClient


@pytest.fixture
def make_client():
    """Build an EsimAccessClient wired to a FakeProvider, with instant sleeps."""

    def _make(provider, **overrides) -> EsimAccessClient:
        kwargs = dict(
            access_code="test-access-code",
            base_url="https://api.esim.test",
            timeout=2.0,
            burst_delays=[0.5, 1.0],
            poll_interval=5.0,
            max_attempts=5,
            in_progress_codes=["200010"],
            transport=httpx.MockTransport(provider),
            sleep=AsyncMock(),
        )
        kwargs.update(overrides)
        return EsimAccessClient(**kwargs)

    return _make
