"""
eSIM Bridge Configuration
==========================

PURPOSE:
    Pydantic-Settings based configuration for the eSIM fulfillment bridge.
    All settings can be overridden via environment variables (ESIM_BRIDGE_ prefix).

REQUIRED AT STARTUP:
    ESIM_BRIDGE_SELLAUTH_SECRET, ESIM_BRIDGE_ESIM_ACCESS_CODE,
    ESIM_BRIDGE_ADMIN_PASSWORD — the lifespan refuses to start without them.
"""

import logging
from typing import List, Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

_DEFAULT_ESIM_API_URL = "https://api.esimaccess.com"


class Settings(BaseSettings):
    app_name: str = "eSIM Bridge"
    port: int = 3000

    # Logging
    log_level: str = "info"
    log_dir: Optional[str] = None  # Unset → stderr only

    # Sellauth (webhook sender)
    sellauth_secret: Optional[str] = None  # HMAC-SHA256 key for x-signature

    # Admin dashboard (HTTP Basic)
    admin_username: str = "admin"
    admin_password: Optional[str] = None

    # eSIMAccess provisioning API
    esim_access_code: Optional[str] = None  # Sent as RT-AccessCode header
    esim_api_url: str = _DEFAULT_ESIM_API_URL
    esim_order_path: str = "/api/v1/open/esim/order"
    esim_query_path: str = "/api/v1/open/esim/query"
    esim_request_timeout_s: float = 30.0  # Per-call timeout (order + each poll)

    # Poll schedule: short burst first, then a steady interval
    esim_poll_burst_delays_s: List[float] = [2.0, 2.0, 3.0, 3.0, 5.0]
    esim_poll_interval_s: float = 10.0
    esim_max_poll_attempts: int = 60
    # Provider error codes meaning "order accepted, profiles still being allocated"
    esim_in_progress_codes: List[str] = ["200010"]

    # Idempotency ledger
    ledger_retention_s: int = 6 * 60 * 60  # Must exceed worst-case provisioning latency
    ledger_sweep_interval_s: int = 10 * 60

    # Statistics
    stats_path: str = "data/stats.json"
    stats_flush_interval_s: float = 10.0

    # Delivery templates (YAML with `single` / `multi` lists); unset → built-ins
    templates_path: Optional[str] = None

    class Config:
        env_file = ".env"
        env_prefix = "ESIM_BRIDGE_"

    def missing_required(self) -> List[str]:
        """Names of required environment variables that are not set."""
        required = [
            ("ESIM_BRIDGE_SELLAUTH_SECRET", self.sellauth_secret),
            ("ESIM_BRIDGE_ESIM_ACCESS_CODE", self.esim_access_code),
            ("ESIM_BRIDGE_ADMIN_PASSWORD", self.admin_password),
        ]
        return [name for name, value in required if not value]

    def worst_case_poll_s(self) -> float:
        """Upper bound of the poll loop's waiting time, excluding request time."""
        burst = self.esim_poll_burst_delays_s[: self.esim_max_poll_attempts]
        steady = max(0, self.esim_max_poll_attempts - len(burst))
        return sum(burst) + steady * self.esim_poll_interval_s


settings = Settings()
