"""
Sellauth webhook signature verification.

x-signature carries hex(HMAC-SHA256(raw_body, SELLAUTH_SECRET)). Checked on
the raw bytes before the body is parsed; Starlette caches request.body() so
the route can read it again.
"""

import hashlib
import hmac
import logging
from typing import Optional

from fastapi import Header, Request

from esim_bridge.config import settings
from esim_bridge.core.errors import BridgeError

logger = logging.getLogger(__name__)


def compute_signature(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


async def verify_signature(
    request: Request,
    x_signature: Optional[str] = Header(None),
) -> None:
    """FastAPI dependency: reject unsigned or wrongly signed webhooks."""
    if not x_signature:
        raise BridgeError("ESB-SEC-001")

    secret = settings.sellauth_secret
    if not secret:
        raise BridgeError("ESB-CFG-001", detail="ESIM_BRIDGE_SELLAUTH_SECRET not set")

    payload = await request.body()
    expected = compute_signature(secret, payload)
    if not hmac.compare_digest(expected.encode("utf-8"), x_signature.encode("utf-8")):
        raise BridgeError("ESB-SEC-002", context={"body_bytes": len(payload)})
