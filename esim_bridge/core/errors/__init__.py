"""
Error code system.

BridgeError is the base exception for all structured errors.
Raise it with an error code from the registry, and the error middleware
will produce a structured JSON response.

Usage:
    from esim_bridge.core.errors import BridgeError
    raise BridgeError("ESB-CFG-001", detail="ESIM_BRIDGE_SELLAUTH_SECRET not set")
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^ESB-[A-Z]{2,6}-\d{3}$")


class BridgeError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "ESB-PRV-002".
        detail: Diagnostic message. Only returned to callers when the
            registry entry sets ``expose_detail``.
        context: Arbitrary key-value context for structured logging.
    """

    def __init__(
        self,
        code: str,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class EventValidationError(BridgeError):
    """Inbound event is malformed. Never retried."""


class DuplicateInFlight(BridgeError):
    """Another delivery of the same event is still provisioning."""

    def __init__(self, event_key: str) -> None:
        super().__init__(
            "ESB-LDG-001",
            detail=f"event {event_key} is still being provisioned",
            context={"event_key": event_key},
        )


class PreviousAttemptFailed(BridgeError):
    """An earlier attempt for this event failed; re-ordering needs an operator."""

    def __init__(self, event_key: str) -> None:
        super().__init__(
            "ESB-LDG-002",
            detail=f"previous provisioning attempt for {event_key} failed",
            context={"event_key": event_key},
        )
