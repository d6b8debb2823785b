"""
Error registry: the ESB-* codes from registry.yaml, keyed by code.

Each entry fixes the HTTP status, log severity and the caller-facing text of
one error code; render_error() reads it for every BridgeError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from esim_bridge.core.errors import CODE_PATTERN

logger = logging.getLogger(__name__)

DEFAULT_PATH = Path(__file__).with_name("registry.yaml")

VALID_DOMAINS = {"VAL", "LDG", "PRV", "SEC", "CFG", "SYS"}
VALID_SEVERITIES = {"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"}
REQUIRED_FIELDS = (
    "code", "domain", "title", "severity", "retryable",
    "user_action_required", "http_status", "safe_message",
)


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    domain: str
    title: str
    severity: str
    retryable: bool
    user_action_required: bool
    http_status: int
    safe_message: str
    expose_detail: bool = False
    remediation: List[str] = field(default_factory=list)


class RegistryValidationError(Exception):
    """registry.yaml is structurally invalid."""


def _parse_entry(raw: Any, position: int) -> ErrorEntry:
    if not isinstance(raw, dict):
        raise RegistryValidationError(f"entry #{position} is not a mapping")
    missing = [name for name in REQUIRED_FIELDS if name not in raw]
    if missing:
        raise RegistryValidationError(f"entry #{position} ({raw.get('code', '?')}): missing {', '.join(missing)}")

    code = str(raw["code"])
    if not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"malformed code {code!r}")
    domain = raw["domain"]
    if domain not in VALID_DOMAINS or code.split("-")[1] != domain:
        raise RegistryValidationError(f"{code}: domain {domain!r} does not match the code")
    if raw["severity"] not in VALID_SEVERITIES:
        raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")

    return ErrorEntry(
        code=code,
        domain=domain,
        title=raw["title"],
        severity=raw["severity"],
        retryable=bool(raw["retryable"]),
        user_action_required=bool(raw["user_action_required"]),
        http_status=int(raw["http_status"]),
        safe_message=raw["safe_message"],
        expose_detail=bool(raw.get("expose_detail", False)),
        remediation=list(raw.get("remediation") or []),
    )


class ErrorRegistry:
    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}

    def load(self, path: Optional[str] = None) -> None:
        source = Path(path) if path else DEFAULT_PATH
        data = yaml.safe_load(source.read_text(encoding="utf-8")) or {}
        raw_entries = data.get("errors")
        if not isinstance(raw_entries, list):
            raise RegistryValidationError(f"{source}: 'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for position, raw in enumerate(raw_entries):
            entry = _parse_entry(raw, position)
            if entry.code in entries:
                raise RegistryValidationError(f"duplicate code {entry.code}")
            entries[entry.code] = entry

        self._entries = entries
        logger.info("error_registry_loaded", extra={"count": len(entries), "path": str(source)})

    def get(self, code: str) -> Optional[ErrorEntry]:
        return self._entries.get(code)

    def all_codes(self) -> List[str]:
        return list(self._entries)


# Loaded by the application lifespan (and by the test conftest)
error_registry = ErrorRegistry()
