"""
Stats Service — order counters for the admin dashboard.
========================================================

Pure in-memory counters; the request path never touches disk. A background
task flushes to stats.json only when something changed, using atomic writes
(tmp + fsync + rename). Counters are loaded once at startup.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from esim_bridge.config import settings

logger = logging.getLogger(__name__)


@dataclass
class Stats:
    total_orders: int = 0
    total_esims: int = 0
    last_order_at: Optional[str] = None
    errors: int = 0


class StatsService:
    """Order/eSIM/error counters backed by a JSON file."""

    def __init__(self, path: Optional[str] = None):
        self._path = Path(path or settings.stats_path)
        self._stats = Stats()
        self._dirty = False
        self._load()

    @property
    def dirty(self) -> bool:
        return self._dirty

    def _load(self) -> None:
        if not self._path.exists():
            logger.info("No stats file at %s — starting from zero", self._path)
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            self._stats = Stats(
                total_orders=int(raw.get("total_orders", 0)),
                total_esims=int(raw.get("total_esims", 0)),
                last_order_at=raw.get("last_order_at"),
                errors=int(raw.get("errors", 0)),
            )
        except Exception as e:
            logger.error("Failed to load %s: %s — starting from zero", self._path, e)

    def record_order(self, esim_count: int = 1) -> None:
        self._stats.total_orders += 1
        self._stats.total_esims += esim_count
        self._stats.last_order_at = datetime.now(timezone.utc).isoformat()
        self._dirty = True

    def record_error(self) -> None:
        self._stats.errors += 1
        self._dirty = True

    def get_stats(self) -> dict:
        return asdict(self._stats)

    def flush(self) -> bool:
        """Write to disk if changed. Returns True when a write happened."""
        if not self._dirty:
            return False
        self._dirty = False
        try:
            self._write(self.get_stats())
        except OSError as e:
            self._dirty = True
            logger.error("Failed to write %s: %s", self._path, e)
            return False
        return True

    def _write(self, data: dict) -> None:
        """Atomic write: tmp → fsync → rename."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self._path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, str(self._path))
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


async def stats_flush_loop(stats: StatsService, interval_s: float) -> None:
    """Background task: flush dirty counters every `interval_s` seconds."""
    while True:
        await asyncio.sleep(interval_s)
        try:
            await asyncio.to_thread(stats.flush)
        except Exception as e:
            logger.error("Stats flush failed: %s", e, exc_info=True)


# ---------------------------------------------------------------------------
# Module-level singleton + FastAPI dependency
# ---------------------------------------------------------------------------
_stats: Optional[StatsService] = None


def get_stats_service() -> StatsService:
    global _stats
    if _stats is None:
        _stats = StatsService()
    return _stats
