"""
Background-refreshed forex snapshot.

The cache holds one immutable ``ForexSnapshot``. A refresh builds a complete
new snapshot and swaps the reference; a failed refresh leaves the previous
snapshot in place. Readers never lock.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from zeno_shared.logging import get_logger
from zeno_shared.metrics import GatewayMetrics

from .client import ForexSource


class RawForexPayload(BaseModel):
    """Fields the gateway needs from the quote provider."""

    timestamp: int
    base: str = "USD"
    rates: Dict[str, float] = Field(min_length=1)
    disclaimer: Optional[str] = None
    license: Optional[str] = None


@dataclass(frozen=True)
class ForexSnapshot:
    """One complete set of rates."""

    base: str
    timestamp: int
    rates: Mapping[str, float]
    fetched_at: datetime
    raw: Mapping[str, Any] = field(repr=False)

    def normalized(self) -> Dict[str, Any]:
        """The ``/forex`` view."""
        return {
            "base": self.base,
            "timestamp": self.timestamp,
            "fetched_at": self.fetched_at.isoformat(),
            "rates": dict(self.rates),
        }


class ForexCache:
    """Owns the current snapshot and the refresh loop."""

    def __init__(
        self,
        source: ForexSource,
        *,
        refresh_interval: float = 3600.0,
        metrics: Optional[GatewayMetrics] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.source = source
        self.refresh_interval = refresh_interval
        self.metrics = metrics
        self._now = now
        self._snapshot: Optional[ForexSnapshot] = None
        self.last_error: Optional[str] = None
        self.logger = get_logger("gateway.forex")

    def current(self) -> Optional[ForexSnapshot]:
        """Most recent complete snapshot, or None before the first success."""
        return self._snapshot

    async def refresh(self) -> bool:
        """Fetch once; returns True when a new snapshot was installed."""
        started = time.perf_counter()
        try:
            raw = await self.source.fetch()
            parsed = RawForexPayload.model_validate(raw)
        except ValidationError as exc:
            return self._refresh_failed(started, f"invalid payload: {exc.error_count()} errors")
        except Exception as exc:
            return self._refresh_failed(started, str(exc) or type(exc).__name__)

        self._snapshot = ForexSnapshot(
            base=parsed.base,
            timestamp=parsed.timestamp,
            rates=MappingProxyType(dict(parsed.rates)),
            fetched_at=self._now(),
            raw=MappingProxyType(dict(raw)),
        )
        self.last_error = None
        if self.metrics is not None:
            self.metrics.record_forex_refresh("success", time.perf_counter() - started)
        self.logger.info("Updated forex data", currencies=len(parsed.rates), timestamp=parsed.timestamp)
        return True

    def _refresh_failed(self, started: float, error: str) -> bool:
        self.last_error = error
        if self.metrics is not None:
            self.metrics.record_forex_refresh("failure", time.perf_counter() - started)
        self.logger.error(
            "Failed to refresh forex data",
            error=error,
            serving_stale=self._snapshot is not None,
        )
        return False

    async def run(self) -> None:
        """Refresh now, then every ``refresh_interval`` seconds until cancelled."""
        while True:
            await self.refresh()
            await asyncio.sleep(self.refresh_interval)

    def status(self) -> Dict[str, Any]:
        """Summary for the health endpoint."""
        snapshot = self._snapshot
        return {
            "available": snapshot is not None,
            "fetched_at": snapshot.fetched_at.isoformat() if snapshot else None,
            "last_error": self.last_error,
        }
