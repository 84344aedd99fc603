"""
Time sources for session bookkeeping.

Everything that stamps or compares session timestamps takes a ``Clock``
so expiry logic can be driven deterministically in tests. Timestamps are
epoch seconds (float), the same unit the store persists.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float: ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> float:
        return time.time()


class Ticker(Protocol):
    """Paces a periodic task. ``wait()`` returns when the next tick is due."""

    async def wait(self) -> None: ...


class IntervalTicker:
    """Ticks every ``interval`` seconds of real time."""

    def __init__(self, interval: float):
        self.interval = interval

    async def wait(self) -> None:
        await asyncio.sleep(self.interval)


def to_iso(ts: float | None) -> str | None:
    """Render an epoch timestamp as an ISO-8601 UTC string."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).isoformat().replace("+00:00", "Z")
