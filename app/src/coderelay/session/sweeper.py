"""
Expiry Sweeper — periodic removal of sessions past their expiry.

Runs ``SessionManager.sweep_once()`` every time its ticker fires. The
ticker is injected so tests can step the sweep by hand instead of
waiting on wall-clock time. A failed cycle is logged and the loop
carries on to the next tick.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from coderelay.core.clock import IntervalTicker, Ticker

if TYPE_CHECKING:
    from coderelay.session.manager import SessionManager

logger = logging.getLogger(__name__)


class ExpirySweeper:
    def __init__(
        self,
        manager: "SessionManager",
        ticker: Ticker | None = None,
        interval: float = 60.0,
    ) -> None:
        self._manager = manager
        self._ticker = ticker or IntervalTicker(interval)
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self.cycles = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._running

    # ─── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="session-expiry-sweep")
        logger.info("Expiry sweeper started")

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Expiry sweeper stopped")

    # ─── Loop ─────────────────────────────────────────────────────

    async def _loop(self) -> None:
        while self._running:
            try:
                await self._ticker.wait()
            except asyncio.CancelledError:
                break

            if not self._running:
                break

            await self.run_cycle()

    async def run_cycle(self) -> int:
        """Run a single sweep, isolating any failure to this cycle."""
        self.cycles += 1
        try:
            return await self._manager.sweep_once()
        except Exception as e:
            self.failures += 1
            logger.error("Expiry sweep cycle %d failed: %s", self.cycles, e, exc_info=True)
            return 0
