"""
Cancellation token with fan-in from several producers.

A query can be stopped by the client going away, by its timeout timer,
or by an explicit abort. All three call ``cancel()`` on the same token;
the first call decides the reason and later calls are ignored.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class CancelReason(str, Enum):
    CLIENT_DISCONNECT = "client_disconnect"
    TIMEOUT = "timeout"
    ABORTED = "aborted"


CancelCallback = Callable[["CancelReason"], None]


class CancellationToken:
    """Idempotent, first-reason-wins cancellation handle."""

    def __init__(self) -> None:
        self._reason: CancelReason | None = None
        self._event = asyncio.Event()
        self._callbacks: list[CancelCallback] = []

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> CancelReason | None:
        return self._reason

    def cancel(self, reason: CancelReason) -> bool:
        """Activate the token. Returns True only for the call that won."""
        if self._reason is not None:
            logger.debug("Ignoring late cancel (%s); already %s", reason.value, self._reason.value)
            return False

        self._reason = reason
        self._event.set()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception as e:
                logger.warning("Cancel callback failed: %s", e)
        return True

    def add_callback(self, callback: CancelCallback) -> None:
        """Run ``callback`` once on cancellation (immediately if already cancelled)."""
        if self._reason is not None:
            callback(self._reason)
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: CancelCallback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    async def wait(self) -> CancelReason:
        await self._event.wait()
        assert self._reason is not None
        return self._reason

    def link(self, other: CancellationToken) -> Callable[[], None]:
        """
        Forward ``other``'s cancellation into this token.

        Returns a function that undoes the link.
        """

        def forward(reason: CancelReason) -> None:
            self.cancel(reason)

        other.add_callback(forward)
        return lambda: other.remove_callback(forward)
