"""
Stream Relay — SSE framing for one streaming query.

State machine per stream:

    connecting ──► streaming ──► completed | errored | cancelled

- ``connected`` is sent before the query starts.
- Every executor notification becomes a ``message`` event.
- A ``: keepalive`` comment goes out on a fixed interval, whether or not
  messages are flowing, so idle proxies keep the connection open.
- Exactly one terminal event: ``complete`` or ``error``.

The query runs as its own task. If the transport goes away while
streaming, the relay cancels the query with ``client_disconnect`` and
lets the task finish its bookkeeping in the background. A disconnect
before the query started, or after the terminal event, cancels nothing.
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

from coderelay.query.cancellation import CancellationToken, CancelReason
from coderelay.query.executor import QueryError, QueryOutcome, Sink

logger = logging.getLogger(__name__)

KEEPALIVE = ": keepalive\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# ASGI receive callable
Receive = Callable[[], Awaitable[dict[str, Any]]]

# run(sink, cancel) -> outcome
QueryRunner = Callable[[Sink, CancellationToken], Awaitable[QueryOutcome]]

# Query tasks still finishing after their client went away
_detached: set[asyncio.Task] = set()


class RelayState(str, Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({RelayState.COMPLETED, RelayState.ERRORED, RelayState.CANCELLED})


def format_event(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


class StreamRelay:
    def __init__(
        self,
        session_id: str,
        run: QueryRunner,
        keepalive_interval: float = 30.0,
        queue_size: int = 1000,
    ) -> None:
        self.session_id = session_id
        self.state = RelayState.CONNECTING
        self.token = CancellationToken()
        self.terminal_events = 0
        self._run = run
        self._keepalive_interval = keepalive_interval
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self._task: asyncio.Task[QueryOutcome] | None = None

    @property
    def task(self) -> asyncio.Task[QueryOutcome] | None:
        return self._task

    async def events(self, receive: Receive | None = None) -> AsyncIterator[str]:
        """
        SSE frames for the whole stream. Iterate once.

        With ``receive`` (the ASGI receive callable) the request side is
        watched too, so a client that leaves while the agent is quiet is
        noticed at once rather than at the next write.
        """
        get: asyncio.Task | None = None
        watcher: asyncio.Task | None = None
        try:
            yield format_event("connected", {"sessionId": self.session_id})

            self.state = RelayState.STREAMING
            self._task = asyncio.create_task(
                self._run(self._sink, self.token), name=f"stream-{self.session_id[:8]}"
            )
            if receive is not None:
                watcher = asyncio.create_task(
                    self.watch_transport(receive), name=f"stream-watch-{self.session_id[:8]}"
                )

            loop = asyncio.get_running_loop()
            next_keepalive = loop.time() + self._keepalive_interval

            while True:
                if get is None:
                    get = asyncio.create_task(self._queue.get())

                timeout = max(0.0, next_keepalive - loop.time())
                done, _ = await asyncio.wait(
                    {get, self._task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
                if self.state is not RelayState.STREAMING:
                    # Client gone; nobody is left to read a terminal event
                    return

                if get in done:
                    payload = get.result()
                    get = None
                    yield format_event("message", payload)
                elif self._task in done:
                    break

                if loop.time() >= next_keepalive:
                    next_keepalive = loop.time() + self._keepalive_interval
                    yield KEEPALIVE

            # Query finished; flush anything it delivered before returning
            if get is not None:
                if get.done():
                    yield format_event("message", get.result())
                else:
                    get.cancel()
                get = None
            while not self._queue.empty():
                yield format_event("message", self._queue.get_nowait())

            event, data = self._terminal_event()
            self.terminal_events += 1
            yield format_event(event, data)
        finally:
            if get is not None and not get.done():
                get.cancel()
            if watcher is not None:
                watcher.cancel()
            if self.state not in TERMINAL_STATES:
                self._handle_disconnect()

    async def watch_transport(self, receive: Receive) -> None:
        """Wait for ``http.disconnect`` on the request side and treat it as a close."""
        try:
            while True:
                message = await receive()
                if message.get("type") == "http.disconnect":
                    self.on_transport_close()
                    return
        except OSError as e:
            self.on_transport_error(e)

    def on_transport_error(self, error: BaseException | None = None) -> None:
        """Transport failure. Treated exactly like a close."""
        if error is not None:
            logger.info("Stream transport error for %s: %s", self.session_id, error)
        self._handle_disconnect()

    def on_transport_close(self) -> None:
        self._handle_disconnect()

    # ─── Internal ─────────────────────────────────────────────────

    async def _sink(self, payload: dict[str, Any]) -> None:
        if self.state is not RelayState.STREAMING:
            return
        await self._queue.put(payload)

    def _handle_disconnect(self) -> None:
        if self.state is RelayState.CONNECTING:
            logger.debug("Client left %s before the query started", self.session_id)
            self.state = RelayState.CANCELLED
            return
        if self.state in TERMINAL_STATES:
            return

        self.state = RelayState.CANCELLED
        if self.token.cancel(CancelReason.CLIENT_DISCONNECT):
            logger.info(
                "Client disconnected during query, aborting: %s",
                self.session_id,
                extra={"session_id": self.session_id, "reason": CancelReason.CLIENT_DISCONNECT.value},
            )

        # Unblock a sink waiting on a full queue
        while not self._queue.empty():
            self._queue.get_nowait()

        if self._task is not None and not self._task.done():
            _detached.add(self._task)
            self._task.add_done_callback(self._on_detached_done)

    def _on_detached_done(self, task: asyncio.Task) -> None:
        _detached.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Detached query for %s failed: %s", self.session_id, error)

    def _terminal_event(self) -> tuple[str, dict[str, Any]]:
        assert self._task is not None
        try:
            outcome = self._task.result()
        except asyncio.CancelledError:
            self.state = RelayState.CANCELLED
            return "error", {"error": "Query cancelled", "sessionId": None}
        except Exception as e:
            logger.error("Streaming query for %s failed: %s", self.session_id, e)
            self.state = RelayState.ERRORED
            return "error", {"error": str(e), "sessionId": None}

        if outcome.success:
            self.state = RelayState.COMPLETED
            return "complete", {"summary": outcome.summary, "sessionId": outcome.upstream_id}

        if outcome.error is QueryError.CANCELLED:
            self.state = RelayState.CANCELLED
        else:
            self.state = RelayState.ERRORED
        return "error", {"error": outcome.error_message, "sessionId": outcome.upstream_id}
