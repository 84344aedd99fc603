"""
Message Recorder — best-effort, ordered persistence off the hot path.

The executor hands every message to ``record()`` without awaiting the
write. A single writer task drains a bounded queue into the store in
sequence order. When the queue is full the record is dropped with a
warning; a failed write is logged by the store and skipped.

``close()`` drains whatever is still queued, so by the time a query's
outcome is returned the persisted log matches what was delivered.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# save(session_id, message, sequence, source) -> bool
SaveFn = Callable[[str, dict[str, Any], int, str], Awaitable[bool]]

_CLOSE = object()


@dataclass(frozen=True)
class _Pending:
    sequence: int
    message: dict[str, Any]
    source: str


class MessageRecorder:
    def __init__(self, session_id: str, save: SaveFn, maxsize: int = 1000) -> None:
        self.session_id = session_id
        self._save = save
        self._queue: asyncio.Queue[_Pending | object] = asyncio.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize
        self._task: asyncio.Task[None] | None = None
        self._closed = False
        self.saved = 0
        self.dropped = 0
        self.failed = 0

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(
                self._writer(), name=f"recorder-{self.session_id[:8]}"
            )

    def record(self, sequence: int, message: dict[str, Any], source: str = "sdk") -> bool:
        """Queue one message for persistence. Never blocks. Returns False if dropped."""
        if self._closed:
            logger.warning(
                "Recorder closed; dropping message %d for session %s",
                sequence,
                self.session_id,
            )
            self.dropped += 1
            return False

        # One slot is reserved for the close marker
        if self._queue.qsize() >= self._maxsize:
            logger.warning(
                "Recorder queue full (%d); dropping message %d for session %s",
                self._maxsize,
                sequence,
                self.session_id,
                extra={"session_id": self.session_id, "sequence": sequence},
            )
            self.dropped += 1
            return False

        self._queue.put_nowait(_Pending(sequence, message, source))
        return True

    async def close(self) -> None:
        """Flush pending writes and stop the writer."""
        if self._closed:
            return
        self._closed = True

        if self._task is None:
            return

        self._queue.put_nowait(_CLOSE)
        # Shielded: if the caller is cancelled the writer still finishes the backlog
        await asyncio.shield(self._task)

    async def _writer(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            assert isinstance(item, _Pending)

            try:
                ok = await self._save(self.session_id, item.message, item.sequence, item.source)
            except Exception as e:
                logger.error(
                    "Failed to persist message %d for session %s: %s",
                    item.sequence,
                    self.session_id,
                    e,
                )
                ok = False

            if ok:
                self.saved += 1
            else:
                self.failed += 1
