"""
Session Service — the operations transports call.

Wraps the SessionManager and QueryExecutor into the contracts the HTTP
layer needs: create / get / list / end sessions, run a query, read
history, cancel a running query.

Queries against one session are serialized: each session has an
asyncio.Lock held for the whole execution, so sequence allocation and
upstream id updates never interleave. Queries against different
sessions run concurrently. A lock is dropped once no query holds or
waits on it.

After every execution, whatever the outcome, the learned upstream id is
recorded and the session's activity is bumped exactly once.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from coderelay.core.errors import SessionNotFoundError
from coderelay.query.cancellation import CancellationToken, CancelReason
from coderelay.query.executor import QueryOutcome, QueryRequest, Sink
from coderelay.session.models import MessageRecord, Session, SessionConfig, SessionStatus

if TYPE_CHECKING:
    from coderelay.query.executor import QueryExecutor
    from coderelay.session.manager import SessionManager

logger = logging.getLogger(__name__)


class SessionService:
    def __init__(self, manager: "SessionManager", executor: "QueryExecutor") -> None:
        self._manager = manager
        self._executor = executor
        self._locks: dict[str, asyncio.Lock] = {}
        # session_id → queries holding or waiting on that lock
        self._lock_users: dict[str, int] = {}
        # session_id → token of the query currently holding the lock
        self._in_flight: dict[str, CancellationToken] = {}

    @property
    def manager(self) -> "SessionManager":
        return self._manager

    # ─── Sessions ─────────────────────────────────────────────────

    async def create_session(self, config: SessionConfig | None = None) -> Session:
        return await self._manager.create_session(config)

    async def get_session(self, session_id: str) -> Session:
        """Raises SessionNotFoundError for unknown or ended sessions."""
        session = await self._manager.get_session(session_id)
        if session is None or session.status == SessionStatus.ENDED.value:
            raise SessionNotFoundError(session_id)
        return session

    async def list_sessions(self) -> list[Session]:
        return await self._manager.list_active_sessions()

    async def end_session(self, session_id: str) -> None:
        token = self._in_flight.get(session_id)
        if token is not None:
            token.cancel(CancelReason.ABORTED)

        if not await self._manager.end_session(session_id):
            raise SessionNotFoundError(session_id)

    async def get_messages(
        self, session_id: str, limit: int = 100, offset: int = 0
    ) -> tuple[list[MessageRecord], int]:
        await self.get_session(session_id)
        records = await self._manager.get_messages(session_id, limit=limit, offset=offset)
        total = await self._manager.get_message_count(session_id)
        return records, total

    async def statistics(self) -> dict[str, Any]:
        stats = await self._manager.statistics()
        stats["runningQueries"] = len(self._in_flight)
        return stats

    # ─── Queries ──────────────────────────────────────────────────

    async def run_query(
        self,
        session_id: str,
        prompt: str,
        sink: Sink | None = None,
        timeout_ms: float | None = None,
        cancel: CancellationToken | None = None,
        record_prompt: bool = False,
    ) -> QueryOutcome:
        """
        Run one prompt against a session and do the session bookkeeping.

        Raises SessionNotFoundError (and quota errors when reactivating an
        expired session). Query-level failures are in the outcome.
        """
        await self._require_usable(session_id)

        token = cancel or CancellationToken()
        lock = self._acquire_lock_entry(session_id)
        if lock.locked():
            logger.info("Query for %s waiting for the previous one", session_id)

        try:
            async with lock:
                # State may have changed while waiting for the lock
                session = await self._require_usable(session_id)
                self._in_flight[session_id] = token
                try:
                    outcome = await self._executor.execute(
                        QueryRequest(
                            session_id=session_id,
                            prompt=prompt,
                            config=session.config,
                            resume_id=session.upstream_id,
                            timeout_ms=timeout_ms,
                            sink=sink,
                            cancel=token,
                            record_prompt=record_prompt,
                        )
                    )
                finally:
                    self._in_flight.pop(session_id, None)

                await self._manager.update_upstream_id(session_id, outcome.upstream_id)
                await self._manager.update_activity(session_id)
                return outcome
        finally:
            self._release_lock_entry(session_id)

    def cancel_query(self, session_id: str) -> bool:
        """Abort the running query for a session. Returns False if none was running."""
        token = self._in_flight.get(session_id)
        if token is None:
            return False
        cancelled = token.cancel(CancelReason.ABORTED)
        if cancelled:
            logger.info("Query for %s aborted on request", session_id, extra={"session_id": session_id})
        return cancelled

    def is_running(self, session_id: str) -> bool:
        return session_id in self._in_flight

    async def _require_usable(self, session_id: str) -> Session:
        session = await self._manager.reactivate(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _acquire_lock_entry(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        return lock

    def _release_lock_entry(self, session_id: str) -> None:
        # Last user out drops the lock, so swept sessions leave nothing behind
        users = self._lock_users[session_id] - 1
        if users:
            self._lock_users[session_id] = users
        else:
            del self._lock_users[session_id]
            del self._locks[session_id]
