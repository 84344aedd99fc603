"""
Session Manager — business rules over the session store.

The only component allowed to decide whether a session is usable "now".
It owns quota enforcement at creation, activity-based TTL renewal, the
lazy ``active → expired`` flip on read, and one cycle of the expiry
sweep (the periodic driver lives in ``coderelay.session.sweeper``).

Usage:
    manager = SessionManager(store, clock=SystemClock(), ttl_seconds=3600, max_sessions=100)
    session = await manager.create_session(SessionConfig(model="sonnet"))
    await manager.update_activity(session.session_id)

Invariant: every write this class makes sets
``expires_at = last_activity + ttl_seconds``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from coderelay.core.clock import Clock, SystemClock
from coderelay.core.errors import SessionQuotaExceededError
from coderelay.session.models import (
    MessageRecord,
    MessageSource,
    Session,
    SessionConfig,
    SessionStatus,
)

if TYPE_CHECKING:
    from coderelay.core.config import AgentConfig
    from coderelay.session.store import SessionStore

logger = logging.getLogger(__name__)


class SessionManager:
    """Creation with quota, TTL renewal, expiry observation and sweep."""

    def __init__(
        self,
        store: "SessionStore",
        clock: Clock | None = None,
        ttl_seconds: float = 3600.0,
        max_sessions: int = 100,
        defaults: "AgentConfig | None" = None,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._ttl = ttl_seconds
        self._max_sessions = max_sessions
        self._defaults = defaults
        self._total_created = 0
        # Quota check and the write that consumes the slot happen under one lock
        self._quota_lock = asyncio.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def max_sessions(self) -> int:
        return self._max_sessions

    # ─── Lifecycle ────────────────────────────────────────────────

    async def load_statistics(self) -> None:
        """Seed the created-sessions counter from the sessions already stored."""
        self._total_created = len(await self._store.list_sessions())

    async def create_session(self, config: SessionConfig | None = None) -> Session:
        """
        Create and persist a new active session.

        Raises SessionQuotaExceededError when the live active count is
        already at the configured maximum.
        """
        config = self._with_defaults(config or SessionConfig())
        async with self._quota_lock:
            await self._check_quota()

            now = self._clock.now()
            session = Session(
                session_id=str(uuid.uuid4()),
                config=config,
                status=SessionStatus.ACTIVE.value,
                created_at=now,
                last_activity=now,
                expires_at=now + self._ttl,
            )
            await self._store.create_session(session)
            self._total_created += 1

        logger.info(
            "Created session %s (agent=%s, model=%s)",
            session.session_id,
            session.config.agent,
            session.config.model or "default",
            extra={"session_id": session.session_id},
        )
        return session

    async def get_session(self, session_id: str) -> Session | None:
        """
        Fetch a session, observing expiry.

        An ``active`` session whose expiry has passed is flipped to
        ``expired`` in the store before being returned.
        """
        session = await self._store.get_session(session_id)
        if session is None:
            return None

        if session.status == SessionStatus.ACTIVE.value and session.is_expired(self._clock.now()):
            await self._store.update_session(session_id, status=SessionStatus.EXPIRED.value)
            logger.info("Session %s expired", session_id, extra={"session_id": session_id})
            return session.with_status(SessionStatus.EXPIRED.value)

        return session

    async def list_active_sessions(self) -> list[Session]:
        """Active sessions that have not yet passed their expiry."""
        now = self._clock.now()
        sessions = await self._store.list_sessions(SessionStatus.ACTIVE.value)
        return [s for s in sessions if not s.is_expired(now)]

    async def update_activity(self, session_id: str) -> None:
        """Renew TTL and count one completed query. No-op unless active."""
        session = await self._store.get_session(session_id)
        if session is None or session.status != SessionStatus.ACTIVE.value:
            return

        now = self._clock.now()
        await self._store.update_session(
            session_id,
            last_activity=now,
            expires_at=now + self._ttl,
            message_count=session.message_count + 1,
        )

    async def update_upstream_id(self, session_id: str, upstream_id: str | None) -> None:
        """Record the agent's own conversation id. ``None`` never clears it."""
        if not upstream_id:
            return
        await self._store.update_session(session_id, upstream_id=upstream_id)

    async def reactivate(self, session_id: str) -> Session | None:
        """
        Bring an ``expired`` session back to ``active`` on access.

        Returns the session unchanged if already active, None if it does
        not exist or has ended. Reactivation counts against the quota.
        """
        session = await self.get_session(session_id)
        if session is None or session.status == SessionStatus.ENDED.value:
            return None
        if session.status == SessionStatus.ACTIVE.value:
            return session

        async with self._quota_lock:
            # Another caller may have reactivated it while this one waited
            session = await self.get_session(session_id)
            if session is None or session.status == SessionStatus.ENDED.value:
                return None
            if session.status == SessionStatus.ACTIVE.value:
                return session

            await self._check_quota()

            now = self._clock.now()
            await self._store.update_session(
                session_id,
                status=SessionStatus.ACTIVE.value,
                last_activity=now,
                expires_at=now + self._ttl,
            )
        logger.info("Reactivated session %s", session_id, extra={"session_id": session_id})
        return replace(
            session,
            status=SessionStatus.ACTIVE.value,
            last_activity=now,
            expires_at=now + self._ttl,
        )

    async def end_session(self, session_id: str) -> bool:
        """Terminate a session and remove it with its messages."""
        session = await self._store.get_session(session_id)
        if session is None:
            return False

        await self._store.update_session(session_id, status=SessionStatus.ENDED.value)
        await self._store.delete_session(session_id)

        logger.info("Ended session %s", session_id, extra={"session_id": session_id})
        return True

    # ─── Messages ─────────────────────────────────────────────────

    async def save_message(
        self,
        session_id: str,
        message: dict[str, Any],
        sequence: int,
        source: str = MessageSource.SDK.value,
    ) -> bool:
        return await self._store.append_message(session_id, message, sequence, source)

    async def get_messages(
        self, session_id: str, limit: int = 100, offset: int = 0
    ) -> list[MessageRecord]:
        return await self._store.get_messages(session_id, limit=limit, offset=offset)

    async def get_message_count(self, session_id: str) -> int:
        return await self._store.get_message_count(session_id)

    async def next_sequence(self, session_id: str) -> int:
        """First sequence number a new execution should use."""
        return await self._store.get_last_sequence(session_id) + 1

    # ─── Maintenance ──────────────────────────────────────────────

    async def sweep_once(self) -> int:
        """One expiry sweep cycle. Returns the number of sessions removed."""
        removed = await self._store.cleanup_expired(self._clock.now())
        if removed:
            logger.info("Expiry sweep removed %d session(s)", removed)
        else:
            logger.debug("Expiry sweep found nothing to remove")
        return removed

    async def statistics(self) -> dict[str, Any]:
        """Counts for health and admin views."""
        by_status: dict[str, int] = {status.value: 0 for status in SessionStatus}
        for session in await self._store.list_sessions():
            by_status[session.status] = by_status.get(session.status, 0) + 1

        return {
            "totalCreated": self._total_created,
            "activeSessions": len(await self.list_active_sessions()),
            "maxSessions": self._max_sessions,
            "byStatus": by_status,
        }

    # ─── Internal ─────────────────────────────────────────────────

    async def _check_quota(self) -> None:
        active = await self.list_active_sessions()
        if len(active) >= self._max_sessions:
            logger.warning(
                "Session quota reached (%d/%d)", len(active), self._max_sessions
            )
            raise SessionQuotaExceededError(self._max_sessions)

    def _with_defaults(self, config: SessionConfig) -> SessionConfig:
        """Fill unset fields of a requested config from the agent defaults."""
        if self._defaults is None:
            return config
        return replace(
            config,
            cwd=config.cwd or self._defaults.cwd,
            model=config.model or self._defaults.model,
            permission_mode=config.permission_mode or self._defaults.permission_mode,
            max_turns=config.max_turns if config.max_turns is not None else self._defaults.max_turns,
        )
