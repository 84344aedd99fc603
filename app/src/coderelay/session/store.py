"""
Session Store — SQLite-backed persistent session state.

Provides CRUD for sessions and the append-only message log, plus the
bulk expiry cleanup the background sweep relies on.

Usage:
    store = SessionStore(db_path=Path("data/sessions.db"))
    await store.start()

    await store.create_session(session)
    await store.append_message(session.session_id, {"type": "assistant"}, 1)
    records = await store.get_messages(session.session_id)

The store never decides whether a session is usable; that is the
SessionManager's job. It also never raises on message appends: the
message log is an audit trail, not part of response delivery.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import aiosqlite

import coderelay.core.config as config_module
from coderelay.core.clock import Clock, SystemClock
from coderelay.core.errors import DuplicateSessionError, StoreUnavailableError
from coderelay.session.models import (
    MessageRecord,
    MessageSource,
    Session,
    SessionConfig,
    SessionStatus,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

_SESSION_COLUMNS = (
    "session_id, upstream_id, config, status, created_at, expires_at, "
    "last_activity, message_count"
)
_MESSAGE_COLUMNS = (
    "id, session_id, message_type, message_subtype, content, sequence, "
    "timestamp, metadata, source"
)


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    """Translate sqlite failures on session operations into StoreUnavailableError."""
    try:
        yield
    except aiosqlite.Error as e:
        logger.error("Store %s failed: %s", operation, e)
        raise StoreUnavailableError(f"Session store {operation} failed: {e}") from e


class SessionStore:
    """
    SQLite-backed session persistence.

    Tables:
    - sessions: one row per session, config stored as JSON
    - messages: sequenced log per session, cascades on session delete
    - schema_version: single-row marker for additive migrations

    Thread-safe via aiosqlite. Single writer, multiple readers.
    """

    def __init__(self, db_path: Path | None = None, clock: Clock | None = None):
        if db_path is None:
            db_path = Path(config_module.config.store.db_path)
        self.db_path = db_path
        self._clock = clock or SystemClock()
        self._db: aiosqlite.Connection | None = None

    async def start(self) -> None:
        """Open the database, create tables and apply pending migrations."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA synchronous=NORMAL")
            await self._db.execute("PRAGMA foreign_keys=ON")
            await self._create_schema()
            await self._migrate()
        except aiosqlite.Error as e:
            logger.error("Failed to initialize session store at %s: %s", self.db_path, e)
            raise StoreUnavailableError(f"Database initialization failed: {e}") from e

        logger.info("SessionStore started (db=%s)", self.db_path)

    async def stop(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def _create_schema(self) -> None:
        assert self._db is not None

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                upstream_id TEXT,
                config TEXT NOT NULL DEFAULT '{}',
                status TEXT NOT NULL CHECK (status IN ('active', 'expired', 'ended')),
                created_at REAL NOT NULL,
                expires_at REAL NOT NULL,
                last_activity REAL NOT NULL,
                message_count INTEGER NOT NULL DEFAULT 0
            )
        """)

        # Version 1 layout; later columns arrive through _migrate()
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                message_type TEXT NOT NULL,
                message_subtype TEXT,
                content TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                timestamp REAL NOT NULL,
                metadata TEXT,
                UNIQUE (session_id, sequence),
                FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_sessions_status
            ON sessions(status)
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_sessions_expires
            ON sessions(expires_at)
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_session
            ON messages(session_id, sequence)
        """)

        await self._db.commit()

    async def _migrate(self) -> None:
        """Bring an older database up to SCHEMA_VERSION without data loss."""
        assert self._db is not None

        async with self._db.execute("SELECT version FROM schema_version LIMIT 1") as cursor:
            row = await cursor.fetchone()
        version = row[0] if row else 1
        if row is None:
            await self._db.execute("INSERT INTO schema_version (version) VALUES (1)")

        if version < 2:
            columns = await self._column_names("messages")
            if "source" not in columns:
                logger.info("Migrating session store: adding messages.source column")
                await self._db.execute(
                    "ALTER TABLE messages ADD COLUMN source TEXT NOT NULL DEFAULT 'sdk'"
                )
            version = 2

        await self._db.execute("UPDATE schema_version SET version = ?", (version,))
        await self._db.commit()

    async def _column_names(self, table: str) -> set[str]:
        assert self._db is not None
        async with self._db.execute(f"PRAGMA table_info({table})") as cursor:
            return {row[1] async for row in cursor}

    async def schema_version(self) -> int:
        assert self._db is not None, "SessionStore not started"
        async with self._db.execute("SELECT version FROM schema_version LIMIT 1") as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    # ─── Session CRUD ─────────────────────────────────────────────

    async def create_session(self, session: Session) -> None:
        """Insert a session. Raises DuplicateSessionError if the id exists."""
        assert self._db is not None, "SessionStore not started"

        try:
            await self._db.execute(
                f"INSERT INTO sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    session.session_id,
                    session.upstream_id,
                    session.config.to_json(),
                    session.status,
                    session.created_at,
                    session.expires_at,
                    session.last_activity,
                    session.message_count,
                ),
            )
            await self._db.commit()
        except aiosqlite.IntegrityError as e:
            # Statement-level abort; the shared connection's transaction is intact
            raise DuplicateSessionError(session.session_id) from e
        except aiosqlite.Error as e:
            logger.error("Store create failed: %s", e)
            raise StoreUnavailableError(f"Session store create failed: {e}") from e

    async def get_session(self, session_id: str) -> Session | None:
        """Get a session by ID. Returns None if not found. Never mutates."""
        assert self._db is not None, "SessionStore not started"

        with _store_errors("read"):
            async with self._db.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE session_id = ?",
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_session(row) if row else None

    async def update_session(
        self,
        session_id: str,
        *,
        upstream_id: str | None = None,
        status: str | None = None,
        last_activity: float | None = None,
        expires_at: float | None = None,
        message_count: int | None = None,
    ) -> None:
        """
        Update only the supplied fields. Unknown ids are a silent no-op.

        ``None`` always means "leave unchanged", so an upstream id can be
        replaced but never cleared.
        """
        assert self._db is not None, "SessionStore not started"

        updates: dict[str, Any] = {
            "upstream_id": upstream_id,
            "status": status,
            "last_activity": last_activity,
            "expires_at": expires_at,
            "message_count": message_count,
        }
        fields = [(name, value) for name, value in updates.items() if value is not None]
        if not fields:
            return

        assignments = ", ".join(f"{name} = ?" for name, _ in fields)
        params = [value for _, value in fields] + [session_id]
        with _store_errors("update"):
            await self._db.execute(
                f"UPDATE sessions SET {assignments} WHERE session_id = ?", params
            )
            await self._db.commit()

    async def delete_session(self, session_id: str) -> None:
        """Remove a session and, by cascade, its messages. Idempotent."""
        assert self._db is not None, "SessionStore not started"

        with _store_errors("delete"):
            await self._db.execute(
                "DELETE FROM sessions WHERE session_id = ?", (session_id,)
            )
            await self._db.commit()

    async def list_sessions(self, status: str | None = None) -> list[Session]:
        """List sessions by most recent activity, optionally filtered by status."""
        assert self._db is not None, "SessionStore not started"

        if status:
            query = (
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE status = ? "
                "ORDER BY last_activity DESC"
            )
            params: tuple = (status,)
        else:
            query = f"SELECT {_SESSION_COLUMNS} FROM sessions ORDER BY last_activity DESC"
            params = ()

        sessions = []
        with _store_errors("list"):
            async with self._db.execute(query, params) as cursor:
                async for row in cursor:
                    sessions.append(_row_to_session(row))
        return sessions

    # ─── Message Log ──────────────────────────────────────────────

    async def append_message(
        self,
        session_id: str,
        message: dict[str, Any],
        sequence: int,
        source: str = MessageSource.SDK.value,
    ) -> bool:
        """
        Append one message to a session's log.

        Best-effort: any failure is logged and reported as False. The
        owning query must keep going regardless.
        """
        if self._db is None:
            logger.error("Dropping message %s/%d: store not started", session_id, sequence)
            return False

        message_type = str(message.get("type") or "unknown")
        message_subtype = message.get("subtype")
        metadata = None
        if message_type == "result":
            metadata = json.dumps(
                {
                    "duration_ms": message.get("duration_ms"),
                    "total_cost_usd": message.get("total_cost_usd"),
                    "num_turns": message.get("num_turns"),
                }
            )

        try:
            content = json.dumps(message)
            await self._db.execute(
                """
                INSERT INTO messages
                    (session_id, message_type, message_subtype, content, sequence, timestamp, metadata, source)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    message_type,
                    message_subtype,
                    content,
                    sequence,
                    self._clock.now(),
                    metadata,
                    source,
                ),
            )
            await self._db.commit()
            return True
        except (aiosqlite.Error, TypeError, ValueError) as e:
            logger.error(
                "Failed to save message %d for session %s: %s",
                sequence,
                session_id,
                e,
                extra={"session_id": session_id, "sequence": sequence},
            )
            return False

    async def get_messages(
        self,
        session_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> list[MessageRecord]:
        """Get a page of a session's messages, ordered by sequence."""
        assert self._db is not None, "SessionStore not started"

        records = []
        with _store_errors("read messages"):
            async with self._db.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE session_id = ? "
                "ORDER BY sequence ASC LIMIT ? OFFSET ?",
                (session_id, limit, offset),
            ) as cursor:
                async for row in cursor:
                    records.append(
                        MessageRecord(
                            id=row[0],
                            session_id=row[1],
                            message_type=row[2],
                            message_subtype=row[3],
                            content=row[4],
                            sequence=row[5],
                            timestamp=row[6],
                            metadata=json.loads(row[7]) if row[7] else None,
                            source=row[8] or MessageSource.SDK.value,
                        )
                    )
        return records

    async def get_message_count(self, session_id: str) -> int:
        """Get the number of messages in a session."""
        assert self._db is not None, "SessionStore not started"

        with _store_errors("count messages"):
            async with self._db.execute(
                "SELECT COUNT(*) FROM messages WHERE session_id = ?",
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
                return row[0] if row else 0

    async def get_last_sequence(self, session_id: str) -> int:
        """Highest sequence number logged for a session (0 if none)."""
        assert self._db is not None, "SessionStore not started"

        with _store_errors("read sequence"):
            async with self._db.execute(
                "SELECT COALESCE(MAX(sequence), 0) FROM messages WHERE session_id = ?",
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
                return row[0] if row else 0

    # ─── Maintenance ──────────────────────────────────────────────

    async def cleanup_expired(self, before: float) -> int:
        """Delete non-ended sessions whose expiry is before ``before``. Returns the count."""
        assert self._db is not None, "SessionStore not started"

        with _store_errors("cleanup"):
            async with self._db.execute(
                "DELETE FROM sessions WHERE expires_at < ? AND status != ?",
                (before, SessionStatus.ENDED.value),
            ) as cursor:
                removed = cursor.rowcount
            await self._db.commit()
        return removed or 0


def _row_to_session(row: Any) -> Session:
    return Session(
        session_id=row[0],
        upstream_id=row[1],
        config=SessionConfig.from_json(row[2]),
        status=row[3],
        created_at=row[4],
        expires_at=row[5],
        last_activity=row[6],
        message_count=row[7],
    )
