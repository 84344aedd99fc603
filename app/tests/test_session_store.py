"""Tests for SessionStore — persistent session state and the message log."""

import json
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import aiosqlite
import pytest

from coderelay.core.errors import DuplicateSessionError, StoreUnavailableError
from coderelay.session.models import Session, SessionConfig, SessionStatus
from coderelay.session.store import SCHEMA_VERSION, SessionStore

from conftest import START, FakeClock


def _session(session_id: str = "s-1", **overrides) -> Session:
    fields = dict(
        session_id=session_id,
        config=SessionConfig(model="sonnet", cwd="/tmp", max_turns=5, metadata={"team": "a"}),
        created_at=START,
        last_activity=START,
        expires_at=START + 3600,
    )
    fields.update(overrides)
    return Session(**fields)


# ─── Session CRUD ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_and_get_session(store: SessionStore):
    await store.create_session(_session())

    session = await store.get_session("s-1")
    assert session is not None
    assert session.status == SessionStatus.ACTIVE.value
    assert session.config.model == "sonnet"
    assert session.config.max_turns == 5
    assert session.config.metadata == {"team": "a"}
    assert session.expires_at == START + 3600
    assert session.upstream_id is None


@pytest.mark.asyncio
async def test_create_duplicate_session_fails(store: SessionStore):
    await store.create_session(_session())
    with pytest.raises(DuplicateSessionError):
        await store.create_session(_session())

    # The store stays usable after the failed insert
    assert await store.get_session("s-1") is not None


@pytest.mark.asyncio
async def test_get_session_not_found(store: SessionStore):
    assert await store.get_session("nonexistent") is None


@pytest.mark.asyncio
async def test_get_session_does_not_flip_expired(store: SessionStore):
    await store.create_session(_session(expires_at=START - 10))
    session = await store.get_session("s-1")
    assert session.status == SessionStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_update_only_supplied_fields(store: SessionStore):
    await store.create_session(_session())
    await store.update_session("s-1", upstream_id="up-1")
    await store.update_session("s-1", message_count=4, last_activity=START + 5)

    session = await store.get_session("s-1")
    assert session.upstream_id == "up-1"
    assert session.message_count == 4
    assert session.last_activity == START + 5
    assert session.expires_at == START + 3600
    assert session.config.model == "sonnet"


@pytest.mark.asyncio
async def test_update_never_clears_upstream_id(store: SessionStore):
    await store.create_session(_session())
    await store.update_session("s-1", upstream_id="up-1")
    await store.update_session("s-1", upstream_id=None, status=SessionStatus.EXPIRED.value)

    session = await store.get_session("s-1")
    assert session.upstream_id == "up-1"
    assert session.status == SessionStatus.EXPIRED.value


@pytest.mark.asyncio
async def test_update_missing_session_is_noop(store: SessionStore):
    await store.update_session("ghost", status=SessionStatus.ENDED.value)
    assert await store.get_session("ghost") is None


@pytest.mark.asyncio
async def test_delete_session_idempotent(store: SessionStore):
    await store.create_session(_session())
    await store.delete_session("s-1")
    await store.delete_session("s-1")
    assert await store.get_session("s-1") is None


@pytest.mark.asyncio
async def test_list_sessions_ordered_by_activity(store: SessionStore):
    await store.create_session(_session("old", last_activity=START))
    await store.create_session(_session("new", last_activity=START + 100))
    await store.create_session(_session("mid", last_activity=START + 50, status=SessionStatus.EXPIRED.value))

    all_ids = [s.session_id for s in await store.list_sessions()]
    assert all_ids == ["new", "mid", "old"]

    active_ids = [s.session_id for s in await store.list_sessions(SessionStatus.ACTIVE.value)]
    assert active_ids == ["new", "old"]


# ─── Message Log ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_append_and_get_messages_round_trip(store: SessionStore):
    await store.create_session(_session())
    payload = {"type": "assistant", "message": {"content": [{"type": "text", "text": "héllo ✓"}]}}

    assert await store.append_message("s-1", payload, 1) is True

    records = await store.get_messages("s-1", limit=100, offset=0)
    assert len(records) == 1
    assert records[0].sequence == 1
    assert records[0].content == json.dumps(payload)
    assert records[0].payload == payload
    assert records[0].source == "sdk"
    assert records[0].metadata is None


@pytest.mark.asyncio
async def test_messages_ordered_and_paged(store: SessionStore):
    await store.create_session(_session())
    for seq in (3, 1, 2, 4):
        await store.append_message("s-1", {"type": "assistant", "n": seq}, seq)

    assert [r.sequence for r in await store.get_messages("s-1")] == [1, 2, 3, 4]
    assert [r.sequence for r in await store.get_messages("s-1", limit=2, offset=1)] == [2, 3]
    assert await store.get_message_count("s-1") == 4
    assert await store.get_last_sequence("s-1") == 4


@pytest.mark.asyncio
async def test_result_message_metadata_extracted(store: SessionStore):
    await store.create_session(_session())
    await store.append_message(
        "s-1",
        {
            "type": "result",
            "subtype": "success",
            "result": "done",
            "duration_ms": 1500,
            "total_cost_usd": 0.02,
            "num_turns": 3,
        },
        1,
    )

    record = (await store.get_messages("s-1"))[0]
    assert record.message_type == "result"
    assert record.message_subtype == "success"
    assert record.metadata == {"duration_ms": 1500, "total_cost_usd": 0.02, "num_turns": 3}


@pytest.mark.asyncio
async def test_user_source_recorded(store: SessionStore):
    await store.create_session(_session())
    await store.append_message("s-1", {"type": "user"}, 1, source="user")
    assert (await store.get_messages("s-1"))[0].source == "user"


@pytest.mark.asyncio
async def test_append_failure_is_reported_not_raised(store: SessionStore):
    await store.create_session(_session())
    assert await store.append_message("s-1", {"type": "assistant"}, 1) is True
    # Same sequence twice violates the unique key
    assert await store.append_message("s-1", {"type": "assistant"}, 1) is False
    # Unknown session violates the foreign key
    assert await store.append_message("ghost", {"type": "assistant"}, 1) is False
    assert await store.get_message_count("s-1") == 1


@pytest.mark.asyncio
async def test_append_on_stopped_store_returns_false():
    s = SessionStore(db_path=Path(tempfile.gettempdir()) / "never-started.db")
    assert await s.append_message("s-1", {"type": "assistant"}, 1) is False


@pytest.mark.asyncio
async def test_delete_cascades_to_messages(store: SessionStore):
    await store.create_session(_session())
    await store.append_message("s-1", {"type": "assistant"}, 1)
    await store.delete_session("s-1")
    assert await store.get_message_count("s-1") == 0


# ─── Maintenance ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cleanup_expired(store: SessionStore):
    await store.create_session(_session("stale", expires_at=START - 1))
    await store.create_session(_session("fresh", expires_at=START + 100))
    await store.create_session(
        _session("ended", expires_at=START - 1, status=SessionStatus.ENDED.value)
    )
    await store.create_session(
        _session("expired", expires_at=START - 1, status=SessionStatus.EXPIRED.value)
    )

    removed = await store.cleanup_expired(START)

    assert removed == 2
    assert await store.get_session("stale") is None
    assert await store.get_session("expired") is None
    assert await store.get_session("fresh") is not None
    assert await store.get_session("ended") is not None


@pytest.mark.asyncio
async def test_session_ops_raise_store_unavailable(store: SessionStore, monkeypatch):
    monkeypatch.setattr(
        store._db, "execute", MagicMock(side_effect=aiosqlite.OperationalError("disk I/O error"))
    )
    with pytest.raises(StoreUnavailableError):
        await store.get_session("s-1")
    with pytest.raises(StoreUnavailableError):
        await store.update_session("s-1", status=SessionStatus.ENDED.value)
    with pytest.raises(StoreUnavailableError):
        await store.create_session(_session())


# ─── Schema ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_fresh_database_at_current_version(store: SessionStore):
    assert await store.schema_version() == SCHEMA_VERSION


@pytest.mark.asyncio
async def test_migration_adds_source_column_without_data_loss():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "legacy.db"

        # A database laid out before the provenance column existed
        async with aiosqlite.connect(str(db_path)) as db:
            await db.execute("""
                CREATE TABLE sessions (
                    session_id TEXT PRIMARY KEY,
                    upstream_id TEXT,
                    config TEXT NOT NULL DEFAULT '{}',
                    status TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    expires_at REAL NOT NULL,
                    last_activity REAL NOT NULL,
                    message_count INTEGER NOT NULL DEFAULT 0
                )
            """)
            await db.execute("""
                CREATE TABLE messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    message_type TEXT NOT NULL,
                    message_subtype TEXT,
                    content TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    timestamp REAL NOT NULL,
                    metadata TEXT
                )
            """)
            await db.execute(
                "INSERT INTO sessions VALUES ('old', NULL, '{}', 'active', ?, ?, ?, 2)",
                (START, START + 3600, START),
            )
            await db.execute(
                "INSERT INTO messages (session_id, message_type, content, sequence, timestamp) "
                "VALUES ('old', 'assistant', '{\"type\": \"assistant\"}', 1, ?)",
                (START,),
            )
            await db.commit()

        s = SessionStore(db_path=db_path, clock=FakeClock())
        await s.start()
        try:
            assert await s.schema_version() == SCHEMA_VERSION
            records = await s.get_messages("old")
            assert len(records) == 1
            assert records[0].source == "sdk"
            assert records[0].payload == {"type": "assistant"}

            session = await s.get_session("old")
            assert session.message_count == 2
        finally:
            await s.stop()

        # Re-opening an up-to-date database is a no-op
        s = SessionStore(db_path=db_path)
        await s.start()
        assert await s.schema_version() == SCHEMA_VERSION
        await s.stop()
