"""Shared fixtures: a fake clock, a hand-driven ticker and a scripted agent."""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path
from typing import Any, AsyncIterator

import pytest
import pytest_asyncio

from coderelay.agents.base import AgentBackend, AgentRegistry, AgentRequest
from coderelay.core.errors import AgentInitError
from coderelay.query.executor import QueryExecutor
from coderelay.session.manager import SessionManager
from coderelay.session.store import SessionStore

START = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = START):
        self.t = start

    def now(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class ManualTicker:
    """Ticks only when the test says so."""

    def __init__(self) -> None:
        self._ticks: asyncio.Queue[None] = asyncio.Queue()

    async def wait(self) -> None:
        await self._ticks.get()

    def tick(self) -> None:
        self._ticks.put_nowait(None)


class ScriptedAgent(AgentBackend):
    """Yields a fixed list of messages; can fail, hang or refuse to start."""

    def __init__(
        self,
        messages: list[dict[str, Any]] | None = None,
        name: str = "scripted",
        delay: float = 0.0,
        fail_at: int | None = None,
        error: str = "agent exploded",
        init_error: str | None = None,
        hang: bool = False,
    ):
        self.name = name
        self.messages = messages or []
        self.delay = delay
        self.fail_at = fail_at
        self.error = error
        self.init_error = init_error
        self.hang = hang
        self.requests: list[AgentRequest] = []
        self.yielded = 0
        self.closed = False

    async def open(self, request: AgentRequest, cancel) -> AsyncIterator[dict[str, Any]]:
        self.requests.append(request)
        if self.init_error:
            raise AgentInitError(self.init_error)
        return self._stream()

    async def _stream(self) -> AsyncIterator[dict[str, Any]]:
        try:
            for index, message in enumerate(self.messages):
                if self.fail_at == index:
                    raise RuntimeError(self.error)
                if self.delay:
                    await asyncio.sleep(self.delay)
                self.yielded += 1
                yield message
            if self.fail_at == len(self.messages):
                raise RuntimeError(self.error)
            if self.hang:
                await asyncio.Event().wait()
        finally:
            self.closed = True


def hello_messages(upstream_id: str = "upstream-1", summary: str = "Hi there") -> list[dict[str, Any]]:
    return [
        {"type": "system", "subtype": "init", "session_id": upstream_id},
        {
            "type": "assistant",
            "session_id": upstream_id,
            "message": {"content": [{"type": "text", "text": summary}]},
        },
        {
            "type": "result",
            "subtype": "success",
            "is_error": False,
            "result": summary,
            "session_id": upstream_id,
            "duration_ms": 1200,
            "total_cost_usd": 0.01,
            "num_turns": 1,
        },
    ]


def numbered_messages(count: int, upstream_id: str = "upstream-1") -> list[dict[str, Any]]:
    return [
        {"type": "assistant", "session_id": upstream_id, "message": {"content": [{"type": "text", "text": f"msg {i}"}]}}
        for i in range(1, count + 1)
    ]


def registry_with(*agents: AgentBackend) -> AgentRegistry:
    registry = AgentRegistry()
    for agent in agents:
        registry.register(agent)
    return registry


async def wait_for(predicate, attempts: int = 200, interval: float = 0.01) -> bool:
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


# ─── Fixtures ─────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def store(clock):
    """Create a SessionStore with a temp DB for each test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test_sessions.db"
        s = SessionStore(db_path=db_path, clock=clock)
        await s.start()
        yield s
        await s.stop()


@pytest.fixture
def manager(store, clock) -> SessionManager:
    return SessionManager(store, clock=clock, ttl_seconds=3600.0, max_sessions=3)


@pytest.fixture
def executor_for(manager, clock):
    """Build an executor around the given agent backends."""

    def build(*agents: AgentBackend) -> QueryExecutor:
        return QueryExecutor(manager, registry_with(*agents), clock=clock)

    return build
