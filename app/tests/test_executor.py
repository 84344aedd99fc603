"""Tests for QueryExecutor — ordering, cancellation sources and outcomes."""

import asyncio

import pytest
import pytest_asyncio

from coderelay.query.cancellation import CancellationToken, CancelReason
from coderelay.query.executor import (
    CANCELLED_MESSAGE,
    NO_RESULT_TEXT,
    QueryError,
    QueryRequest,
)
from coderelay.session.models import SessionConfig

from conftest import ScriptedAgent, hello_messages, numbered_messages

CONFIG = SessionConfig(agent="scripted")


@pytest_asyncio.fixture
async def session(manager):
    return await manager.create_session(CONFIG)


def _request(session, sink=None, **kwargs) -> QueryRequest:
    return QueryRequest(
        session_id=session.session_id,
        prompt=kwargs.pop("prompt", "Hello"),
        config=session.config,
        sink=sink,
        **kwargs,
    )


class CollectingSink:
    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)


# ─── Success ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_hello_round_trip(executor_for, manager, session):
    agent = ScriptedAgent(hello_messages(summary="Hi there"))
    sink = CollectingSink()

    outcome = await executor_for(agent).execute(_request(session, sink))

    assert outcome.success
    assert outcome.summary == "Hi there"
    assert outcome.error is None
    assert outcome.upstream_id == "upstream-1"
    assert outcome.message_count == 3

    assert [e["sequence"] for e in sink.events] == [1, 2, 3]
    assert all(e["type"] == "agent_message" for e in sink.events)
    assert all(e["sessionId"] == session.session_id for e in sink.events)
    assert sink.events[0]["timestamp"].endswith("Z")
    assert sink.events[2]["message"]["type"] == "result"

    records = await manager.get_messages(session.session_id)
    assert [r.sequence for r in records] == [1, 2, 3]
    assert [r.payload for r in records] == [e["message"] for e in sink.events]
    assert agent.closed


@pytest.mark.asyncio
async def test_prompt_and_resume_forwarded(executor_for, session):
    agent = ScriptedAgent(hello_messages())
    await executor_for(agent).execute(_request(session, prompt="Fix it", resume_id="up-0"))

    request = agent.requests[0]
    assert request.prompt == "Fix it"
    assert request.resume_id == "up-0"
    assert request.config == session.config


@pytest.mark.asyncio
async def test_summary_falls_back_to_last_assistant_text(executor_for, session):
    outcome = await executor_for(ScriptedAgent(numbered_messages(3))).execute(_request(session))
    assert outcome.success
    assert outcome.summary == "msg 3"


@pytest.mark.asyncio
async def test_empty_stream_uses_placeholder_summary(executor_for, session):
    outcome = await executor_for(ScriptedAgent([])).execute(_request(session))
    assert outcome.success
    assert outcome.summary == NO_RESULT_TEXT
    assert outcome.message_count == 0


@pytest.mark.asyncio
async def test_result_without_text_reports_completed(executor_for, session):
    messages = [{"type": "result", "subtype": "success", "is_error": False}]
    outcome = await executor_for(ScriptedAgent(messages)).execute(_request(session))
    assert outcome.success
    assert outcome.summary == "Query completed"


@pytest.mark.asyncio
async def test_first_upstream_id_wins(executor_for, session):
    messages = [
        {"type": "system", "subtype": "init", "session_id": "first"},
        {"type": "assistant", "session_id": "second", "message": {"content": "hi"}},
    ]
    outcome = await executor_for(ScriptedAgent(messages)).execute(_request(session))
    assert outcome.upstream_id == "first"
    assert outcome.summary == "hi"


@pytest.mark.asyncio
async def test_sequences_continue_across_executions(executor_for, manager, session):
    executor = executor_for(ScriptedAgent(hello_messages()))
    await executor.execute(_request(session))
    sink = CollectingSink()
    await executor.execute(_request(session, sink))

    assert [e["sequence"] for e in sink.events] == [4, 5, 6]
    records = await manager.get_messages(session.session_id)
    assert [r.sequence for r in records] == [1, 2, 3, 4, 5, 6]


@pytest.mark.asyncio
async def test_record_prompt_logs_user_message_first(executor_for, manager, session):
    sink = CollectingSink()
    outcome = await executor_for(ScriptedAgent(hello_messages())).execute(
        _request(session, sink, prompt="Hello", record_prompt=True)
    )

    assert outcome.message_count == 3
    assert [e["sequence"] for e in sink.events] == [2, 3, 4]

    records = await manager.get_messages(session.session_id)
    assert records[0].sequence == 1
    assert records[0].source == "user"
    assert records[0].payload["message"]["content"] == "Hello"
    assert {r.source for r in records[1:]} == {"sdk"}


@pytest.mark.asyncio
async def test_sink_failure_does_not_abort(executor_for, manager, session):
    async def broken_sink(event):
        raise ConnectionError("gone")

    outcome = await executor_for(ScriptedAgent(hello_messages())).execute(
        _request(session, broken_sink)
    )

    assert outcome.success
    assert outcome.message_count == 3
    assert await manager.get_message_count(session.session_id) == 3


# ─── Cancellation ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cancel_after_third_of_ten(executor_for, manager, session):
    agent = ScriptedAgent(numbered_messages(10), delay=0.01)
    token = CancellationToken()
    sink = CollectingSink()

    async def cancelling_sink(event):
        await sink(event)
        if event["sequence"] == 3:
            token.cancel(CancelReason.CLIENT_DISCONNECT)

    outcome = await executor_for(agent).execute(
        _request(session, cancelling_sink, cancel=token)
    )

    assert not outcome.success
    assert outcome.error is QueryError.CANCELLED
    assert outcome.error_message == CANCELLED_MESSAGE
    assert outcome.message_count == 3
    assert outcome.upstream_id == "upstream-1"
    assert [e["sequence"] for e in sink.events] == [1, 2, 3]

    records = await manager.get_messages(session.session_id)
    assert [r.sequence for r in records] == [1, 2, 3]
    assert agent.closed


@pytest.mark.asyncio
async def test_abort_while_waiting_for_next_message(executor_for, session):
    agent = ScriptedAgent(hello_messages()[:2], hang=True)
    token = CancellationToken()
    sink = CollectingSink()
    task = asyncio.create_task(
        executor_for(agent).execute(_request(session, sink, cancel=token))
    )

    for _ in range(200):
        if len(sink.events) == 2:
            break
        await asyncio.sleep(0.01)
    token.cancel(CancelReason.ABORTED)
    outcome = await asyncio.wait_for(task, 2)

    assert outcome.error is QueryError.CANCELLED
    assert outcome.message_count == 2
    assert outcome.upstream_id == "upstream-1"
    assert agent.closed


@pytest.mark.asyncio
async def test_pre_cancelled_token_never_starts_agent(executor_for, session):
    agent = ScriptedAgent(hello_messages())
    token = CancellationToken()
    token.cancel(CancelReason.ABORTED)

    outcome = await executor_for(agent).execute(_request(session, cancel=token))

    assert outcome.error is QueryError.CANCELLED
    assert outcome.message_count == 0
    assert agent.requests == []


@pytest.mark.asyncio
async def test_timeout(executor_for, manager, session):
    agent = ScriptedAgent(hello_messages()[:2], hang=True)

    outcome = await executor_for(agent).execute(_request(session, timeout_ms=50))

    assert not outcome.success
    assert outcome.error is QueryError.TIMED_OUT
    assert outcome.error_message == "Query timed out after 50ms"
    assert outcome.upstream_id == "upstream-1"
    assert outcome.message_count == 2
    assert await manager.get_message_count(session.session_id) == 2

@pytest.mark.asyncio
async def test_timeout_fires_while_sink_is_blocked(executor_for, manager, session):
    agent = ScriptedAgent(hello_messages())
    stuck = asyncio.Event()

    async def stalled_sink(event):
        await stuck.wait()

    outcome = await asyncio.wait_for(
        executor_for(agent).execute(_request(session, stalled_sink, timeout_ms=50)), 2
    )

    assert outcome.error is QueryError.TIMED_OUT
    assert outcome.message_count == 0
    assert agent.closed
    # Recorded before the hand-off started
    assert await manager.get_message_count(session.session_id) == 1



@pytest.mark.asyncio
async def test_timeout_then_late_cancel_keeps_timeout(executor_for, session):
    agent = ScriptedAgent([], hang=True)
    token = CancellationToken()

    outcome = await executor_for(agent).execute(
        _request(session, cancel=token, timeout_ms=20)
    )
    token.cancel(CancelReason.CLIENT_DISCONNECT)

    assert outcome.error is QueryError.TIMED_OUT


@pytest.mark.asyncio
async def test_zero_timeout_means_no_limit(executor_for, session):
    outcome = await executor_for(ScriptedAgent(hello_messages(), delay=0.01)).execute(
        _request(session, timeout_ms=0)
    )
    assert outcome.success


# ─── Failures ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_upstream_failure_mid_stream(executor_for, manager, session):
    agent = ScriptedAgent(hello_messages(), fail_at=1, error="socket closed")

    outcome = await executor_for(agent).execute(_request(session))

    assert not outcome.success
    assert outcome.error is QueryError.UPSTREAM_FAILURE
    assert outcome.error_message == "Query failed: socket closed"
    assert outcome.upstream_id == "upstream-1"
    assert outcome.message_count == 1
    assert await manager.get_message_count(session.session_id) == 1


@pytest.mark.asyncio
async def test_error_result_is_upstream_failure(executor_for, session):
    messages = [
        {"type": "system", "subtype": "init", "session_id": "up-9"},
        {"type": "result", "subtype": "error_max_turns", "is_error": True, "session_id": "up-9"},
    ]
    outcome = await executor_for(ScriptedAgent(messages)).execute(_request(session))

    assert outcome.error is QueryError.UPSTREAM_FAILURE
    assert outcome.error_message == "Query failed: error_max_turns"
    assert outcome.upstream_id == "up-9"


@pytest.mark.asyncio
async def test_init_failure(executor_for, manager, session):
    agent = ScriptedAgent(hello_messages(), init_error="claude: command not found")

    outcome = await executor_for(agent).execute(_request(session))

    assert outcome.error is QueryError.INIT_FAILED
    assert outcome.error_message == "Agent initialization failed: claude: command not found"
    assert outcome.message_count == 0
    assert await manager.get_message_count(session.session_id) == 0


@pytest.mark.asyncio
async def test_unknown_backend_is_init_failure(executor_for, manager):
    session = await manager.create_session(SessionConfig(agent="missing"))
    outcome = await executor_for(ScriptedAgent()).execute(_request(session))

    assert outcome.error is QueryError.INIT_FAILED
    assert "Unknown agent backend: missing" in outcome.error_message


def test_outcome_to_dict():
    from coderelay.query.executor import QueryOutcome

    outcome = QueryOutcome(
        success=False,
        error=QueryError.TIMED_OUT,
        error_message="Query timed out after 10ms",
        upstream_id="u",
        message_count=2,
        duration_ms=10.5,
    )
    assert outcome.reason == "Query timed out after 10ms"
    assert outcome.to_dict() == {
        "success": False,
        "summary": None,
        "error": "timed_out",
        "errorMessage": "Query timed out after 10ms",
        "sessionId": "u",
        "messageCount": 2,
        "durationMs": 10.5,
    }
