"""
Streaming Query Executor — one prompt, one session, one terminal outcome.

Flow per execution:
  caller token ─┐
  timeout timer ├─► internal CancellationToken ──► agent stream stops
  abort         ─┘
  agent stream ──► seq++ ──► recorder (persist) ──► sink (live) ──► check token

Ordering: each message is numbered, queued for persistence and then
delivered, strictly in the order the agent produced it. When the token
fires, the pending read is abandoned and nothing after it is numbered,
persisted or delivered.

Query-level failures (cancelled, timed out, upstream, init) never raise.
They come back in QueryOutcome together with whatever upstream id was
learned, so the caller can resume. The executor does not touch session
activity; that bookkeeping belongs to the caller.

Usage:
    executor = QueryExecutor(manager, registry)
    outcome = await executor.execute(
        QueryRequest(session_id="...", prompt="Hello", config=session.config)
    )
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable

from coderelay.agents.base import AgentMessage, AgentRequest
from coderelay.core.clock import Clock, SystemClock, to_iso
from coderelay.core.errors import AgentInitError
from coderelay.query.cancellation import CancellationToken, CancelReason
from coderelay.query.recorder import MessageRecorder
from coderelay.session.models import MessageSource, SessionConfig

if TYPE_CHECKING:
    from coderelay.agents.base import AgentRegistry
    from coderelay.session.manager import SessionManager

logger = logging.getLogger(__name__)

# Delivers one framed notification to a live consumer
Sink = Callable[[dict[str, Any]], Awaitable[None]]

NO_RESULT_TEXT = "Query completed but no result text was available"
CANCELLED_MESSAGE = "Query cancelled by user"


class QueryError(str, Enum):
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    UPSTREAM_FAILURE = "upstream_failure"
    INIT_FAILED = "init_failed"


@dataclass
class QueryRequest:
    session_id: str
    prompt: str
    config: SessionConfig = field(default_factory=SessionConfig)
    resume_id: str | None = None
    timeout_ms: float | None = None  # None or <= 0 means wait indefinitely
    sink: Sink | None = None
    cancel: CancellationToken | None = None
    record_prompt: bool = False  # Log the prompt as a user-sourced record first


@dataclass(frozen=True)
class QueryOutcome:
    """Terminal result of one execution. Always produced, even on failure."""

    success: bool
    summary: str | None = None
    error: QueryError | None = None
    error_message: str | None = None
    upstream_id: str | None = None
    message_count: int = 0  # Agent messages delivered in this execution
    duration_ms: float = 0.0

    @property
    def reason(self) -> str | None:
        """Human-readable failure text, if any."""
        return self.error_message

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "summary": self.summary,
            "error": self.error.value if self.error else None,
            "errorMessage": self.error_message,
            "sessionId": self.upstream_id,
            "messageCount": self.message_count,
            "durationMs": self.duration_ms,
        }


@dataclass
class _RunState:
    """What the executor learns from the message stream."""

    upstream_id: str | None = None
    delivered: int = 0
    result: AgentMessage | None = None
    last_assistant_text: str | None = None

    def observe(self, message: AgentMessage) -> None:
        if self.upstream_id is None and message.get("session_id"):
            self.upstream_id = str(message["session_id"])

        kind = message.get("type")
        if kind == "result":
            self.result = message
        elif kind == "assistant":
            text = _assistant_text(message)
            if text:
                self.last_assistant_text = text


def _assistant_text(message: AgentMessage) -> str | None:
    body = message.get("message")
    if not isinstance(body, dict):
        return None
    content = body.get("content")
    if isinstance(content, str):
        return content or None
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                return block["text"]
    return None


_EXHAUSTED = object()


async def _next_message(iterator: AsyncIterator[AgentMessage]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


class QueryExecutor:
    """Drives agent executions to a terminal outcome."""

    def __init__(
        self,
        manager: "SessionManager",
        agents: "AgentRegistry",
        clock: Clock | None = None,
        recorder_queue_size: int = 1000,
    ) -> None:
        self._manager = manager
        self._agents = agents
        self._clock = clock or SystemClock()
        self._recorder_queue_size = recorder_queue_size

    async def execute(self, request: QueryRequest) -> QueryOutcome:
        started = time.monotonic()
        state = _RunState()
        sid = request.session_id

        if request.cancel is not None and request.cancel.cancelled:
            logger.info("Query for %s cancelled before start", sid, extra={"session_id": sid})
            return self._finish(request, state, started, request.cancel.reason, None)

        token = CancellationToken()
        unlink = token.link(request.cancel) if request.cancel is not None else None
        timer: asyncio.TimerHandle | None = None
        if request.timeout_ms and request.timeout_ms > 0:
            timer = asyncio.get_running_loop().call_later(
                request.timeout_ms / 1000, token.cancel, CancelReason.TIMEOUT
            )

        recorder = MessageRecorder(sid, self._manager.save_message, self._recorder_queue_size)
        stream: AsyncIterator[AgentMessage] | None = None
        cancel_wait: asyncio.Task | None = None
        pending: asyncio.Task | None = None
        failure: Exception | None = None

        try:
            sequence = await self._manager.next_sequence(sid)

            try:
                backend = self._agents.get(request.config.agent)
                stream = await backend.open(
                    AgentRequest(
                        prompt=request.prompt,
                        config=request.config,
                        resume_id=request.resume_id,
                    ),
                    token,
                )
            except AgentInitError as e:
                logger.error("Agent initialization failed for %s: %s", sid, e, extra={"session_id": sid})
                return self._init_failed(state, started, e)

            logger.info(
                "Query started for %s (agent=%s, resume=%s, timeout_ms=%s)",
                sid,
                request.config.agent,
                request.resume_id or "-",
                request.timeout_ms or 0,
                extra={"session_id": sid},
            )

            recorder.start()
            if request.record_prompt:
                recorder.record(
                    sequence,
                    {"type": "user", "message": {"role": "user", "content": request.prompt}},
                    MessageSource.USER.value,
                )
                sequence += 1

            cancel_wait = asyncio.create_task(token.wait())
            iterator = stream.__aiter__()

            while not token.cancelled:
                pending = asyncio.create_task(_next_message(iterator))
                done, _ = await asyncio.wait(
                    {pending, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
                )

                if pending not in done:
                    break

                try:
                    message = pending.result()
                except Exception as e:
                    failure = e
                    break
                if message is _EXHAUSTED:
                    break

                # A message that raced with cancellation is dropped unseen
                if token.cancelled:
                    break

                state.observe(message)
                recorder.record(sequence, message)
                if request.sink is not None and not await self._deliver(
                    request.sink, sid, sequence, message, cancel_wait
                ):
                    break
                state.delivered += 1
                sequence += 1

        finally:
            if timer is not None:
                timer.cancel()
            if unlink is not None:
                unlink()
            if cancel_wait is not None and not cancel_wait.done():
                cancel_wait.cancel()
            if pending is not None and not pending.done():
                # The stream cannot be closed while a read is in flight
                pending.cancel()
                await asyncio.gather(pending, return_exceptions=True)
            if stream is not None:
                await self._close_stream(stream, sid)
            await recorder.close()

        return self._finish(request, state, started, token.reason, failure)

    # ─── Delivery ─────────────────────────────────────────────────

    async def _deliver(
        self,
        sink: Sink,
        session_id: str,
        sequence: int,
        message: AgentMessage,
        cancel_wait: asyncio.Task,
    ) -> bool:
        """Hand one message to the sink. False if cancellation cut the hand-off short."""
        payload = {
            "type": "agent_message",
            "sessionId": session_id,
            "sequence": sequence,
            "timestamp": to_iso(self._clock.now()),
            "message": message,
        }
        send = asyncio.ensure_future(sink(payload))
        done, _ = await asyncio.wait({send, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        if send not in done:
            # A consumer that stopped reading must not hold off a timeout or abort
            send.cancel()
            await asyncio.gather(send, return_exceptions=True)
            return False

        try:
            send.result()
        except Exception as e:
            logger.warning(
                "Failed to deliver message %d for %s: %s",
                sequence,
                session_id,
                e,
                extra={"session_id": session_id, "sequence": sequence},
            )
        return True

    async def _close_stream(self, stream: AsyncIterator[AgentMessage], session_id: str) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning("Error closing agent stream for %s: %s", session_id, e)

    # ─── Outcomes ─────────────────────────────────────────────────

    def _finish(
        self,
        request: QueryRequest,
        state: _RunState,
        started: float,
        reason: CancelReason | None,
        failure: Exception | None,
    ) -> QueryOutcome:
        duration_ms = round((time.monotonic() - started) * 1000, 1)
        common = {
            "upstream_id": state.upstream_id,
            "message_count": state.delivered,
            "duration_ms": duration_ms,
        }

        if reason is CancelReason.TIMEOUT:
            outcome = QueryOutcome(
                success=False,
                error=QueryError.TIMED_OUT,
                error_message=f"Query timed out after {_format_ms(request.timeout_ms)}ms",
                **common,
            )
        elif reason is not None:
            outcome = QueryOutcome(
                success=False,
                error=QueryError.CANCELLED,
                error_message=CANCELLED_MESSAGE,
                **common,
            )
        elif failure is not None:
            outcome = QueryOutcome(
                success=False,
                error=QueryError.UPSTREAM_FAILURE,
                error_message=f"Query failed: {failure}",
                **common,
            )
        elif state.result is not None and state.result.get("is_error"):
            subtype = state.result.get("subtype") or "error"
            outcome = QueryOutcome(
                success=False,
                summary=state.result.get("result") or None,
                error=QueryError.UPSTREAM_FAILURE,
                error_message=f"Query failed: {subtype}",
                **common,
            )
        elif state.result is not None:
            outcome = QueryOutcome(
                success=True,
                summary=state.result.get("result") or "Query completed",
                **common,
            )
        else:
            outcome = QueryOutcome(
                success=True,
                summary=state.last_assistant_text or NO_RESULT_TEXT,
                **common,
            )

        log = logger.info if outcome.success else logger.warning
        log(
            "Query for %s finished: %s (%d messages, %.1fms)",
            request.session_id,
            outcome.error.value if outcome.error else "success",
            outcome.message_count,
            duration_ms,
            extra={
                "session_id": request.session_id,
                "upstream_id": outcome.upstream_id,
                "duration_ms": duration_ms,
                "reason": outcome.error_message,
            },
        )
        return outcome

    def _init_failed(self, state: _RunState, started: float, error: Exception) -> QueryOutcome:
        return QueryOutcome(
            success=False,
            error=QueryError.INIT_FAILED,
            error_message=f"Agent initialization failed: {error}",
            upstream_id=state.upstream_id,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
        )


def _format_ms(value: float | None) -> str:
    if value is None:
        return "0"
    return str(int(value)) if float(value).is_integer() else str(value)
