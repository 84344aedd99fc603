"""
Session API — session CRUD, queries and SSE streaming.

Endpoints (all under /api/v1):
    POST   /sessions                   → Create a session (201)
    GET    /sessions                   → List active sessions
    GET    /sessions/{id}              → Session details
    DELETE /sessions/{id}              → End a session (204)
    POST   /sessions/{id}/messages     → Run a query, wait for the outcome
    POST   /sessions/{id}/stream       → Run a query as an SSE stream
    GET    /sessions/{id}/messages     → Message history (paged)
    POST   /sessions/{id}/cancel       → Abort the running query
    GET    /agents                     → Available agent backends
    GET    /health                     → Liveness and session counts

Mutating endpoints sit behind the API key dependency.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from coderelay.core.clock import to_iso
from coderelay.core.errors import InvalidRequestError
from coderelay.http.stream import SSE_HEADERS, StreamRelay
from coderelay.session.models import MessageRecord, PermissionMode, Session, SessionConfig

if TYPE_CHECKING:
    from coderelay.core.config import StreamConfig
    from coderelay.query.cancellation import CancellationToken
    from coderelay.query.executor import Sink
    from coderelay.service import SessionService

logger = logging.getLogger(__name__)


# ─── Request Bodies ──────────────────────────────────────────────


class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    agent: str | None = None
    model: str | None = None
    cwd: str | None = None
    permission_mode: PermissionMode | None = Field(default=None, alias="permissionMode")
    append_system_prompt: str | None = Field(default=None, alias="appendSystemPrompt")
    max_turns: int | None = Field(default=None, ge=0, alias="maxTurns")
    metadata: dict[str, Any] = Field(default_factory=dict)


class SendMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    prompt: str
    timeout: float | None = Field(default=None, ge=0, description="Timeout in milliseconds; 0 waits indefinitely")
    stream: bool = False
    record_prompt: bool = Field(default=False, alias="recordPrompt")


class StreamRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    prompt: str
    timeout: float | None = Field(default=None, ge=0)
    record_prompt: bool = Field(default=False, alias="recordPrompt")


# ─── Views ───────────────────────────────────────────────────────


def _session_summary(session: Session) -> dict[str, Any]:
    return {
        "sessionId": session.session_id,
        "agent": session.config.agent,
        "model": session.config.model,
        "status": session.status,
        "createdAt": to_iso(session.created_at),
        "expiresAt": to_iso(session.expires_at),
        "metadata": session.config.metadata,
    }


def _session_detail(session: Session) -> dict[str, Any]:
    return {
        **_session_summary(session),
        "lastActivity": to_iso(session.last_activity),
        "messageCount": session.message_count,
        "upstreamId": session.upstream_id,
        "config": {
            "cwd": session.config.cwd,
            "permissionMode": session.config.permission_mode or PermissionMode.DEFAULT.value,
            "maxTurns": session.config.max_turns,
            "appendSystemPrompt": session.config.append_system_prompt,
        },
    }


def _message_view(record: MessageRecord) -> dict[str, Any]:
    return {
        "sequence": record.sequence,
        "type": record.message_type,
        "subtype": record.message_subtype,
        "source": record.source,
        "timestamp": to_iso(record.timestamp),
        "content": record.payload,
        "metadata": record.metadata,
    }


# ─── Router ──────────────────────────────────────────────────────


def create_session_router(
    service: "SessionService",
    stream_config: "StreamConfig",
    agent_names: list[str],
    default_agent: str,
    require_api_key: Callable[..., Awaitable[None]],
) -> APIRouter:
    """Create the session management router."""

    router = APIRouter(prefix="/api/v1", tags=["sessions"])
    auth = [Depends(require_api_key)]

    # ─── Session CRUD ─────────────────────────────────────────

    @router.post("/sessions", status_code=201, dependencies=auth)
    async def create_session(body: CreateSessionRequest | None = None) -> JSONResponse:
        body = body or CreateSessionRequest()
        agent = body.agent or default_agent
        if agent not in agent_names:
            raise InvalidRequestError(
                f"Unknown agent: {agent}. Must be one of: {', '.join(agent_names)}"
            )

        config = SessionConfig(
            agent=agent,
            model=body.model,
            cwd=body.cwd,
            permission_mode=body.permission_mode.value if body.permission_mode else None,
            append_system_prompt=body.append_system_prompt,
            max_turns=body.max_turns,
            metadata=body.metadata,
        )
        session = await service.create_session(config)

        return JSONResponse(
            {
                "sessionId": session.session_id,
                "agent": session.config.agent,
                "model": session.config.model,
                "status": session.status,
                "createdAt": to_iso(session.created_at),
                "expiresAt": to_iso(session.expires_at),
            },
            status_code=201,
        )

    @router.get("/sessions")
    async def list_sessions() -> JSONResponse:
        sessions = await service.list_sessions()
        return JSONResponse(
            {"sessions": [_session_summary(s) for s in sessions], "total": len(sessions)}
        )

    @router.get("/sessions/{session_id}")
    async def get_session(session_id: str) -> JSONResponse:
        session = await service.get_session(session_id)
        return JSONResponse(_session_detail(session))

    @router.delete("/sessions/{session_id}", status_code=204, dependencies=auth)
    async def end_session(session_id: str) -> Response:
        await service.end_session(session_id)
        return Response(status_code=204)

    # ─── Queries ──────────────────────────────────────────────

    @router.post("/sessions/{session_id}/messages", dependencies=auth)
    async def send_message(session_id: str, body: SendMessageRequest) -> JSONResponse:
        """Run a query and return its terminal outcome."""
        await service.get_session(session_id)

        if body.stream:
            return JSONResponse(
                {
                    "message": "Use SSE endpoint for streaming responses",
                    "streamUrl": f"/api/v1/sessions/{session_id}/stream",
                    "method": "POST",
                    "headers": {
                        "Content-Type": "application/json",
                        "Accept": "text/event-stream",
                    },
                    "body": {"prompt": body.prompt, "timeout": body.timeout},
                }
            )

        outcome = await service.run_query(
            session_id,
            body.prompt,
            timeout_ms=body.timeout,
            record_prompt=body.record_prompt,
        )
        return JSONResponse(
            {
                "messageId": str(uuid.uuid4()),
                "success": outcome.success,
                "response": outcome.summary if outcome.success else outcome.error_message,
                "error": outcome.error.value if outcome.error else None,
                "sessionId": outcome.upstream_id,
                "messageCount": outcome.message_count,
                "durationMs": outcome.duration_ms,
            }
        )

    @router.post("/sessions/{session_id}/stream", dependencies=auth)
    async def stream_message(
        session_id: str, body: StreamRequest, request: Request
    ) -> StreamingResponse:
        """
        Run a query as Server-Sent Events.

        Events: connected, message (one per agent message), then exactly
        one of complete / error. Comment lines keep the connection alive.
        """
        await service.get_session(session_id)

        def run(sink: "Sink", cancel: "CancellationToken"):
            return service.run_query(
                session_id,
                body.prompt,
                sink=sink,
                timeout_ms=body.timeout,
                cancel=cancel,
                record_prompt=body.record_prompt,
            )

        relay = StreamRelay(
            session_id,
            run,
            keepalive_interval=stream_config.keepalive_interval,
            queue_size=stream_config.queue_size,
        )
        return StreamingResponse(
            relay.events(request.receive),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @router.get("/sessions/{session_id}/messages")
    async def get_messages(
        session_id: str,
        limit: int = Query(default=100, ge=1, le=1000),
        offset: int = Query(default=0, ge=0),
    ) -> JSONResponse:
        records, total = await service.get_messages(session_id, limit=limit, offset=offset)
        return JSONResponse(
            {
                "sessionId": session_id,
                "messages": [_message_view(r) for r in records],
                "totalCount": total,
                "limit": limit,
                "offset": offset,
            }
        )

    @router.post("/sessions/{session_id}/cancel", dependencies=auth)
    async def cancel_query(session_id: str) -> JSONResponse:
        await service.get_session(session_id)
        cancelled = service.cancel_query(session_id)
        return JSONResponse(
            {"sessionId": session_id, "status": "cancelled" if cancelled else "not_running"}
        )

    # ─── Meta ─────────────────────────────────────────────────

    @router.get("/agents")
    async def list_agents() -> JSONResponse:
        return JSONResponse({"agents": agent_names, "default": default_agent})

    @router.get("/health")
    async def health() -> JSONResponse:
        stats = await service.statistics()
        return JSONResponse(
            {
                "status": "healthy",
                "timestamp": to_iso(time.time()),
                "sessions": {
                    "active": stats["activeSessions"],
                    "total": stats["totalCreated"],
                    "max": stats["maxSessions"],
                },
                "runningQueries": stats["runningQueries"],
            }
        )

    return router
