"""
Session Models — data structures for persistent session state.

Two levels:
  Session → MessageRecord

A Session is one logical conversation with an agent backend. It carries
a frozen configuration snapshot taken at creation time and the upstream
conversation id the backend hands back once the first query succeeds.

MessageRecords are the append-only, sequenced log of everything the
agent produced (or the user submitted) within that session.

All models are frozen dataclasses — create new instances for modifications.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any


class SessionStatus(str, Enum):
    """Lifecycle status of a session."""

    ACTIVE = "active"
    EXPIRED = "expired"  # TTL passed; reactivated only by a new query
    ENDED = "ended"  # Explicitly terminated; absorbing


class PermissionMode(str, Enum):
    """How the agent treats tool permission prompts."""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS_PERMISSIONS = "bypassPermissions"
    PLAN = "plan"


class MessageSource(str, Enum):
    """Provenance of a message record."""

    USER = "user"
    SDK = "sdk"


@dataclass(frozen=True)
class SessionConfig:
    """Configuration snapshot a session's queries run with."""

    agent: str = "claude"
    model: str | None = None
    cwd: str | None = None
    permission_mode: str | None = None  # None falls back to the configured default
    append_system_prompt: str | None = None
    max_turns: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | None) -> SessionConfig:
        data = json.loads(raw) if raw else {}
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(frozen=True)
class Session:
    """
    A durable conversation handle.

    Invariant: expires_at == last_activity + TTL at every write made by
    the session manager.
    """

    session_id: str
    config: SessionConfig = field(default_factory=SessionConfig)
    status: str = SessionStatus.ACTIVE.value
    upstream_id: str | None = None  # Assigned by the agent backend, lazily
    created_at: float = 0.0
    expires_at: float = 0.0
    last_activity: float = 0.0
    message_count: int = 0  # Completed queries, not individual messages

    def with_status(self, status: str) -> Session:
        return replace(self, status=status)

    def is_expired(self, now: float) -> bool:
        return self.expires_at < now


@dataclass(frozen=True)
class MessageRecord:
    """
    One immutable entry in a session's message log.

    ``content`` is the payload exactly as stored (a JSON document);
    use ``payload`` for the decoded form.
    """

    session_id: str
    sequence: int
    message_type: str
    content: str
    timestamp: float
    source: str = MessageSource.SDK.value
    message_subtype: str | None = None
    metadata: dict[str, Any] | None = None  # Only on result-kind records
    id: int | None = None

    @property
    def payload(self) -> Any:
        return json.loads(self.content)
