"""
Error taxonomy.

Session-level failures are exceptions and propagate to the caller.
Query-level failures (cancelled, timed out, upstream, init) are not
raised: they travel inside ``QueryOutcome`` so partial output survives.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for errors surfaced to API callers."""

    code = "INTERNAL_ERROR"
    status_code = 500


class SessionNotFoundError(RelayError):
    code = "SESSION_NOT_FOUND"
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SessionQuotaExceededError(RelayError):
    code = "MAX_SESSIONS_REACHED"
    status_code = 429

    def __init__(self, limit: int):
        super().__init__(f"Maximum sessions limit reached: {limit}")
        self.limit = limit


class DuplicateSessionError(RelayError):
    code = "SESSION_EXISTS"
    status_code = 409

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} already exists")
        self.session_id = session_id


class StoreUnavailableError(RelayError):
    """Durable storage failed on a session-level operation."""

    code = "STORE_UNAVAILABLE"
    status_code = 503


class InvalidRequestError(RelayError):
    code = "INVALID_REQUEST"
    status_code = 400


class AgentInitError(Exception):
    """The agent backend could not be launched."""
