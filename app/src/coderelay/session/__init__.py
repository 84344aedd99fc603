"""
Session management — persistent session state for agent queries.

Key components:
- SessionStore: SQLite-backed CRUD for sessions and the message log
- SessionManager: quota, TTL renewal, expiry observation
- ExpirySweeper: periodic removal of expired sessions
"""

from coderelay.session.manager import SessionManager
from coderelay.session.models import (
    MessageRecord,
    MessageSource,
    PermissionMode,
    Session,
    SessionConfig,
    SessionStatus,
)
from coderelay.session.store import SessionStore
from coderelay.session.sweeper import ExpirySweeper

__all__ = [
    "Session",
    "SessionConfig",
    "SessionStatus",
    "PermissionMode",
    "MessageRecord",
    "MessageSource",
    "SessionStore",
    "SessionManager",
    "ExpirySweeper",
]
