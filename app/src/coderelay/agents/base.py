"""
Agent backend contract.

An agent backend is anything that, given a prompt and a session's
configuration, produces an ordered stream of structured messages and
stops when told to. Messages are plain dicts; the only keys the rest of
the system looks at are ``type``, ``subtype``, ``session_id`` and, on
``result`` messages, ``result`` / ``is_error``.

Add a new backend? Subclass AgentBackend and register it. No plugin
systems, no metaclasses.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator

from coderelay.core.errors import AgentInitError
from coderelay.session.models import SessionConfig

if TYPE_CHECKING:
    from coderelay.core.config import AgentConfig
    from coderelay.query.cancellation import CancellationToken

AgentMessage = dict[str, Any]


@dataclass(frozen=True)
class AgentRequest:
    """One prompt to run, with the session config snapshot it runs under."""

    prompt: str
    config: SessionConfig
    resume_id: str | None = None  # Upstream conversation id to continue


class AgentProcessError(Exception):
    """The agent ran but exited with a failure."""

    def __init__(self, returncode: int, stderr_tail: str = ""):
        detail = stderr_tail.strip() or "no error output"
        super().__init__(f"Agent process exited with code {returncode}: {detail}")
        self.returncode = returncode
        self.stderr_tail = stderr_tail


class AgentBackend(ABC):
    """Produces a message stream for one prompt."""

    name: str = "agent"

    @abstractmethod
    async def open(
        self, request: AgentRequest, cancel: "CancellationToken"
    ) -> AsyncIterator[AgentMessage]:
        """
        Launch the agent and return its message stream.

        Raises AgentInitError if the agent cannot be started. The returned
        iterator must stop promptly once ``cancel`` fires and must release
        its resources when closed early.
        """
        ...


class AgentRegistry:
    """Name → backend lookup."""

    def __init__(self) -> None:
        self._backends: dict[str, AgentBackend] = {}

    def register(self, backend: AgentBackend) -> None:
        self._backends[backend.name] = backend

    def get(self, name: str) -> AgentBackend:
        backend = self._backends.get(name)
        if backend is None:
            raise AgentInitError(
                f"Unknown agent backend: {name} (available: {', '.join(self.names()) or 'none'})"
            )
        return backend

    def names(self) -> list[str]:
        return sorted(self._backends)

    def __contains__(self, name: str) -> bool:
        return name in self._backends


def build_default_registry(agent_config: "AgentConfig") -> AgentRegistry:
    """Registry with the CLI-backed agents this service ships with."""
    from coderelay.agents.claude import ClaudeCliBackend
    from coderelay.agents.codex import CodexCliBackend
    from coderelay.agents.gemini import GeminiCliBackend

    registry = AgentRegistry()
    registry.register(ClaudeCliBackend(executable=agent_config.claude_bin))
    registry.register(CodexCliBackend(executable=agent_config.codex_bin))
    registry.register(GeminiCliBackend(executable=agent_config.gemini_bin))
    return registry
