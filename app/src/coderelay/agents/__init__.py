"""Agent backends — CLI agents that stream structured messages."""

from coderelay.agents.base import (
    AgentBackend,
    AgentProcessError,
    AgentRegistry,
    AgentRequest,
    build_default_registry,
)
from coderelay.agents.claude import ClaudeCliBackend
from coderelay.agents.codex import CodexCliBackend
from coderelay.agents.gemini import GeminiCliBackend
from coderelay.agents.process import SubprocessAgentBackend

__all__ = [
    "AgentBackend",
    "AgentProcessError",
    "AgentRegistry",
    "AgentRequest",
    "ClaudeCliBackend",
    "CodexCliBackend",
    "GeminiCliBackend",
    "SubprocessAgentBackend",
    "build_default_registry",
]
