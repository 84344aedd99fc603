"""
Codex CLI backend — ``codex exec --json --full-auto``.

Codex prints event envelopes (``{"id": …, "msg": {"type": …}}``). They
are relayed as ``codex_event`` messages; the final ``agent_message`` is
additionally surfaced as assistant text, and a ``result`` message is
synthesized after a clean exit so the executor can pick up a summary.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from coderelay.agents.base import AgentMessage, AgentRequest
from coderelay.agents.process import SubprocessAgentBackend

logger = logging.getLogger(__name__)

NO_AGENT_MESSAGE = "Codex completed without an agent message"


class CodexCliBackend(SubprocessAgentBackend):
    name = "codex"

    def __init__(self, executable: str = "codex", env: dict[str, str] | None = None):
        super().__init__(executable, env)

    def build_argv(self, request: AgentRequest) -> list[str]:
        argv = [self.executable, "exec", "--json", "--full-auto"]
        if request.config.model:
            argv += ["--model", request.config.model]
        if request.resume_id:
            logger.debug("Codex exec does not resume conversations; ignoring %s", request.resume_id)
        argv.append(request.prompt)
        return argv

    def normalize(self, line: dict[str, Any], state: dict[str, Any]) -> Iterable[AgentMessage]:
        msg = line.get("msg")
        if not isinstance(msg, dict):
            # Config banner and other non-event lines
            return ()

        msg_type = msg.get("type", "unknown")
        event: AgentMessage = {"type": "codex_event", "subtype": msg_type, "payload": line}
        if msg_type == "session_configured" and msg.get("session_id"):
            event["session_id"] = msg["session_id"]

        if msg_type == "agent_message":
            text = msg.get("message") or ""
            state["final"] = text
            return (
                event,
                {
                    "type": "assistant",
                    "subtype": "agent_message",
                    "message": {"content": [{"type": "text", "text": text}]},
                },
            )
        return (event,)

    def finish(self, state: dict[str, Any]) -> Iterable[AgentMessage]:
        return (
            {
                "type": "result",
                "subtype": "success",
                "is_error": False,
                "result": state.get("final") or NO_AGENT_MESSAGE,
            },
        )
