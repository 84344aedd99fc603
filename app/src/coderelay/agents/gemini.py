"""Gemini CLI backend — ``gemini -p -y <prompt>``, plain-text output."""

from __future__ import annotations

import re
from typing import Any, Iterable

from coderelay.agents.base import AgentMessage, AgentRequest
from coderelay.agents.process import SubprocessAgentBackend

NO_RESPONSE = "No response from Gemini"

_CREDENTIALS_BANNER = re.compile(r"Loaded cached credentials\.\s*")


class GeminiCliBackend(SubprocessAgentBackend):
    """
    Gemini prints the answer as text, so every stdout line is collected
    and one assistant message plus a result are emitted after a clean exit.
    """

    name = "gemini"

    def __init__(self, executable: str = "gemini", env: dict[str, str] | None = None):
        super().__init__(executable, env)

    def build_argv(self, request: AgentRequest) -> list[str]:
        argv = [self.executable, "-p", "-y"]
        if request.config.model:
            argv += ["--model", request.config.model]
        argv.append(request.prompt)
        return argv

    def parse_line(self, text: str) -> dict[str, Any] | None:
        return {"text": text}

    def normalize(self, line: dict[str, Any], state: dict[str, Any]) -> Iterable[AgentMessage]:
        state.setdefault("lines", []).append(line["text"])
        return ()

    def finish(self, state: dict[str, Any]) -> Iterable[AgentMessage]:
        output = _CREDENTIALS_BANNER.sub("", "\n".join(state.get("lines", []))).strip()
        text = output or NO_RESPONSE
        return (
            {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}},
            {"type": "result", "subtype": "success", "is_error": False, "result": text},
        )
