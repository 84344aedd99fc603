"""Claude Code CLI backend — ``claude -p … --output-format stream-json``."""

from __future__ import annotations

from coderelay.agents.base import AgentRequest
from coderelay.agents.process import SubprocessAgentBackend
from coderelay.session.models import PermissionMode


def clean_resume_id(value: str) -> str:
    """Strip one layer of surrounding quotes from a client-supplied id."""
    value = value.strip()
    if value[:1] in ("'", '"'):
        value = value[1:]
    if value[-1:] in ("'", '"'):
        value = value[:-1]
    return value


class ClaudeCliBackend(SubprocessAgentBackend):
    name = "claude"

    def __init__(self, executable: str = "claude", env: dict[str, str] | None = None):
        super().__init__(executable, env)

    def build_argv(self, request: AgentRequest) -> list[str]:
        config = request.config
        argv = [self.executable, "-p", "--output-format", "stream-json", "--verbose"]

        if config.model:
            argv += ["--model", config.model]
        if config.max_turns:
            argv += ["--max-turns", str(config.max_turns)]
        if config.permission_mode and config.permission_mode != PermissionMode.DEFAULT.value:
            argv += ["--permission-mode", config.permission_mode]
        if config.append_system_prompt:
            argv += ["--append-system-prompt", config.append_system_prompt]
        if request.resume_id:
            resume = clean_resume_id(request.resume_id)
            if resume:
                argv += ["--resume", resume]

        argv.append(request.prompt)
        return argv
