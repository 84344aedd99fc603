"""
Subprocess-backed agents — run a CLI and read JSON lines from stdout.

The process is started in ``open()`` so a missing binary surfaces as an
AgentInitError before any message exists. The returned stream:
- skips blank and unparsable lines
- kills the process as soon as the cancellation token fires
- kills the process if the consumer stops early (aclose)
- raises AgentProcessError with the stderr tail on a non-zero exit,
  unless the exit was caused by cancellation
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import abstractmethod
from typing import TYPE_CHECKING, Any, AsyncIterator, Iterable

from coderelay.agents.base import AgentBackend, AgentMessage, AgentProcessError, AgentRequest
from coderelay.core.errors import AgentInitError

if TYPE_CHECKING:
    from coderelay.query.cancellation import CancelReason, CancellationToken

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024  # Single JSON line cap (tool output can be large)
STDERR_TAIL = 2000


class SubprocessAgentBackend(AgentBackend):
    """
    Base for CLI agents that print one JSON object per line.

    Subclasses build the command line and may reshape output lines.
    ``state`` is a fresh dict per run for parsers that need memory
    across lines.
    """

    def __init__(self, executable: str, env: dict[str, str] | None = None):
        self.executable = executable
        self._env = env

    @abstractmethod
    def build_argv(self, request: AgentRequest) -> list[str]:
        ...

    def parse_line(self, text: str) -> dict[str, Any] | None:
        """Decode one stdout line. None skips it."""
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON line from %s: %s", self.name, text[:200])
            return None
        return parsed if isinstance(parsed, dict) else None

    def normalize(self, line: dict[str, Any], state: dict[str, Any]) -> Iterable[AgentMessage]:
        return (line,)

    def finish(self, state: dict[str, Any]) -> Iterable[AgentMessage]:
        return ()

    async def open(
        self, request: AgentRequest, cancel: "CancellationToken"
    ) -> AsyncIterator[AgentMessage]:
        argv = self.build_argv(request)
        cwd = request.config.cwd or None
        env = {**os.environ, **self._env} if self._env else None

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as e:
            raise AgentInitError(
                f"{argv[0]} command not found. Please ensure the {self.name} CLI is installed and in PATH"
            ) from e
        except (OSError, ValueError) as e:
            raise AgentInitError(f"Failed to launch {argv[0]}: {e}") from e

        logger.info("Spawned %s agent (pid=%s)", self.name, proc.pid)
        return ProcessStream(proc, self._stream(proc, cancel))

    async def _stream(
        self, proc: asyncio.subprocess.Process, cancel: "CancellationToken"
    ) -> AsyncIterator[AgentMessage]:
        assert proc.stdout is not None and proc.stderr is not None
        stderr_task = asyncio.create_task(proc.stderr.read())
        state: dict[str, Any] = {}

        def kill(reason: "CancelReason") -> None:
            logger.info("Stopping %s agent (pid=%s): %s", self.name, proc.pid, reason.value)
            _terminate(proc)

        cancel.add_callback(kill)
        try:
            async for raw in proc.stdout:
                text = raw.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                parsed = self.parse_line(text)
                if parsed is None:
                    continue
                for message in self.normalize(parsed, state):
                    yield message

            returncode = await proc.wait()
            if cancel.cancelled:
                return
            if returncode != 0:
                stderr = (await stderr_task).decode("utf-8", errors="replace")
                raise AgentProcessError(returncode, stderr[-STDERR_TAIL:])

            for message in self.finish(state):
                yield message
        finally:
            cancel.remove_callback(kill)
            if proc.returncode is None:
                _terminate(proc)
                await proc.wait()
            if not stderr_task.done():
                stderr_task.cancel()
            await asyncio.gather(stderr_task, return_exceptions=True)


class ProcessStream:
    """
    Message iterator bound to a live process.

    ``aclose()`` kills the process even when iteration never started,
    which closing the bare generator would not do.
    """

    def __init__(self, proc: asyncio.subprocess.Process, messages: AsyncIterator[AgentMessage]):
        self.proc = proc
        self._messages = messages

    def __aiter__(self) -> ProcessStream:
        return self

    async def __anext__(self) -> AgentMessage:
        return await self._messages.__anext__()

    async def aclose(self) -> None:
        await self._messages.aclose()  # type: ignore[attr-defined]
        if self.proc.returncode is None:
            _terminate(self.proc)
            await self.proc.wait()


def _terminate(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        pass
