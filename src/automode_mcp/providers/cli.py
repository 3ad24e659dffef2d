"""Base class for providers that drive an agent CLI emitting JSONL."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Mapping

from .base import (
    AgentMessage,
    AgentTerminal,
    CancellationToken,
    ExecutionRequest,
    ProviderNotFoundError,
    provider_error_from_text,
)
from .utils import parse_json_line, sanitize_environment

logger = logging.getLogger(__name__)

_STREAM_LIMIT = 16 * 1024 * 1024


@dataclass(slots=True)
class StreamState:
    """Mutable bookkeeping for one CLI run."""

    request: ExecutionRequest
    session_id: str | None = None
    last_text: str | None = None
    terminal: AgentTerminal | None = None


class CliAgentProvider:
    """Spawn an agent CLI in the worktree and translate its JSONL stream.

    Subclasses supply the executable name, the argument list and an event
    parser. A non-zero exit raises ``ProviderError`` classified from stderr;
    a clean exit without an explicit result counts as success.
    """

    name = "cli"
    executable_name = ""

    def __init__(
        self,
        executable: Path | str | None = None,
        *,
        env: Mapping[str, str] | None = None,
        terminate_timeout: float = 5.0,
    ) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._env = dict(env or {})
        self._terminate_timeout = terminate_timeout

    def _resolve_executable(self, explicit: Path | str | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.is_file():
                return candidate
            located = shutil.which(str(explicit))
            if located is not None:
                return Path(located)
            raise ProviderNotFoundError(f"{self.name} executable not found at {candidate}")

        binary = shutil.which(self.executable_name)
        if binary is None:
            raise ProviderNotFoundError(f"{self.executable_name} CLI executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    def build_args(self, request: ExecutionRequest) -> list[str]:
        raise NotImplementedError

    def parse_event(self, event: dict[str, Any], state: StreamState) -> Iterable[AgentMessage]:
        raise NotImplementedError

    async def execute(
        self, request: ExecutionRequest, cancel_token: CancellationToken
    ) -> AsyncIterator[AgentMessage]:
        args = self.build_args(request)
        logger.debug(
            "Spawning agent CLI",
            extra={"provider": self.name, "feature_id": request.feature.id, "cwd": str(request.worktree_path)},
        )
        process = await asyncio.create_subprocess_exec(
            str(self._executable_path),
            *args,
            cwd=str(request.worktree_path),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(self._env),
            limit=_STREAM_LIMIT,
        )
        stderr_task = asyncio.create_task(process.stderr.read())
        cancel_task = asyncio.create_task(cancel_token.wait())
        state = StreamState(request=request, session_id=request.resume_session_id)

        try:
            while True:
                read_task = asyncio.create_task(process.stdout.readline())
                done, _ = await asyncio.wait(
                    {read_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if read_task not in done:
                    read_task.cancel()
                    logger.info(
                        "Agent run cancelled",
                        extra={"provider": self.name, "feature_id": request.feature.id},
                    )
                    return
                line = read_task.result()
                if not line:
                    break
                event = parse_json_line(line)
                if event is None:
                    continue
                for message in self.parse_event(event, state):
                    if isinstance(message, AgentTerminal):
                        state.terminal = message
                    yield message

            returncode = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
            if returncode != 0:
                raise provider_error_from_text(
                    stderr or f"{self.name} exited with code {returncode}"
                )
            if state.terminal is None:
                yield AgentTerminal(
                    verdict=request.success_verdict,
                    summary=state.last_text,
                    session_id=state.session_id,
                )
        finally:
            cancel_task.cancel()
            if process.returncode is None:
                await self._terminate(process)
            if not stderr_task.done():
                stderr_task.cancel()

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), self._terminate_timeout)
        except asyncio.TimeoutError:
            logger.warning("Agent CLI ignored SIGTERM, killing", extra={"provider": self.name})
            process.kill()
            await process.wait()


__all__ = ["CliAgentProvider", "StreamState"]
