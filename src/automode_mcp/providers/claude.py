"""Claude Code and Cursor agent CLIs (``stream-json`` output)."""

from __future__ import annotations

from typing import Any, Iterator

from .base import AgentMessage, AgentProgress, AgentStarted, AgentTerminal, ExecutionRequest, provider_error_from_text
from .cli import CliAgentProvider, StreamState


class ClaudeAgentProvider(CliAgentProvider):
    """Runs ``claude -p --output-format stream-json`` inside the worktree."""

    name = "claude"
    executable_name = "claude"

    def build_args(self, request: ExecutionRequest) -> list[str]:
        args = ["-p", "--output-format", "stream-json", "--verbose"]
        if request.model:
            args.extend(["--model", request.model])
        if request.resume_session_id:
            args.extend(["--resume", request.resume_session_id])
        if request.system_prompt:
            args.extend(["--append-system-prompt", request.system_prompt])
        args.append(request.prompt)
        return args

    def parse_event(self, event: dict[str, Any], state: StreamState) -> Iterator[AgentMessage]:
        event_type = event.get("type")
        session_id = event.get("session_id")

        if event_type == "system":
            if event.get("subtype") == "init" and session_id:
                state.session_id = session_id
                yield AgentStarted(session_id=session_id)
            return

        if session_id and state.session_id is None:
            state.session_id = session_id
            yield AgentStarted(session_id=session_id)

        if event_type == "assistant":
            message = event.get("message") or {}
            for block in message.get("content") or []:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text" and block.get("text"):
                    state.last_text = block["text"]
                    yield AgentProgress(text=block["text"], kind="text")
                elif block.get("type") == "tool_use":
                    yield AgentProgress(text=str(block.get("name") or "tool"), kind="tool_use")
            return

        if event_type == "result":
            if event.get("is_error") or event.get("subtype") not in (None, "success"):
                detail = event.get("error") or event.get("result") or event.get("subtype") or "agent error"
                raise provider_error_from_text(str(detail))
            summary = event.get("result") or state.last_text
            yield AgentTerminal(
                verdict=state.request.success_verdict,
                summary=summary,
                session_id=state.session_id,
            )
            return

        if event_type == "error":
            raise provider_error_from_text(str(event.get("error") or event.get("message") or "agent error"))


class CursorProvider(ClaudeAgentProvider):
    """Runs ``cursor-agent -p --output-format stream-json``; same event shapes as Claude."""

    name = "cursor"
    executable_name = "cursor-agent"

    def build_args(self, request: ExecutionRequest) -> list[str]:
        args = ["-p", "--force", "--output-format", "stream-json"]
        model = request.model
        if model and model.startswith("cursor-"):
            model = model[len("cursor-"):]
        if model and model != "auto":
            args.extend(["--model", model])
        if request.resume_session_id:
            args.extend(["--resume", request.resume_session_id])
        prompt = request.prompt
        if request.system_prompt:
            prompt = f"{request.system_prompt}\n\n{prompt}"
        args.append(prompt)
        return args


__all__ = ["ClaudeAgentProvider", "CursorProvider"]
