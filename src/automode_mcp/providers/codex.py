"""Codex CLI provider (``codex exec --json``)."""

from __future__ import annotations

from typing import Any, Iterator

from .base import AgentMessage, AgentProgress, AgentStarted, AgentTerminal, ExecutionRequest, provider_error_from_text
from .cli import CliAgentProvider, StreamState


class CodexProvider(CliAgentProvider):
    name = "codex"
    executable_name = "codex"

    def build_args(self, request: ExecutionRequest) -> list[str]:
        args = ["exec", "--json", "--full-auto"]
        if request.model:
            args.extend(["--model", request.model])
        prompt = request.prompt
        if request.system_prompt and not request.resume_session_id:
            prompt = f"{request.system_prompt}\n\n{prompt}"
        if request.resume_session_id:
            args.extend(["resume", request.resume_session_id])
        args.append(prompt)
        return args

    def parse_event(self, event: dict[str, Any], state: StreamState) -> Iterator[AgentMessage]:
        event_type = event.get("type")

        if event_type == "thread.started":
            thread_id = event.get("thread_id")
            if thread_id:
                state.session_id = thread_id
                yield AgentStarted(session_id=thread_id)
            return

        if event_type in ("item.completed", "item.started"):
            item = event.get("item") or {}
            item_type = item.get("type") or item.get("item_type")
            if event_type == "item.completed" and item_type == "agent_message" and item.get("text"):
                state.last_text = item["text"]
                yield AgentProgress(text=item["text"], kind="text")
            elif event_type == "item.started" and item_type == "command_execution":
                yield AgentProgress(text=str(item.get("command") or "command"), kind="tool_use")
            return

        if event_type == "turn.completed":
            yield AgentTerminal(
                verdict=state.request.success_verdict,
                summary=state.last_text,
                session_id=state.session_id,
            )
            return

        if event_type in ("turn.failed", "error"):
            error = event.get("error")
            if isinstance(error, dict):
                detail = error.get("message")
            else:
                detail = error or event.get("message")
            raise provider_error_from_text(str(detail or "codex run failed"))


__all__ = ["CodexProvider"]
