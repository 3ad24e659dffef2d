from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest

from automode_mcp.config import AutomodeSettings
from automode_mcp.errors import AutoModeValidationError
from automode_mcp.features import Feature
from automode_mcp.providers import (
    AgentProgress,
    AgentStarted,
    AgentTerminal,
    CancellationToken,
    ClaudeAgentProvider,
    CodexProvider,
    CursorProvider,
    ErrorClass,
    ExecutionRequest,
    MockProvider,
    ProviderError,
    ProviderNotFoundError,
    ProviderRegistry,
    Verdict,
    classify_error,
    create_default_registry,
)
from automode_mcp.providers.base import provider_error_from_text
from automode_mcp.providers.utils import parse_json_line, sanitize_environment


def _write_cli(tmp_path: Path, name: str, body: str) -> Path:
    script = tmp_path / name
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return script


def _request(tmp_path: Path, *, require_approval: bool = False, **kwargs) -> ExecutionRequest:
    feature = Feature(id="f1", description="Build it", require_approval=require_approval)
    return ExecutionRequest(
        feature=feature,
        project_path=tmp_path,
        worktree_path=tmp_path,
        prompt="Do it",
        require_approval=require_approval,
        **kwargs,
    )


async def _collect(provider, request: ExecutionRequest, token: CancellationToken | None = None):
    token = token or CancellationToken()
    return [message async for message in provider.execute(request, token)]


CLAUDE_SUCCESS = """\
printf '%s\\n' "$@" > "$(dirname "$0")/args.txt"
echo '{"type":"system","subtype":"init","session_id":"sess-1"}'
echo '{"type":"assistant","message":{"content":[{"type":"text","text":"Working"},{"type":"tool_use","name":"Edit"}]}}'
echo 'not json'
echo '{"type":"result","subtype":"success","result":"All done","session_id":"sess-1"}'
"""


def test_claude_provider_streams_messages(tmp_path: Path) -> None:
    provider = ClaudeAgentProvider(_write_cli(tmp_path, "claude", CLAUDE_SUCCESS))

    messages = asyncio.run(_collect(provider, _request(tmp_path)))

    assert messages == [
        AgentStarted(session_id="sess-1"),
        AgentProgress(text="Working", kind="text"),
        AgentProgress(text="Edit", kind="tool_use"),
        AgentTerminal(verdict=Verdict.COMPLETED, summary="All done", session_id="sess-1"),
    ]


def test_claude_provider_passes_model_resume_and_system_prompt(tmp_path: Path) -> None:
    provider = ClaudeAgentProvider(_write_cli(tmp_path, "claude", CLAUDE_SUCCESS))
    request = _request(
        tmp_path, model="sonnet", resume_session_id="sess-0", system_prompt="Be careful"
    )

    asyncio.run(_collect(provider, request))

    args = (tmp_path / "args.txt").read_text(encoding="utf-8").splitlines()
    assert args == [
        "-p",
        "--output-format",
        "stream-json",
        "--verbose",
        "--model",
        "sonnet",
        "--resume",
        "sess-0",
        "--append-system-prompt",
        "Be careful",
        "Do it",
    ]


def test_clean_exit_without_result_uses_success_verdict(tmp_path: Path) -> None:
    body = """\
echo '{"type":"assistant","session_id":"sess-9","message":{"content":[{"type":"text","text":"Ready for review"}]}}'
"""
    provider = ClaudeAgentProvider(_write_cli(tmp_path, "claude", body))

    messages = asyncio.run(_collect(provider, _request(tmp_path, require_approval=True)))

    assert messages[0] == AgentStarted(session_id="sess-9")
    assert messages[-1] == AgentTerminal(
        verdict=Verdict.WAITING_APPROVAL, summary="Ready for review", session_id="sess-9"
    )


def test_nonzero_exit_raises_classified_error(tmp_path: Path) -> None:
    body = "echo 'Error: rate limit exceeded, retry after 30s' >&2\nexit 1\n"
    provider = ClaudeAgentProvider(_write_cli(tmp_path, "claude", body))

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(_collect(provider, _request(tmp_path)))

    assert excinfo.value.error_class is ErrorClass.RATE_LIMIT
    assert excinfo.value.retry_after == 30.0
    assert excinfo.value.retryable


def test_error_result_event_raises(tmp_path: Path) -> None:
    body = (
        "echo '{\"type\":\"result\",\"subtype\":\"error_during_execution\","
        "\"is_error\":true,\"error\":\"401 Unauthorized\"}'\n"
    )
    provider = ClaudeAgentProvider(_write_cli(tmp_path, "claude", body))

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(_collect(provider, _request(tmp_path)))

    assert excinfo.value.error_class is ErrorClass.AUTH
    assert not excinfo.value.retryable


def test_cancellation_stops_the_cli(tmp_path: Path) -> None:
    body = (
        "echo '{\"type\":\"system\",\"subtype\":\"init\",\"session_id\":\"sess-c\"}'\n"
        "exec sleep 30\n"
    )
    provider = ClaudeAgentProvider(_write_cli(tmp_path, "claude", body), terminate_timeout=2.0)

    async def scenario():
        token = CancellationToken()
        messages = []
        async for message in provider.execute(_request(tmp_path), token):
            messages.append(message)
            if isinstance(message, AgentStarted):
                token.cancel("stop requested")
        return messages, token

    started = time.monotonic()
    messages, token = asyncio.run(scenario())

    assert messages == [AgentStarted(session_id="sess-c")]
    assert token.reason == "stop requested"
    assert time.monotonic() - started < 10


def test_codex_provider_translates_events(tmp_path: Path) -> None:
    body = """\
echo '{"type":"thread.started","thread_id":"th-1"}'
echo '{"type":"item.started","item":{"type":"command_execution","command":"pytest"}}'
echo '{"type":"item.completed","item":{"type":"agent_message","text":"Implemented"}}'
echo '{"type":"turn.completed","usage":{}}'
"""
    provider = CodexProvider(_write_cli(tmp_path, "codex", body))

    messages = asyncio.run(_collect(provider, _request(tmp_path)))

    assert messages == [
        AgentStarted(session_id="th-1"),
        AgentProgress(text="pytest", kind="tool_use"),
        AgentProgress(text="Implemented", kind="text"),
        AgentTerminal(verdict=Verdict.COMPLETED, summary="Implemented", session_id="th-1"),
    ]


def test_codex_turn_failed_is_classified(tmp_path: Path) -> None:
    body = "echo '{\"type\":\"turn.failed\",\"error\":{\"message\":\"stream disconnected: network error\"}}'\n"
    provider = CodexProvider(_write_cli(tmp_path, "codex", body))

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(_collect(provider, _request(tmp_path)))

    assert excinfo.value.error_class is ErrorClass.TRANSIENT


def test_codex_and_cursor_arguments(tmp_path: Path) -> None:
    codex = CodexProvider(_write_cli(tmp_path, "codex", "exit 0\n"))
    cursor = CursorProvider(_write_cli(tmp_path, "cursor-agent", "exit 0\n"))

    fresh = _request(tmp_path, model="gpt-5", system_prompt="Rules")
    resumed = _request(tmp_path, model="gpt-5", system_prompt="Rules", resume_session_id="th-0")

    assert codex.build_args(fresh) == ["exec", "--json", "--full-auto", "--model", "gpt-5", "Rules\n\nDo it"]
    assert codex.build_args(resumed) == [
        "exec",
        "--json",
        "--full-auto",
        "--model",
        "gpt-5",
        "resume",
        "th-0",
        "Do it",
    ]
    assert cursor.build_args(_request(tmp_path, model="cursor-auto")) == [
        "-p",
        "--force",
        "--output-format",
        "stream-json",
        "Do it",
    ]
    assert cursor.build_args(_request(tmp_path, model="cursor-gpt-5", system_prompt="Rules"))[-3:] == [
        "--model",
        "gpt-5",
        "Rules\n\nDo it",
    ]


def test_missing_executable(tmp_path: Path) -> None:
    with pytest.raises(ProviderNotFoundError):
        ClaudeAgentProvider(tmp_path / "missing")


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        ("429 Too Many Requests", ErrorClass.RATE_LIMIT),
        ("You have hit your usage limit", ErrorClass.RATE_LIMIT),
        ("Invalid API key provided", ErrorClass.AUTH),
        ("read ECONNRESET", ErrorClass.TRANSIENT),
        ("upstream returned 503", ErrorClass.TRANSIENT),
        (TimeoutError(), ErrorClass.TRANSIENT),
        (ConnectionResetError("peer"), ErrorClass.TRANSIENT),
        ("SyntaxError in generated file", ErrorClass.FATAL),
        (ProviderError("x", ErrorClass.AUTH), ErrorClass.AUTH),
    ],
)
def test_classify_error(error, expected: ErrorClass) -> None:
    assert classify_error(error) is expected


def test_provider_error_from_text_without_retry_hint() -> None:
    error = provider_error_from_text("connection refused")

    assert error.error_class is ErrorClass.TRANSIENT
    assert error.retry_after is None


def test_cancellation_token_wait() -> None:
    async def scenario():
        token = CancellationToken()
        timed_out = await token.wait(0.01)
        token.cancel("first")
        token.cancel("second")
        return timed_out, await token.wait(0.01), token.reason

    assert asyncio.run(scenario()) == (False, True, "first")


def test_mock_provider_scripts_outcomes_and_sessions(tmp_path: Path) -> None:
    provider = MockProvider()
    provider.script("f1", ProviderError("overloaded", ErrorClass.RATE_LIMIT), Verdict.FAILED)

    async def scenario():
        with pytest.raises(ProviderError):
            await _collect(provider, _request(tmp_path))
        failed = await _collect(provider, _request(tmp_path))
        resumed = await _collect(provider, _request(tmp_path, resume_session_id="mock-session-f1-1"))
        return failed, resumed

    failed, resumed = asyncio.run(scenario())

    assert failed[0] == AgentStarted(session_id="mock-session-f1-2")
    assert failed[-1].verdict is Verdict.FAILED
    assert resumed[0] == AgentStarted(session_id="mock-session-f1-1")
    assert resumed[-1].verdict is Verdict.COMPLETED
    assert len(provider.calls_for("f1")) == 3
    assert provider.active == set()


def test_mock_provider_gate_and_cancel(tmp_path: Path) -> None:
    provider = MockProvider()

    async def scenario():
        gate = provider.gate("f1")
        token = CancellationToken()
        task = asyncio.create_task(_collect(provider, _request(tmp_path), token))
        await asyncio.sleep(0.01)
        active = set(provider.active)
        token.cancel("stop")
        messages = await task
        gate.set()
        return active, messages

    active, messages = asyncio.run(scenario())

    assert active == {"f1"}
    assert not any(isinstance(message, AgentTerminal) for message in messages)


def test_registry_builds_providers_lazily(tmp_path: Path) -> None:
    registry = ProviderRegistry(default="mock")
    registry.register("mock", MockProvider)
    instance = MockProvider()
    registry.register("scripted", instance)

    first = registry.get()
    assert isinstance(first, MockProvider)
    assert registry.get("MOCK") is first
    assert registry.get("scripted") is instance
    assert registry.names() == ["mock", "scripted"]
    with pytest.raises(AutoModeValidationError):
        registry.get("unknown")


def test_default_registry_defers_missing_cli(tmp_path: Path) -> None:
    settings = AutomodeSettings(claude_path=str(tmp_path / "nope"), default_provider="mock")
    registry = create_default_registry(settings)

    assert registry.names() == ["claude", "codex", "cursor", "mock"]
    assert isinstance(registry.get(), MockProvider)
    with pytest.raises(ProviderNotFoundError):
        registry.get("claude")


def test_parse_json_line_and_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    assert parse_json_line(b'{"type": "x"}\n') == {"type": "x"}
    assert parse_json_line("[1, 2]") is None
    assert parse_json_line("   ") is None
    assert parse_json_line("{broken") is None

    monkeypatch.setenv("PYTHONPATH", "value")
    env = sanitize_environment({"EXTRA": "1"})
    assert "PYTHONPATH" not in env
    assert env["EXTRA"] == "1"
