"""Agent execution providers."""

from .base import (
    AgentExecutionProvider,
    AgentMessage,
    AgentProgress,
    AgentStarted,
    AgentTerminal,
    CancellationToken,
    ErrorClass,
    ExecutionRequest,
    ProviderError,
    ProviderNotFoundError,
    Verdict,
    classify_error,
)
from .claude import ClaudeAgentProvider, CursorProvider
from .codex import CodexProvider
from .mock import MockProvider
from .registry import ProviderRegistry, create_default_registry

__all__ = [
    "AgentExecutionProvider",
    "AgentMessage",
    "AgentProgress",
    "AgentStarted",
    "AgentTerminal",
    "CancellationToken",
    "ClaudeAgentProvider",
    "CodexProvider",
    "CursorProvider",
    "ErrorClass",
    "ExecutionRequest",
    "MockProvider",
    "ProviderError",
    "ProviderNotFoundError",
    "ProviderRegistry",
    "Verdict",
    "classify_error",
    "create_default_registry",
]
