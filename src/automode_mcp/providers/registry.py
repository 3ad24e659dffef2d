"""Name to provider mapping with lazy construction."""

from __future__ import annotations

import logging
from typing import Callable, Union

from ..config import AutomodeSettings
from ..errors import AutoModeValidationError
from .base import AgentExecutionProvider
from .claude import ClaudeAgentProvider, CursorProvider
from .codex import CodexProvider
from .mock import MockProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[], AgentExecutionProvider]


class ProviderRegistry:
    """Builds providers on first use so missing CLIs only fail the runs that need them."""

    def __init__(self, *, default: str = "claude") -> None:
        self.default = default
        self._factories: dict[str, ProviderFactory] = {}
        self._instances: dict[str, AgentExecutionProvider] = {}

    def register(
        self, name: str, provider: Union[AgentExecutionProvider, ProviderFactory]
    ) -> None:
        key = name.strip().lower()
        self._instances.pop(key, None)
        if isinstance(provider, type) or not hasattr(provider, "execute"):
            self._factories[key] = provider
        else:
            self._factories.pop(key, None)
            self._instances[key] = provider  # type: ignore[assignment]

    def names(self) -> list[str]:
        return sorted(set(self._factories) | set(self._instances))

    def get(self, name: str | None = None) -> AgentExecutionProvider:
        key = (name or self.default).strip().lower()
        provider = self._instances.get(key)
        if provider is not None:
            return provider
        factory = self._factories.get(key)
        if factory is None:
            raise AutoModeValidationError(
                f"Unknown provider '{key}'. Available: {', '.join(self.names()) or 'none'}"
            )
        provider = factory()
        self._instances[key] = provider
        logger.debug("Provider constructed", extra={"provider": key})
        return provider


def create_default_registry(settings: AutomodeSettings) -> ProviderRegistry:
    registry = ProviderRegistry(default=settings.default_provider)
    registry.register("claude", lambda: ClaudeAgentProvider(settings.claude_path))
    registry.register("codex", lambda: CodexProvider(settings.codex_path))
    registry.register("cursor", lambda: CursorProvider(settings.cursor_path))
    registry.register("mock", MockProvider)
    return registry


__all__ = ["ProviderFactory", "ProviderRegistry", "create_default_registry"]
