"""Provider contract shared by every agent backend."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Protocol, Union

from ..errors import AutoModeError
from ..features.models import Feature


class CancellationToken:
    """Cooperative cancellation flag shared between the scheduler and a run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait until cancelled; returns False when ``timeout`` elapses first."""

        if timeout is None:
            await self._event.wait()
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


class Verdict(str, Enum):
    COMPLETED = "completed"
    WAITING_APPROVAL = "waiting_approval"
    FAILED = "failed"


class ErrorClass(str, Enum):
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    TRANSIENT = "transient"
    FATAL = "fatal"


RETRYABLE_CLASSES = frozenset({ErrorClass.RATE_LIMIT, ErrorClass.TRANSIENT})


class ProviderError(AutoModeError):
    """Raised by providers; ``error_class`` drives the retry policy."""

    def __init__(
        self,
        message: str,
        error_class: ErrorClass = ErrorClass.FATAL,
        *,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.error_class = ErrorClass(error_class)
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.error_class in RETRYABLE_CLASSES


class ProviderNotFoundError(ProviderError):
    """Raised when an agent CLI executable cannot be located."""

    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorClass.FATAL)


_RATE_LIMIT = re.compile(
    r"rate[ _-]?limit|\b429\b|too many requests|quota|overloaded|usage limit", re.IGNORECASE
)
_AUTH = re.compile(
    r"unauthori[sz]ed|\b401\b|\b403\b|forbidden|invalid[ _-]api[ _-]key|authenticat|"
    r"not logged in|login required|credentials",
    re.IGNORECASE,
)
_TRANSIENT = re.compile(
    r"timed? ?out|timeout|econnreset|econnrefused|connection (?:reset|refused|error|closed)|"
    r"network|temporar|\b50[234]\b|socket hang up|unavailable|try again",
    re.IGNORECASE,
)
_RETRY_AFTER = re.compile(
    r"(?:retry[ -]after|try again in)[:\s]+(\d+(?:\.\d+)?)\s*s?", re.IGNORECASE
)


def classify_error(error: BaseException | str) -> ErrorClass:
    """Map an exception or error text onto an ``ErrorClass``."""

    if isinstance(error, ProviderError):
        return error.error_class
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorClass.TRANSIENT
    text = str(error)
    if _RATE_LIMIT.search(text):
        return ErrorClass.RATE_LIMIT
    if _AUTH.search(text):
        return ErrorClass.AUTH
    if _TRANSIENT.search(text):
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


def provider_error_from_text(text: str) -> ProviderError:
    match = _RETRY_AFTER.search(text)
    retry_after = float(match.group(1)) if match else None
    return ProviderError(text, classify_error(text), retry_after=retry_after)


@dataclass(slots=True, frozen=True)
class AgentStarted:
    session_id: str | None


@dataclass(slots=True, frozen=True)
class AgentProgress:
    text: str
    kind: str = "text"


@dataclass(slots=True, frozen=True)
class AgentTerminal:
    verdict: Verdict
    summary: str | None = None
    session_id: str | None = None


AgentMessage = Union[AgentStarted, AgentProgress, AgentTerminal]


@dataclass(slots=True)
class ExecutionRequest:
    """Everything a provider needs to run one feature."""

    feature: Feature
    project_path: Path
    worktree_path: Path
    prompt: str
    model: str | None = None
    system_prompt: str | None = None
    resume_session_id: str | None = None
    require_approval: bool = False

    @property
    def success_verdict(self) -> Verdict:
        return Verdict.WAITING_APPROVAL if self.require_approval else Verdict.COMPLETED


class AgentExecutionProvider(Protocol):
    name: str

    def execute(
        self, request: ExecutionRequest, cancel_token: CancellationToken
    ) -> AsyncIterator[AgentMessage]:
        ...


__all__ = [
    "AgentExecutionProvider",
    "AgentMessage",
    "AgentProgress",
    "AgentStarted",
    "AgentTerminal",
    "CancellationToken",
    "ErrorClass",
    "ExecutionRequest",
    "ProviderError",
    "ProviderNotFoundError",
    "RETRYABLE_CLASSES",
    "Verdict",
    "classify_error",
    "provider_error_from_text",
]
