"""Scripted provider for tests and dry runs."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Iterable

from .base import (
    AgentMessage,
    AgentProgress,
    AgentStarted,
    AgentTerminal,
    CancellationToken,
    ExecutionRequest,
    Verdict,
)

MockOutcome = Verdict | BaseException


class MockProvider:
    """Simulates agent runs without spawning anything.

    Each feature can be given a queue of outcomes (a ``Verdict`` or an
    exception to raise) consumed one per run; unscripted runs succeed. A gate
    holds a run open until released, which lets tests observe the running set.
    """

    name = "mock"

    def __init__(self, *, delay: float = 0.0, session_prefix: str = "mock-session") -> None:
        self.delay = delay
        self.session_prefix = session_prefix
        self._scripts: dict[str, list[MockOutcome]] = {}
        self._gates: dict[str, asyncio.Event] = {}
        self._ignore_cancel: set[str] = set()
        self.invocations: list[ExecutionRequest] = []
        self.active: set[str] = set()
        self.max_active = 0

    def script(self, feature_id: str, *outcomes: MockOutcome) -> None:
        self._scripts.setdefault(feature_id, []).extend(outcomes)

    def gate(self, feature_id: str) -> asyncio.Event:
        """Return the event that must be set before ``feature_id``'s run ends."""

        event = self._gates.get(feature_id)
        if event is None:
            event = self._gates[feature_id] = asyncio.Event()
        return event

    def ignore_cancellation(self, feature_ids: Iterable[str]) -> None:
        self._ignore_cancel.update(feature_ids)

    def calls_for(self, feature_id: str) -> list[ExecutionRequest]:
        return [request for request in self.invocations if request.feature.id == feature_id]

    async def _hold(self, feature_id: str, cancel_token: CancellationToken) -> None:
        gate = self._gates.get(feature_id)
        if gate is None:
            if self.delay:
                await cancel_token.wait(self.delay)
            return
        waiters = {asyncio.ensure_future(gate.wait())}
        if feature_id not in self._ignore_cancel:
            waiters.add(asyncio.ensure_future(cancel_token.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def execute(
        self, request: ExecutionRequest, cancel_token: CancellationToken
    ) -> AsyncIterator[AgentMessage]:
        feature_id = request.feature.id
        self.invocations.append(request)
        run_number = len(self.calls_for(feature_id))
        self.active.add(feature_id)
        self.max_active = max(self.max_active, len(self.active))
        try:
            session_id = request.resume_session_id or f"{self.session_prefix}-{feature_id}-{run_number}"
            yield AgentStarted(session_id=session_id)
            yield AgentProgress(text=f"Working on {request.feature.display_title}")
            await self._hold(feature_id, cancel_token)
            if cancel_token.cancelled and feature_id not in self._ignore_cancel:
                return

            queue = self._scripts.get(feature_id)
            outcome: MockOutcome = queue.pop(0) if queue else request.success_verdict
            if isinstance(outcome, BaseException):
                raise outcome
            yield AgentTerminal(verdict=Verdict(outcome), summary="mock run finished", session_id=session_id)
        finally:
            self.active.discard(feature_id)


__all__ = ["MockOutcome", "MockProvider"]
