"""In-memory scheduler state and the durable execution-state record."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ..features.store import AUTOMAKER_DIR, atomic_write_json
from ..providers.base import CancellationToken

logger = logging.getLogger(__name__)

EXECUTION_STATE_FILE = "execution-state.json"
EXECUTION_STATE_VERSION = 1


class LoopPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(slots=True)
class RunningAgentHandle:
    """Live record of one feature being executed."""

    feature_id: str
    project_path: Path
    cancel_token: CancellationToken
    title: str
    description: str = ""
    branch_name: str | None = None
    worktree_path: Path | None = None
    provider: str | None = None
    session_id: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_monotonic: float = field(default_factory=time.monotonic)
    task: asyncio.Task | None = None
    finalized: bool = False
    attempt: int = 1

    def runtime_seconds(self) -> float:
        return round(time.monotonic() - self.started_monotonic, 3)

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "project_path": str(self.project_path),
            "title": self.title,
            "description": self.description,
            "provider": self.provider,
            "branch_name": self.branch_name,
            "worktree_path": str(self.worktree_path) if self.worktree_path else None,
            "session_id": self.session_id,
            "started_at": self.started_at.isoformat(),
            "runtime_seconds": self.runtime_seconds(),
            "attempt": self.attempt,
        }


class FailureTracker:
    """Counts failures inside a sliding window to decide when to pause a loop."""

    def __init__(
        self,
        threshold: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.window_seconds = window_seconds
        self._clock = clock
        self._failures: list[tuple[float, str]] = []

    def record(self, error: str) -> bool:
        """Record a failure and return True when the threshold is reached."""

        now = self._clock()
        self._failures.append((now, error))
        self._failures = [
            (timestamp, message)
            for timestamp, message in self._failures
            if now - timestamp < self.window_seconds
        ]
        return len(self._failures) >= self.threshold

    def reset(self) -> None:
        self._failures.clear()

    @property
    def count(self) -> int:
        return len(self._failures)


@dataclass(slots=True)
class ProjectAutoLoopState:
    """Loop phase and running set of one project.

    ``reserved`` holds features whose worktree is being acquired; they count
    against the cap but are not running yet.
    """

    project_path: Path
    max_concurrency: int
    failures: FailureTracker
    phase: LoopPhase = LoopPhase.IDLE
    running: dict[str, RunningAgentHandle] = field(default_factory=dict)
    reserved: set[str] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    reported_conflicts: set[tuple[str, ...]] = field(default_factory=set)
    idle_reported: bool = False
    paused_due_to_failures: bool = False

    @property
    def running_count(self) -> int:
        return len(self.running)

    @property
    def occupied(self) -> int:
        return len(self.running) + len(self.reserved)

    @property
    def busy(self) -> bool:
        return bool(self.running or self.reserved)

    @property
    def is_running(self) -> bool:
        return self.phase is LoopPhase.RUNNING


@dataclass(slots=True)
class ExecutionState:
    project_path: str
    auto_loop_was_running: bool = False
    max_concurrency: int = 3
    running_feature_ids: list[str] = field(default_factory=list)
    saved_at: str | None = None
    version: int = EXECUTION_STATE_VERSION

    def to_record(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "autoLoopWasRunning": self.auto_loop_was_running,
            "maxConcurrency": self.max_concurrency,
            "projectPath": self.project_path,
            "runningFeatureIds": list(self.running_feature_ids),
            "savedAt": self.saved_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "ExecutionState":
        return cls(
            project_path=str(record.get("projectPath", "")),
            auto_loop_was_running=bool(record.get("autoLoopWasRunning", False)),
            max_concurrency=int(record.get("maxConcurrency") or 3),
            running_feature_ids=[str(item) for item in record.get("runningFeatureIds") or []],
            saved_at=record.get("savedAt"),
            version=int(record.get("version") or EXECUTION_STATE_VERSION),
        )


class ExecutionStateStore:
    """Reads and writes ``.automaker/execution-state.json`` for a project."""

    @staticmethod
    def path_for(project_path: Path | str) -> Path:
        return Path(project_path) / AUTOMAKER_DIR / EXECUTION_STATE_FILE

    def save(self, state: ExecutionState) -> None:
        state.saved_at = datetime.now(timezone.utc).isoformat()
        try:
            atomic_write_json(self.path_for(state.project_path), state.to_record())
        except OSError as exc:
            logger.warning(
                "Failed to save execution state",
                extra={"project": state.project_path, "error": str(exc)},
            )

    def load(self, project_path: Path | str) -> ExecutionState | None:
        path = self.path_for(project_path)
        try:
            record = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable execution state", extra={"path": str(path), "error": str(exc)})
            return None
        if not isinstance(record, dict):
            return None
        return ExecutionState.from_record(record)

    def clear(self, project_path: Path | str) -> None:
        self.path_for(project_path).unlink(missing_ok=True)


__all__ = [
    "EXECUTION_STATE_FILE",
    "ExecutionState",
    "ExecutionStateStore",
    "FailureTracker",
    "LoopPhase",
    "ProjectAutoLoopState",
    "RunningAgentHandle",
]
