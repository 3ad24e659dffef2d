"""Exception hierarchy shared by the orchestrator components."""

from __future__ import annotations

from enum import Enum
from typing import Iterable


class AutoModeError(RuntimeError):
    """Base class for orchestrator errors."""


class AutoModeValidationError(AutoModeError, ValueError):
    """Raised when a request carries missing or invalid fields."""


class AdmissionError(AutoModeError):
    """Raised when a feature cannot be admitted for execution right now."""


class CycleError(AutoModeError):
    """Raised when the dependency graph contains one or more cycles."""

    def __init__(self, cycles: Iterable[tuple[str, ...]]) -> None:
        self.cycles: list[tuple[str, ...]] = [tuple(cycle) for cycle in cycles]
        rendered = "; ".join(" -> ".join(cycle) for cycle in self.cycles)
        super().__init__(f"Dependency cycle detected: {rendered}")

    @property
    def feature_ids(self) -> set[str]:
        return {feature_id for cycle in self.cycles for feature_id in cycle}


class FeatureNotFoundError(AutoModeError):
    """Raised when a feature id does not exist in the store."""


class DependencyCycleError(CycleError):
    """Raised by the feature store when a write would introduce a cycle."""


class VcsErrorKind(str, Enum):
    NOT_A_REPOSITORY = "not_a_repository"
    BRANCH_EXISTS = "branch_exists"
    BRANCH_IN_USE = "branch_in_use"
    MERGE_CONFLICT = "merge_conflict"
    REGISTRY_CONTENTION = "registry_contention"
    COMMAND_FAILED = "command_failed"


class WorktreeError(AutoModeError):
    """Raised when a git worktree operation fails."""

    def __init__(self, kind: VcsErrorKind, message: str, *, stderr: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.stderr = stderr


__all__ = [
    "AdmissionError",
    "AutoModeError",
    "AutoModeValidationError",
    "CycleError",
    "DependencyCycleError",
    "FeatureNotFoundError",
    "VcsErrorKind",
    "WorktreeError",
]
