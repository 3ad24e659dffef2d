"""Dependency resolution and the auto-mode scheduler."""

from .resolver import (
    DependencyGraph,
    ResolutionResult,
    analyze,
    are_dependencies_satisfied,
    build_graph,
    find_cycles,
    get_blocking_dependencies,
    resolve,
)
from .scheduler import AutoModeScheduler, InterruptedFeature, InterruptedReport, RunOutcome
from .state import (
    ExecutionState,
    ExecutionStateStore,
    FailureTracker,
    LoopPhase,
    ProjectAutoLoopState,
    RunningAgentHandle,
)

__all__ = [
    "AutoModeScheduler",
    "DependencyGraph",
    "ExecutionState",
    "ExecutionStateStore",
    "FailureTracker",
    "InterruptedFeature",
    "InterruptedReport",
    "LoopPhase",
    "ProjectAutoLoopState",
    "ResolutionResult",
    "RunOutcome",
    "RunningAgentHandle",
    "analyze",
    "are_dependencies_satisfied",
    "build_graph",
    "find_cycles",
    "get_blocking_dependencies",
    "resolve",
]
