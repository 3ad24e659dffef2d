"""Per-project auto-mode loop: admission, dispatch, cancellation and recovery."""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from ..config import AutomodeSettings
from ..errors import (
    AdmissionError,
    AutoModeValidationError,
    FeatureNotFoundError,
    VcsErrorKind,
    WorktreeError,
)
from ..events.models import AutoModeEvent, EventType
from ..events.sink import EventSink, LoggingEventSink
from ..features.models import ADMISSIBLE_STATUSES, Feature, FeatureStatus
from ..features.store import FeatureStore
from ..profiles.loader import ProfileCatalog
from ..profiles.models import AgentProfile
from ..profiles.prompt import build_feature_prompt
from ..providers.base import (
    AgentProgress,
    AgentStarted,
    AgentTerminal,
    CancellationToken,
    ErrorClass,
    ExecutionRequest,
    ProviderError,
    Verdict,
    classify_error,
)
from ..providers.registry import ProviderRegistry
from ..worktrees.manager import ReleaseOutcome, WorktreeHandle, WorktreeManager
from .resolver import ResolutionResult, analyze
from .state import (
    ExecutionState,
    ExecutionStateStore,
    FailureTracker,
    LoopPhase,
    ProjectAutoLoopState,
    RunningAgentHandle,
)

logger = logging.getLogger(__name__)

_PROGRESS_TEXT_LIMIT = 2000


@dataclass(slots=True)
class RunOutcome:
    """How a provider run ended, before it is mapped onto feature state."""

    verdict: Verdict | None = None
    summary: str | None = None
    error: str | None = None
    error_class: ErrorClass | None = None
    cancelled: bool = False
    cancel_reason: str | None = None
    retries_exhausted: bool = False


@dataclass(slots=True)
class InterruptedFeature:
    feature_id: str
    title: str
    session_id: str | None
    branch_name: str | None
    worktree_path: str | None
    started_at: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "title": self.title,
            "session_id": self.session_id,
            "branch_name": self.branch_name,
            "worktree_path": self.worktree_path,
            "started_at": self.started_at,
        }


@dataclass(slots=True)
class InterruptedReport:
    project_path: str
    features: list[InterruptedFeature] = field(default_factory=list)
    auto_loop_was_running: bool = False
    max_concurrency: int | None = None
    previously_running: list[str] = field(default_factory=list)

    @property
    def feature_ids(self) -> list[str]:
        return [item.feature_id for item in self.features]

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_path": self.project_path,
            "interrupted": [item.to_dict() for item in self.features],
            "count": len(self.features),
            "auto_loop_was_running": self.auto_loop_was_running,
            "max_concurrency": self.max_concurrency,
            "previously_running": list(self.previously_running),
        }


class AutoModeScheduler:
    """Runs admissible features under a per-project concurrency cap.

    Dispatch is event driven: it runs when a loop starts, when a run reaches a
    terminal state, and when callers report feature changes. The running set
    of a project only changes while holding that project's lock, and the lock
    is never held across git or provider work. Dispatch after a terminal state
    runs in its own task, never inside the finished run.
    """

    def __init__(
        self,
        feature_store: FeatureStore,
        worktrees: WorktreeManager,
        providers: ProviderRegistry,
        sink: EventSink | None = None,
        settings: AutomodeSettings | None = None,
        *,
        profiles: ProfileCatalog | None = None,
        execution_state: ExecutionStateStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = feature_store
        self._worktrees = worktrees
        self._providers = providers
        self._sink = sink or LoggingEventSink()
        self._settings = settings or AutomodeSettings()
        self._profiles = profiles or ProfileCatalog()
        self._execution_state = execution_state or ExecutionStateStore()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._projects: dict[Path, ProjectAutoLoopState] = {}
        self._tasks: dict[asyncio.Task, Path] = {}

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _normalize(project_path: Path | str) -> Path:
        if project_path is None or not str(project_path).strip():
            raise AutoModeValidationError("project_path is required")
        return Path(str(project_path).strip()).expanduser().resolve()

    def _validate_cap(self, max_concurrency: int | None) -> int:
        if max_concurrency is None:
            return self._settings.max_concurrency
        if isinstance(max_concurrency, bool) or not isinstance(max_concurrency, int):
            raise AutoModeValidationError("max_concurrency must be a positive integer")
        if max_concurrency < 1:
            raise AutoModeValidationError("max_concurrency must be a positive integer")
        return max_concurrency

    def _ensure_state(self, project: Path, max_concurrency: int | None = None) -> ProjectAutoLoopState:
        state = self._projects.get(project)
        if state is None:
            state = ProjectAutoLoopState(
                project_path=project,
                max_concurrency=max_concurrency or self._settings.max_concurrency,
                failures=FailureTracker(
                    self._settings.failure_pause_threshold,
                    self._settings.failure_window_seconds,
                ),
            )
            self._projects[project] = state
        return state

    def _publish(
        self,
        event_type: EventType,
        project: Path,
        feature_id: str | None = None,
        **payload: Any,
    ) -> None:
        event = AutoModeEvent(
            type=event_type,
            project_path=str(project),
            feature_id=feature_id,
            payload=payload,
            timestamp=self._clock(),
        )
        try:
            self._sink.publish(event)
        except Exception:
            logger.exception(
                "Event publication failed",
                extra={"event_type": event_type.value, "project": str(project)},
            )

    def _update_feature(self, project: Path, feature_id: str, fields: dict[str, Any]) -> Feature | None:
        try:
            return self._store.update(project, feature_id, fields)
        except FeatureNotFoundError:
            logger.warning(
                "Feature disappeared while running",
                extra={"feature_id": feature_id, "project": str(project)},
            )
        except (OSError, AutoModeValidationError):
            logger.exception(
                "Failed to update feature", extra={"feature_id": feature_id, "project": str(project)}
            )
        return None

    def _persist_state(self, state: ProjectAutoLoopState) -> None:
        if state.phase is LoopPhase.RUNNING:
            self._execution_state.save(
                ExecutionState(
                    project_path=str(state.project_path),
                    auto_loop_was_running=True,
                    max_concurrency=state.max_concurrency,
                    running_feature_ids=list(state.running),
                )
            )
        else:
            self._execution_state.clear(state.project_path)

    def _find_handle(
        self, feature_id: str, project_path: Path | str | None = None
    ) -> tuple[ProjectAutoLoopState, RunningAgentHandle] | None:
        if project_path is not None:
            states = [self._projects.get(self._normalize(project_path))]
        else:
            states = list(self._projects.values())
        for state in states:
            if state is not None and feature_id in state.running:
                return state, state.running[feature_id]
        return None

    # ------------------------------------------------------------------
    # loop control
    # ------------------------------------------------------------------
    async def start_auto_loop(
        self, project_path: Path | str, max_concurrency: int | None = None
    ) -> dict[str, Any]:
        project = self._normalize(project_path)
        cap = self._validate_cap(max_concurrency)
        if not project.is_dir():
            raise AutoModeValidationError(f"Project path {project} does not exist")

        state = self._ensure_state(project, cap)
        async with state.lock:
            if state.phase is LoopPhase.RUNNING:
                if max_concurrency is not None:
                    state.max_concurrency = cap
                return {
                    "already_running": True,
                    "project_path": str(project),
                    "max_concurrency": state.max_concurrency,
                    "running_count": state.running_count,
                }
            state.phase = LoopPhase.RUNNING
            state.max_concurrency = cap
            state.failures.reset()
            state.paused_due_to_failures = False
            state.reported_conflicts.clear()
            state.idle_reported = False
            self._persist_state(state)

        logger.info(
            "Auto loop started", extra={"project": str(project), "max_concurrency": cap}
        )
        self._publish(EventType.AUTO_MODE_STARTED, project, max_concurrency=cap)
        await self._dispatch(state)
        return {
            "already_running": False,
            "project_path": str(project),
            "max_concurrency": cap,
            "running_count": state.running_count,
        }

    async def stop_auto_loop(self, project_path: Path | str) -> dict[str, Any]:
        """Stop admitting new features; running features finish on their own."""

        project = self._normalize(project_path)
        state = self._projects.get(project)
        if state is None:
            return {"project_path": str(project), "was_running": False, "running_count": 0}

        async with state.lock:
            was_running = state.phase is LoopPhase.RUNNING
            state.phase = LoopPhase.STOPPING if state.busy else LoopPhase.IDLE
            running_count = state.running_count
            self._persist_state(state)

        if was_running:
            logger.info(
                "Auto loop stopped",
                extra={"project": str(project), "running_count": running_count},
            )
            self._publish(EventType.AUTO_MODE_STOPPED, project, running_count=running_count)
        return {
            "project_path": str(project),
            "was_running": was_running,
            "running_count": running_count,
        }

    def _project_status(self, state: ProjectAutoLoopState) -> dict[str, Any]:
        return {
            "project_path": str(state.project_path),
            "is_running": state.is_running,
            "phase": state.phase.value,
            "running_features": list(state.running),
            "running_count": state.running_count,
            "max_concurrency": state.max_concurrency,
            "paused_due_to_failures": state.paused_due_to_failures,
            "recent_failures": state.failures.count,
        }

    def get_status(self, project_path: Path | str | None = None) -> dict[str, Any]:
        if project_path is not None:
            project = self._normalize(project_path)
            state = self._projects.get(project)
            if state is None:
                return {
                    "project_path": str(project),
                    "is_running": False,
                    "phase": LoopPhase.IDLE.value,
                    "running_features": [],
                    "running_count": 0,
                    "max_concurrency": self._settings.max_concurrency,
                    "paused_due_to_failures": False,
                    "recent_failures": 0,
                }
            return self._project_status(state)

        projects = [self._project_status(state) for state in self._projects.values()]
        active = [
            state for state in self._projects.values()
            if state.phase is not LoopPhase.IDLE or state.running
        ]
        if any(state.phase is LoopPhase.RUNNING for state in active):
            phase = LoopPhase.RUNNING
        elif any(state.phase is LoopPhase.STOPPING for state in active):
            phase = LoopPhase.STOPPING
        else:
            phase = LoopPhase.IDLE
        return {
            "is_running": phase is LoopPhase.RUNNING,
            "phase": phase.value,
            "running_features": [fid for state in self._projects.values() for fid in state.running],
            "running_count": sum(state.running_count for state in self._projects.values()),
            "max_concurrency": sum(state.max_concurrency for state in active),
            "projects": projects,
        }

    def get_running_agents(self) -> list[dict[str, Any]]:
        return [
            handle.to_dict()
            for state in self._projects.values()
            for handle in state.running.values()
        ]

    async def reevaluate(self, project_path: Path | str) -> None:
        state = self._projects.get(self._normalize(project_path))
        if state is not None:
            await self._dispatch(state)

    notify_feature_changed = reevaluate

    # ------------------------------------------------------------------
    # dispatch
    # ------------------------------------------------------------------
    def _report_conflicts(
        self,
        state: ProjectAutoLoopState,
        result: ResolutionResult,
        features: dict[str, Feature],
    ) -> None:
        project = state.project_path
        for cycle in result.cycles:
            key = ("cycle", *cycle)
            if key in state.reported_conflicts:
                continue
            state.reported_conflicts.add(key)
            logger.warning(
                "Dependency cycle blocks features",
                extra={"project": str(project), "feature_ids": list(cycle)},
            )
            self._publish(
                EventType.ADMISSION_CONFLICT,
                project,
                reason="cycle",
                feature_ids=list(cycle),
            )
        for feature_id, missing in result.missing.items():
            if features[feature_id].status not in ADMISSIBLE_STATUSES:
                continue
            key = ("missing", feature_id, *missing)
            if key in state.reported_conflicts:
                continue
            state.reported_conflicts.add(key)
            logger.warning(
                "Feature depends on unknown features",
                extra={"project": str(project), "feature_id": feature_id, "missing": list(missing)},
            )
            self._publish(
                EventType.ADMISSION_CONFLICT,
                project,
                feature_id,
                reason="missing_dependency",
                missing=list(missing),
            )

    async def _dispatch(self, state: ProjectAutoLoopState) -> None:
        """Admit features while slots are free.

        Slots are reserved under the project lock; worktrees are acquired
        outside it so ``stop_auto_loop`` never waits on git or an init script.
        A round whose admissions failed frees those slots and looks again,
        skipping features already tried in this pass.
        """

        attempted: set[str] = set()
        while True:
            batch = await self._reserve(state, attempted)
            if not batch:
                return
            attempted.update(feature.id for feature in batch)
            started = failed = 0
            for feature in batch:
                handle = await self._admit(state, feature)
                if handle is not None:
                    started += 1
                elif state.phase is LoopPhase.RUNNING:
                    failed += 1
            if started:
                async with state.lock:
                    state.idle_reported = False
                    self._persist_state(state)
            if not failed or state.phase is not LoopPhase.RUNNING:
                return

    async def _reserve(
        self, state: ProjectAutoLoopState, exclude: set[str] | None = None
    ) -> list[Feature]:
        project = state.project_path
        async with state.lock:
            if state.phase is not LoopPhase.RUNNING:
                return []
            if state.occupied >= state.max_concurrency:
                return []
            try:
                features = self._store.list_features(project)
            except OSError:
                logger.exception("Failed to list features", extra={"project": str(project)})
                return []

            by_id = {feature.id: feature for feature in features}
            result = analyze(features)
            self._report_conflicts(state, result, by_id)

            batch: list[Feature] = []
            for feature_id in result.admissible:
                if state.occupied >= state.max_concurrency:
                    break
                if feature_id in state.running or feature_id in state.reserved:
                    continue
                if exclude and feature_id in exclude:
                    continue
                state.reserved.add(feature_id)
                batch.append(by_id[feature_id])

            if not batch and not state.busy and not state.idle_reported:
                state.idle_reported = True
                logger.info("Auto loop idle", extra={"project": str(project)})
                self._publish(EventType.AUTO_MODE_IDLE, project)
            return batch

    def _schedule_dispatch(self, state: ProjectAutoLoopState) -> None:
        task = asyncio.create_task(
            self._dispatch_in_background(state),
            name=f"automode:dispatch:{state.project_path.name}",
        )
        self._track(task, state.project_path)

    async def _dispatch_in_background(self, state: ProjectAutoLoopState) -> None:
        try:
            await self._dispatch(state)
        except Exception:
            logger.exception("Dispatch failed", extra={"project": str(state.project_path)})

    def _track(self, task: asyncio.Task, project: Path) -> None:
        self._tasks[task] = project
        task.add_done_callback(lambda finished: self._tasks.pop(finished, None))

    def _release_reservation(self, state: ProjectAutoLoopState, feature_id: str) -> None:
        state.reserved.discard(feature_id)
        if state.phase is LoopPhase.STOPPING and not state.busy:
            state.phase = LoopPhase.IDLE
            self._persist_state(state)

    async def _admit(
        self,
        state: ProjectAutoLoopState,
        feature: Feature,
        *,
        resume: bool = False,
    ) -> RunningAgentHandle | None:
        """Acquire a worktree for a reserved feature, then record its start.

        The caller has put ``feature.id`` in ``state.reserved``. A loop
        admission is withdrawn when the loop stopped before the worktree was
        ready; the feature then stays in the backlog.
        """

        project = state.project_path
        try:
            if not resume and state.phase is not LoopPhase.RUNNING:
                return None
            try:
                worktree = await self._worktrees.acquire(project, feature)
            except (WorktreeError, OSError) as exc:
                async with state.lock:
                    self._fail_admission(state, feature, exc)
                return None

            async with state.lock:
                if not resume and state.phase is not LoopPhase.RUNNING:
                    logger.info(
                        "Admission withdrawn after stop",
                        extra={"project": str(project), "feature_id": feature.id},
                    )
                    return None
                return self._start_run_locked(state, feature, worktree, resume=resume)
        finally:
            self._release_reservation(state, feature.id)

    def _fail_admission(
        self, state: ProjectAutoLoopState, feature: Feature, exc: WorktreeError | OSError
    ) -> None:
        project = state.project_path
        kind = exc.kind if isinstance(exc, WorktreeError) else VcsErrorKind.COMMAND_FAILED
        message = str(exc) or type(exc).__name__
        logger.warning(
            "Worktree acquisition failed",
            extra={"project": str(project), "feature_id": feature.id, "error": message},
        )
        self._update_feature(
            project,
            feature.id,
            {
                "status": FeatureStatus.FAILED,
                "error": message,
                "error_type": "vcs",
                "finished_at": self._clock(),
            },
        )
        self._publish(
            EventType.FEATURE_FAILED,
            project,
            feature.id,
            status=FeatureStatus.FAILED.value,
            error=message,
            error_class="vcs",
            vcs_error=kind.value,
        )
        if state.failures.record(message) and state.phase is LoopPhase.RUNNING:
            self._pause_locked(state, message, None)

    def _start_run_locked(
        self,
        state: ProjectAutoLoopState,
        feature: Feature,
        worktree: WorktreeHandle,
        *,
        resume: bool,
    ) -> RunningAgentHandle | None:
        project = state.project_path
        fields: dict[str, Any] = {
            "status": FeatureStatus.IN_PROGRESS,
            "started_at": self._clock(),
            "finished_at": None,
            "branch_name": worktree.branch,
            "worktree_path": str(worktree.path),
            "error": None,
            "error_type": None,
            "interrupted": False,
            "interrupted_at": None,
        }
        if not resume:
            fields["session_id"] = None
        updated = self._update_feature(project, feature.id, fields)
        if updated is None:
            return None

        profile = self._profiles.select(updated)
        provider_name = updated.provider or profile.provider or self._settings.default_provider
        handle = RunningAgentHandle(
            feature_id=updated.id,
            project_path=project,
            cancel_token=CancellationToken(),
            title=updated.display_title,
            description=updated.description,
            branch_name=worktree.branch,
            worktree_path=worktree.path,
            provider=provider_name,
            session_id=updated.session_id if resume else None,
        )
        state.running[updated.id] = handle
        self._publish(
            EventType.FEATURE_STARTED,
            project,
            updated.id,
            status=FeatureStatus.IN_PROGRESS.value,
            title=handle.title,
            branch=worktree.branch,
            worktree_path=str(worktree.path),
            provider=provider_name,
            resumed=resume,
        )
        task = asyncio.create_task(
            self._run_feature(state, handle, updated, profile, resume=resume),
            name=f"automode:{updated.id}",
        )
        handle.task = task
        self._track(task, project)
        return handle

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------
    async def _run_feature(
        self,
        state: ProjectAutoLoopState,
        handle: RunningAgentHandle,
        feature: Feature,
        profile: AgentProfile,
        *,
        resume: bool,
    ) -> None:
        # A CancelledError propagates without finalizing so the feature stays
        # in_progress and is reported by resume_interrupted after a restart.
        outcome = await self._execute_with_retries(state, handle, feature, profile, resume=resume)
        await self._finalize(state, handle, outcome)

    async def _execute_with_retries(
        self,
        state: ProjectAutoLoopState,
        handle: RunningAgentHandle,
        feature: Feature,
        profile: AgentProfile,
        *,
        resume: bool,
    ) -> RunOutcome:
        project = state.project_path
        token = handle.cancel_token
        attempt = 0
        while True:
            attempt += 1
            handle.attempt = attempt
            try:
                terminal = await self._execute_once(handle, feature, profile, resume=resume)
            except ProviderError as exc:
                error = exc
            except AutoModeValidationError as exc:
                error = ProviderError(str(exc), ErrorClass.FATAL)
            except Exception as exc:
                logger.exception(
                    "Unexpected provider failure",
                    extra={"project": str(project), "feature_id": feature.id},
                )
                message = str(exc) or type(exc).__name__
                return RunOutcome(
                    verdict=Verdict.FAILED, error=message, error_class=classify_error(exc)
                )
            else:
                if token.cancelled:
                    return RunOutcome(cancelled=True, cancel_reason=token.reason)
                if terminal is None:
                    error = ProviderError(
                        "provider stream ended without a result", ErrorClass.TRANSIENT
                    )
                elif terminal.verdict is Verdict.FAILED:
                    return RunOutcome(
                        verdict=Verdict.FAILED,
                        error=terminal.summary or "agent reported failure",
                        error_class=ErrorClass.FATAL,
                    )
                else:
                    return RunOutcome(verdict=terminal.verdict, summary=terminal.summary)

            if token.cancelled:
                return RunOutcome(cancelled=True, cancel_reason=token.reason)
            retries_used = attempt - 1
            if not error.retryable or retries_used >= self._settings.max_retry_attempts:
                return RunOutcome(
                    verdict=Verdict.FAILED,
                    error=str(error),
                    error_class=error.error_class,
                    retries_exhausted=error.retryable,
                )

            delay = min(
                self._settings.retry_base_delay * (2 ** retries_used),
                self._settings.retry_max_delay,
            )
            if error.retry_after:
                delay = min(max(delay, error.retry_after), self._settings.retry_max_delay)
            logger.info(
                "Retrying feature after provider error",
                extra={
                    "feature_id": feature.id,
                    "attempt": attempt + 1,
                    "delay": delay,
                    "error_class": error.error_class.value,
                },
            )
            self._publish(
                EventType.FEATURE_RETRYING,
                project,
                feature.id,
                attempt=attempt + 1,
                delay=delay,
                error=str(error),
                error_class=error.error_class.value,
                session_id=handle.session_id,
            )
            if await token.wait(delay):
                return RunOutcome(cancelled=True, cancel_reason=token.reason)
            resume = resume or handle.session_id is not None

    async def _execute_once(
        self,
        handle: RunningAgentHandle,
        feature: Feature,
        profile: AgentProfile,
        *,
        resume: bool,
    ) -> AgentTerminal | None:
        project = handle.project_path
        provider = self._providers.get(handle.provider)
        request = ExecutionRequest(
            feature=feature,
            project_path=project,
            worktree_path=handle.worktree_path or project,
            prompt=build_feature_prompt(
                profile,
                feature,
                project_path=project,
                resume=resume and handle.session_id is not None,
            ),
            model=feature.model or profile.model or self._settings.default_model,
            system_prompt=profile.system_prompt,
            resume_session_id=handle.session_id,
            require_approval=feature.require_approval,
        )

        async with aclosing(provider.execute(request, handle.cancel_token)) as stream:
            async for message in stream:
                if isinstance(message, AgentStarted):
                    self._record_session(handle, message.session_id)
                elif isinstance(message, AgentProgress):
                    self._publish(
                        EventType.FEATURE_PROGRESS,
                        project,
                        feature.id,
                        text=message.text[:_PROGRESS_TEXT_LIMIT],
                        kind=message.kind,
                    )
                elif isinstance(message, AgentTerminal):
                    self._record_session(handle, message.session_id)
                    return message
        return None

    def _record_session(self, handle: RunningAgentHandle, session_id: str | None) -> None:
        if not session_id or session_id == handle.session_id:
            return
        handle.session_id = session_id
        self._update_feature(handle.project_path, handle.feature_id, {"session_id": session_id})

    async def _finalize(
        self,
        state: ProjectAutoLoopState,
        handle: RunningAgentHandle,
        outcome: RunOutcome,
    ) -> bool:
        """Record a run's terminal state; returns False when it was already recorded."""

        project = state.project_path
        async with state.lock:
            if handle.finalized:
                return False
            handle.finalized = True
            state.running.pop(handle.feature_id, None)

            fields: dict[str, Any] = {"finished_at": self._clock()}
            if handle.session_id:
                fields["session_id"] = handle.session_id
            if outcome.cancelled:
                error = f"cancelled: {outcome.cancel_reason or 'stopped'}"
                fields.update(status=FeatureStatus.FAILED, error=error, error_type="cancelled")
                event_type = EventType.FEATURE_CANCELLED
                release = ReleaseOutcome.CANCELLED
            elif outcome.verdict is Verdict.COMPLETED:
                error = None
                fields.update(status=FeatureStatus.COMPLETED, error=None, error_type=None)
                event_type = EventType.FEATURE_COMPLETED
                release = ReleaseOutcome.COMPLETED
            elif outcome.verdict is Verdict.WAITING_APPROVAL:
                error = None
                fields.update(status=FeatureStatus.WAITING_APPROVAL, error=None, error_type=None)
                event_type = EventType.FEATURE_WAITING_APPROVAL
                release = ReleaseOutcome.WAITING_APPROVAL
            else:
                error = outcome.error or "agent run failed"
                error_class = outcome.error_class or ErrorClass.FATAL
                fields.update(status=FeatureStatus.FAILED, error=error, error_type=error_class.value)
                event_type = EventType.FEATURE_FAILED
                release = ReleaseOutcome.FAILED
            self._update_feature(project, handle.feature_id, fields)

        if handle.branch_name and handle.worktree_path:
            await self._worktrees.release(
                WorktreeHandle(
                    project_path=project,
                    branch=handle.branch_name,
                    path=handle.worktree_path,
                ),
                release,
                error=error,
            )

        async with state.lock:
            payload: dict[str, Any] = {
                "status": fields["status"].value,
                "session_id": handle.session_id,
                "branch": handle.branch_name,
                "runtime_seconds": handle.runtime_seconds(),
            }
            if error:
                payload["error"] = error
            if outcome.error_class:
                payload["error_class"] = outcome.error_class.value
            if outcome.summary:
                payload["summary"] = outcome.summary
            log = logger.warning if event_type is EventType.FEATURE_FAILED else logger.info
            log(
                "Feature finished",
                extra={
                    "project": str(project),
                    "feature_id": handle.feature_id,
                    "status": payload["status"],
                },
            )
            self._publish(event_type, project, handle.feature_id, **payload)

            if event_type is EventType.FEATURE_FAILED:
                should_pause = state.failures.record(error or "")
                if outcome.error_class is ErrorClass.RATE_LIMIT and outcome.retries_exhausted:
                    should_pause = True
                if should_pause and state.phase is LoopPhase.RUNNING:
                    self._pause_locked(state, error, outcome.error_class)
            elif event_type is not EventType.FEATURE_CANCELLED:
                state.failures.reset()

            if state.phase is LoopPhase.STOPPING and not state.busy:
                state.phase = LoopPhase.IDLE
            self._persist_state(state)

        self._schedule_dispatch(state)
        return True

    def _pause_locked(
        self, state: ProjectAutoLoopState, error: str | None, error_class: ErrorClass | None
    ) -> None:
        state.paused_due_to_failures = True
        state.phase = LoopPhase.STOPPING if state.busy else LoopPhase.IDLE
        failure_count = state.failures.count
        logger.warning(
            "Pausing auto loop after repeated failures",
            extra={
                "project": str(state.project_path),
                "failure_count": failure_count,
                "error_class": error_class.value if error_class else None,
            },
        )
        self._publish(
            EventType.AUTO_MODE_PAUSED_FAILURES,
            state.project_path,
            failure_count=failure_count,
            error=error,
            error_class=error_class.value if error_class else None,
            running_count=state.running_count,
        )
        self._persist_state(state)

    # ------------------------------------------------------------------
    # feature-level operations
    # ------------------------------------------------------------------
    async def stop_feature(
        self,
        feature_id: str,
        *,
        project_path: Path | str | None = None,
        reason: str = "stopped by user",
    ) -> bool:
        """Cancel a running feature, waiting up to the grace period for it to exit."""

        located = self._find_handle(feature_id, project_path)
        if located is None:
            return False
        state, handle = located
        handle.cancel_token.cancel(reason)

        task = handle.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            done, _ = await asyncio.wait({task}, timeout=self._settings.cancel_grace_seconds)
            if not done and handle.finalized:
                # The run is already recording its own terminal state.
                await asyncio.wait({task})
            elif not done:
                logger.warning(
                    "Feature did not stop within grace period",
                    extra={"feature_id": feature_id, "grace": self._settings.cancel_grace_seconds},
                )
                task.cancel()

        await self._finalize(state, handle, RunOutcome(cancelled=True, cancel_reason=reason))
        return True

    async def resume_interrupted(self, project_path: Path | str) -> InterruptedReport:
        """Flag features left in progress by a dead process; nothing is restarted."""

        project = self._normalize(project_path)
        state = self._projects.get(project)
        live = set(state.running) if state is not None else set()
        previous = self._execution_state.load(project)
        report = InterruptedReport(
            project_path=str(project),
            auto_loop_was_running=previous.auto_loop_was_running if previous else False,
            max_concurrency=previous.max_concurrency if previous else None,
            previously_running=previous.running_feature_ids if previous else [],
        )

        for feature in self._store.list_by_status(project, FeatureStatus.IN_PROGRESS):
            if feature.id in live:
                continue
            if not feature.interrupted:
                updated = self._update_feature(
                    project,
                    feature.id,
                    {"interrupted": True, "interrupted_at": self._clock()},
                )
                feature = updated or feature
                self._publish(
                    EventType.FEATURE_INTERRUPTED,
                    project,
                    feature.id,
                    status=FeatureStatus.IN_PROGRESS.value,
                    session_id=feature.session_id,
                    branch=feature.branch_name,
                )
            report.features.append(
                InterruptedFeature(
                    feature_id=feature.id,
                    title=feature.display_title,
                    session_id=feature.session_id,
                    branch_name=feature.branch_name,
                    worktree_path=feature.worktree_path,
                    started_at=feature.started_at.isoformat() if feature.started_at else None,
                )
            )

        if report.features:
            logger.warning(
                "Interrupted features found",
                extra={"project": str(project), "feature_ids": report.feature_ids},
            )
        return report

    async def resume_feature(self, project_path: Path | str, feature_id: str) -> dict[str, Any]:
        """Run an interrupted or failed feature again, resuming its provider session."""

        project = self._normalize(project_path)
        state = self._ensure_state(project)
        async with state.lock:
            if feature_id in state.running or feature_id in state.reserved:
                raise AdmissionError(f"Feature '{feature_id}' is already running")
            if state.occupied >= state.max_concurrency:
                raise AdmissionError(
                    f"Concurrency limit reached ({state.occupied}/{state.max_concurrency})"
                )
            feature = self._store.get(project, feature_id)
            if feature is None:
                raise FeatureNotFoundError(f"Feature '{feature_id}' not found")
            if feature.status not in (FeatureStatus.IN_PROGRESS, FeatureStatus.FAILED):
                raise AdmissionError(
                    f"Feature '{feature_id}' is {feature.status.value}; only interrupted or failed features can be resumed"
                )
            state.reserved.add(feature_id)

        handle = await self._admit(state, feature, resume=True)
        if handle is None:
            raise AdmissionError(f"Feature '{feature_id}' could not be started")
        self._publish(
            EventType.FEATURE_RESUMED,
            project,
            feature_id,
            status=FeatureStatus.IN_PROGRESS.value,
            session_id=handle.session_id,
        )
        self._persist_state(state)
        return handle.to_dict()

    async def discard_interrupted(self, project_path: Path | str, feature_id: str) -> dict[str, Any]:
        """Return an interrupted or failed feature to the backlog, dropping its session."""

        project = self._normalize(project_path)
        state = self._projects.get(project)
        if state is not None and (feature_id in state.running or feature_id in state.reserved):
            raise AdmissionError(f"Feature '{feature_id}' is running; stop it first")
        feature = self._store.get(project, feature_id)
        if feature is None:
            raise FeatureNotFoundError(f"Feature '{feature_id}' not found")
        if feature.status not in (FeatureStatus.IN_PROGRESS, FeatureStatus.FAILED):
            raise AdmissionError(
                f"Feature '{feature_id}' is {feature.status.value}; nothing to discard"
            )

        updated = self._store.update(
            project,
            feature_id,
            {
                "status": FeatureStatus.BACKLOG,
                "session_id": None,
                "interrupted": False,
                "interrupted_at": None,
                "error": None,
                "error_type": None,
                "started_at": None,
                "finished_at": None,
            },
        )
        self._publish(
            EventType.FEATURE_DISCARDED, project, feature_id, status=FeatureStatus.BACKLOG.value
        )
        if state is not None:
            await self._dispatch(state)
        return updated.to_record()

    async def merge_feature(
        self, project_path: Path | str, feature_id: str, *, squash: bool = False
    ) -> dict[str, Any]:
        """Merge a finished feature's branch into the main worktree and mark it verified."""

        project = self._normalize(project_path)
        if self._find_handle(feature_id, project) is not None:
            raise AdmissionError(f"Feature '{feature_id}' is still running")
        feature = self._store.get(project, feature_id)
        if feature is None:
            raise FeatureNotFoundError(f"Feature '{feature_id}' not found")
        if feature.status not in (
            FeatureStatus.COMPLETED,
            FeatureStatus.WAITING_APPROVAL,
            FeatureStatus.VERIFIED,
        ):
            raise AdmissionError(
                f"Feature '{feature_id}' is {feature.status.value}; only finished features can be merged"
            )

        branch = feature.branch_name or self._worktrees.branch_for(feature)
        head = await self._worktrees.merge(
            project,
            branch,
            squash=squash,
            message=f"Merge feature {feature.id}: {feature.display_title}",
        )
        worktree_path = (
            Path(feature.worktree_path)
            if feature.worktree_path
            else self._worktrees.worktree_path(project, branch)
        )
        await self._worktrees.release(
            WorktreeHandle(project_path=project, branch=branch, path=worktree_path),
            ReleaseOutcome.MERGED,
        )
        updated = self._store.update(
            project,
            feature_id,
            {"status": FeatureStatus.VERIFIED, "worktree_path": None, "branch_name": None},
        )
        self._publish(
            EventType.FEATURE_MERGED,
            project,
            feature_id,
            status=FeatureStatus.VERIFIED.value,
            branch=branch,
            commit=head,
            squash=squash,
        )
        await self.reevaluate(project)
        return {"feature": updated.to_record(), "commit": head, "branch": branch}

    async def verify_feature(self, project_path: Path | str, feature_id: str) -> dict[str, Any]:
        project = self._normalize(project_path)
        feature = self._store.get(project, feature_id)
        if feature is None:
            raise FeatureNotFoundError(f"Feature '{feature_id}' not found")
        if feature.status not in (FeatureStatus.COMPLETED, FeatureStatus.WAITING_APPROVAL):
            raise AdmissionError(
                f"Feature '{feature_id}' is {feature.status.value}; only completed or approval-pending features can be verified"
            )
        updated = self._store.update(project, feature_id, {"status": FeatureStatus.VERIFIED})
        self._publish(
            EventType.FEATURE_VERIFIED, project, feature_id, status=FeatureStatus.VERIFIED.value
        )
        await self.reevaluate(project)
        return updated.to_record()

    async def drain(self, project_path: Path | str | None = None, timeout: float | None = None) -> int:
        """Wait for in-flight runs (including ones they trigger); returns how many remain."""

        project = self._normalize(project_path) if project_path is not None else None
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            pending = [
                task
                for task, owner in list(self._tasks.items())
                if not task.done() and (project is None or owner == project)
            ]
            if not pending:
                return 0
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return len(pending)
            await asyncio.wait(pending, timeout=remaining)


__all__ = [
    "AutoModeScheduler",
    "InterruptedFeature",
    "InterruptedReport",
    "RunOutcome",
]
