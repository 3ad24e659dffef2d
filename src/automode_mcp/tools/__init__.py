"""Tool registration for the auto-mode MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fastmcp import Context, FastMCP

from ..config import AutomodeSettings
from ..events.sink import MemoryEventSink
from ..features.models import FeatureStatus
from ..features.store import FileFeatureStore
from ..profiles.loader import ProfileCatalog
from ..scheduling.resolver import analyze
from ..scheduling.scheduler import AutoModeScheduler
from ..storage.chroma import ChromaStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    start_auto_loop: Any
    stop_auto_loop: Any
    auto_mode_status: Any
    running_agents: Any
    stop_feature: Any
    resume_interrupted: Any
    resume_feature: Any
    discard_interrupted: Any
    merge_feature: Any
    verify_feature: Any
    create_feature: Any
    update_feature: Any
    list_features: Any
    list_agent_profiles: Any
    project_events: Any
    feature_history: Any


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP context logger when one is attached, else the module logger."""

    payload = extra or {}
    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        log_method = getattr(ctx_logger, level, None) if ctx_logger is not None else None
        if callable(log_method):
            log_method(message, extra=payload)
            return
    getattr(logger, level, logger.info)(message, extra=payload)


def register_tools(
    server: FastMCP,
    *,
    scheduler: AutoModeScheduler,
    feature_store: FileFeatureStore,
    profiles: ProfileCatalog,
    settings: AutomodeSettings,
    chroma_store: ChromaStore | None = None,
    memory_sink: MemoryEventSink | None = None,
) -> ToolHandles:
    """Register the auto-mode tools on the server."""

    async def _start_auto_loop(
        project_path: str,
        max_concurrency: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start the auto loop for a project; calling it again is a no-op."""

        result = await scheduler.start_auto_loop(project_path, max_concurrency)
        _emit_log(
            context,
            "info",
            "Auto loop start requested",
            extra={"project": result["project_path"], "already_running": result["already_running"]},
        )
        return result

    async def _stop_auto_loop(project_path: str, context: Context | None = None) -> dict[str, Any]:
        result = await scheduler.stop_auto_loop(project_path)
        _emit_log(
            context,
            "info",
            "Auto loop stop requested",
            extra={"project": result["project_path"], "running_count": result["running_count"]},
        )
        return result

    def _auto_mode_status(project_path: str | None = None) -> dict[str, Any]:
        return scheduler.get_status(project_path)

    def _running_agents() -> dict[str, Any]:
        agents = scheduler.get_running_agents()
        return {"agents": agents, "count": len(agents)}

    async def _stop_feature(
        feature_id: str,
        project_path: str | None = None,
        reason: str = "stopped by user",
        context: Context | None = None,
    ) -> dict[str, Any]:
        stopped = await scheduler.stop_feature(feature_id, project_path=project_path, reason=reason)
        _emit_log(
            context,
            "info" if stopped else "debug",
            "Stop feature requested",
            extra={"feature_id": feature_id, "stopped": stopped},
        )
        return {"feature_id": feature_id, "stopped": stopped}

    async def _resume_interrupted(project_path: str) -> dict[str, Any]:
        report = await scheduler.resume_interrupted(project_path)
        return report.to_dict()

    async def _resume_feature(project_path: str, feature_id: str) -> dict[str, Any]:
        return await scheduler.resume_feature(project_path, feature_id)

    async def _discard_interrupted(project_path: str, feature_id: str) -> dict[str, Any]:
        return await scheduler.discard_interrupted(project_path, feature_id)

    async def _merge_feature(
        project_path: str, feature_id: str, squash: bool = False
    ) -> dict[str, Any]:
        return await scheduler.merge_feature(project_path, feature_id, squash=squash)

    async def _verify_feature(project_path: str, feature_id: str) -> dict[str, Any]:
        return await scheduler.verify_feature(project_path, feature_id)

    async def _create_feature(
        project_path: str,
        description: str,
        title: str | None = None,
        dependencies: list[str] | None = None,
        priority: int | None = None,
        category: str | None = None,
        feature_id: str | None = None,
        provider: str | None = None,
        model: str | None = None,
        require_approval: bool = False,
    ) -> dict[str, Any]:
        """Add a backlog feature and let a running loop pick it up."""

        data: dict[str, Any] = {
            "description": description,
            "title": title,
            "dependencies": dependencies or [],
            "priority": priority,
            "category": category,
            "provider": provider,
            "model": model,
            "require_approval": require_approval,
        }
        if feature_id:
            data["id"] = feature_id
        feature = feature_store.create(
            project_path, {key: value for key, value in data.items() if value is not None}
        )
        await scheduler.notify_feature_changed(project_path)
        return feature.to_record()

    async def _update_feature(
        project_path: str, feature_id: str, fields: dict[str, Any]
    ) -> dict[str, Any]:
        feature = feature_store.update(project_path, feature_id, fields)
        await scheduler.notify_feature_changed(project_path)
        return feature.to_record()

    def _list_features(project_path: str, status: str | None = None) -> dict[str, Any]:
        """List features with their resolved order and any blocked dependencies."""

        features = feature_store.list_features(project_path)
        result = analyze(features)
        wanted = FeatureStatus(status) if status else None
        by_id = {feature.id: feature for feature in features}
        entries = []
        for feature_id in result.order:
            feature = by_id[feature_id]
            if wanted is not None and feature.status is not wanted:
                continue
            record = feature.to_record()
            record["blockedBy"] = list(result.blocked.get(feature_id, ()))
            record["missingDependencies"] = list(result.missing.get(feature_id, ()))
            record["inCycle"] = feature_id in result.cyclic_ids
            entries.append(record)
        return {
            "features": entries,
            "order": result.order,
            "admissible": result.admissible,
            "cycles": [list(cycle) for cycle in result.cycles],
        }

    def _list_agent_profiles() -> dict[str, Any]:
        catalog = [
            {
                "id": profile.id,
                "title": profile.title,
                "provider": profile.provider,
                "model": profile.model,
                "categories": profile.categories,
            }
            for profile in profiles.profiles.values()
        ]
        return {
            "profiles": catalog,
            "default_profile": profiles.default_profile,
            "default_provider": settings.default_provider,
        }

    def _project_events(
        project_path: str,
        feature_id: str | None = None,
        event_type: str | None = None,
        limit: int = 50,
    ) -> dict[str, Any]:
        """Return recent auto-mode events, from Chroma when persistence is enabled."""

        project = str(Path(project_path).expanduser().resolve())
        if chroma_store is not None:
            events = chroma_store.fetch_project_events(
                project, feature_id=feature_id, event_type=event_type, limit=limit
            )
            return {
                "source": "chroma",
                "events": [
                    {
                        "id": event.id,
                        "type": event.event_type,
                        "feature_id": event.metadata.get("feature_id"),
                        "timestamp": event.timestamp.isoformat(),
                        "payload": event.body,
                    }
                    for event in events
                ],
            }
        if memory_sink is None:
            return {"source": "none", "events": []}
        events = [
            event
            for event in memory_sink.events(project, feature_id=feature_id)
            if event_type is None or event.type.value == event_type
        ]
        return {"source": "memory", "events": [event.to_dict() for event in events[-limit:]]}

    def _feature_history(project_path: str) -> dict[str, Any]:
        if chroma_store is None:
            raise RuntimeError("Chroma persistence is unavailable; no feature history recorded")
        records = chroma_store.replay_features(str(Path(project_path).expanduser().resolve()))
        return {"features": [record.to_dict() for record in records]}

    tool_start = server.tool(
        name="start_auto_loop",
        description="Start autonomous execution of backlog features for a project.",
    )(_start_auto_loop)
    tool_stop = server.tool(
        name="stop_auto_loop",
        description="Stop admitting new features; running features finish on their own.",
    )(_stop_auto_loop)
    tool_status = server.tool(
        name="auto_mode_status",
        description="Report loop phase, running features and concurrency for one or all projects.",
    )(_auto_mode_status)
    tool_running = server.tool(
        name="running_agents",
        description="List every feature currently executing with its branch, provider and runtime.",
    )(_running_agents)
    tool_stop_feature = server.tool(
        name="stop_feature",
        description="Cancel a running feature and mark it failed.",
    )(_stop_feature)
    tool_resume_interrupted = server.tool(
        name="resume_interrupted",
        description="Report features left in progress by a previous process without restarting them.",
    )(_resume_interrupted)
    tool_resume_feature = server.tool(
        name="resume_feature",
        description="Restart an interrupted or failed feature, resuming its agent session.",
    )(_resume_feature)
    tool_discard = server.tool(
        name="discard_interrupted",
        description="Return an interrupted or failed feature to the backlog.",
    )(_discard_interrupted)
    tool_merge = server.tool(
        name="merge_feature",
        description="Merge a finished feature branch into the project and remove its worktree.",
    )(_merge_feature)
    tool_verify = server.tool(
        name="verify_feature",
        description="Mark a completed or approval-pending feature as verified.",
    )(_verify_feature)
    tool_create = server.tool(
        name="create_feature",
        description="Add a feature to the project backlog.",
    )(_create_feature)
    tool_update = server.tool(
        name="update_feature",
        description="Update fields of an existing feature.",
    )(_update_feature)
    tool_list = server.tool(
        name="list_features",
        description="List features in dependency order with blocking information.",
    )(_list_features)
    tool_profiles = server.tool(
        name="list_agent_profiles",
        description="List the agent profiles available for feature execution.",
    )(_list_agent_profiles)
    tool_events = server.tool(
        name="project_events",
        description="Fetch recent auto-mode events for a project.",
    )(_project_events)
    tool_history = server.tool(
        name="feature_history",
        description="Rebuild each feature's last known status from the persisted event history.",
    )(_feature_history)

    return ToolHandles(
        start_auto_loop=tool_start,
        stop_auto_loop=tool_stop,
        auto_mode_status=tool_status,
        running_agents=tool_running,
        stop_feature=tool_stop_feature,
        resume_interrupted=tool_resume_interrupted,
        resume_feature=tool_resume_feature,
        discard_interrupted=tool_discard,
        merge_feature=tool_merge,
        verify_feature=tool_verify,
        create_feature=tool_create,
        update_feature=tool_update,
        list_features=tool_list,
        list_agent_profiles=tool_profiles,
        project_events=tool_events,
        feature_history=tool_history,
    )


__all__ = ["ToolHandles", "register_tools"]
