"""FastMCP server bootstrap for the auto-mode orchestrator."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import AutomodeSettings, get_settings
from .errors import AutoModeValidationError
from .events import ChromaEventSink, CompositeEventSink, LoggingEventSink, MemoryEventSink
from .features import FileFeatureStore
from .profiles import ProfileCatalog, ProfileLoadError
from .providers import ProviderRegistry, create_default_registry
from .scheduling import AutoModeScheduler
from .storage import ChromaStore, ChromaUnavailableError
from .tools import register_tools
from .worktrees import WorktreeManager


def configure_logging(level: str) -> None:
    """Configure root logging for the auto-mode server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def create_server(
    settings: Optional[AutomodeSettings] = None,
    *,
    providers: ProviderRegistry | None = None,
    feature_store: FileFeatureStore | None = None,
    chroma_store: ChromaStore | None = None,
    worktrees: WorktreeManager | None = None,
    profiles: ProfileCatalog | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server, its scheduler and the startup recovery pass."""

    settings = settings or get_settings()
    logger = logging.getLogger(__name__)

    profile_error: str | None = None
    if profiles is None:
        try:
            profiles = ProfileCatalog.from_paths(
                settings.profile_paths, default_profile=settings.default_profile
            )
        except ProfileLoadError as exc:
            profile_error = str(exc)
            logger.warning("Agent profiles failed to load", extra={"error": profile_error})
            profiles = ProfileCatalog(default_profile=settings.default_profile)

    providers = providers or create_default_registry(settings)
    feature_store = feature_store or FileFeatureStore()
    worktrees = worktrees or WorktreeManager.from_settings(settings)

    chroma_metadata = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "automode_events",
        "error": None,
    }
    if chroma_store is None:
        try:
            chroma_store = ChromaStore(settings.chroma_persist_path)
            chroma_store.ping()
        except ChromaUnavailableError as exc:
            chroma_metadata["error"] = str(exc)
            chroma_store = None
    if chroma_store is not None:
        chroma_metadata["available"] = True

    memory_sink = MemoryEventSink()
    sinks = [LoggingEventSink(), memory_sink]
    if chroma_store is not None:
        sinks.append(ChromaEventSink(chroma_store))

    scheduler = AutoModeScheduler(
        feature_store,
        worktrees,
        providers,
        CompositeEventSink(sinks),
        settings,
        profiles=profiles,
    )

    server = FastMCP(
        name="Auto-Mode MCP",
        version=__version__,
        instructions=(
            "Auto-Mode runs a project's backlog features autonomously: each feature executes "
            "in its own git worktree once its dependencies succeed, under a per-project "
            "concurrency limit. Use the tools to start and stop the loop, inspect running "
            "agents, and recover work interrupted by a restart."
        ),
    )

    handles = register_tools(
        server,
        scheduler=scheduler,
        feature_store=feature_store,
        profiles=profiles,
        settings=settings,
        chroma_store=chroma_store,
        memory_sink=memory_sink,
    )

    recovery_reports: list[dict[str, Any]] = []
    for project_path in settings.project_paths:
        try:
            report = _run_sync(scheduler.resume_interrupted(project_path))
        except (AutoModeValidationError, OSError) as exc:
            logger.warning(
                "Startup recovery failed",
                extra={"project": str(project_path), "error": str(exc)},
            )
            recovery_reports.append(
                {"project_path": str(project_path), "error": str(exc), "interrupted": [], "count": 0}
            )
            continue
        recovery_reports.append(report.to_dict())

    @server.resource(
        "resource://automode/status",
        name="automode_status",
        title="Auto-Mode Status",
        description="Current scheduler, provider and storage state of the auto-mode server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        storage_error = None
        recent_events: list[dict[str, Any]] = []
        if chroma_store is not None:
            try:
                recent_events = [
                    {"type": event.event_type, "feature_id": event.metadata.get("feature_id")}
                    for event in chroma_store.search_events()[-5:]
                ]
            except Exception as exc:
                storage_error = str(exc)
        else:
            recent_events = [
                {"type": event.type.value, "feature_id": event.feature_id}
                for event in memory_sink.events()[-5:]
            ]

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "auto_mode": scheduler.get_status(),
            "running_agents": scheduler.get_running_agents(),
            "profiles": {
                "count": len(profiles.profiles),
                "ids": sorted(profiles.profiles),
                "default": profiles.default_profile,
                "error": profile_error,
            },
            "providers": {
                "default": settings.default_provider,
                "registered": providers.names(),
            },
            "storage": {
                "chroma": chroma_metadata,
                "recent_events": recent_events,
                "error": storage_error,
            },
            "recovery": {
                "projects": recovery_reports,
                "interrupted_count": sum(report.get("count", 0) for report in recovery_reports),
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "scheduler", scheduler)
    setattr(server, "feature_store", feature_store)
    setattr(server, "worktree_manager", worktrees)
    setattr(server, "provider_registry", providers)
    setattr(server, "profile_catalog", profiles)
    setattr(server, "chroma_store", chroma_store)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "memory_sink", memory_sink)
    setattr(server, "recovery_reports", recovery_reports)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the auto-mode MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Auto-Mode MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "default_provider": settings.default_provider,
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
            "projects": [str(path) for path in settings.project_paths],
        },
    )
    server.run()


if __name__ == "__main__":
    main()
