from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

import automode_mcp.server as server_module
from automode_mcp.config import AutomodeSettings
from automode_mcp.features import FileFeatureStore
from automode_mcp.profiles import AgentProfile, ProfileCatalog
from automode_mcp.providers import MockProvider, ProviderRegistry
from automode_mcp.server import create_server


class StubFastMCP:
    def __init__(self, *args, **kwargs):
        self.kwargs = kwargs
        self.tools: dict[str, object] = {}
        self.resources: dict[str, object] = {}

    def tool(self, *args, **kwargs):
        def decorator(fn):
            self.tools[kwargs.get("name") or fn.__name__] = fn
            return fn

        return decorator

    def resource(self, uri, **kwargs):
        def decorator(fn):
            self.resources[uri] = fn
            return fn

        return decorator

    def run(self):  # pragma: no cover - not used in tests
        return None


class StubChromaStore:
    def __init__(self) -> None:
        self.events: list[SimpleNamespace] = []

    def ping(self) -> bool:
        return True

    def record_event(self, *, session_id, event_type, body, metadata=None, timestamp=None):
        event = SimpleNamespace(
            id=f"{session_id}:{len(self.events) + 1}",
            session_id=session_id,
            event_type=event_type,
            body=body,
            metadata=metadata or {},
            timestamp=timestamp or datetime.now(timezone.utc),
        )
        self.events.append(event)
        return event

    def search_events(self, *args, **kwargs):
        return list(self.events)


@pytest.fixture(autouse=True)
def stub_fastmcp(monkeypatch):
    monkeypatch.setattr(server_module, "FastMCP", StubFastMCP)


def _registry() -> ProviderRegistry:
    registry = ProviderRegistry(default="mock")
    registry.register("mock", MockProvider())
    return registry


def _profiles() -> ProfileCatalog:
    profile = AgentProfile(id="backend", title="Backend", system_prompt="Ship APIs", provider="mock")
    return ProfileCatalog({"backend": profile}, default_profile="backend")


def _settings(tmp_path: Path, *projects: Path) -> AutomodeSettings:
    return AutomodeSettings(
        default_provider="mock",
        chroma_persist_path=tmp_path / "chroma",
        project_paths=[str(project) for project in projects],
    )


def test_create_server_runs_startup_recovery(tmp_path: Path) -> None:
    project = tmp_path / "project"
    project.mkdir()
    store = FileFeatureStore()
    store.create(project, {"id": "a", "description": "A", "status": "in_progress", "session_id": "sess-a"})
    store.create(project, {"id": "b", "description": "B"})
    chroma = StubChromaStore()

    server = create_server(
        _settings(tmp_path, project),
        providers=_registry(),
        feature_store=store,
        chroma_store=chroma,  # type: ignore[arg-type]
        profiles=_profiles(),
    )

    reports = server.recovery_reports
    assert len(reports) == 1
    assert reports[0]["project_path"] == str(project.resolve())
    assert reports[0]["count"] == 1
    assert reports[0]["interrupted"][0]["feature_id"] == "a"
    assert reports[0]["interrupted"][0]["session_id"] == "sess-a"

    feature = store.get(project, "a")
    assert feature.interrupted is True
    assert store.get(project, "b").status.value == "backlog"

    assert [event.event_type for event in chroma.events] == ["feature_interrupted"]
    assert chroma.events[0].metadata["feature_id"] == "a"
    assert server.chroma_metadata["available"] is True
    assert "start_auto_loop" in server.tools
    assert server.tool_handles.start_auto_loop is server.tools["start_auto_loop"]


def test_startup_recovery_with_empty_project(tmp_path: Path) -> None:
    missing = tmp_path / "missing"
    chroma = StubChromaStore()

    server = create_server(
        _settings(tmp_path, missing),
        providers=_registry(),
        chroma_store=chroma,  # type: ignore[arg-type]
        profiles=_profiles(),
    )

    report = server.recovery_reports[0]
    assert report["project_path"] == str(missing.resolve())
    assert report["count"] == 0
    assert report["auto_loop_was_running"] is False
    assert chroma.events == []


def test_status_resource_payload(tmp_path: Path) -> None:
    project = tmp_path / "project"
    project.mkdir()
    store = FileFeatureStore()
    store.create(project, {"id": "a", "description": "A", "status": "in_progress"})

    server = create_server(
        _settings(tmp_path, project),
        providers=_registry(),
        feature_store=store,
        chroma_store=StubChromaStore(),  # type: ignore[arg-type]
        profiles=_profiles(),
    )

    status_fn = server.resources["resource://automode/status"]
    payload = json.loads(status_fn(SimpleNamespace(request_id="req-1")))

    assert payload["request_id"] == "req-1"
    assert payload["profiles"] == {
        "count": 1,
        "ids": ["backend"],
        "default": "backend",
        "error": None,
    }
    assert payload["providers"] == {"default": "mock", "registered": ["mock"]}
    assert payload["storage"]["chroma"]["available"] is True
    assert payload["storage"]["recent_events"] == [{"type": "feature_interrupted", "feature_id": "a"}]
    assert payload["recovery"]["interrupted_count"] == 1
    assert payload["running_agents"] == []


def test_status_resource_without_chroma_uses_memory(monkeypatch, tmp_path: Path) -> None:
    class MissingChroma:
        def __init__(self, *_args, **_kwargs):
            raise server_module.ChromaUnavailableError("chromadb package is not installed")

    monkeypatch.setattr(server_module, "ChromaStore", MissingChroma)
    project = tmp_path / "project"
    project.mkdir()
    store = FileFeatureStore()
    store.create(project, {"id": "a", "description": "A", "status": "in_progress"})

    server = create_server(
        _settings(tmp_path, project),
        providers=_registry(),
        feature_store=store,
        profiles=_profiles(),
    )

    assert server.chroma_store is None
    assert server.chroma_metadata["error"] == "chromadb package is not installed"
    payload = json.loads(server.resources["resource://automode/status"](SimpleNamespace()))
    assert payload["storage"]["recent_events"] == [{"type": "feature_interrupted", "feature_id": "a"}]
    assert payload["request_id"] is None
