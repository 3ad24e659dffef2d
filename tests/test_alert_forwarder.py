from __future__ import annotations

import argparse
import importlib.util
import json
from datetime import datetime, timezone
from types import SimpleNamespace
from pathlib import Path

from automode_mcp.storage import ChromaUnavailableError


def _load_module():
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "automode_alert_forwarder.py"
    spec = importlib.util.spec_from_file_location("automode_alert_forwarder_test_module", module_path)
    assert spec and spec.loader
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _args(**overrides) -> argparse.Namespace:
    values = {
        "types": ["feature_failed"],
        "project": None,
        "feature_id": None,
        "format": "json",
        "output": None,
        "limit": None,
    }
    values.update(overrides)
    return argparse.Namespace(**values)


def _event(index: int, *, project: str = "/repo", feature_id: str = "f1", event_type="feature_failed"):
    return SimpleNamespace(
        id=f"evt-{index}",
        event_type=event_type,
        metadata={
            "project_path": project,
            "feature_id": feature_id,
            "error": "429 too many requests",
            "error_class": "rate_limit",
        },
        timestamp=datetime(2025, 1, 1, 0, index, tzinfo=timezone.utc),
    )


class StubStore:
    def __init__(self, events_by_type):
        self.events_by_type = events_by_type
        self.queries = []

    def search_events(self, *, filters):
        self.queries.append(filters)
        return list(self.events_by_type.get(filters["event_type"], []))


def test_forward_alerts_prints_json(monkeypatch, capsys):
    module = _load_module()
    store = StubStore({"feature_failed": [_event(0)]})
    monkeypatch.setattr(module, "load_store", lambda _settings: store)

    exit_code = module.forward_alerts(_args())

    assert exit_code == 0
    assert store.queries == [{"event_type": "feature_failed"}]
    data = json.loads(capsys.readouterr().out)
    assert data[0]["feature_id"] == "f1"
    assert data[0]["error_class"] == "rate_limit"


def test_forward_alerts_defaults_to_all_alert_types(monkeypatch, capsys):
    module = _load_module()
    store = StubStore(
        {
            "feature_failed": [_event(2)],
            "auto_mode_paused_failures": [_event(1, event_type="auto_mode_paused_failures")],
        }
    )
    monkeypatch.setattr(module, "load_store", lambda _settings: store)

    exit_code = module.forward_alerts(_args(types=None))

    assert exit_code == 0
    assert [query["event_type"] for query in store.queries] == list(module.ALERT_EVENT_TYPES)
    data = json.loads(capsys.readouterr().out)
    assert [item["type"] for item in data] == ["auto_mode_paused_failures", "feature_failed"]


def test_forward_alerts_writes_text(monkeypatch, tmp_path):
    module = _load_module()
    monkeypatch.setattr(module, "load_store", lambda _settings: StubStore({"feature_failed": [_event(0)]}))

    output_file = tmp_path / "alerts.txt"
    exit_code = module.forward_alerts(_args(format="text", output=str(output_file)))

    assert exit_code == 0
    contents = output_file.read_text(encoding="utf-8")
    assert "type=feature_failed" in contents
    assert "feature=f1" in contents


def test_forward_alerts_filters_project_and_feature(monkeypatch, tmp_path, capsys):
    module = _load_module()
    project = str(tmp_path.resolve())
    events = [
        _event(0, project=project, feature_id="f1"),
        _event(1, project=project, feature_id="f2"),
        _event(2, project="/elsewhere", feature_id="f1"),
    ]
    monkeypatch.setattr(module, "load_store", lambda _settings: StubStore({"feature_failed": events}))

    exit_code = module.forward_alerts(_args(project=str(tmp_path), feature_id="f1"))

    assert exit_code == 0
    output = json.loads(capsys.readouterr().out)
    assert [item["event_id"] for item in output] == ["evt-0"]


def test_forward_alerts_honors_limit(monkeypatch, capsys):
    module = _load_module()
    events = [_event(index) for index in range(5)]
    monkeypatch.setattr(module, "load_store", lambda _settings: StubStore({"feature_failed": events}))

    exit_code = module.forward_alerts(_args(limit=2))

    assert exit_code == 0
    data = json.loads(capsys.readouterr().out)
    assert [item["event_id"] for item in data] == ["evt-3", "evt-4"]


def test_forward_alerts_reports_missing_chroma(monkeypatch, capsys):
    module = _load_module()

    class MissingStore:
        def search_events(self, *, filters):
            raise ChromaUnavailableError("chromadb package is not installed")

    monkeypatch.setattr(module, "load_store", lambda _settings: MissingStore())

    assert module.forward_alerts(_args()) == 1
    assert "Chroma unavailable" in capsys.readouterr().err


def test_build_parser_collects_types():
    module = _load_module()

    args = module.build_parser().parse_args(
        ["--type", "feature_failed", "--type", "feature_interrupted", "--limit", "5"]
    )

    assert args.types == ["feature_failed", "feature_interrupted"]
    assert args.limit == 5
    assert args.format == "json"
