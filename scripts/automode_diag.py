"""Auto-mode diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from automode_mcp.config import AutomodeSettings
from automode_mcp.features import FeatureStatus, FileFeatureStore
from automode_mcp.scheduling import ExecutionStateStore, analyze
from automode_mcp.storage import ChromaStore, ChromaUnavailableError
from automode_mcp.worktrees import read_all_metadata


def load_store(settings: AutomodeSettings) -> ChromaStore:
    try:
        return ChromaStore(settings.chroma_persist_path)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def _project_key(project: Path) -> str:
    # Events are keyed by the resolved path the scheduler saw.
    return str(Path(project).expanduser().resolve())


def cmd_features(args: argparse.Namespace) -> None:
    features = FileFeatureStore().list_features(args.project)
    result = analyze(features)
    by_id = {feature.id: feature for feature in features}
    rows = []
    for feature_id in result.order:
        feature = by_id[feature_id]
        if args.status and feature.status.value != args.status:
            continue
        rows.append(
            {
                "id": feature.id,
                "title": feature.display_title,
                "status": feature.status.value,
                "dependencies": feature.dependencies,
                "blocked_by": list(result.blocked.get(feature_id, ())),
                "missing": list(result.missing.get(feature_id, ())),
                "admissible": feature_id in result.admissible,
            }
        )
    if args.json:
        print(json.dumps({"features": rows, "cycles": [list(c) for c in result.cycles]}, indent=2))
        return
    for row in rows:
        marker = "*" if row["admissible"] else " "
        blocked = f" blocked by {', '.join(row['blocked_by'])}" if row["blocked_by"] else ""
        print(f"{marker} {row['id']} [{row['status']}] {row['title']}{blocked}")
    for cycle in result.cycles:
        print(f"! cycle: {' -> '.join(cycle)}")


def cmd_interrupted(args: argparse.Namespace) -> None:
    features = FileFeatureStore().list_by_status(args.project, FeatureStatus.IN_PROGRESS)
    state = ExecutionStateStore().load(args.project)
    payload = {
        "execution_state": state.to_record() if state else None,
        "in_progress": [
            {
                "id": feature.id,
                "title": feature.display_title,
                "interrupted": feature.interrupted,
                "session_id": feature.session_id,
                "branch_name": feature.branch_name,
                "worktree_path": feature.worktree_path,
            }
            for feature in features
        ],
    }
    print(json.dumps(payload, indent=2))


def cmd_worktrees(args: argparse.Namespace) -> None:
    records = read_all_metadata(args.project)
    print(json.dumps({branch: record.to_record() for branch, record in records.items()}, indent=2))


def cmd_events(args: argparse.Namespace) -> None:
    settings = AutomodeSettings()
    store = load_store(settings)
    try:
        events = store.fetch_project_events(
            _project_key(args.project),
            feature_id=args.feature_id,
            event_type=args.type,
            limit=args.limit,
        )
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    payload = [
        {
            "event_id": event.id,
            "type": event.event_type,
            "feature_id": event.metadata.get("feature_id"),
            "status": event.metadata.get("status"),
            "timestamp": event.timestamp.isoformat(),
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def cmd_history(args: argparse.Namespace) -> None:
    settings = AutomodeSettings()
    store = load_store(settings)
    try:
        records = store.replay_features(_project_key(args.project))
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps([record.to_dict() for record in records], indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = AutomodeSettings()
    store = load_store(settings)
    try:
        if args.project:
            events = store.fetch_project_events(_project_key(args.project))
        else:
            events = store.search_events()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    type_counts: dict[str, int] = {}
    error_classes: dict[str, int] = {}
    failures_by_feature: dict[str, int] = {}
    for event in events:
        type_counts[event.event_type] = type_counts.get(event.event_type, 0) + 1
        if event.event_type == "feature_failed":
            error_class = event.metadata.get("error_class") or "unknown"
            error_classes[error_class] = error_classes.get(error_class, 0) + 1
            feature_id = event.metadata.get("feature_id")
            if feature_id:
                failures_by_feature[feature_id] = failures_by_feature.get(feature_id, 0) + 1

    metrics = {
        "events_total": len(events),
        "event_type_counts": type_counts,
        "failure_error_classes": error_classes,
        "failures_by_feature": failures_by_feature,
        "retries": type_counts.get("feature_retrying", 0),
        "pauses": type_counts.get("auto_mode_paused_failures", 0),
        "interruptions": type_counts.get("feature_interrupted", 0),
        "failure_pause_threshold": settings.failure_pause_threshold,
    }
    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Auto-mode diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_features = sub.add_parser("features", help="List features in dependency order")
    p_features.add_argument("project", type=Path)
    p_features.add_argument("--status", choices=[status.value for status in FeatureStatus])
    p_features.add_argument("--json", action="store_true", help="Output JSON")
    p_features.set_defaults(func=cmd_features)

    p_interrupted = sub.add_parser(
        "interrupted", help="Show in-progress features and the saved execution state"
    )
    p_interrupted.add_argument("project", type=Path)
    p_interrupted.set_defaults(func=cmd_interrupted)

    p_worktrees = sub.add_parser("worktrees", help="Show worktree metadata records")
    p_worktrees.add_argument("project", type=Path)
    p_worktrees.set_defaults(func=cmd_worktrees)

    p_events = sub.add_parser("events", help="List persisted auto-mode events")
    p_events.add_argument("project", type=Path)
    p_events.add_argument("--feature-id")
    p_events.add_argument("--type")
    p_events.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N events",
    )
    p_events.set_defaults(func=cmd_events)

    p_history = sub.add_parser("history", help="Replay each feature's last known status")
    p_history.add_argument("project", type=Path)
    p_history.set_defaults(func=cmd_history)

    p_metrics = sub.add_parser("metrics", help="Show event, failure and retry counts")
    p_metrics.add_argument("--project", type=Path, default=None)
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
