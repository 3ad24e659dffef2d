"""Forward persisted auto-mode alerts to monitoring-friendly output."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Iterable

from automode_mcp.config import AutomodeSettings
from automode_mcp.storage import ChromaEvent, ChromaStore, ChromaUnavailableError

ALERT_EVENT_TYPES = ("auto_mode_paused_failures", "feature_failed", "feature_interrupted")


def load_store(settings: AutomodeSettings) -> ChromaStore:
    """Construct a ChromaStore using the provided settings."""

    return ChromaStore(settings.chroma_persist_path)


def _normalize_events(
    events: Iterable[ChromaEvent],
    *,
    project: str | None = None,
    feature_id: str | None = None,
) -> list[dict[str, object]]:
    filtered: list[dict[str, object]] = []
    for event in events:
        if project and event.metadata.get("project_path") != project:
            continue
        if feature_id and event.metadata.get("feature_id") != feature_id:
            continue
        filtered.append(
            {
                "event_id": event.id,
                "type": event.event_type,
                "project_path": event.metadata.get("project_path"),
                "feature_id": event.metadata.get("feature_id"),
                "error": event.metadata.get("error"),
                "error_class": event.metadata.get("error_class"),
                "timestamp": event.timestamp.isoformat(),
            }
        )
    filtered.sort(key=lambda item: item["timestamp"])
    return filtered


def _default_event_formatter(item: dict[str, object]) -> str:
    return " | ".join(
        [
            f"type={item['type']}",
            f"project={item['project_path']}",
            f"feature={item['feature_id']}",
            f"error_class={item['error_class']}",
            f"error={item['error']}",
            f"timestamp={item['timestamp']}",
        ]
    )


def forward_alerts(args: argparse.Namespace, *, formatter=_default_event_formatter) -> int:
    settings = AutomodeSettings()
    try:
        store = load_store(settings)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}", file=sys.stderr)
        return 1

    event_types = args.types or list(ALERT_EVENT_TYPES)
    alerts: list[ChromaEvent] = []
    try:
        for event_type in event_types:
            alerts.extend(store.search_events(filters={"event_type": event_type}))
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}", file=sys.stderr)
        return 1

    project = str(Path(args.project).expanduser().resolve()) if args.project else None
    payload = _normalize_events(alerts, project=project, feature_id=args.feature_id)
    if args.limit is not None and args.limit > 0:
        payload = payload[-args.limit :]
    if args.format == "json":
        output_text = json.dumps(payload, indent=2)
    else:
        output_text = "\n".join(formatter(item) for item in payload)

    if args.output:
        Path(args.output).write_text(output_text, encoding="utf-8")
    else:
        print(output_text)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Forward auto-mode alert events to stdout or a file for monitoring integrations."
    )
    parser.add_argument("--project", help="Filter alerts by project path", default=None)
    parser.add_argument("--feature-id", help="Filter alerts by feature id", default=None)
    parser.add_argument(
        "--type",
        dest="types",
        action="append",
        choices=ALERT_EVENT_TYPES,
        help="Event type to forward; repeat for several (default: all alert types)",
    )
    parser.add_argument(
        "--format",
        choices={"json", "text"},
        default="json",
        help="Output format (default: json)",
    )
    parser.add_argument("--output", help="Optional path to write the alert payload to")
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, emit only the latest N alerts after filtering",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    exit_code = forward_alerts(args)
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
