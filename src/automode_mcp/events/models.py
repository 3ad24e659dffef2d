"""Lifecycle events published by the scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any


class EventType(str, Enum):
    AUTO_MODE_STARTED = "auto_mode_started"
    AUTO_MODE_STOPPED = "auto_mode_stopped"
    AUTO_MODE_IDLE = "auto_mode_idle"
    AUTO_MODE_PAUSED_FAILURES = "auto_mode_paused_failures"
    FEATURE_STARTED = "feature_started"
    FEATURE_PROGRESS = "feature_progress"
    FEATURE_RETRYING = "feature_retrying"
    FEATURE_WAITING_APPROVAL = "feature_waiting_approval"
    FEATURE_COMPLETED = "feature_completed"
    FEATURE_FAILED = "feature_failed"
    FEATURE_CANCELLED = "feature_cancelled"
    FEATURE_INTERRUPTED = "feature_interrupted"
    FEATURE_RESUMED = "feature_resumed"
    FEATURE_DISCARDED = "feature_discarded"
    FEATURE_MERGED = "feature_merged"
    FEATURE_VERIFIED = "feature_verified"
    ADMISSION_CONFLICT = "admission_conflict"


# Feature status implied by the most recent event of each kind, used for replay.
EVENT_STATUS: dict[EventType, str] = {
    EventType.FEATURE_STARTED: "in_progress",
    EventType.FEATURE_RESUMED: "in_progress",
    EventType.FEATURE_INTERRUPTED: "in_progress",
    EventType.FEATURE_WAITING_APPROVAL: "waiting_approval",
    EventType.FEATURE_COMPLETED: "completed",
    EventType.FEATURE_MERGED: "verified",
    EventType.FEATURE_FAILED: "failed",
    EventType.FEATURE_CANCELLED: "failed",
    EventType.FEATURE_DISCARDED: "backlog",
    EventType.FEATURE_VERIFIED: "verified",
}


@dataclass(slots=True)
class AutoModeEvent:
    type: EventType
    project_path: str
    feature_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        self.type = EventType(self.type)
        if isinstance(self.project_path, Path):
            self.project_path = str(self.project_path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "project_path": self.project_path,
            "feature_id": self.feature_id,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }


__all__ = ["AutoModeEvent", "EVENT_STATUS", "EventType"]
