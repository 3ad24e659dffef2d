"""Data models derived from the event history."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class FeatureHistoryRecord:
    feature_id: str
    status: str
    last_event: str
    first_seen: datetime
    updated_at: datetime
    event_count: int = 0
    session_id: str | None = None
    error: str | None = None
    interrupted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "status": self.status,
            "last_event": self.last_event,
            "first_seen": self.first_seen.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "event_count": self.event_count,
            "session_id": self.session_id,
            "error": self.error,
            "interrupted": self.interrupted,
        }


__all__ = ["FeatureHistoryRecord"]
