"""Event sinks: where scheduler events go once published."""

from __future__ import annotations

import logging
from collections import deque
from typing import Iterable, Protocol

from ..storage.chroma import ChromaStore, project_session_id
from .models import AutoModeEvent, EventType

logger = logging.getLogger(__name__)

_WARNING_EVENTS = {
    EventType.AUTO_MODE_PAUSED_FAILURES,
    EventType.FEATURE_FAILED,
    EventType.ADMISSION_CONFLICT,
}


class EventSink(Protocol):
    def publish(self, event: AutoModeEvent) -> None:
        ...


class LoggingEventSink:
    """Writes each event to the module logger."""

    def __init__(self, *, include_progress: bool = False) -> None:
        self.include_progress = include_progress

    def publish(self, event: AutoModeEvent) -> None:
        if event.type is EventType.FEATURE_PROGRESS and not self.include_progress:
            return
        level = logging.WARNING if event.type in _WARNING_EVENTS else logging.INFO
        logger.log(
            level,
            "Auto-mode event %s",
            event.type.value,
            extra={
                "event_type": event.type.value,
                "project": event.project_path,
                "feature_id": event.feature_id,
            },
        )


class MemoryEventSink:
    """Keeps the most recent events in memory for status queries."""

    def __init__(self, maxlen: int = 500) -> None:
        self._events: deque[AutoModeEvent] = deque(maxlen=maxlen)

    def publish(self, event: AutoModeEvent) -> None:
        self._events.append(event)

    def events(
        self, project_path: str | None = None, *, feature_id: str | None = None
    ) -> list[AutoModeEvent]:
        return [
            event
            for event in self._events
            if (project_path is None or event.project_path == project_path)
            and (feature_id is None or event.feature_id == feature_id)
        ]


class ChromaEventSink:
    """Appends events to the Chroma history, keyed by project."""

    _METADATA_KEYS = ("status", "error", "error_class", "attempt", "branch", "reason")

    def __init__(self, store: ChromaStore) -> None:
        self._store = store

    def publish(self, event: AutoModeEvent) -> None:
        metadata: dict[str, object] = {"project_path": event.project_path}
        if event.feature_id:
            metadata["feature_id"] = event.feature_id
        for key in self._METADATA_KEYS:
            value = event.payload.get(key)
            if value is not None:
                metadata[key] = value
        session_id = event.payload.get("session_id")
        if session_id:
            metadata["agent_session_id"] = session_id
        self._store.record_event(
            session_id=project_session_id(event.project_path),
            event_type=event.type.value,
            body=event.to_dict(),
            metadata=metadata,
            timestamp=event.timestamp,
        )


class CompositeEventSink:
    """Fans out to several sinks; one failing sink does not block the others."""

    def __init__(self, sinks: Iterable[EventSink]) -> None:
        self.sinks = list(sinks)

    def publish(self, event: AutoModeEvent) -> None:
        for sink in self.sinks:
            try:
                sink.publish(event)
            except Exception:
                logger.exception(
                    "Event sink failed",
                    extra={"sink": type(sink).__name__, "event_type": event.type.value},
                )


__all__ = [
    "ChromaEventSink",
    "CompositeEventSink",
    "EventSink",
    "LoggingEventSink",
    "MemoryEventSink",
]
