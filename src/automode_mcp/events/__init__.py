"""Scheduler events and the sinks that receive them."""

from .models import EVENT_STATUS, AutoModeEvent, EventType
from .sink import ChromaEventSink, CompositeEventSink, EventSink, LoggingEventSink, MemoryEventSink

__all__ = [
    "AutoModeEvent",
    "ChromaEventSink",
    "CompositeEventSink",
    "EVENT_STATUS",
    "EventSink",
    "EventType",
    "LoggingEventSink",
    "MemoryEventSink",
]
