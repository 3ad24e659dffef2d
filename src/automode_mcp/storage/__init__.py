"""Storage abstractions for the orchestrator's event history."""

from .chroma import ChromaEvent, ChromaStore, ChromaUnavailableError, project_session_id
from .models import FeatureHistoryRecord

__all__ = [
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "FeatureHistoryRecord",
    "project_session_id",
]
