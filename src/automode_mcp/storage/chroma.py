"""Chroma-backed event history."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import FeatureHistoryRecord


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Minimal Chroma collection API used by the event history."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """Represents a stored event in Chroma."""

    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime

    @property
    def body(self) -> Any:
        try:
            return json.loads(self.document)
        except json.JSONDecodeError:
            return self.document


def project_session_id(project_path: Path | str) -> str:
    return f"project::{project_path}"


def _where(filters: dict[str, Any] | None) -> dict[str, Any] | None:
    if not filters:
        return None
    if len(filters) == 1:
        return dict(filters)
    return {"$and": [{key: value} for key, value in filters.items()]}


def _scalar_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value
        for key, value in metadata.items()
        if isinstance(value, (str, int, float, bool))
    }


class ChromaStore:
    """Append-only persistence of orchestrator events via ChromaDB."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "automode_events",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install automode-mcp with the persistence extra"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
        events: list[ChromaEvent] = []
        ids = result.get("ids") or []
        documents = result.get("documents") or []
        metadatas = result.get("metadatas") or []
        for event_id, document, metadata in zip(ids, documents, metadatas):
            metadata = metadata or {}
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                ChromaEvent(
                    id=event_id,
                    session_id=metadata.get("session_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        session_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> ChromaEvent:
        collection = self._ensure_collection()
        counter = self._counters[session_id] = self._counters[session_id] + 1
        event_id = f"{session_id}:{uuid.uuid4().hex}"
        timestamp = timestamp or self._clock()

        document = body if isinstance(body, str) else json.dumps(body, default=str)
        record_metadata: dict[str, Any] = {}
        if metadata:
            record_metadata.update(_scalar_metadata(metadata))
        record_metadata.update(
            {
                "session_id": session_id,
                "event_type": event_type,
                "timestamp": timestamp.isoformat(),
                "sequence": counter,
            }
        )

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return ChromaEvent(
            id=event_id,
            session_id=session_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_session_events(self, session_id: str, *, limit: int | None = None) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where={"session_id": session_id}, limit=limit)
        return self._convert_result(result)

    def fetch_project_events(
        self,
        project_path: Path | str,
        *,
        feature_id: str | None = None,
        event_type: str | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        filters: dict[str, Any] = {"session_id": project_session_id(project_path)}
        if feature_id:
            filters["feature_id"] = feature_id
        if event_type:
            filters["event_type"] = event_type
        events = self.search_events(filters=filters)
        return events[-limit:] if limit else events

    def replay_features(self, project_path: Path | str) -> list[FeatureHistoryRecord]:
        """Rebuild the last published status of every feature from history."""

        from ..events.models import EVENT_STATUS, EventType

        records: dict[str, FeatureHistoryRecord] = {}
        for event in self.fetch_project_events(project_path):
            feature_id = event.metadata.get("feature_id")
            if not feature_id:
                continue
            record = records.get(feature_id)
            if record is None:
                record = records[feature_id] = FeatureHistoryRecord(
                    feature_id=feature_id,
                    status="unknown",
                    last_event=event.event_type,
                    first_seen=event.timestamp,
                    updated_at=event.timestamp,
                )
            record.event_count += 1
            record.updated_at = event.timestamp
            session_id = event.metadata.get("agent_session_id")
            if session_id:
                record.session_id = session_id
            try:
                event_type = EventType(event.event_type)
            except ValueError:
                continue
            if event_type is EventType.FEATURE_PROGRESS:
                continue
            record.last_event = event_type.value
            record.interrupted = event_type is EventType.FEATURE_INTERRUPTED
            status = EVENT_STATUS.get(event_type)
            if status is not None:
                record.status = status
            if event_type in (EventType.FEATURE_FAILED, EventType.FEATURE_CANCELLED):
                record.error = event.metadata.get("error")
            elif status is not None:
                record.error = None
        return sorted(records.values(), key=lambda record: record.first_seen)

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=_where(filters), limit=None if query else limit)
        events = self._convert_result(result)
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events


__all__ = ["ChromaEvent", "ChromaStore", "ChromaUnavailableError", "project_session_id"]
