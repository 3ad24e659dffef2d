"""Feature persistence consumed by the scheduler."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Protocol
from uuid import uuid4

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from ..errors import AutoModeValidationError, DependencyCycleError, FeatureNotFoundError
from .models import Feature, FeatureStatus, check_feature_id

logger = logging.getLogger(__name__)

AUTOMAKER_DIR = ".automaker"
FEATURE_FILE = "feature.json"


class FeatureStore(Protocol):
    """Minimal feature store API the scheduler relies on."""

    def get(self, project_path: Path | str, feature_id: str) -> Feature | None:
        ...

    def list_features(self, project_path: Path | str) -> list[Feature]:
        ...

    def list_by_status(self, project_path: Path | str, *statuses: FeatureStatus) -> list[Feature]:
        ...

    def update(
        self, project_path: Path | str, feature_id: str, fields: Mapping[str, Any]
    ) -> Feature:
        ...


def features_dir(project_path: Path | str) -> Path:
    return Path(project_path) / AUTOMAKER_DIR / "features"


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON to ``path`` through a temporary file and an atomic rename."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class FileFeatureStore:
    """Stores one ``feature.json`` per feature under ``.automaker/features/<id>/``.

    Updates are partial: only the supplied fields are merged into the record on
    disk, so concurrent edits to other fields survive (last writer wins per field).
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()

    def _feature_path(self, project_path: Path | str, feature_id: str) -> Path:
        try:
            segment = check_feature_id(str(feature_id))
        except ValueError as exc:
            raise AutoModeValidationError(str(exc)) from exc
        return features_dir(project_path) / segment / FEATURE_FILE

    def _read_record(self, path: Path) -> dict[str, Any] | None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable feature record", extra={"path": str(path), "error": str(exc)})
            return None
        if not isinstance(data, dict):
            logger.warning("Feature record is not an object", extra={"path": str(path)})
            return None
        return data

    def _parse(self, record: dict[str, Any], path: Path) -> Feature | None:
        try:
            return Feature.model_validate(record)
        except ValidationError as exc:
            logger.warning("Invalid feature record", extra={"path": str(path), "error": str(exc)})
            return None

    def get(self, project_path: Path | str, feature_id: str) -> Feature | None:
        path = self._feature_path(project_path, feature_id)
        record = self._read_record(path)
        if record is None:
            return None
        return self._parse(record, path)

    def list_features(self, project_path: Path | str) -> list[Feature]:
        """Return every readable feature in creation order."""

        base = features_dir(project_path)
        if not base.is_dir():
            return []

        entries: list[tuple[float, str, Feature]] = []
        for entry in sorted(base.iterdir()):
            path = entry / FEATURE_FILE
            if not entry.is_dir() or not path.exists():
                continue
            record = self._read_record(path)
            if record is None:
                continue
            feature = self._parse(record, path)
            if feature is None:
                continue
            if feature.created_at is not None:
                created = feature.created_at
                if created.tzinfo is None:
                    created = created.replace(tzinfo=timezone.utc)
                key = created.timestamp()
            else:
                key = path.stat().st_mtime
            entries.append((key, entry.name, feature))

        entries.sort(key=lambda item: (item[0], item[1]))
        return [feature for _, _, feature in entries]

    def list_by_status(self, project_path: Path | str, *statuses: FeatureStatus) -> list[Feature]:
        wanted = {FeatureStatus(status) for status in statuses}
        return [feature for feature in self.list_features(project_path) if feature.status in wanted]

    def create(self, project_path: Path | str, data: Feature | Mapping[str, Any]) -> Feature:
        """Persist a new feature, assigning an id and creation time when absent."""

        record = data.to_record() if isinstance(data, Feature) else _to_camel_keys(data)
        record.setdefault("id", f"feature-{uuid4().hex[:12]}")
        record.setdefault("createdAt", self._clock().isoformat())
        record.setdefault("status", FeatureStatus.BACKLOG.value)
        try:
            feature = Feature.model_validate(record)
        except ValidationError as exc:
            raise AutoModeValidationError(f"Invalid feature: {exc}") from exc

        with self._lock:
            path = self._feature_path(project_path, feature.id)
            if path.exists():
                raise AutoModeValidationError(f"Feature '{feature.id}' already exists")
            self._check_acyclic(project_path, feature)
            atomic_write_json(path, feature.to_record())
        logger.debug("Created feature", extra={"feature_id": feature.id, "project": str(project_path)})
        return feature

    def update(
        self, project_path: Path | str, feature_id: str, fields: Mapping[str, Any]
    ) -> Feature:
        """Merge ``fields`` into the stored record and return the updated feature."""

        with self._lock:
            path = self._feature_path(project_path, feature_id)
            record = self._read_record(path)
            if record is None:
                raise FeatureNotFoundError(f"Feature '{feature_id}' not found")

            changes = _to_camel_keys(fields)
            changes.pop("id", None)
            merged = {**record, **changes, "updatedAt": self._clock().isoformat()}
            try:
                feature = Feature.model_validate(merged)
            except ValidationError as exc:
                raise AutoModeValidationError(f"Invalid update for '{feature_id}': {exc}") from exc

            if "dependencies" in changes:
                self._check_acyclic(project_path, feature)
            atomic_write_json(path, feature.to_record())
        return feature

    def delete(self, project_path: Path | str, feature_id: str) -> bool:
        path = self._feature_path(project_path, feature_id)
        with self._lock:
            if not path.exists():
                return False
            path.unlink()
            try:
                path.parent.rmdir()
            except OSError:
                logger.debug("Feature directory not empty after delete", extra={"path": str(path.parent)})
        return True

    def _check_acyclic(self, project_path: Path | str, candidate: Feature) -> None:
        from ..scheduling.resolver import build_graph, find_cycles

        features = [f for f in self.list_features(project_path) if f.id != candidate.id]
        features.append(candidate)
        cycles = [cycle for cycle in find_cycles(build_graph(features)) if candidate.id in cycle]
        if cycles:
            raise DependencyCycleError(cycles)


def _to_camel_keys(fields: Mapping[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in fields.items():
        camel = to_camel(key) if "_" in key else key
        if isinstance(value, FeatureStatus):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        result[camel] = value
    return result


def load_features(project_path: Path | str, feature_ids: Iterable[str] | None = None) -> list[Feature]:
    """Convenience wrapper returning features from the default file store."""

    store = FileFeatureStore()
    features = store.list_features(project_path)
    if feature_ids is None:
        return features
    wanted = set(feature_ids)
    return [feature for feature in features if feature.id in wanted]


__all__ = [
    "AUTOMAKER_DIR",
    "FeatureStore",
    "FileFeatureStore",
    "atomic_write_json",
    "features_dir",
    "load_features",
]
