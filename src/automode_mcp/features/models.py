"""Feature records as persisted by the feature store."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_PRIORITY = 2


class FeatureStatus(str, Enum):
    BACKLOG = "backlog"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    VERIFIED = "verified"
    FAILED = "failed"


# Dependencies in these states unblock their dependents.
SUCCESS_STATUSES = frozenset({FeatureStatus.COMPLETED, FeatureStatus.VERIFIED})

# Only features in these states are considered for dispatch.
ADMISSIBLE_STATUSES = frozenset({FeatureStatus.BACKLOG})


def check_feature_id(value: str) -> str:
    """Return the stripped id, rejecting values unusable as a single path segment."""

    normalized = value.strip()
    if not normalized:
        raise ValueError("Feature id must not be empty")
    if "/" in normalized or "\\" in normalized or ".." in normalized or normalized == ".":
        raise ValueError(f"Feature id '{normalized}' must not contain path separators or '..'")
    if any(ord(char) < 32 or ord(char) == 127 for char in normalized):
        raise ValueError("Feature id must not contain control characters")
    return normalized


class Feature(BaseModel):
    """A unit of work an agent implements, tracked through a status lifecycle."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        use_enum_values=False,
    )

    id: str = Field(..., description="Identifier, unique within the project.")
    title: str | None = Field(default=None, description="Short human readable title.")
    description: str = Field(default="", description="What the agent should implement.")
    category: str | None = None
    status: FeatureStatus = FeatureStatus.BACKLOG
    dependencies: list[str] = Field(
        default_factory=list,
        description="Ordered set of feature ids that must succeed before this one starts.",
    )
    priority: int | None = Field(
        default=None, description="Lower values run first among equally admissible features."
    )
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    branch_name: str | None = None
    worktree_path: str | None = None
    session_id: str | None = Field(
        default=None, description="Provider session that can be resumed after an interruption."
    )
    provider: str | None = None
    model: str | None = None
    profile_id: str | None = None
    require_approval: bool = False

    error: str | None = None
    error_type: str | None = None
    interrupted: bool = False
    interrupted_at: datetime | None = None

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        return check_feature_id(value)

    @field_validator("dependencies", mode="before")
    @classmethod
    def _dedupe_dependencies(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            raise TypeError("dependencies must be a sequence of feature ids")
        seen: dict[str, None] = {}
        for item in value:
            dependency = str(item).strip()
            if dependency:
                seen.setdefault(dependency, None)
        return list(seen)

    @property
    def effective_priority(self) -> int:
        return DEFAULT_PRIORITY if self.priority is None else self.priority

    @property
    def display_title(self) -> str:
        """Title for observability, falling back to the first description line."""

        if self.title and self.title.strip():
            return self.title.strip()
        first_line = self.description.strip().splitlines()[0] if self.description.strip() else ""
        if not first_line:
            return "Untitled Feature"
        if len(first_line) <= 60:
            return first_line
        return first_line[:57] + "..."

    def to_record(self) -> dict[str, Any]:
        """Serialize to the camelCase JSON record stored on disk."""

        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


__all__ = [
    "ADMISSIBLE_STATUSES",
    "DEFAULT_PRIORITY",
    "Feature",
    "FeatureStatus",
    "SUCCESS_STATUSES",
    "check_feature_id",
]
