"""Profile models describing how an agent is primed for a feature."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..config import PROVIDER_NAMES


class ChecklistItem(BaseModel):
    """A verification step the agent should confirm before finishing."""

    id: str = Field(..., description="Stable identifier for the checklist item.")
    description: str = Field(..., description="Human-friendly description of the check.")
    required: bool = Field(
        default=True,
        description="Whether the agent must satisfy this item before reporting success.",
    )

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Checklist item id must not be empty")
        return normalized


class AgentProfile(BaseModel):
    """Configuration describing how an agent should implement a feature."""

    id: str = Field(..., description="Unique identifier for the profile.")
    title: str = Field(..., description="Display title for the agent profile.")
    persona: str = Field(default="", description="Framing for the agent's tone and role.")
    system_prompt: str = Field(
        ..., description="System-level instructions passed to the provider for every run."
    )
    provider: str | None = Field(
        default=None, description="Provider used when the feature does not name one."
    )
    model: str | None = Field(default=None, description="Model used when the feature does not name one.")
    categories: list[str] = Field(
        default_factory=list,
        description="Feature categories this profile applies to when none is named explicitly.",
    )
    constraints: list[str] = Field(
        default_factory=list,
        description="Guardrails included in the prompt.",
    )
    checklist_template: list[ChecklistItem] = Field(
        default_factory=list,
        description="Verification checklist rendered into the prompt.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Agent profile id must not be empty")
        return normalized

    @field_validator("provider")
    @classmethod
    def _validate_provider(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in PROVIDER_NAMES:
            raise ValueError(f"provider must be one of {', '.join(PROVIDER_NAMES)}")
        return normalized

    @field_validator("categories", "constraints", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, (list, tuple)):
            return list(value)
        raise TypeError("categories and constraints must be sequences of strings")

    def matches_category(self, category: str | None) -> bool:
        if not category:
            return False
        wanted = category.strip().lower()
        return any(item.strip().lower() == wanted for item in self.categories)


DEFAULT_PROFILE = AgentProfile(
    id="default",
    title="Feature Implementer",
    system_prompt=(
        "You are implementing a single feature inside an isolated git worktree. "
        "Keep changes focused on the feature, follow the existing conventions of the "
        "codebase, run the relevant tests, and commit your work when it is complete."
    ),
    checklist_template=[
        ChecklistItem(id="tests", description="Relevant tests pass"),
        ChecklistItem(id="commit", description="Changes are committed on the feature branch"),
    ],
)


__all__ = ["AgentProfile", "ChecklistItem", "DEFAULT_PROFILE"]
