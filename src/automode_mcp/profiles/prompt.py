"""Render the prompt an agent receives for a feature."""

from __future__ import annotations

from pathlib import Path

from ..features.models import Feature
from ..features.store import AUTOMAKER_DIR
from .models import AgentProfile


def _feature_steps(feature: Feature) -> list[str]:
    steps = (feature.model_extra or {}).get("steps") or []
    if not isinstance(steps, list):
        return []
    return [str(step).strip() for step in steps if str(step).strip()]


def _context_files(project_path: Path | None) -> list[str]:
    if project_path is None:
        return []
    context_dir = Path(project_path) / AUTOMAKER_DIR / "context"
    if not context_dir.is_dir():
        return []
    return sorted(
        f"{AUTOMAKER_DIR}/context/{path.name}"
        for path in context_dir.iterdir()
        if path.is_file() and path.suffix in {".md", ".txt"}
    )


def build_feature_prompt(
    profile: AgentProfile,
    feature: Feature,
    *,
    project_path: Path | None = None,
    resume: bool = False,
) -> str:
    lines: list[str] = []
    if resume:
        lines.append(
            "You were interrupted while implementing this feature. Review the work already "
            "present in this worktree and continue from where you left off."
        )
    else:
        lines.append("You are working on a feature implementation task.")
    if profile.persona:
        lines.append(profile.persona)

    lines.extend(["", "Feature:", f"ID: {feature.id}", f"Title: {feature.display_title}"])
    if feature.category:
        lines.append(f"Category: {feature.category}")
    if feature.description:
        lines.extend(["Description:", feature.description.strip()])

    steps = _feature_steps(feature)
    if steps:
        lines.extend(["", "Steps:"])
        lines.extend(f"{index}. {step}" for index, step in enumerate(steps, start=1))

    context = _context_files(project_path)
    if context:
        lines.extend(["", "Project context files (read them before starting):"])
        lines.extend(f"- {name}" for name in context)

    if profile.constraints:
        lines.extend(["", "Constraints:"])
        lines.extend(f"- {constraint}" for constraint in profile.constraints)

    if profile.checklist_template:
        lines.extend(["", "Before finishing, confirm:"])
        for item in profile.checklist_template:
            suffix = "" if item.required else " (optional)"
            lines.append(f"- [{item.id}] {item.description}{suffix}")

    if feature.require_approval:
        lines.extend(["", "Do not commit; a reviewer will approve the changes manually."])

    return "\n".join(lines).strip() + "\n"


__all__ = ["build_feature_prompt"]
