from pathlib import Path
import textwrap

import pytest

from automode_mcp.features import Feature
from automode_mcp.profiles import (
    DEFAULT_PROFILE,
    AgentProfile,
    ProfileCatalog,
    ProfileLoadError,
    ProfileLoader,
    build_feature_prompt,
)


def write_profile(path: Path, *, profile_id: str = "sample", title: str, extra: str = "") -> None:
    path.write_text(
        textwrap.dedent(
            """
            id: {profile_id}
            title: {title}
            persona: Persona
            system_prompt: Prompt
            constraints:
              - constraint
            checklist_template:
              - id: step
                description: do something
            """
        ).strip().format(profile_id=profile_id, title=title)
        + extra,
        encoding="utf-8",
    )


def test_loader_merges_paths(tmp_path: Path) -> None:
    base = tmp_path / "base"
    base.mkdir()
    override = tmp_path / "override"
    override.mkdir()

    write_profile(base / "sample.yaml", title="Base Title")
    write_profile(override / "sample.yaml", title="Override Title")

    loader = ProfileLoader([base, override, tmp_path / "absent"])
    profiles = loader.load_all()

    assert profiles["sample"].title == "Override Title"
    assert loader.search_paths == [base, override]


def test_loader_handles_missing_profiles(tmp_path: Path) -> None:
    loader = ProfileLoader([tmp_path])
    assert loader.load_all() == {}


def test_loader_reports_validation_error(tmp_path: Path) -> None:
    invalid = tmp_path / "invalid"
    invalid.mkdir()
    (invalid / "broken.yaml").write_text("id: \npersona: test", encoding="utf-8")
    write_profile(invalid / "bad_provider.yml", profile_id="x", title="X", extra="\nprovider: gemini")

    loader = ProfileLoader([invalid])

    with pytest.raises(ProfileLoadError) as excinfo:
        loader.load_all()
    assert "broken.yaml" in str(excinfo.value)
    assert "bad_provider.yml" in str(excinfo.value)


def test_catalog_selection_order(tmp_path: Path) -> None:
    write_profile(tmp_path / "ui.yaml", profile_id="ui", title="UI", extra="\ncategories: [Frontend]")
    write_profile(tmp_path / "general.yaml", profile_id="general", title="General")
    catalog = ProfileCatalog.from_paths([tmp_path], default_profile="general")

    assert catalog.select(Feature(id="a", profile_id="ui")).id == "ui"
    assert catalog.select(Feature(id="b", category="frontend")).id == "ui"
    assert catalog.select(Feature(id="c", category="backend")).id == "general"
    assert catalog.select(Feature(id="d", profile_id="unknown")).id == "general"
    assert ProfileCatalog().select(Feature(id="e")) is DEFAULT_PROFILE


def test_build_feature_prompt(tmp_path: Path) -> None:
    context = tmp_path / ".automaker" / "context"
    context.mkdir(parents=True)
    (context / "architecture.md").write_text("notes", encoding="utf-8")
    (context / "diagram.png").write_bytes(b"")
    profile = AgentProfile(
        id="p",
        title="P",
        persona="You write careful code.",
        system_prompt="System",
        constraints=["No new dependencies"],
    )
    feature = Feature.model_validate(
        {
            "id": "login",
            "title": "Login page",
            "category": "auth",
            "description": "Add a login page",
            "steps": ["Create form", "Wire handler"],
            "requireApproval": True,
        }
    )

    prompt = build_feature_prompt(profile, feature, project_path=tmp_path)

    assert prompt.startswith("You are working on a feature implementation task.")
    assert "Title: Login page" in prompt
    assert "1. Create form\n2. Wire handler" in prompt
    assert "- .automaker/context/architecture.md" in prompt
    assert "diagram.png" not in prompt
    assert "- No new dependencies" in prompt
    assert "Do not commit" in prompt

    resumed = build_feature_prompt(DEFAULT_PROFILE, feature, resume=True)
    assert resumed.startswith("You were interrupted")
    assert "- [tests] Relevant tests pass" in resumed
