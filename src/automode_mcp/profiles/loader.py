"""Profile loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from ..features.models import Feature
from .models import DEFAULT_PROFILE, AgentProfile


class ProfileLoadError(RuntimeError):
    """Raised when one or more profile files cannot be parsed."""


class ProfileLoader:
    """Loads agent profiles from YAML files on disk."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, AgentProfile]:
        """Load profiles from all configured search paths.

        Later search paths override earlier ones when profile ids collide.
        """

        profiles: dict[str, AgentProfile] = {}
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                try:
                    profile = AgentProfile.model_validate(document)
                except ValidationError as exc:
                    errors.append(f"Profile validation error in {path}: {exc}")
                    continue

                profiles[profile.id] = profile

        if errors:
            raise ProfileLoadError("; ".join(errors))

        return profiles

    def get(self, profile_id: str) -> AgentProfile:
        profiles = self.load_all()
        try:
            return profiles[profile_id]
        except KeyError as exc:
            raise ProfileLoadError(f"Profile '{profile_id}' not found in search paths") from exc


class ProfileCatalog:
    """Loaded profiles plus the rules for picking one per feature."""

    def __init__(
        self,
        profiles: dict[str, AgentProfile] | None = None,
        *,
        default_profile: str | None = None,
    ) -> None:
        self.profiles = dict(profiles or {})
        self.default_profile = default_profile

    @classmethod
    def from_paths(
        cls, search_paths: Iterable[Path] | None, *, default_profile: str | None = None
    ) -> "ProfileCatalog":
        return cls(load_profiles(search_paths), default_profile=default_profile)

    def select(self, feature: Feature) -> AgentProfile:
        """Pick the feature's named profile, then a category match, then the default."""

        if feature.profile_id and feature.profile_id in self.profiles:
            return self.profiles[feature.profile_id]
        for profile in self.profiles.values():
            if profile.matches_category(feature.category):
                return profile
        if self.default_profile and self.default_profile in self.profiles:
            return self.profiles[self.default_profile]
        return DEFAULT_PROFILE


def load_profiles(search_paths: Iterable[Path] | None = None) -> dict[str, AgentProfile]:
    """Convenience wrapper for loading profiles from the provided paths."""

    loader = ProfileLoader(search_paths)
    return loader.load_all()


__all__ = ["AgentProfile", "ProfileCatalog", "ProfileLoadError", "ProfileLoader", "load_profiles"]
