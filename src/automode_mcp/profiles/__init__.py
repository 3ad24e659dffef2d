"""Agent profile models, loader and prompt rendering."""

from .loader import AgentProfile, ProfileCatalog, ProfileLoadError, ProfileLoader, load_profiles
from .models import DEFAULT_PROFILE, ChecklistItem
from .prompt import build_feature_prompt

__all__ = [
    "AgentProfile",
    "ChecklistItem",
    "DEFAULT_PROFILE",
    "ProfileCatalog",
    "ProfileLoadError",
    "ProfileLoader",
    "build_feature_prompt",
    "load_profiles",
]
