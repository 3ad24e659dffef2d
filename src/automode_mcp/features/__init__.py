"""Feature models and the store the scheduler reads and updates."""

from .models import ADMISSIBLE_STATUSES, SUCCESS_STATUSES, Feature, FeatureStatus, check_feature_id
from .store import FeatureStore, FileFeatureStore, atomic_write_json, features_dir, load_features

__all__ = [
    "ADMISSIBLE_STATUSES",
    "Feature",
    "FeatureStatus",
    "FeatureStore",
    "FileFeatureStore",
    "SUCCESS_STATUSES",
    "atomic_write_json",
    "check_feature_id",
    "features_dir",
    "load_features",
]
