"""
Configuration defaults and YAML loading.

Every section can be overridden from ``configs/default.yaml`` or any YAML
file passed on the command line; missing keys fall back to the values below.
"""

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


DEFAULT_CONFIG: Dict[str, Any] = {
    "random_state": 2026,
    "test_size": 0.20,
    "cv_folds": 5,
    "n_jobs": -1,
    # Attempts per configuration × fold before it is abandoned (transient errors only)
    "max_attempts": 2,
    "models": ["rf", "xgb", "svm"],
    "include_baseline": True,
    "recipe": {
        "knn_neighbors": 5,
        "correlation_threshold": 0.60,
        "nzv_freq_cut": 95 / 5,
        "nzv_unique_cut": 10.0,
        "oversample": True,
        "oversample_ratio": 1.0,
        "oversample_neighbors": 5,
    },
    "search": {
        # Spaces with more dimensions than this get a Latin hypercube design
        "grid_max_dims": 2,
        "lhs_size": 40,
        "random_forest": {
            "n_estimators": 500,
            "max_features_min": 0.1,
            "max_features_max": 1.0,
            "max_features_levels": 10,
            "min_samples_split_min": 5,
            "min_samples_split_max": 40,
            "min_samples_split_levels": 5,
        },
        "xgboost": {
            "n_estimators": 300,
            "max_depth_min": 3,
            "max_depth_max": 10,
            "min_child_weight_min": 5,
            "min_child_weight_max": 30,
            "gamma_min": 0.0,
            "gamma_max": 5.0,
            "subsample_min": 0.6,
            "subsample_max": 1.0,
            "colsample_bytree_min": 0.3,
            "colsample_bytree_max": 1.0,
            "learning_rate_min": 0.01,
            "learning_rate_max": 0.3,
        },
        "svm": {
            "C_min": 1e-2,
            "C_max": 1e2,
            "C_levels": 7,
            "gamma_min": 1e-3,
            "gamma_max": 10 ** -0.5,
            "gamma_levels": 7,
        },
    },
    "evaluation": {
        "n_bootstraps": 2000,
        "ci_level": 0.95,
        "significance_level": 0.05,
        "probability_clip": 0.001,
        "dca_thresholds": [0.0, 0.5, 0.01],
    },
    "explain": {
        "background_per_class": 5,
        "n_permutations": 25,
        "stability_bootstraps": 100,
        "stability_top_n": 5,
        "stability_min_pct": 80.0,
        "min_consistency": 0.75,
        "max_attributes": 8,
        "rank_agreement_min": 0.70,
        "stability_forest": {
            "n_estimators": 500,
            "max_features": 0.5,
            "min_samples_split": 20,
        },
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file merged over :data:`DEFAULT_CONFIG`.

    Parameters
    ----------
    config_path : str, optional
        Path to the YAML file. If None or missing, defaults are returned.

    Returns
    -------
    dict
        Complete configuration dictionary
    """
    if config_path is None:
        return copy.deepcopy(DEFAULT_CONFIG)

    config_file = Path(config_path)
    if not config_file.exists():
        logger.warning(f"Config file {config_path} not found. Using defaults.")
        return copy.deepcopy(DEFAULT_CONFIG)

    with open(config_file, "r") as f:
        user_config = yaml.safe_load(f) or {}

    logger.info(f"Loaded configuration from {config_path}")
    return _deep_merge(DEFAULT_CONFIG, user_config)


def resolve_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Fill any missing keys of an in-memory config from the defaults."""
    if config is None:
        return copy.deepcopy(DEFAULT_CONFIG)
    return _deep_merge(DEFAULT_CONFIG, config)
