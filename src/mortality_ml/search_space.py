"""
Hyperparameter search spaces and search designs for the tuned families.

Spaces with at most ``grid_max_dims`` dimensions are searched on a regular
grid; larger spaces get a Latin hypercube design. Every design point is later
enqueued into an Optuna study, so the objective reads its values through the
usual ``trial.suggest_*`` calls. All ranges are configurable via the
``search`` config section.
"""

import itertools
import logging
from typing import Any, Dict, List, NamedTuple, Optional

import numpy as np
import optuna
from scipy.stats import qmc

logger = logging.getLogger(__name__)


class Dimension(NamedTuple):
    """One tunable hyperparameter."""

    name: str
    low: float
    high: float
    log: bool = False
    integer: bool = False
    # Number of grid levels (only used for grid designs)
    levels: int = 5

    def grid(self) -> List[Any]:
        if self.log:
            values = np.logspace(np.log10(self.low), np.log10(self.high), self.levels)
        else:
            values = np.linspace(self.low, self.high, self.levels)
        values = np.clip(values, self.low, self.high)
        if self.integer:
            return sorted({int(round(v)) for v in values})
        return [float(v) for v in values]

    def from_unit(self, u: float) -> Any:
        """Map a point of [0, 1) onto this dimension."""
        if self.integer:
            value = int(np.floor(self.low + u * (self.high - self.low + 1)))
            return int(min(max(value, self.low), self.high))
        if self.log:
            value = 10 ** (np.log10(self.low) + u * (np.log10(self.high) - np.log10(self.low)))
        else:
            value = self.low + u * (self.high - self.low)
        return float(np.clip(value, self.low, self.high))

    def suggest(self, trial: optuna.Trial) -> Any:
        if self.integer:
            return trial.suggest_int(self.name, int(self.low), int(self.high))
        return trial.suggest_float(self.name, self.low, self.high, log=self.log)


def get_random_forest_dimensions(config: Dict[str, Any]) -> List[Dimension]:
    """Random Forest: feature fraction per split x minimum node size."""
    cfg = config.get("random_forest", {})
    return [
        Dimension(
            "max_features",
            cfg.get("max_features_min", 0.1),
            cfg.get("max_features_max", 1.0),
            levels=cfg.get("max_features_levels", 10),
        ),
        Dimension(
            "min_samples_split",
            cfg.get("min_samples_split_min", 5),
            cfg.get("min_samples_split_max", 40),
            integer=True,
            levels=cfg.get("min_samples_split_levels", 5),
        ),
    ]


def get_xgboost_dimensions(config: Dict[str, Any]) -> List[Dimension]:
    """XGBoost: six dimensions, searched with a Latin hypercube."""
    cfg = config.get("xgboost", {})
    return [
        Dimension("max_depth", cfg.get("max_depth_min", 3), cfg.get("max_depth_max", 10), integer=True),
        Dimension(
            "min_child_weight",
            cfg.get("min_child_weight_min", 5),
            cfg.get("min_child_weight_max", 30),
            integer=True,
        ),
        Dimension("gamma", cfg.get("gamma_min", 0.0), cfg.get("gamma_max", 5.0)),
        Dimension("subsample", cfg.get("subsample_min", 0.6), cfg.get("subsample_max", 1.0)),
        Dimension(
            "colsample_bytree",
            cfg.get("colsample_bytree_min", 0.3),
            cfg.get("colsample_bytree_max", 1.0),
        ),
        Dimension(
            "learning_rate",
            cfg.get("learning_rate_min", 0.01),
            cfg.get("learning_rate_max", 0.3),
            log=True,
        ),
    ]


def get_svm_dimensions(config: Dict[str, Any]) -> List[Dimension]:
    """RBF SVM: cost x kernel width, both on a log scale."""
    cfg = config.get("svm", {})
    return [
        Dimension("C", cfg.get("C_min", 1e-2), cfg.get("C_max", 1e2), log=True, levels=cfg.get("C_levels", 7)),
        Dimension(
            "gamma",
            cfg.get("gamma_min", 1e-3),
            cfg.get("gamma_max", 10 ** -0.5),
            log=True,
            levels=cfg.get("gamma_levels", 7),
        ),
    ]


DIMENSION_FACTORY = {
    "rf": get_random_forest_dimensions,
    "xgb": get_xgboost_dimensions,
    "svm": get_svm_dimensions,
}


def get_fixed_params(model_type: str, config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Hyperparameters held constant during the search (e.g. number of trees)."""
    config = config or {}
    if model_type == "rf":
        return {"n_estimators": config.get("random_forest", {}).get("n_estimators", 500)}
    if model_type == "xgb":
        return {"n_estimators": config.get("xgboost", {}).get("n_estimators", 300)}
    return {}


def get_dimensions(model_type: str, config: Optional[Dict[str, Any]] = None) -> List[Dimension]:
    """
    Tunable dimensions for a given model type.

    Parameters
    ----------
    model_type : str
        Model type code ('rf', 'xgb', 'svm')
    config : dict, optional
        The ``search`` configuration section

    Returns
    -------
    list of Dimension
    """
    if model_type not in DIMENSION_FACTORY:
        raise ValueError(
            f"Unknown model type: {model_type}. "
            f"Available: {list(DIMENSION_FACTORY.keys())}"
        )
    return DIMENSION_FACTORY[model_type](config or {})


def get_search_space(model_type: str, trial: optuna.Trial, config: Optional[Dict[str, Any]] = None) -> dict:
    """
    Hyperparameters of one trial, tuned dimensions plus fixed values.

    Parameters
    ----------
    model_type : str
        Model type code
    trial : optuna.Trial
        Optuna trial (normally with an enqueued design point)
    config : dict, optional
        The ``search`` configuration section

    Returns
    -------
    dict
        Hyperparameter dictionary for the trial
    """
    params = {dim.name: dim.suggest(trial) for dim in get_dimensions(model_type, config)}
    params.update(get_fixed_params(model_type, config))
    return params


def build_search_design(
    model_type: str,
    config: Optional[Dict[str, Any]] = None,
    random_state: int = 2026,
) -> List[Dict[str, Any]]:
    """
    Design points to evaluate for one family.

    Parameters
    ----------
    model_type : str
        Model type code
    config : dict, optional
        The ``search`` configuration section (``grid_max_dims``, ``lhs_size``
        and per-family ranges)
    random_state : int
        Seed of the Latin hypercube

    Returns
    -------
    list of dict
        One dict of tuned hyperparameters per design point
    """
    config = config or {}
    dimensions = get_dimensions(model_type, config)

    if len(dimensions) <= config.get("grid_max_dims", 2):
        grids = [dim.grid() for dim in dimensions]
        design = [
            {dim.name: value for dim, value in zip(dimensions, combo)}
            for combo in itertools.product(*grids)
        ]
        logger.info(f"{model_type}: regular grid with {len(design)} points")
        return design

    size = config.get("lhs_size", 40)
    sampler = qmc.LatinHypercube(d=len(dimensions), seed=random_state)
    unit = sampler.random(n=size)
    design = [
        {dim.name: dim.from_unit(u) for dim, u in zip(dimensions, row)}
        for row in unit
    ]
    logger.info(f"{model_type}: Latin hypercube with {len(design)} points over {len(dimensions)} dimensions")
    return design
