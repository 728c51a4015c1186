"""
Model definitions for mortality prediction.

Includes:
- Random Forest (bagged trees)
- XGBoost (boosted trees)
- RBF Support Vector Machine (kernel machine, Platt-scaled probabilities)
- Unpenalized Logistic Regression (reference baseline, not tuned)

Estimators are created single-threaded; parallelism happens one level up,
across fold x configuration work units.
"""

import logging
from typing import Any, Dict

import numpy as np
from sklearn.ensemble import RandomForestClassifier
from sklearn.linear_model import LogisticRegression
from sklearn.svm import SVC
from xgboost import XGBClassifier

logger = logging.getLogger(__name__)


def create_random_forest_classifier(
    params: Dict[str, Any],
    random_state: int = 2026,
    n_jobs: int = 1,
) -> RandomForestClassifier:
    """
    Create Random Forest classifier.

    Parameters
    ----------
    params : dict
        Hyperparameters (n_estimators, max_features, min_samples_split)
    random_state : int
        Random state
    n_jobs : int
        Threads used by the forest itself

    Returns
    -------
    RandomForestClassifier
        Configured model
    """
    return RandomForestClassifier(
        n_estimators=params.get("n_estimators", 500),
        max_features=params.get("max_features", "sqrt"),
        min_samples_split=params.get("min_samples_split", 2),
        min_samples_leaf=params.get("min_samples_leaf", 1),
        random_state=random_state,
        n_jobs=n_jobs,
    )


def create_xgboost_classifier(
    params: Dict[str, Any],
    random_state: int = 2026,
    n_jobs: int = 1,
) -> XGBClassifier:
    """
    Create XGBoost classifier.

    Parameters
    ----------
    params : dict
        Hyperparameters (n_estimators, max_depth, min_child_weight, gamma,
                         subsample, colsample_bytree, learning_rate)
    random_state : int
        Random state
    n_jobs : int
        Threads used by the booster

    Returns
    -------
    XGBClassifier
        Configured model
    """
    return XGBClassifier(
        n_estimators=params.get("n_estimators", 300),
        max_depth=params.get("max_depth", 6),
        min_child_weight=params.get("min_child_weight", 1),
        gamma=params.get("gamma", 0.0),
        subsample=params.get("subsample", 1.0),
        colsample_bytree=params.get("colsample_bytree", 1.0),
        learning_rate=params.get("learning_rate", 0.1),
        random_state=random_state,
        eval_metric="logloss",
        n_jobs=n_jobs,
    )


def create_svm_classifier(
    params: Dict[str, Any],
    random_state: int = 2026,
    n_jobs: int = 1,
) -> SVC:
    """
    Create RBF-kernel SVM with probability outputs.

    ``gamma`` is the kernel width in ``exp(-gamma * ||x - x'||^2)``.
    ``n_jobs`` is accepted for a uniform factory signature; libsvm is
    single-threaded.
    """
    return SVC(
        kernel="rbf",
        C=params.get("C", 1.0),
        gamma=params.get("gamma", "scale"),
        probability=True,
        random_state=random_state,
    )


def create_logistic_regression(
    params: Dict[str, Any],
    random_state: int = 2026,
    n_jobs: int = 1,
) -> LogisticRegression:
    """
    Create the unpenalized logistic regression used as reference model.

    ``C=np.inf`` disables the penalty. ``n_jobs`` is accepted for a uniform
    factory signature; lbfgs on a binary outcome runs single-threaded.
    """
    return LogisticRegression(
        C=np.inf,
        solver="lbfgs",
        max_iter=params.get("max_iter", 1000),
        random_state=random_state,
    )


MODEL_FACTORY = {
    "rf": create_random_forest_classifier,
    "xgb": create_xgboost_classifier,
    "svm": create_svm_classifier,
    "logreg": create_logistic_regression,
}

MODEL_NAMES = {
    "rf": "Random Forest",
    "xgb": "XGBoost",
    "svm": "SVM (RBF)",
    "logreg": "Logistic Regression",
}

# Families whose hyperparameters are tuned by cross-validation
TUNED_FAMILIES = ("rf", "xgb", "svm")


def create_model(
    model_type: str,
    params: Dict[str, Any],
    random_state: int = 2026,
    n_jobs: int = 1,
):
    """
    Factory function to create any model by type.

    Parameters
    ----------
    model_type : str
        Model type code ('rf', 'xgb', 'svm', 'logreg')
    params : dict
        Hyperparameters
    random_state : int
        Random state
    n_jobs : int
        Estimator-internal threads

    Returns
    -------
    estimator
        Configured sklearn/xgboost estimator
    """
    if model_type not in MODEL_FACTORY:
        raise ValueError(
            f"Unknown model type: {model_type}. "
            f"Available: {list(MODEL_FACTORY.keys())}"
        )

    return MODEL_FACTORY[model_type](params, random_state=random_state, n_jobs=n_jobs)


def get_model_name(model_type: str) -> str:
    """Get human-readable model name."""
    return MODEL_NAMES.get(model_type, model_type)
