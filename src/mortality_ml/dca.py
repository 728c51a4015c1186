"""
Decision Curve Analysis (DCA) utilities.

DCA evaluates the clinical utility of predictive models across different
probability thresholds by calculating net benefit.

Net Benefit = (TP/N) - (FP/N) * (pt/(1-pt))

where:
- TP = True Positives
- FP = False Positives
- N = Total samples
- pt = Threshold probability
"""

import logging
from typing import Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def threshold_grid(start: float = 0.0, stop: float = 0.5, step: float = 0.01) -> np.ndarray:
    """Inclusive grid of threshold probabilities."""
    return np.round(np.arange(start, stop + step / 2, step), 10)


def calculate_net_benefit(
    y_true: np.ndarray,
    y_proba: np.ndarray,
    threshold: float,
) -> float:
    """
    Calculate net benefit for a given threshold.

    Parameters
    ----------
    y_true : np.ndarray
        True labels (binary)
    y_proba : np.ndarray
        Predicted probabilities for positive class
    threshold : float
        Probability threshold (0 <= threshold < 1)

    Returns
    -------
    float
        Net benefit value
    """
    if threshold < 0 or threshold >= 1:
        return np.nan

    n = len(y_true)
    y_pred = (y_proba >= threshold).astype(int)

    tp = np.sum((y_pred == 1) & (y_true == 1))
    fp = np.sum((y_pred == 1) & (y_true == 0))

    return (tp / n) - (fp / n) * (threshold / (1 - threshold))


def calculate_treat_all_net_benefit(
    y_true: np.ndarray,
    threshold: float,
) -> float:
    """
    Calculate net benefit for "treat all" strategy.

    Assumes all patients are predicted positive.
    """
    if threshold < 0 or threshold >= 1:
        return np.nan

    prevalence = np.mean(y_true)
    return prevalence - (1 - prevalence) * (threshold / (1 - threshold))


def decision_curve(
    y_true: np.ndarray,
    y_proba: np.ndarray,
    thresholds: Optional[np.ndarray] = None,
    name: str = "model",
) -> pd.DataFrame:
    """
    Net benefit of a model and of the treat-all / treat-none strategies.

    Parameters
    ----------
    y_true : np.ndarray
        True labels
    y_proba : np.ndarray
        Predicted probabilities
    thresholds : np.ndarray, optional
        Threshold probabilities (default: 0 to 0.5 by 0.01)
    name : str
        Model name

    Returns
    -------
    pd.DataFrame
        Columns: model, threshold, net_benefit, treat_all, treat_none
    """
    if thresholds is None:
        thresholds = threshold_grid()
    y_true = np.asarray(y_true).astype(int)
    y_proba = np.asarray(y_proba, dtype=float)

    return pd.DataFrame({
        "model": name,
        "threshold": thresholds,
        "net_benefit": [calculate_net_benefit(y_true, y_proba, t) for t in thresholds],
        "treat_all": [calculate_treat_all_net_benefit(y_true, t) for t in thresholds],
        "treat_none": 0.0,
    })


def decision_curves(
    workflows: Union[Mapping[str, object], Sequence[object]],
    X_test: pd.DataFrame,
    y_test: np.ndarray,
    thresholds: Optional[np.ndarray] = None,
) -> pd.DataFrame:
    """
    Decision curves of several workflows on the same test set (long format).

    Parameters
    ----------
    workflows : dict or list of Workflow
        Fitted workflows
    X_test : pd.DataFrame
        Raw test attributes
    y_test : np.ndarray
        Test labels
    thresholds : np.ndarray, optional
        Threshold probabilities

    Returns
    -------
    pd.DataFrame
        Concatenated :func:`decision_curve` tables
    """
    if isinstance(workflows, Mapping):
        workflows = list(workflows.values())

    curves = [
        decision_curve(y_test, wf.predict_proba(X_test), thresholds=thresholds, name=wf.name)
        for wf in workflows
    ]
    result = pd.concat(curves, ignore_index=True)

    # Thresholds where each model beats both default strategies
    for name, curve in result.groupby("model", sort=False):
        useful = curve[(curve["net_benefit"] > curve["treat_all"]) & (curve["net_benefit"] > 0)]
        if len(useful):
            logger.info(
                f"DCA {name}: net benefit above treat-all/none for thresholds "
                f"{useful['threshold'].min():.2f}-{useful['threshold'].max():.2f}"
            )
        else:
            logger.info(f"DCA {name}: no threshold with net benefit above treat-all/none")

    return result
