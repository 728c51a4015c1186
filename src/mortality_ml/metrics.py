"""
Evaluation metrics module.

Metrics for binary mortality prediction:
- ROC-AUC, PR-AUC, Brier score
- Calibration intercept and slope (logistic recalibration)
- Sensitivity, Specificity, PPV, NPV, Cohen's kappa at a fixed threshold
"""

import logging
import warnings
from typing import Dict

import numpy as np
import statsmodels.api as sm
from sklearn.metrics import (
    auc,
    brier_score_loss,
    cohen_kappa_score,
    confusion_matrix,
    precision_recall_curve,
    recall_score,
    roc_auc_score,
)
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from mortality_ml.exceptions import ClippedProbability
from mortality_ml.threshold import classify

logger = logging.getLogger(__name__)

# Probabilities are clamped to [eps, 1 - eps] before the logit transform
PROBABILITY_CLIP = 0.001

METRIC_NAMES = [
    "auc",
    "pr_auc",
    "brier",
    "calibration_intercept",
    "calibration_slope",
    "sensitivity",
    "specificity",
    "ppv",
    "npv",
    "kappa",
]


def calculate_sensitivity(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """
    Calculate sensitivity (recall for positive class).

    Sensitivity = TP / (TP + FN)

    Parameters
    ----------
    y_true : np.ndarray
        True labels
    y_pred : np.ndarray
        Predicted labels

    Returns
    -------
    float
        Sensitivity score
    """
    return recall_score(y_true, y_pred, pos_label=1, zero_division=0)


def calculate_specificity(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """
    Calculate specificity (recall for negative class).

    Specificity = TN / (TN + FP)
    """
    return recall_score(y_true, y_pred, pos_label=0, zero_division=0)


def calculate_predictive_values(y_true: np.ndarray, y_pred: np.ndarray) -> Dict[str, float]:
    """
    Positive and negative predictive values.

    Undefined values (no predicted positives / negatives) are NaN.
    """
    tn, fp, fn, tp = confusion_matrix(y_true, y_pred, labels=[0, 1]).ravel()
    return {
        "ppv": tp / (tp + fp) if (tp + fp) > 0 else np.nan,
        "npv": tn / (tn + fn) if (tn + fn) > 0 else np.nan,
    }


def calculate_pr_auc(y_true: np.ndarray, y_proba: np.ndarray) -> float:
    """Area under the precision-recall curve."""
    precision, recall, _ = precision_recall_curve(y_true, y_proba)
    return auc(recall, precision)


def calculate_calibration(
    y_true: np.ndarray,
    y_proba: np.ndarray,
    clip: float = PROBABILITY_CLIP,
    warn: bool = True,
) -> Dict[str, float]:
    """
    Logistic recalibration: regress the outcome on logit(predicted probability).

    A perfectly calibrated model has intercept 0 and slope 1. Probabilities
    outside ``[clip, 1 - clip]`` are clamped first; with ``warn=True`` this
    emits a :class:`ClippedProbability` warning and a log line.

    Parameters
    ----------
    y_true : np.ndarray
        True labels
    y_proba : np.ndarray
        Predicted probabilities
    clip : float
        Clamp distance from 0 and 1
    warn : bool
        Report clamping (disabled inside bootstrap replicates)

    Returns
    -------
    dict
        intercept, slope, their standard errors and p-values, n_clipped
    """
    y_proba = np.asarray(y_proba, dtype=float)
    clipped = np.clip(y_proba, clip, 1 - clip)
    n_clipped = int(np.sum(clipped != y_proba))
    if n_clipped and warn:
        message = f"{n_clipped} predicted probabilities clamped to [{clip}, {1 - clip}] before logit"
        logger.warning(message)
        warnings.warn(message, ClippedProbability, stacklevel=2)

    result = {
        "intercept": np.nan,
        "slope": np.nan,
        "intercept_se": np.nan,
        "slope_se": np.nan,
        "intercept_p": np.nan,
        "slope_p": np.nan,
        "n_clipped": n_clipped,
    }

    linear_predictor = np.log(clipped / (1 - clipped))
    design = sm.add_constant(linear_predictor, has_constant="add")
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            fit = sm.Logit(np.asarray(y_true, dtype=float), design).fit(disp=0)
    except (PerfectSeparationError, np.linalg.LinAlgError, ValueError) as e:
        if warn:
            logger.warning(f"Could not fit calibration model: {e}")
        return result

    result.update({
        "intercept": float(fit.params[0]),
        "slope": float(fit.params[1]),
        "intercept_se": float(fit.bse[0]),
        "slope_se": float(fit.bse[1]),
        "intercept_p": float(fit.pvalues[0]),
        "slope_p": float(fit.pvalues[1]),
    })
    return result


def calculate_all_metrics(
    y_true: np.ndarray,
    y_proba: np.ndarray,
    threshold: float,
    clip: float = PROBABILITY_CLIP,
    warn: bool = True,
) -> Dict[str, float]:
    """
    Calculate all evaluation metrics.

    Parameters
    ----------
    y_true : np.ndarray
        True labels
    y_proba : np.ndarray
        Predicted probabilities for positive class
    threshold : float
        Operating threshold for the classification metrics
    clip : float
        Probability clamp for calibration
    warn : bool
        Log/warn on recoverable problems (off inside bootstrap replicates)

    Returns
    -------
    dict
        Dictionary of metric names and values (see :data:`METRIC_NAMES`)
    """
    y_true = np.asarray(y_true).astype(int)
    y_proba = np.asarray(y_proba, dtype=float)
    y_pred = classify(y_proba, threshold)

    metrics = {}

    # Probabilistic metrics
    try:
        metrics["auc"] = roc_auc_score(y_true, y_proba)
    except ValueError as e:
        if warn:
            logger.warning(f"Could not calculate ROC-AUC: {e}")
        metrics["auc"] = np.nan

    try:
        metrics["pr_auc"] = calculate_pr_auc(y_true, y_proba)
    except ValueError as e:
        if warn:
            logger.warning(f"Could not calculate PR-AUC: {e}")
        metrics["pr_auc"] = np.nan

    metrics["brier"] = brier_score_loss(y_true, y_proba)

    calibration = calculate_calibration(y_true, y_proba, clip=clip, warn=warn)
    metrics["calibration_intercept"] = calibration["intercept"]
    metrics["calibration_slope"] = calibration["slope"]

    # Threshold metrics
    metrics["sensitivity"] = calculate_sensitivity(y_true, y_pred)
    metrics["specificity"] = calculate_specificity(y_true, y_pred)
    metrics.update(calculate_predictive_values(y_true, y_pred))
    if len(np.unique(y_pred)) == 1 and len(np.unique(y_true)) == 1:
        metrics["kappa"] = np.nan
    else:
        metrics["kappa"] = cohen_kappa_score(y_true, y_pred)

    return {name: float(metrics[name]) for name in METRIC_NAMES}
