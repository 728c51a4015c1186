"""Operating-threshold selection on out-of-fold training predictions."""

import logging

import numpy as np
from sklearn.metrics import roc_curve

logger = logging.getLogger(__name__)


def youden_threshold(y_true: np.ndarray, y_proba: np.ndarray) -> float:
    """
    Threshold maximizing Youden's J = sensitivity + specificity - 1.

    Ties are broken toward the lowest threshold. The classification rule is
    ``proba >= threshold``.

    Parameters
    ----------
    y_true : np.ndarray
        True labels (0/1)
    y_proba : np.ndarray
        Predicted probabilities for class 1

    Returns
    -------
    float
        Selected threshold
    """
    y_true = np.asarray(y_true)
    y_proba = np.asarray(y_proba, dtype=float)
    if len(np.unique(y_true)) < 2:
        raise ValueError("Youden threshold needs both outcome classes")

    fpr, tpr, thresholds = roc_curve(y_true, y_proba, drop_intermediate=False)
    # First point is the (inf) threshold that classifies nothing as positive
    j = (tpr - fpr)[1:]
    thresholds = thresholds[1:]

    # Thresholds are decreasing: the last maximum is the lowest threshold
    best = len(j) - 1 - int(np.argmax(j[::-1]))
    threshold = float(thresholds[best])

    logger.debug(
        f"Youden threshold {threshold:.4f} (J={j[best]:.3f}, "
        f"sens={tpr[best + 1]:.3f}, spec={1 - fpr[best + 1]:.3f})"
    )
    return threshold


def classify(y_proba: np.ndarray, threshold: float) -> np.ndarray:
    """Apply the operating threshold (``proba >= threshold`` is positive)."""
    return (np.asarray(y_proba) >= threshold).astype(int)
