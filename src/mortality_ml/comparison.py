"""
Test-set evaluation with bootstrap confidence intervals and DeLong tests.

Every bootstrap replicate is seeded from (top-level seed, workflow name,
replicate index), so the intervals do not depend on how replicates are split
across workers.
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Sequence, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy.stats import norm
from tqdm import tqdm

from mortality_ml import SIGNIFICANCE_LEVEL
from mortality_ml.metrics import METRIC_NAMES, PROBABILITY_CLIP, calculate_all_metrics, calculate_calibration
from mortality_ml.seeding import derive_seed
from mortality_ml.workflow import Workflow

logger = logging.getLogger(__name__)

# Replicates per parallel task
BOOTSTRAP_CHUNK_SIZE = 100


class MetricEstimate(NamedTuple):
    """Point estimate with a bootstrap percentile interval."""

    estimate: float
    lower: float
    upper: float
    n_failed: int = 0

    def format(self, digits: int = 3) -> str:
        if np.isnan(self.estimate):
            return "NA"
        return f"{self.estimate:.{digits}f} ({self.lower:.{digits}f}-{self.upper:.{digits}f})"


@dataclass
class EvaluationResult:
    """Metrics of one workflow on one test partition."""

    name: str
    threshold: float
    metrics: Dict[str, MetricEstimate]
    calibration: Dict[str, float]
    n_bootstraps: int
    ci_level: float
    y_true: np.ndarray = field(repr=False)
    y_proba: np.ndarray = field(repr=False)

    @property
    def auc(self) -> float:
        return self.metrics["auc"].estimate

    @property
    def failures(self) -> Dict[str, int]:
        """Bootstrap replicates in which each metric was undefined."""
        return {name: est.n_failed for name, est in self.metrics.items() if est.n_failed}

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    "model": self.name,
                    "metric": name,
                    "estimate": est.estimate,
                    "lower": est.lower,
                    "upper": est.upper,
                    "n_failed": est.n_failed,
                }
                for name, est in self.metrics.items()
            ]
        )


def _bootstrap_chunk(
    y_true: np.ndarray,
    y_proba: np.ndarray,
    threshold: float,
    replicates: Sequence[int],
    random_state: int,
    name: str,
    clip: float,
) -> List[Dict[str, float]]:
    """Metrics for a chunk of stratified bootstrap replicates."""
    cases = np.flatnonzero(y_true == 1)
    controls = np.flatnonzero(y_true == 0)

    results = []
    for b in replicates:
        rng = np.random.default_rng(derive_seed(random_state, "bootstrap", name, b))
        idx = np.concatenate([
            rng.choice(cases, size=len(cases), replace=True),
            rng.choice(controls, size=len(controls), replace=True),
        ])
        results.append(calculate_all_metrics(y_true[idx], y_proba[idx], threshold, clip=clip, warn=False))
    return results


def bootstrap_metrics(
    y_true: np.ndarray,
    y_proba: np.ndarray,
    threshold: float,
    n_bootstraps: int = 2000,
    random_state: int = 2026,
    name: str = "model",
    n_jobs: int = 1,
    clip: float = PROBABILITY_CLIP,
) -> pd.DataFrame:
    """
    Stratified bootstrap of all metrics (cases and controls resampled separately).

    Parameters
    ----------
    y_true : np.ndarray
        Test labels
    y_proba : np.ndarray
        Test probabilities
    threshold : float
        Operating threshold
    n_bootstraps : int
        Number of replicates
    random_state : int
        Top-level seed
    name : str
        Stable identifier of the model (part of every replicate's seed)
    n_jobs : int
        Parallel chunks
    clip : float
        Probability clamp for calibration

    Returns
    -------
    pd.DataFrame
        One row per replicate, in replicate order
    """
    y_true = np.asarray(y_true).astype(int)
    y_proba = np.asarray(y_proba, dtype=float)

    chunks = [
        list(range(start, min(start + BOOTSTRAP_CHUNK_SIZE, n_bootstraps)))
        for start in range(0, n_bootstraps, BOOTSTRAP_CHUNK_SIZE)
    ]
    results = Parallel(n_jobs=n_jobs)(
        delayed(_bootstrap_chunk)(y_true, y_proba, threshold, chunk, random_state, name, clip)
        for chunk in chunks
    )
    return pd.DataFrame([row for chunk in results for row in chunk], columns=METRIC_NAMES)


def evaluate_workflow(
    workflow: Workflow,
    X_test: pd.DataFrame,
    y_test: np.ndarray,
    n_bootstraps: int = 2000,
    ci_level: float = 0.95,
    random_state: int = 2026,
    n_jobs: int = 1,
    clip: float = PROBABILITY_CLIP,
) -> EvaluationResult:
    """
    Evaluate a workflow on the test partition with bootstrap CIs.

    Parameters
    ----------
    workflow : Workflow
        Fitted workflow (its threshold is used as-is)
    X_test : pd.DataFrame
        Raw test attributes
    y_test : np.ndarray
        Test labels
    n_bootstraps : int
        Bootstrap replicates
    ci_level : float
        Confidence level of the percentile intervals
    random_state : int
        Top-level seed
    n_jobs : int
        Parallel bootstrap chunks
    clip : float
        Probability clamp for calibration

    Returns
    -------
    EvaluationResult
    """
    y_test = np.asarray(y_test).astype(int)
    y_proba = workflow.predict_proba(X_test)

    point = calculate_all_metrics(y_test, y_proba, workflow.threshold, clip=clip)
    calibration = calculate_calibration(y_test, y_proba, clip=clip, warn=False)

    replicates = bootstrap_metrics(
        y_test,
        y_proba,
        workflow.threshold,
        n_bootstraps=n_bootstraps,
        random_state=random_state,
        name=workflow.name,
        n_jobs=n_jobs,
        clip=clip,
    )

    alpha = 1 - ci_level
    metrics = {}
    for name in METRIC_NAMES:
        values = replicates[name].to_numpy(dtype=float)
        finite = values[np.isfinite(values)]
        n_failed = int(len(values) - len(finite))
        if len(finite):
            lower, upper = np.percentile(finite, [100 * alpha / 2, 100 * (1 - alpha / 2)])
        else:
            lower = upper = np.nan
        metrics[name] = MetricEstimate(point[name], float(lower), float(upper), n_failed)

    failures = {name: est.n_failed for name, est in metrics.items() if est.n_failed}
    if failures:
        logger.warning(f"{workflow.name}: undefined metric in some bootstrap replicates {failures}")

    logger.info(
        f"{workflow.name}: AUC={metrics['auc'].format()}, "
        f"Sens={metrics['sensitivity'].format()}, Spec={metrics['specificity'].format()}, "
        f"Brier={metrics['brier'].format()}"
    )

    return EvaluationResult(
        name=workflow.name,
        threshold=workflow.threshold,
        metrics=metrics,
        calibration=calibration,
        n_bootstraps=n_bootstraps,
        ci_level=ci_level,
        y_true=y_test,
        y_proba=y_proba,
    )


def _compute_midrank(x: np.ndarray) -> np.ndarray:
    """Midranks (1-based, ties averaged)."""
    order = np.argsort(x, kind="mergesort")
    sorted_x = x[order]
    n = len(x)
    ranks = np.zeros(n, dtype=float)
    i = 0
    while i < n:
        j = i
        while j < n and sorted_x[j] == sorted_x[i]:
            j += 1
        ranks[i:j] = 0.5 * (i + j - 1) + 1
        i = j
    midranks = np.empty(n, dtype=float)
    midranks[order] = ranks
    return midranks


def _fast_delong(predictions: np.ndarray, y_true: np.ndarray):
    """
    AUCs and their covariance matrix for k score vectors on the same labels.

    Parameters
    ----------
    predictions : np.ndarray
        Shape (k, n)
    y_true : np.ndarray
        Labels (0/1), length n

    Returns
    -------
    aucs : np.ndarray
        Shape (k,)
    covariance : np.ndarray
        Shape (k, k)
    """
    positives = predictions[:, y_true == 1]
    negatives = predictions[:, y_true == 0]
    m = positives.shape[1]
    n = negatives.shape[1]
    k = predictions.shape[0]

    tx = np.array([_compute_midrank(positives[r]) for r in range(k)])
    ty = np.array([_compute_midrank(negatives[r]) for r in range(k)])
    tz = np.array([_compute_midrank(np.concatenate([positives[r], negatives[r]])) for r in range(k)])

    aucs = (tz[:, :m].sum(axis=1) / m - (m + 1) / 2.0) / n
    v01 = (tz[:, :m] - tx) / n
    v10 = 1.0 - (tz[:, m:] - ty) / m
    sx = np.atleast_2d(np.cov(v01))
    sy = np.atleast_2d(np.cov(v10))
    return aucs, sx / m + sy / n


def delong_test(y_true: np.ndarray, proba_a: np.ndarray, proba_b: np.ndarray) -> Dict[str, float]:
    """
    Paired DeLong test for two correlated ROC curves.

    The variance of the AUC difference uses the full covariance of the two
    AUC estimates. Swapping ``a`` and ``b`` negates ``z`` and leaves the
    p-value unchanged. A zero variance (identical scores) gives z = 0, p = 1.

    Parameters
    ----------
    y_true : np.ndarray
        Labels (0/1)
    proba_a, proba_b : np.ndarray
        Scores of the two models on the same records

    Returns
    -------
    dict
        auc_a, auc_b, z, p_value, variance
    """
    y_true = np.asarray(y_true).astype(int)
    if len(np.unique(y_true)) < 2:
        raise ValueError("DeLong test needs both outcome classes")

    predictions = np.vstack([np.asarray(proba_a, dtype=float), np.asarray(proba_b, dtype=float)])
    aucs, covariance = _fast_delong(predictions, y_true)
    variance = covariance[0, 0] + covariance[1, 1] - 2 * covariance[0, 1]

    if not np.isfinite(variance) or variance <= 0:
        z, p_value = 0.0, 1.0
    else:
        z = float((aucs[0] - aucs[1]) / np.sqrt(variance))
        p_value = float(2 * norm.sf(abs(z)))

    return {
        "auc_a": float(aucs[0]),
        "auc_b": float(aucs[1]),
        "z": z,
        "p_value": p_value,
        "variance": float(variance),
    }


@dataclass(frozen=True)
class PairwiseComparison:
    """DeLong comparison of model A against model B on the same test set."""

    model_a: str
    model_b: str
    auc_a: float
    auc_b: float
    z: float
    p_value: float
    alpha: float = SIGNIFICANCE_LEVEL

    @property
    def delta_auc(self) -> float:
        return self.auc_a - self.auc_b

    @property
    def significant(self) -> bool:
        return self.p_value < self.alpha

    def reversed(self) -> "PairwiseComparison":
        return PairwiseComparison(
            model_a=self.model_b,
            model_b=self.model_a,
            auc_a=self.auc_b,
            auc_b=self.auc_a,
            z=-self.z,
            p_value=self.p_value,
            alpha=self.alpha,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "model_a": self.model_a,
            "model_b": self.model_b,
            "auc_a": self.auc_a,
            "auc_b": self.auc_b,
            "delta_auc": self.delta_auc,
            "z": self.z,
            "p_value": self.p_value,
            "significant": self.significant,
        }


@dataclass
class ComparisonReport:
    """Evaluations of every workflow plus all pairwise DeLong tests."""

    evaluations: Dict[str, EvaluationResult]
    comparisons: List[PairwiseComparison]
    alpha: float = SIGNIFICANCE_LEVEL

    def comparison(self, model_a: str, model_b: str) -> PairwiseComparison:
        for comp in self.comparisons:
            if (comp.model_a, comp.model_b) == (model_a, model_b):
                return comp
            if (comp.model_a, comp.model_b) == (model_b, model_a):
                return comp.reversed()
        raise KeyError(f"No comparison between '{model_a}' and '{model_b}'")

    def is_better(self, model_a: str, model_b: str) -> bool:
        """A is reported better than B only with higher AUC AND p < alpha."""
        comp = self.comparison(model_a, model_b)
        return comp.delta_auc > 0 and comp.p_value < self.alpha

    def ranking(self) -> List[str]:
        """Model names by test AUC (descending)."""
        return sorted(self.evaluations, key=lambda name: -self.evaluations[name].auc)

    def comparison_frame(self) -> pd.DataFrame:
        return pd.DataFrame([comp.as_dict() for comp in self.comparisons])

    def describe(self) -> List[str]:
        """One line per pair, wording constrained by the significance policy."""
        lines = []
        for comp in self.comparisons:
            if comp.delta_auc < 0:
                comp = comp.reversed()
            verdict = (
                f"{comp.model_a} is better"
                if comp.delta_auc > 0 and comp.p_value < self.alpha
                else "no significant difference"
            )
            lines.append(
                f"{comp.model_a} vs {comp.model_b}: ΔAUC={comp.delta_auc:+.3f}, "
                f"z={comp.z:.2f}, p={comp.p_value:.4f} ({verdict})"
            )
        return lines


def compare_workflows(
    workflows: Union[Mapping[str, Workflow], Sequence[Workflow]],
    X_test: pd.DataFrame,
    y_test: np.ndarray,
    config: Optional[Dict[str, Any]] = None,
    n_jobs: Optional[int] = None,
) -> ComparisonReport:
    """
    Evaluate every workflow and run DeLong tests on all unordered pairs.

    Parameters
    ----------
    workflows : dict or list of Workflow
        Workflows to compare (names must be unique)
    X_test : pd.DataFrame
        Raw test attributes
    y_test : np.ndarray
        Test labels
    config : dict, optional
        Configuration (``random_state``, ``n_jobs``, ``evaluation`` section)
    n_jobs : int, optional
        Override ``config["n_jobs"]``

    Returns
    -------
    ComparisonReport
    """
    config = config or {}
    eval_cfg = config.get("evaluation", {})
    alpha = eval_cfg.get("significance_level", SIGNIFICANCE_LEVEL)
    if n_jobs is None:
        n_jobs = config.get("n_jobs", 1)

    if isinstance(workflows, Mapping):
        workflows = list(workflows.values())
    names = [wf.name for wf in workflows]
    if len(set(names)) != len(names):
        raise ValueError(f"Workflow names must be unique: {names}")

    evaluations = {}
    for workflow in tqdm(workflows, desc="Bootstrap evaluation"):
        evaluations[workflow.name] = evaluate_workflow(
            workflow,
            X_test,
            y_test,
            n_bootstraps=eval_cfg.get("n_bootstraps", 2000),
            ci_level=eval_cfg.get("ci_level", 0.95),
            random_state=config.get("random_state", 2026),
            n_jobs=n_jobs,
            clip=eval_cfg.get("probability_clip", PROBABILITY_CLIP),
        )

    comparisons = []
    for name_a, name_b in itertools.combinations(names, 2):
        result = delong_test(y_test, evaluations[name_a].y_proba, evaluations[name_b].y_proba)
        comparisons.append(
            PairwiseComparison(
                model_a=name_a,
                model_b=name_b,
                auc_a=result["auc_a"],
                auc_b=result["auc_b"],
                z=result["z"],
                p_value=result["p_value"],
                alpha=alpha,
            )
        )
        logger.info(
            f"DeLong {name_a} vs {name_b}: ΔAUC={result['auc_a'] - result['auc_b']:+.3f}, "
            f"p={result['p_value']:.4f}"
        )

    return ComparisonReport(evaluations=evaluations, comparisons=comparisons, alpha=alpha)
