"""
Shapley attributions, cross-model consensus ranking and bootstrap stability.

Attributions are computed on the raw clinical attributes (before the recipe)
by permutation sampling against a background of real patients, so one-hot
columns and derived features never appear as separate contributors.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy.stats import spearmanr
from tqdm import tqdm

from mortality_ml.dataset import conform_features, validate_record
from mortality_ml.preprocessing import Recipe
from mortality_ml.seeding import derive_seed, make_rng
from mortality_ml.tuning import fit_estimator

logger = logging.getLogger(__name__)

DEFAULT_PERMUTATIONS = 25

BASELINE_LABEL = "_baseline_"
PREDICTION_LABEL = "_prediction_"


@dataclass
class AttributionSet:
    """
    Per-attribute contributions to one patient's predicted risk.

    ``baseline + sum(contributions) == prediction`` (additivity).
    """

    workflow_name: str
    baseline: float
    prediction: float
    contributions: Dict[str, float]
    values: Dict[str, Any] = field(default_factory=dict)

    @property
    def total(self) -> float:
        return float(sum(self.contributions.values()))

    @property
    def residual(self) -> float:
        """Additivity error (0 up to floating-point noise)."""
        return self.prediction - self.baseline - self.total

    def top(self, n: int = 8) -> List[str]:
        """Attributes ordered by absolute contribution."""
        return sorted(self.contributions, key=lambda a: -abs(self.contributions[a]))[:n]

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame({
            "attribute": list(self.contributions),
            "value": [self.values.get(a) for a in self.contributions],
            "contribution": list(self.contributions.values()),
        })
        frame["direction"] = np.where(frame["contribution"] > 0, "increases risk", "decreases risk")
        return frame.reindex(frame["contribution"].abs().sort_values(ascending=False).index).reset_index(drop=True)


def _format_value(value: Any) -> str:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return "NA"
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


def shapley_attribution(
    workflow,
    record: Mapping[str, Any],
    background: pd.DataFrame,
    n_permutations: int = DEFAULT_PERMUTATIONS,
    random_state: int = 2026,
) -> pd.DataFrame:
    """
    Permutation-sampled Shapley values of one patient's mortality probability.

    For every random ordering of the attributes, the patient's values are
    revealed one attribute at a time into the background rows; the change in
    the mean predicted probability is that attribute's contribution for the
    ordering. Contributions are averaged over orderings. Each ordering sums
    exactly to ``prediction - baseline``, so the average does too.

    Parameters
    ----------
    workflow : Workflow
        Fitted workflow
    record : mapping
        Raw patient attributes
    background : pd.DataFrame
        Raw reference patients
    n_permutations : int
        Number of random orderings
    random_state : int
        Seed of the orderings

    Returns
    -------
    pd.DataFrame
        Long table with columns variable, variable_name, variable_value,
        contribution, sign. The first row is ``_baseline_`` (mean background
        prediction), the last ``_prediction_``.
    """
    schema = workflow.schema
    patient = validate_record(record, schema)
    reference = conform_features(background, schema).reset_index(drop=True)
    attributes = schema.names
    n_bg = len(reference)

    rng = make_rng(random_state, "permutations")
    orderings = [rng.permutation(len(attributes)) for _ in range(n_permutations)]

    # Stack every coalition of every ordering and predict once
    blocks = []
    for order in orderings:
        current = reference.copy()
        blocks.append(current.copy())
        for j in order:
            name = attributes[j]
            current[name] = pd.Series([patient.at[0, name]] * n_bg, dtype=current[name].dtype)
            blocks.append(current.copy())
    stacked = pd.concat(blocks, ignore_index=True)
    means = workflow.predict_proba(stacked).reshape(n_permutations, len(attributes) + 1, n_bg).mean(axis=2)

    contributions = np.zeros(len(attributes))
    for p, order in enumerate(orderings):
        steps = np.diff(means[p])
        contributions[order] += steps
    contributions /= n_permutations

    baseline = float(means[0, 0])
    prediction = float(means[0, -1])

    values = {name: patient.at[0, name] for name in attributes}
    order = np.argsort(-np.abs(contributions), kind="mergesort")
    rows = [{
        "variable": BASELINE_LABEL,
        "variable_name": "",
        "variable_value": "",
        "contribution": baseline,
    }]
    for j in order:
        name = attributes[j]
        rows.append({
            "variable": f"{name} = {_format_value(values[name])}",
            "variable_name": name,
            "variable_value": _format_value(values[name]),
            "contribution": float(contributions[j]),
        })
    rows.append({
        "variable": PREDICTION_LABEL,
        "variable_name": "",
        "variable_value": "",
        "contribution": prediction,
    })

    table = pd.DataFrame(rows)
    table["sign"] = np.sign(table["contribution"]).astype(int)
    table.attrs["workflow"] = workflow.name
    table.attrs["values"] = values
    return table


def parent_attribute(label: str, attributes: Sequence[str]) -> Optional[str]:
    """
    Raw attribute behind an attribution label.

    Handles plain names (``age``), ``"attr = value"`` labels and dummy
    columns (``severity_severe``). Returns None for unknown labels.
    """
    label = str(label).strip()
    if label in attributes:
        return label
    if " = " in label:
        head = label.split(" = ", 1)[0].strip()
        if head in attributes:
            return head
    matches = [a for a in attributes if label.startswith(f"{a}_")]
    if matches:
        return max(matches, key=len)
    return None


def collapse_attributions(
    table: pd.DataFrame,
    workflow_name: Optional[str] = None,
    attributes: Optional[Sequence[str]] = None,
) -> AttributionSet:
    """
    Sum a long attribution table back onto the raw attributes.

    Bookkeeping rows (``_baseline_``, ``_prediction_``, intercepts) are not
    contributions; they provide the baseline and prediction.

    Parameters
    ----------
    table : pd.DataFrame
        Output of :func:`shapley_attribution` (or any table with
        ``variable`` and ``contribution`` columns)
    workflow_name : str, optional
        Name recorded on the result
    attributes : list of str, optional
        Raw attribute names (default: inferred from ``variable_name``)

    Returns
    -------
    AttributionSet
    """
    if attributes is None:
        if "variable_name" in table.columns:
            attributes = [a for a in table["variable_name"].unique() if a]
        else:
            attributes = []

    baseline = np.nan
    prediction = np.nan
    contributions: Dict[str, float] = {}
    for row in table.itertuples(index=False):
        label = str(row.variable)
        if label == BASELINE_LABEL or label.lower() == "intercept":
            baseline = float(row.contribution)
            continue
        if label == PREDICTION_LABEL:
            prediction = float(row.contribution)
            continue
        parent = parent_attribute(label, attributes) or label
        contributions[parent] = contributions.get(parent, 0.0) + float(row.contribution)

    if np.isnan(prediction):
        prediction = baseline + sum(contributions.values())

    return AttributionSet(
        workflow_name=workflow_name or table.attrs.get("workflow", ""),
        baseline=baseline,
        prediction=prediction,
        contributions=contributions,
        values=dict(table.attrs.get("values", {})),
    )


def _patient_attribution(workflow, record, background, n_permutations, random_state) -> Dict[str, float]:
    table = shapley_attribution(workflow, record, background, n_permutations, random_state)
    return collapse_attributions(table, workflow.name, workflow.schema.names).contributions


def global_importance(
    workflow,
    X: pd.DataFrame,
    n_permutations: int = DEFAULT_PERMUTATIONS,
    random_state: int = 2026,
    n_jobs: int = 1,
    background: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """
    Mean absolute Shapley contribution per attribute over many patients.

    Parameters
    ----------
    workflow : Workflow
        Fitted workflow with a background sample
    X : pd.DataFrame
        Raw attributes of the patients to explain
    n_permutations : int
        Orderings per patient
    random_state : int
        Top-level seed (per-patient seeds are derived from it)
    n_jobs : int
        Parallel patients
    background : pd.DataFrame, optional
        Override the workflow's background

    Returns
    -------
    pd.DataFrame
        attribute, mean_abs_contribution, mean_contribution, rank (1 = most
        important), sorted by rank
    """
    background = workflow.background if background is None else background
    if background is None:
        raise ValueError(f"Workflow '{workflow.name}' has no explanation background")

    records = X.reset_index(drop=True).to_dict(orient="records")
    per_patient = Parallel(n_jobs=n_jobs)(
        delayed(_patient_attribution)(
            workflow,
            record,
            background,
            n_permutations,
            derive_seed(random_state, "shap", workflow.name, i),
        )
        for i, record in enumerate(records)
    )

    contributions = pd.DataFrame(per_patient, columns=workflow.schema.names)
    importance = pd.DataFrame({
        "attribute": workflow.schema.names,
        "mean_abs_contribution": contributions.abs().mean().to_numpy(),
        "mean_contribution": contributions.mean().to_numpy(),
    })
    importance = importance.sort_values("mean_abs_contribution", ascending=False, kind="mergesort")
    importance["rank"] = np.arange(1, len(importance) + 1)
    importance = importance.reset_index(drop=True)

    logger.info(f"{workflow.name}: top attributes {importance['attribute'].head(5).tolist()}")
    return importance


@dataclass
class ConsensusRanking:
    """Cross-model attribute ranking with rank agreement statistics."""

    table: pd.DataFrame
    correlations: pd.DataFrame
    agreement_threshold: float = 0.70

    @property
    def agreement(self) -> bool:
        """All pairwise Spearman correlations exceed the threshold."""
        if self.correlations.empty:
            return False
        return bool((self.correlations["rho"] > self.agreement_threshold).all())

    @property
    def attributes(self) -> List[str]:
        return self.table["attribute"].tolist()


def consensus_ranking(
    importances: Mapping[str, pd.DataFrame],
    stability: Optional[pd.DataFrame] = None,
    agreement_threshold: float = 0.70,
) -> ConsensusRanking:
    """
    Combine per-model rankings into a consensus.

    Parameters
    ----------
    importances : dict
        Model name -> output of :func:`global_importance`
    stability : pd.DataFrame, optional
        Output of :func:`bootstrap_stability` (adds ``stability_pct``)
    agreement_threshold : float
        Spearman correlation every model pair must exceed

    Returns
    -------
    ConsensusRanking
        ``table`` columns: attribute, mean_rank, sd_rank, consistency
        (1 - sd/mean), mean_abs_contribution[, stability_pct], ordered by
        mean rank
    """
    long = pd.concat(
        [imp.assign(model=name) for name, imp in importances.items()],
        ignore_index=True,
    )
    grouped = long.groupby("attribute", sort=False)
    table = pd.DataFrame({
        "mean_rank": grouped["rank"].mean(),
        "sd_rank": grouped["rank"].std(ddof=1),
        "mean_abs_contribution": grouped["mean_abs_contribution"].mean(),
    })
    table["consistency"] = 1 - table["sd_rank"] / table["mean_rank"]
    table = table.reset_index()[["attribute", "mean_rank", "sd_rank", "consistency", "mean_abs_contribution"]]

    if stability is not None:
        table = table.merge(stability[["attribute", "stability_pct"]], on="attribute", how="left")
        table["stability_pct"] = table["stability_pct"].fillna(0.0)

    table = table.sort_values(["mean_rank", "mean_abs_contribution"], ascending=[True, False], kind="mergesort")
    table = table.reset_index(drop=True)

    rows = []
    names = list(importances)
    for i, name_a in enumerate(names):
        for name_b in names[i + 1:]:
            ranks_a = importances[name_a].set_index("attribute")["rank"]
            ranks_b = importances[name_b].set_index("attribute")["rank"].reindex(ranks_a.index)
            rho, p_value = spearmanr(ranks_a.to_numpy(), ranks_b.to_numpy())
            rows.append({"model_a": name_a, "model_b": name_b, "rho": float(rho), "p_value": float(p_value)})
            logger.info(f"Rank correlation {name_a} vs {name_b}: rho={rho:.3f} (p={p_value:.4f})")
    correlations = pd.DataFrame(rows, columns=["model_a", "model_b", "rho", "p_value"])

    consensus = ConsensusRanking(table=table, correlations=correlations, agreement_threshold=agreement_threshold)
    if len(names) > 1 and not consensus.agreement:
        logger.warning(
            f"Rankings show weak agreement (some rho <= {agreement_threshold}); "
            "consider model-specific attributes"
        )
    return consensus


def _stability_replicate(
    X: pd.DataFrame,
    y: np.ndarray,
    recipe: Recipe,
    params: Dict[str, Any],
    top_n: int,
    random_state: int,
) -> List[str]:
    """Top attributes of one bootstrap Random Forest."""
    rng = np.random.default_rng(random_state)
    idx = rng.integers(0, len(y), size=len(y))
    fitted, X_res, y_res = recipe.fit_transform(X.iloc[idx], y[idx], random_state=random_state)
    forest = fit_estimator("rf", params, X_res, y_res, random_state)

    # Dummy columns count for their attribute, derived features split across inputs
    scores: Dict[str, float] = {}
    parent_map = fitted.parents
    for feature, importance in zip(fitted.feature_names, forest.feature_importances_):
        parents = parent_map[feature]
        for parent in parents:
            scores[parent] = scores.get(parent, 0.0) + importance / len(parents)

    order = sorted(scores, key=lambda a: (-scores[a], recipe.schema.names.index(a)))
    return order[:top_n]


def bootstrap_stability(
    X_train: pd.DataFrame,
    y_train: np.ndarray,
    recipe: Recipe,
    n_bootstraps: int = 100,
    top_n: int = 5,
    params: Optional[Dict[str, Any]] = None,
    random_state: int = 2026,
    n_jobs: int = 1,
) -> pd.DataFrame:
    """
    How often each attribute is among the top-N by impurity importance.

    A fixed Random Forest is refit (recipe included) on every bootstrap
    resample of the training data.

    Parameters
    ----------
    X_train : pd.DataFrame
        Raw training attributes
    y_train : np.ndarray
        Training labels
    recipe : Recipe
        Unfitted recipe (refit on every resample)
    n_bootstraps : int
        Number of resamples
    top_n : int
        Size of the top set counted in every resample; must be below the
        number of attributes
    params : dict, optional
        Forest hyperparameters (default 500 trees, max_features 0.5,
        min_samples_split 20)
    random_state : int
        Top-level seed
    n_jobs : int
        Parallel resamples

    Returns
    -------
    pd.DataFrame
        attribute, frequency, stability_pct, sorted by stability
    """
    attributes = recipe.schema.names
    if not 0 < top_n < len(attributes):
        raise ValueError(
            f"top_n must be between 1 and {len(attributes) - 1} for {len(attributes)} attributes, "
            f"got {top_n}"
        )
    if params is None:
        params = {"n_estimators": 500, "max_features": 0.5, "min_samples_split": 20}

    X_train = X_train.reset_index(drop=True)
    y_train = np.asarray(y_train).astype(int)

    logger.info(f"Bootstrap stability: {n_bootstraps} resamples, top {top_n}")
    tops = Parallel(n_jobs=n_jobs)(
        delayed(_stability_replicate)(
            X_train, y_train, recipe, params, top_n, derive_seed(random_state, "stability", b)
        )
        for b in tqdm(range(n_bootstraps), desc="Stability bootstraps")
    )

    frequency = {a: sum(a in top for top in tops) for a in attributes}
    table = pd.DataFrame({
        "attribute": attributes,
        "frequency": [frequency[a] for a in attributes],
    })
    table["stability_pct"] = 100.0 * table["frequency"] / n_bootstraps
    return table.sort_values("stability_pct", ascending=False, kind="mergesort").reset_index(drop=True)


def select_production_attributes(
    consensus: ConsensusRanking,
    min_stability: float = 80.0,
    min_consistency: float = 0.75,
    max_attributes: int = 8,
) -> List[str]:
    """
    Attributes that are bootstrap-stable and consistently ranked across models.

    Parameters
    ----------
    consensus : ConsensusRanking
        Consensus built with a stability table
    min_stability : float
        Minimum bootstrap stability (%)
    min_consistency : float
        Consistency must be strictly above this value
    max_attributes : int
        Upper bound on the selection

    Returns
    -------
    list of str
        Selected attributes in consensus order
    """
    table = consensus.table
    if "stability_pct" not in table.columns:
        raise ValueError("Consensus ranking has no stability column; pass stability to consensus_ranking")

    selected = table[(table["stability_pct"] >= min_stability) & (table["consistency"] > min_consistency)]
    chosen = selected["attribute"].head(max_attributes).tolist()
    logger.info(f"Selected {len(chosen)} production attributes: {chosen}")
    return chosen
