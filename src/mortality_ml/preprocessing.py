"""
Preprocessing recipes for the mortality prediction pipeline.

A :class:`Recipe` is an ordered list of steps. Every step learns its
parameters ONLY from the data passed to :meth:`Recipe.fit` (one fold's
training partition, a bootstrap resample, or the full training partition)
and the resulting :class:`FittedRecipe` applies them unchanged to any other
data. Oversampling is a fit-phase step: it never runs on ``apply``.

Default step order:
1. KNN imputation of numeric attributes (k=5, on training-standardized values)
2. Mode imputation of categorical/boolean attributes
3. Derived features (hepatic ratio, log platelets)
4. Correlation pruning (|r| > 0.60)
5. Near-zero-variance pruning
6. Yeo-Johnson power transform
7. Standardization
8. Dummy (reference-level) coding
9. SMOTE (training only)
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from imblearn.over_sampling import SMOTE
from sklearn.impute import KNNImputer
from sklearn.preprocessing import OneHotEncoder, PowerTransformer, StandardScaler

from mortality_ml.dataset import (
    CATEGORICAL,
    DEFAULT_SCHEMA,
    NUMERIC,
    AttributeSpec,
    ClinicalSchema,
    conform_features,
)
from mortality_ml.exceptions import DegenerateColumn

logger = logging.getLogger(__name__)

_NUMERIC_SPEC = AttributeSpec(NUMERIC)

def hepatic_ratio(bilirubin, albumin):
    """Bilirubin to albumin ratio (liver function)."""
    return bilirubin / (albumin + 0.1)


def log_platelets(platelets):
    return np.log(platelets + 1)


# name -> (input attributes, function of the input columns)
DERIVED_FEATURES = {
    "hepatic_ratio": (("bilirubin", "albumin"), hepatic_ratio),
    "log_platelets": (("platelets",), log_platelets),
}


def _numeric_columns(X: pd.DataFrame, kinds: Dict[str, AttributeSpec]) -> List[str]:
    return [col for col in X.columns if kinds[col].kind == NUMERIC]


def _discrete_columns(X: pd.DataFrame, kinds: Dict[str, AttributeSpec]) -> List[str]:
    return [col for col in X.columns if kinds[col].kind != NUMERIC]


class RecipeStep:
    """
    One preprocessing step.

    ``fit`` returns a parameter dict learned from the training data only;
    ``apply`` is a pure function of its input and those parameters. Columns a
    step creates are numeric.
    """

    name = "step"
    fit_only = False

    def fit(self, X: pd.DataFrame, y: np.ndarray, kinds: Dict[str, AttributeSpec]) -> Dict[str, Any]:
        return {}

    def apply(self, X: pd.DataFrame, params: Dict[str, Any]) -> pd.DataFrame:
        return X

    def removed(self, params: Dict[str, Any]) -> List[str]:
        """Columns this step removes, for reporting."""
        return list(params.get("removed", []))

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class DropAttributes(RecipeStep):
    """Remove named attributes (ablation studies)."""

    name = "drop"

    def __init__(self, columns: Sequence[str]):
        self.columns = list(columns)

    def fit(self, X, y, kinds):
        return {"removed": [col for col in self.columns if col in X.columns]}

    def apply(self, X, params):
        return X.drop(columns=params["removed"])

    def __repr__(self) -> str:
        return f"DropAttributes({self.columns!r})"


class NumericKNNImputation(RecipeStep):
    """
    KNN imputation of numeric columns.

    Distances are computed on numerics standardized with the training mean and
    SD so that large-scale attributes (platelets) do not dominate.
    """

    name = "impute_knn"

    def __init__(self, n_neighbors: int = 5):
        self.n_neighbors = n_neighbors

    def fit(self, X, y, kinds):
        columns = _numeric_columns(X, kinds)
        if not columns:
            return {"columns": []}

        values = X[columns].to_numpy(dtype=float)
        center = np.nanmean(values, axis=0)
        scale = np.nanstd(values, axis=0, ddof=1)
        center = np.where(np.isnan(center), 0.0, center)
        scale = np.where(~np.isfinite(scale) | (scale == 0), 1.0, scale)

        imputer = KNNImputer(n_neighbors=self.n_neighbors, keep_empty_features=True)
        imputer.fit((values - center) / scale)

        n_missing = int(np.isnan(values).sum())
        logger.debug(f"KNN imputer fitted on {len(values)} rows ({n_missing} missing values)")
        return {"columns": columns, "center": center, "scale": scale, "imputer": imputer}

    def apply(self, X, params):
        columns = params["columns"]
        if not columns:
            return X
        values = X[columns].to_numpy(dtype=float)
        if not np.isnan(values).any():
            return X
        scaled = (values - params["center"]) / params["scale"]
        imputed = params["imputer"].transform(scaled) * params["scale"] + params["center"]
        # Observed values are passed through untouched
        imputed = np.where(np.isnan(values), imputed, values)
        X = X.copy()
        X[columns] = imputed
        return X

    def __repr__(self) -> str:
        return f"NumericKNNImputation(n_neighbors={self.n_neighbors})"


class CategoricalModeImputation(RecipeStep):
    """Mode imputation of categorical and boolean columns (ties -> first level)."""

    name = "impute_mode"

    def fit(self, X, y, kinds):
        modes = {}
        for col in _discrete_columns(X, kinds):
            levels = kinds[col].levels
            counts = X[col].value_counts(dropna=True)
            best = max(levels, key=lambda level: (counts.get(level, 0), -levels.index(level)))
            modes[col] = best
        return {"modes": modes}

    def apply(self, X, params):
        X = X.copy()
        for col, mode in params["modes"].items():
            X[col] = X[col].where(X[col].notna(), mode).astype(object)
        return X


class DerivedFeatures(RecipeStep):
    """Add deterministic derived attributes whose inputs are still present."""

    name = "derive"

    def __init__(self, features: Optional[Dict[str, Tuple[Tuple[str, ...], Any]]] = None):
        self.features = DERIVED_FEATURES if features is None else features

    def fit(self, X, y, kinds):
        active = [
            name
            for name, (inputs, _) in self.features.items()
            if all(col in X.columns for col in inputs)
        ]
        skipped = sorted(set(self.features) - set(active))
        if skipped:
            logger.debug(f"Derived features skipped (inputs dropped): {skipped}")
        return {"features": active}

    def apply(self, X, params):
        X = X.copy()
        for name in params["features"]:
            inputs, func = self.features[name]
            X[name] = func(*(X[col].astype(float) for col in inputs))
        return X


class CorrelationFilter(RecipeStep):
    """
    Remove numeric columns until no pair has |Pearson r| above ``threshold``.

    Greedy: take the most correlated remaining pair and remove the member with
    the larger mean absolute correlation to the other remaining columns; equal
    means remove the later column.
    """

    name = "corr"

    def __init__(self, threshold: float = 0.60):
        self.threshold = threshold

    def fit(self, X, y, kinds):
        columns = _numeric_columns(X, kinds)
        if len(columns) < 2:
            return {"removed": []}

        with np.errstate(invalid="ignore", divide="ignore"):
            corr = np.abs(np.corrcoef(X[columns].to_numpy(dtype=float), rowvar=False))
        corr = np.nan_to_num(corr, nan=0.0)
        np.fill_diagonal(corr, 0.0)

        remaining = list(range(len(columns)))
        removed = []
        while len(remaining) > 1:
            sub = corr[np.ix_(remaining, remaining)]
            i, j = np.unravel_index(np.argmax(sub), sub.shape)
            if sub[i, j] <= self.threshold:
                break
            first, second = sorted((i, j))
            mean_corr = sub.sum(axis=1) / (len(remaining) - 1)
            drop = first if mean_corr[first] > mean_corr[second] else second
            removed.append(columns[remaining[drop]])
            del remaining[drop]

        if removed:
            logger.debug(f"Correlation filter (|r| > {self.threshold}) removed {removed}")
        return {"removed": removed}

    def apply(self, X, params):
        return X.drop(columns=params["removed"])

    def __repr__(self) -> str:
        return f"CorrelationFilter(threshold={self.threshold})"


class NearZeroVariance(RecipeStep):
    """
    Remove near-zero-variance columns of any kind.

    A column is removed when it has a single distinct value, or when the ratio
    of the most to the second most frequent value exceeds ``freq_cut`` and the
    percentage of distinct values is at most ``unique_cut``.
    """

    name = "nzv"

    def __init__(self, freq_cut: float = 95 / 5, unique_cut: float = 10.0):
        self.freq_cut = freq_cut
        self.unique_cut = unique_cut

    def fit(self, X, y, kinds):
        removed = []
        for col in X.columns:
            counts = X[col].value_counts(dropna=True)
            if len(counts) <= 1:
                removed.append(col)
                continue
            freq_ratio = counts.iloc[0] / counts.iloc[1]
            pct_unique = 100.0 * len(counts) / len(X)
            if freq_ratio > self.freq_cut and pct_unique <= self.unique_cut:
                removed.append(col)

        if removed:
            logger.debug(f"Near-zero-variance filter removed {removed}")
        return {"removed": removed}

    def apply(self, X, params):
        return X.drop(columns=params["removed"])


class PowerTransform(RecipeStep):
    """
    Yeo-Johnson transform of numeric columns.

    Columns with fewer than ``num_unique`` distinct values are left as they
    are; a constant column raises :class:`DegenerateColumn`.
    """

    name = "yeo_johnson"

    def __init__(self, num_unique: int = 5):
        self.num_unique = num_unique

    def fit(self, X, y, kinds):
        columns = []
        for col in _numeric_columns(X, kinds):
            n_unique = X[col].nunique(dropna=True)
            if n_unique <= 1:
                raise DegenerateColumn(col)
            if n_unique >= self.num_unique:
                columns.append(col)

        if not columns:
            return {"columns": []}

        transformer = PowerTransformer(method="yeo-johnson", standardize=False)
        transformer.fit(X[columns].to_numpy(dtype=float))
        logger.debug(f"Yeo-Johnson lambdas: {dict(zip(columns, np.round(transformer.lambdas_, 3)))}")
        return {"columns": columns, "transformer": transformer}

    def apply(self, X, params):
        if not params["columns"]:
            return X
        X = X.copy()
        X[params["columns"]] = params["transformer"].transform(X[params["columns"]].to_numpy(dtype=float))
        return X


class Standardize(RecipeStep):
    """Center and scale numeric columns with the training mean and SD."""

    name = "normalize"

    def fit(self, X, y, kinds):
        columns = _numeric_columns(X, kinds)
        if not columns:
            return {"columns": []}
        scaler = StandardScaler().fit(X[columns].to_numpy(dtype=float))
        return {"columns": columns, "scaler": scaler}

    def apply(self, X, params):
        if not params["columns"]:
            return X
        X = X.copy()
        X[params["columns"]] = params["scaler"].transform(X[params["columns"]].to_numpy(dtype=float))
        return X


class OneHotEncode(RecipeStep):
    """Reference (dummy) coding of discrete columns against their first level."""

    name = "dummy"

    def fit(self, X, y, kinds):
        encoders = {}
        parents = {}
        for col in _discrete_columns(X, kinds):
            levels = list(kinds[col].levels)
            encoder = OneHotEncoder(
                categories=[np.array(levels, dtype=object)],
                drop="first",
                handle_unknown="error",
                sparse_output=False,
            )
            encoder.fit(X[[col]].astype(object))
            encoders[col] = encoder
            for name in encoder.get_feature_names_out([col]):
                parents[name] = col
        return {"encoders": encoders, "parents": parents}

    def apply(self, X, params):
        if not params["encoders"]:
            return X
        blocks = [X.drop(columns=list(params["encoders"]))]
        for col, encoder in params["encoders"].items():
            blocks.append(
                pd.DataFrame(
                    encoder.transform(X[[col]].astype(object)),
                    columns=encoder.get_feature_names_out([col]),
                    index=X.index,
                )
            )
        return pd.concat(blocks, axis=1)


class Oversample(RecipeStep):
    """
    SMOTE oversampling of the minority class (fit phase only).

    ``ratio`` is the target minority/majority ratio after resampling.
    """

    name = "smote"
    fit_only = True

    def __init__(self, ratio: float = 1.0, k_neighbors: int = 5):
        self.ratio = ratio
        self.k_neighbors = k_neighbors

    def resample(
        self, X: pd.DataFrame, y: np.ndarray, random_state: int
    ) -> Tuple[pd.DataFrame, np.ndarray]:
        counts = np.bincount(y, minlength=2)
        if counts.min() == 0:
            logger.warning("Cannot apply SMOTE: only one class in training data. Skipping SMOTE.")
            return X, y

        if counts.min() / counts.max() >= self.ratio:
            logger.debug(f"Class ratio already >= {self.ratio}; SMOTE not needed")
            return X, y

        # Adjust k_neighbors if minority class is too small
        k_neighbors = min(self.k_neighbors, int(counts.min()) - 1)
        if k_neighbors < 1:
            logger.warning(
                f"Minority class size ({counts.min()}) too small for SMOTE. Skipping SMOTE."
            )
            return X, y

        smote = SMOTE(
            sampling_strategy=self.ratio,
            k_neighbors=k_neighbors,
            random_state=random_state,
        )
        X_res, y_res = smote.fit_resample(X, y)
        logger.debug(
            f"Class distribution before/after SMOTE: {counts.tolist()} -> "
            f"{np.bincount(y_res, minlength=2).tolist()}"
        )
        return pd.DataFrame(X_res, columns=X.columns), np.asarray(y_res)

    def __repr__(self) -> str:
        return f"Oversample(ratio={self.ratio}, k_neighbors={self.k_neighbors})"


class FittedRecipe:
    """
    Recipe steps with their learned parameters.

    :meth:`apply` is pure: the same input always yields bit-identical output,
    and the oversampling step is skipped.
    """

    def __init__(
        self,
        schema: ClinicalSchema,
        steps: List[Tuple[RecipeStep, Dict[str, Any]]],
        feature_names: List[str],
        degenerate: List[str],
    ):
        self.schema = schema
        self.steps = steps
        self.feature_names = feature_names
        self.degenerate = degenerate

    def apply(self, X: pd.DataFrame) -> pd.DataFrame:
        """
        Transform raw attributes with the learned parameters.

        Parameters
        ----------
        X : pd.DataFrame
            Raw attributes (any subset of the schema; absent ones are imputed)

        Returns
        -------
        pd.DataFrame
            Model-ready features in :attr:`feature_names` order
        """
        Xt = conform_features(X, self.schema).reset_index(drop=True)
        for step, params in self.steps:
            if step.fit_only:
                continue
            Xt = step.apply(Xt, params)
        return Xt[self.feature_names].astype(float)

    def params_of(self, step_name: str) -> Dict[str, Any]:
        for step, params in self.steps:
            if step.name == step_name:
                return params
        raise KeyError(f"Recipe has no '{step_name}' step")

    @property
    def removed_columns(self) -> Dict[str, List[str]]:
        """Columns removed by each pruning step (including degenerate drops)."""
        removed = {}
        for step, params in self.steps:
            cols = step.removed(params)
            if cols:
                removed.setdefault(step.name, []).extend(cols)
        return removed

    @property
    def standardization(self) -> pd.DataFrame:
        """Learned mean and SD per standardized column."""
        params = self.params_of(Standardize.name)
        if not params["columns"]:
            return pd.DataFrame(columns=["mean", "scale"])
        scaler = params["scaler"]
        return pd.DataFrame({"mean": scaler.mean_, "scale": scaler.scale_}, index=params["columns"])

    @property
    def parents(self) -> Dict[str, Tuple[str, ...]]:
        """
        Raw attribute(s) behind every output feature.

        Dummy columns map to their source attribute, derived features to
        their inputs, other columns to themselves.
        """
        dummy_parents: Dict[str, str] = {}
        for step, params in self.steps:
            if isinstance(step, OneHotEncode):
                dummy_parents.update(params["parents"])

        mapping = {}
        for name in self.feature_names:
            if name in dummy_parents:
                mapping[name] = (dummy_parents[name],)
            elif name in DERIVED_FEATURES:
                mapping[name] = DERIVED_FEATURES[name][0]
            else:
                mapping[name] = (name,)
        return mapping

    def __repr__(self) -> str:
        names = [step.name for step, _ in self.steps]
        return f"FittedRecipe(steps={names}, n_features={len(self.feature_names)})"


class Recipe:
    """
    Ordered list of preprocessing steps.

    Parameters
    ----------
    steps : list of RecipeStep
        Steps in application order
    schema : ClinicalSchema
        Schema of the raw input (declares each attribute's kind)
    """

    def __init__(self, steps: Sequence[RecipeStep], schema: ClinicalSchema = DEFAULT_SCHEMA):
        self.steps = list(steps)
        self.schema = schema

    def fit_transform(
        self,
        X: pd.DataFrame,
        y: np.ndarray,
        random_state: int = 2026,
    ) -> Tuple[FittedRecipe, pd.DataFrame, np.ndarray]:
        """
        Fit every step on ``X`` and return the fitted recipe and training output.

        The training output includes the oversampled rows; use
        :meth:`FittedRecipe.apply` for validation, test and inference data.

        Parameters
        ----------
        X : pd.DataFrame
            Raw training attributes
        y : np.ndarray
            Training labels
        random_state : int
            Seed for the oversampling step

        Returns
        -------
        fitted : FittedRecipe
        X_train : pd.DataFrame
        y_train : np.ndarray
        """
        Xt = conform_features(X, self.schema).reset_index(drop=True)
        yt = np.asarray(y).astype(int)
        kinds: Dict[str, AttributeSpec] = dict(self.schema.attributes)

        fitted_steps: List[Tuple[RecipeStep, Dict[str, Any]]] = []
        degenerate: List[str] = []

        for step in self.steps:
            if step.fit_only:
                Xt, yt = step.resample(Xt, yt, random_state)
                fitted_steps.append((step, {}))
                continue

            while True:
                try:
                    params = step.fit(Xt, yt, kinds)
                    break
                except DegenerateColumn as exc:
                    logger.warning(f"Dropping degenerate column '{exc.column}' before {step.name}")
                    drop = DropAttributes([exc.column])
                    drop_params = drop.fit(Xt, yt, kinds)
                    Xt = drop.apply(Xt, drop_params)
                    fitted_steps.append((drop, drop_params))
                    degenerate.append(exc.column)

            Xt = step.apply(Xt, params)
            fitted_steps.append((step, params))
            kinds = {col: kinds.get(col, _NUMERIC_SPEC) for col in Xt.columns}

        feature_names = list(Xt.columns)
        fitted = FittedRecipe(self.schema, fitted_steps, feature_names, degenerate)
        return fitted, Xt.astype(float), yt

    def fit(self, X: pd.DataFrame, y: np.ndarray, random_state: int = 2026) -> FittedRecipe:
        fitted, _, _ = self.fit_transform(X, y, random_state=random_state)
        return fitted

    def __repr__(self) -> str:
        return f"Recipe({self.steps!r})"


def build_recipe(
    config: Optional[dict] = None,
    drop: Optional[Sequence[str]] = None,
    oversample: Optional[bool] = None,
    variant: str = "full",
    schema: ClinicalSchema = DEFAULT_SCHEMA,
    oversample_ratio: Optional[float] = None,
) -> Recipe:
    """
    Build the standard recipe from the ``recipe`` config section.

    Parameters
    ----------
    config : dict, optional
        Full configuration (only ``config["recipe"]`` is read)
    drop : list of str, optional
        Attributes removed before any other step (ablation)
    oversample : bool, optional
        Override ``recipe.oversample``
    variant : {"full", "baseline"}
        ``"baseline"`` is the reference recipe for logistic regression:
        imputation, dummy coding and standardization only
    schema : ClinicalSchema
        Raw input schema
    oversample_ratio : float, optional
        Override ``recipe.oversample_ratio``

    Returns
    -------
    Recipe
    """
    recipe_cfg = (config or {}).get("recipe", {})
    knn_neighbors = recipe_cfg.get("knn_neighbors", 5)

    steps: List[RecipeStep] = []
    if drop:
        steps.append(DropAttributes(drop))

    if variant == "baseline":
        steps.extend([
            NumericKNNImputation(n_neighbors=knn_neighbors),
            CategoricalModeImputation(),
            OneHotEncode(),
            Standardize(),
        ])
        return Recipe(steps, schema=schema)

    if variant != "full":
        raise ValueError(f"Unknown recipe variant: {variant}. Available: ['full', 'baseline']")

    steps.extend([
        NumericKNNImputation(n_neighbors=knn_neighbors),
        CategoricalModeImputation(),
        DerivedFeatures(),
        CorrelationFilter(threshold=recipe_cfg.get("correlation_threshold", 0.60)),
        NearZeroVariance(
            freq_cut=recipe_cfg.get("nzv_freq_cut", 95 / 5),
            unique_cut=recipe_cfg.get("nzv_unique_cut", 10.0),
        ),
        PowerTransform(),
        Standardize(),
        OneHotEncode(),
    ])

    if oversample is None:
        oversample = recipe_cfg.get("oversample", True)
    if oversample:
        steps.append(
            Oversample(
                ratio=oversample_ratio if oversample_ratio is not None else recipe_cfg.get("oversample_ratio", 1.0),
                k_neighbors=recipe_cfg.get("oversample_neighbors", 5),
            )
        )

    return Recipe(steps, schema=schema)


def audit_fold_isolation(dataset, folds, recipe: Recipe, random_state: int = 2026) -> pd.DataFrame:
    """
    Fit ``recipe`` on each fold's training partition and report what it learned.

    For every fold the fitted recipe is re-applied to the same training
    partition: standardized numeric columns must have mean 0 and SD 1 there,
    while the learned statistics differ between folds.

    Parameters
    ----------
    dataset : Dataset
        Parent dataset
    folds : list of Fold
        Folds from :func:`mortality_ml.partition.stratified_kfold`
    recipe : Recipe
        Recipe to audit
    random_state : int
        Seed for oversampling

    Returns
    -------
    pd.DataFrame
        One row per fold
    """
    rows = []
    for fold in folds:
        X_train = dataset.features(fold.train)
        y_train = dataset.labels(fold.train)
        fitted, _, y_res = recipe.fit_transform(X_train, y_train, random_state=random_state)
        baked = fitted.apply(X_train)

        stats = fitted.standardization
        standardized = baked[list(stats.index)]
        raw_numeric = X_train[dataset.schema.numeric]

        rows.append({
            "fold": fold.index,
            "n_train": len(fold.train),
            "n_validation": len(fold.validation),
            "max_abs_mean": float(standardized.mean().abs().max()) if len(stats) else 0.0,
            "max_abs_sd_error": float((standardized.std(ddof=0) - 1).abs().max()) if len(stats) else 0.0,
            "removed": "; ".join(
                f"{step}: {', '.join(cols)}" for step, cols in fitted.removed_columns.items()
            ),
            "n_features": len(fitted.feature_names),
            "n_after_oversampling": int(len(y_res)),
            "prevalence_after_oversampling": float(np.mean(y_res)),
            **{f"raw_mean_{col}": float(raw_numeric[col].mean()) for col in raw_numeric.columns},
        })

        logger.info(
            f"Fold {fold.index}: {len(fitted.feature_names)} features, "
            f"{len(y_res)} rows after oversampling"
        )

    return pd.DataFrame(rows)
