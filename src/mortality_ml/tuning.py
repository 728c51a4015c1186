"""
Cross-validated hyperparameter tuning with Optuna as the trial ledger.

For every family the search design (regular grid or Latin hypercube) is
enqueued into an Optuna study. Each trial evaluates one configuration on the
shared folds: a fresh recipe and estimator are fitted on every fold's training
partition and scored by AUC on its validation partition. Fold units run in
parallel with joblib.

All preprocessing and model fitting happen ONLY on training partitions.
"""

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

import numpy as np
import optuna
import pandas as pd
from joblib import Parallel, delayed
from sklearn.exceptions import ConvergenceWarning
from sklearn.metrics import roc_auc_score
from tqdm import tqdm
from xgboost.core import XGBoostError

from mortality_ml import WORST_SCORE
from mortality_ml.config import resolve_config
from mortality_ml.dataset import Dataset, Partition
from mortality_ml.exceptions import NonConvergence
from mortality_ml.models import TUNED_FAMILIES, create_model, get_model_name
from mortality_ml.partition import Fold, stratified_sample
from mortality_ml.preprocessing import Recipe, build_recipe
from mortality_ml.search_space import DIMENSION_FACTORY, build_search_design, get_search_space
from mortality_ml.seeding import derive_seed
from mortality_ml.threshold import youden_threshold
from mortality_ml.workflow import Workflow

logger = logging.getLogger(__name__)

# Errors worth another attempt; anything numeric is deterministic and is not retried
TRANSIENT_ERRORS = (OSError, TimeoutError)


class FoldOutcome(NamedTuple):
    """Result of one configuration x fold work unit."""

    fold: int
    auc: float
    status: str
    attempts: int
    proba: Optional[np.ndarray] = None
    message: str = ""


@dataclass
class TuningResult:
    """Outcome of tuning one family."""

    family: str
    workflow: Workflow
    best_params: Dict[str, Any]
    best_trial: int
    cv_score: float
    cv_results: pd.DataFrame
    oof_labels: np.ndarray
    oof_proba: np.ndarray
    failures: Dict[str, int] = field(default_factory=dict)

    @property
    def n_failed_units(self) -> int:
        return self.failures.get("failed", 0) + self.failures.get("abandoned", 0)


def fit_estimator(family: str, params: Dict[str, Any], X: pd.DataFrame, y: np.ndarray, random_state: int):
    """
    Fit a fresh estimator, turning fit failures into :class:`NonConvergence`.

    Convergence warnings are promoted to errors so that a configuration that
    did not converge is never silently scored.
    """
    estimator = create_model(family, params, random_state=random_state)
    with warnings.catch_warnings():
        warnings.simplefilter("error", category=ConvergenceWarning)
        try:
            estimator.fit(X, y)
        except ConvergenceWarning as exc:
            raise NonConvergence(f"{get_model_name(family)} did not converge with {params}: {exc}") from exc
        except (XGBoostError, ValueError, FloatingPointError, np.linalg.LinAlgError) as exc:
            raise NonConvergence(f"{get_model_name(family)} failed to fit with {params}: {exc}") from exc
    return estimator


def evaluate_fold(
    dataset: Dataset,
    fold: Fold,
    family: str,
    params: Dict[str, Any],
    recipe: Recipe,
    random_state: int,
    max_attempts: int = 2,
) -> FoldOutcome:
    """
    Fit ``recipe`` + estimator on a fold's training partition and score it.

    Deterministic failures score :data:`WORST_SCORE` immediately; transient
    errors are retried up to ``max_attempts`` times and then abandoned.

    Parameters
    ----------
    dataset : Dataset
        Shared read-only dataset
    fold : Fold
        Fold to evaluate
    family : str
        Model type code
    params : dict
        Hyperparameters
    recipe : Recipe
        Unfitted recipe
    random_state : int
        Seed for oversampling and the estimator
    max_attempts : int
        Maximum attempts for transient errors

    Returns
    -------
    FoldOutcome
    """
    last_error = ""
    for attempt in range(1, max_attempts + 1):
        try:
            X_train = dataset.features(fold.train)
            y_train = dataset.labels(fold.train)
            fitted, X_res, y_res = recipe.fit_transform(X_train, y_train, random_state=random_state)

            estimator = fit_estimator(family, params, X_res, y_res, random_state)

            X_val = fitted.apply(dataset.features(fold.validation))
            proba = estimator.predict_proba(X_val)[:, 1]
            if not np.all(np.isfinite(proba)):
                raise NonConvergence(f"{get_model_name(family)} produced non-finite probabilities")

            auc = roc_auc_score(dataset.labels(fold.validation), proba)
            return FoldOutcome(fold.index, float(auc), "ok", attempt, proba)

        except NonConvergence as exc:
            return FoldOutcome(fold.index, WORST_SCORE, "failed", attempt, None, str(exc))
        except TRANSIENT_ERRORS as exc:
            last_error = f"{type(exc).__name__}: {exc}"

    return FoldOutcome(fold.index, WORST_SCORE, "abandoned", max_attempts, None, last_error)


class ModelTrainer:
    """
    Tunes and refits every model family on shared folds.

    Parameters
    ----------
    dataset : Dataset
        Full cohort (read-only)
    train : Partition
        Training partition; the test partition is never seen here
    folds : list of Fold
        Folds over ``train``, shared by every family
    config : dict
        Configuration dictionary
    random_state : int, optional
        Top-level seed (defaults to ``config["random_state"]``)
    n_jobs : int, optional
        Parallel fold units (defaults to ``config["n_jobs"]``)
    """

    def __init__(
        self,
        dataset: Dataset,
        train: Partition,
        folds: List[Fold],
        config: Optional[Dict[str, Any]] = None,
        random_state: Optional[int] = None,
        n_jobs: Optional[int] = None,
    ):
        self.dataset = dataset
        self.train = train
        self.folds = folds
        self.config = resolve_config(config)
        self.random_state = self.config["random_state"] if random_state is None else random_state
        self.n_jobs = self.config.get("n_jobs", -1) if n_jobs is None else n_jobs
        self.max_attempts = self.config.get("max_attempts", 2)

        optuna.logging.set_verbosity(optuna.logging.WARNING)

    def _unit_seed(self, family: str, fold: Fold) -> int:
        # Same seed for every configuration of a family on a given fold
        return derive_seed(self.random_state, "cv", family, fold.index)

    def cross_validate(self, family: str, params: Dict[str, Any], recipe: Recipe) -> List[FoldOutcome]:
        """Evaluate one configuration on every fold (parallel over folds)."""
        outcomes = Parallel(n_jobs=self.n_jobs)(
            delayed(evaluate_fold)(
                self.dataset,
                fold,
                family,
                params,
                recipe,
                self._unit_seed(family, fold),
                self.max_attempts,
            )
            for fold in self.folds
        )
        return sorted(outcomes, key=lambda outcome: outcome.fold)

    def tune(self, family: str, recipe: Optional[Recipe] = None, name: Optional[str] = None) -> TuningResult:
        """
        Search the family's design and refit the winner on the training partition.

        Parameters
        ----------
        family : str
            Model type code ('rf', 'xgb', 'svm'; 'logreg' evaluates its single
            default configuration)
        recipe : Recipe, optional
            Recipe to use (defaults to the full recipe, or the baseline recipe
            for 'logreg')
        name : str, optional
            Workflow name (defaults to ``family``)

        Returns
        -------
        TuningResult
        """
        name = name or family
        if recipe is None:
            recipe = build_recipe(self.config, variant="baseline" if family == "logreg" else "full")

        search_cfg = self.config.get("search", {})
        if family in DIMENSION_FACTORY:
            design = build_search_design(family, search_cfg, derive_seed(self.random_state, "design", family))
        else:
            design = [{}]

        logger.info(f"\n--- Tuning {get_model_name(family)} ({len(design)} configurations) ---")

        fold_outcomes: Dict[int, List[FoldOutcome]] = {}

        def objective(trial: optuna.Trial) -> float:
            if family in DIMENSION_FACTORY:
                params = get_search_space(family, trial, search_cfg)
            else:
                params = {}

            outcomes = self.cross_validate(family, params, recipe)
            fold_outcomes[trial.number] = outcomes

            n_failed = sum(outcome.status != "ok" for outcome in outcomes)
            trial.set_user_attr("n_failed_folds", n_failed)
            trial.set_user_attr("fold_auc", [outcome.auc for outcome in outcomes])
            if n_failed:
                messages = {outcome.message for outcome in outcomes if outcome.message}
                logger.warning(
                    f"  Trial {trial.number}: {n_failed}/{len(outcomes)} fold(s) scored as worst "
                    f"({'; '.join(sorted(messages))})"
                )
            return float(np.mean([outcome.auc for outcome in outcomes]))

        best_seen = [None]

        def callback(study: optuna.Study, trial: optuna.trial.FrozenTrial) -> None:
            """Log when a new best trial is found."""
            if study.best_trial.number != best_seen[0]:
                best_seen[0] = study.best_trial.number
                logger.info(f"  Trial {study.best_trial.number}: New best AUC = {study.best_value:.4f}")

        study = optuna.create_study(
            direction="maximize",
            sampler=optuna.samplers.RandomSampler(seed=derive_seed(self.random_state, "sampler", family)),
            study_name=f"{name}_cv",
        )
        for point in design:
            study.enqueue_trial(point)

        study.optimize(objective, n_trials=len(design), n_jobs=1, show_progress_bar=False, callbacks=[callback])

        completed = [t for t in study.trials if t.state == optuna.trial.TrialState.COMPLETE]
        # Deterministic reduction: highest mean AUC, ties -> lowest trial number
        best = max(completed, key=lambda t: (t.value, -t.number))
        best_params = dict(best.params)
        if family in DIMENSION_FACTORY:
            best_params = get_search_space(family, optuna.trial.FixedTrial(best.params), search_cfg)

        cv_results = self._cv_results_table(study, fold_outcomes)
        failures = {
            "failed": int(sum(o.status == "failed" for outs in fold_outcomes.values() for o in outs)),
            "abandoned": int(sum(o.status == "abandoned" for outs in fold_outcomes.values() for o in outs)),
            "configurations_with_failures": int((cv_results["n_failed_folds"] > 0).sum()),
        }

        logger.info(
            f"  Search complete: best CV AUC = {best.value:.4f} "
            f"(trial {best.number}, {len(completed)} configurations)"
        )
        logger.debug(f"  Best params: {best_params}")
        if failures["failed"] or failures["abandoned"]:
            logger.warning(
                f"  {get_model_name(family)}: {failures['failed']} failed and "
                f"{failures['abandoned']} abandoned fold units"
            )

        oof_labels, oof_proba = self._out_of_fold(fold_outcomes[best.number])
        if len(np.unique(oof_labels)) == 2:
            threshold = youden_threshold(oof_labels, oof_proba)
        else:
            logger.warning(f"  No usable out-of-fold predictions for {name}; threshold set to 0.5")
            threshold = 0.5

        workflow = self.refit(family, best_params, recipe, name=name, cv_score=float(best.value), threshold=threshold)

        return TuningResult(
            family=family,
            workflow=workflow,
            best_params=best_params,
            best_trial=best.number,
            cv_score=float(best.value),
            cv_results=cv_results,
            oof_labels=oof_labels,
            oof_proba=oof_proba,
            failures=failures,
        )

    def _out_of_fold(self, outcomes: List[FoldOutcome]):
        labels, probas = [], []
        fold_by_index = {fold.index: fold for fold in self.folds}
        for outcome in outcomes:
            if outcome.proba is None:
                continue
            labels.append(self.dataset.labels(fold_by_index[outcome.fold].validation))
            probas.append(outcome.proba)
        if not labels:
            return np.array([], dtype=int), np.array([], dtype=float)
        return np.concatenate(labels), np.concatenate(probas)

    def _cv_results_table(self, study: optuna.Study, fold_outcomes: Dict[int, List[FoldOutcome]]) -> pd.DataFrame:
        rows = []
        for trial in study.trials:
            if trial.state != optuna.trial.TrialState.COMPLETE:
                continue
            aucs = [outcome.auc for outcome in fold_outcomes[trial.number]]
            rows.append({
                "trial": trial.number,
                **trial.params,
                "mean_auc": trial.value,
                "std_auc": float(np.std(aucs, ddof=1)) if len(aucs) > 1 else 0.0,
                "n_failed_folds": trial.user_attrs.get("n_failed_folds", 0),
                **{f"fold{outcome.fold}_auc": outcome.auc for outcome in fold_outcomes[trial.number]},
            })
        return pd.DataFrame(rows).sort_values("mean_auc", ascending=False, kind="mergesort").reset_index(drop=True)

    def refit(
        self,
        family: str,
        params: Dict[str, Any],
        recipe: Recipe,
        name: Optional[str] = None,
        cv_score: float = float("nan"),
        threshold: float = 0.5,
    ) -> Workflow:
        """
        Refit a configuration on the full training partition.

        A failure here is fatal: :class:`NonConvergence` propagates.
        """
        name = name or family
        seed = derive_seed(self.random_state, "refit", family)

        X_train = self.dataset.features(self.train)
        y_train = self.dataset.labels(self.train)
        fitted, X_res, y_res = recipe.fit_transform(X_train, y_train, random_state=seed)
        try:
            estimator = fit_estimator(family, params, X_res, y_res, seed)
        except NonConvergence:
            logger.error(f"Final refit of {name} failed; cannot produce a workflow")
            raise

        background = self._background()
        logger.info(
            f"  Refit {name} on {len(y_train)} training records "
            f"({len(fitted.feature_names)} features, threshold {threshold:.3f})"
        )
        return Workflow(
            name=name,
            family=family,
            params=params,
            recipe=fitted,
            estimator=estimator,
            threshold=threshold,
            background=background,
            cv_score=cv_score,
            random_state=seed,
            schema=self.dataset.schema,
        )

    def _background(self) -> Optional[pd.DataFrame]:
        """Real training patients from both classes for explanations."""
        n_per_class = self.config.get("explain", {}).get("background_per_class", 5)
        partition = stratified_sample(self.dataset, self.train, n_per_class, self.random_state)
        return self.dataset.features(partition)

    def fit_baseline(self) -> TuningResult:
        """Reference logistic regression on the baseline recipe (no oversampling)."""
        return self.tune("logreg", recipe=build_recipe(self.config, variant="baseline"))

    def run(self, families: Optional[Sequence[str]] = None) -> Dict[str, TuningResult]:
        """
        Tune every requested family, plus the baseline if configured.

        Returns
        -------
        dict
            family -> TuningResult
        """
        families = list(families or self.config.get("models", TUNED_FAMILIES))
        logger.info(f"Models: {[get_model_name(f) for f in families]}")

        results = {}
        for family in tqdm(families, desc="Model families"):
            results[family] = self.tune(family)

        if self.config.get("include_baseline", True) and "logreg" not in results:
            results["logreg"] = self.fit_baseline()

        return results


def ablation_study(
    trainer: ModelTrainer,
    result: TuningResult,
    test: Partition,
    drop: Sequence[str],
) -> Dict[str, Any]:
    """
    Refit a tuned family without some attributes and compare test AUCs.

    The ablated workflow reuses the selected hyperparameters and the same
    seed; only the recipe changes.

    Parameters
    ----------
    trainer : ModelTrainer
        Trainer that produced ``result``
    result : TuningResult
        Tuned family
    test : Partition
        Held-out test partition
    drop : list of str
        Attributes removed from the recipe

    Returns
    -------
    dict
        full_auc, ablated_auc, delta_auc, z, p_value and the ablated workflow
    """
    from mortality_ml.comparison import delong_test

    family = result.family
    name = f"{result.workflow.name}_without_{'_'.join(drop)}"
    recipe = build_recipe(trainer.config, drop=drop, variant="baseline" if family == "logreg" else "full")
    ablated = trainer.refit(family, result.best_params, recipe, name=name, threshold=result.workflow.threshold)

    X_test = trainer.dataset.features(test)
    y_test = trainer.dataset.labels(test)
    full_proba = result.workflow.predict_proba(X_test)
    ablated_proba = ablated.predict_proba(X_test)
    delong = delong_test(y_test, full_proba, ablated_proba)

    logger.info(
        f"Ablation {name}: AUC {delong['auc_a']:.3f} -> {delong['auc_b']:.3f} "
        f"(Δ={delong['auc_b'] - delong['auc_a']:+.3f}, p={delong['p_value']:.4f})"
    )
    return {
        "name": name,
        "dropped": list(drop),
        "full_auc": delong["auc_a"],
        "ablated_auc": delong["auc_b"],
        "delta_auc": delong["auc_b"] - delong["auc_a"],
        "z": delong["z"],
        "p_value": delong["p_value"],
        "workflow": ablated,
    }


def compare_oversampling_ratios(
    trainer: ModelTrainer,
    ratios: Sequence[float] = (0.5, 0.6, 0.7, 0.8, 1.0),
    params: Optional[Dict[str, Any]] = None,
) -> pd.DataFrame:
    """
    Cross-validated AUC of a fixed Random Forest across SMOTE target ratios.

    Parameters
    ----------
    trainer : ModelTrainer
        Provides dataset, folds and config
    ratios : list of float
        Target minority/majority ratios
    params : dict, optional
        Forest hyperparameters (defaults to ``explain.stability_forest``)

    Returns
    -------
    pd.DataFrame
        ratio, mean_auc, std_auc, n_failed_folds
    """
    if params is None:
        params = dict(trainer.config.get("explain", {}).get("stability_forest", {}))

    rows = []
    for ratio in ratios:
        recipe = build_recipe(trainer.config, oversample=True, oversample_ratio=ratio)
        outcomes = trainer.cross_validate("rf", params, recipe)
        aucs = [outcome.auc for outcome in outcomes]
        rows.append({
            "ratio": ratio,
            "mean_auc": float(np.mean(aucs)),
            "std_auc": float(np.std(aucs, ddof=1)) if len(aucs) > 1 else 0.0,
            "n_failed_folds": sum(outcome.status != "ok" for outcome in outcomes),
        })
        logger.info(f"SMOTE ratio {ratio}: CV AUC = {rows[-1]['mean_auc']:.4f} ± {rows[-1]['std_auc']:.4f}")

    return pd.DataFrame(rows)
