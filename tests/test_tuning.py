"""Tests for search designs, cross-validated tuning and failure handling."""

import warnings

import numpy as np
import pytest

from mortality_ml import WORST_SCORE, tuning
from mortality_ml.exceptions import NonConvergence
from mortality_ml.models import create_model
from mortality_ml.preprocessing import build_recipe
from mortality_ml.search_space import build_search_design, get_dimensions
from mortality_ml.tuning import ModelTrainer, compare_oversampling_ratios, evaluate_fold, fit_estimator

SMALL_FOREST = {"n_estimators": 30, "max_features": 0.5, "min_samples_split": 20}


def test_grid_design_for_two_dimensions(config):
    design = build_search_design("rf", config["search"])
    assert len(design) == 4
    assert {point["min_samples_split"] for point in design} == {5, 40}


def test_default_svm_grid_has_49_points():
    design = build_search_design("svm", {})
    assert len(design) == 49
    assert min(p["C"] for p in design) == pytest.approx(0.01)
    assert max(p["C"] for p in design) == pytest.approx(100.0)


def test_latin_hypercube_for_xgboost(config):
    design = build_search_design("xgb", config["search"], random_state=4)
    assert len(design) == config["search"]["lhs_size"]
    for dim in get_dimensions("xgb", config["search"]):
        values = [point[dim.name] for point in design]
        assert min(values) >= dim.low and max(values) <= dim.high
    assert build_search_design("xgb", config["search"], random_state=4) == design


def test_fit_estimator_wraps_invalid_parameters(dataset, split):
    train, _ = split
    X = dataset.features(train)[["age"]].fillna(60.0)
    y = dataset.labels(train)
    with pytest.raises(NonConvergence):
        fit_estimator("svm", {"C": -1.0}, X, y, random_state=0)


def test_fit_estimator_promotes_convergence_warning(dataset, split):
    train, _ = split
    X = dataset.features(train)[["age", "platelets"]].fillna(100000.0)
    y = dataset.labels(train)
    with pytest.raises(NonConvergence, match="converge"):
        fit_estimator("logreg", {"max_iter": 1}, X, y, random_state=0)


def test_baseline_logistic_regression_is_unpenalized(dataset, split):
    train, _ = split
    X = dataset.features(train)[["age"]].fillna(60.0)
    y = dataset.labels(train)
    model = create_model("logreg", {}, random_state=0, n_jobs=4)
    assert np.isinf(model.C)
    with warnings.catch_warnings():
        warnings.simplefilter("error", FutureWarning)
        model.fit(X, y)
    assert model.coef_[0, 0] > 0


@pytest.mark.parametrize("family", ["svm", "logreg"])
def test_single_threaded_factories_accept_n_jobs(family):
    model = create_model(family, {}, random_state=0, n_jobs=4)
    assert model.get_params()["random_state"] == 0


def test_tuning_selects_deterministically(tuned, dataset, split, folds, config):
    train, _ = split
    again = ModelTrainer(dataset, train, folds, config=config).tune("rf")
    first = tuned["rf"]
    assert again.best_params == first.best_params
    assert again.cv_score == first.cv_score
    assert again.workflow.threshold == first.workflow.threshold


def test_tuning_result_contents(tuned, split, config):
    train, _ = split
    result = tuned["rf"]
    assert len(result.cv_results) == 4
    assert result.cv_score == result.cv_results["mean_auc"].max()
    assert len(result.oof_labels) == len(train)
    assert 0.0 < result.workflow.threshold < 1.0
    assert len(result.workflow.background) == 2 * config["explain"]["background_per_class"]
    assert result.n_failed_units == 0
    assert "logreg" in tuned


def test_failed_configuration_scores_worst(monkeypatch, dataset, split, folds, config):
    """A configuration that cannot be fitted is scored worst instead of stopping the search."""
    real_fit = tuning.fit_estimator

    def fail_large_split(family, params, X, y, random_state):
        if params.get("min_samples_split") == 40:
            raise NonConvergence("forced failure")
        return real_fit(family, params, X, y, random_state)

    monkeypatch.setattr(tuning, "fit_estimator", fail_large_split)
    train, _ = split
    result = ModelTrainer(dataset, train, folds, config=config).tune("rf")

    failed = result.cv_results[result.cv_results["min_samples_split"] == 40]
    assert (failed["mean_auc"] == WORST_SCORE).all()
    assert (failed["n_failed_folds"] == len(folds)).all()
    assert result.best_params["min_samples_split"] == 5
    assert result.failures["failed"] == 2 * len(folds)


def test_refit_failure_is_fatal(monkeypatch, dataset, split, folds, config):
    def always_fail(family, params, X, y, random_state):
        raise NonConvergence("forced failure")

    monkeypatch.setattr(tuning, "fit_estimator", always_fail)
    train, _ = split
    trainer = ModelTrainer(dataset, train, folds, config=config)
    with pytest.raises(NonConvergence):
        trainer.refit("rf", SMALL_FOREST, build_recipe(config))


def test_transient_errors_are_retried(monkeypatch, dataset, folds, config):
    real_fit = tuning.fit_estimator
    calls = {"n": 0}

    def flaky(family, params, X, y, random_state):
        calls["n"] += 1
        if calls["n"] == 1:
            raise OSError("worker lost")
        return real_fit(family, params, X, y, random_state)

    monkeypatch.setattr(tuning, "fit_estimator", flaky)
    outcome = evaluate_fold(dataset, folds[0], "rf", SMALL_FOREST, build_recipe(config), random_state=1, max_attempts=2)
    assert outcome.status == "ok"
    assert outcome.attempts == 2


def test_persistent_transient_errors_abandon_unit(monkeypatch, dataset, folds, config):
    def broken(family, params, X, y, random_state):
        raise TimeoutError("too slow")

    monkeypatch.setattr(tuning, "fit_estimator", broken)
    outcome = evaluate_fold(dataset, folds[0], "rf", SMALL_FOREST, build_recipe(config), random_state=1, max_attempts=3)
    assert outcome.status == "abandoned"
    assert outcome.attempts == 3
    assert outcome.auc == WORST_SCORE


@pytest.mark.parametrize("family", ["xgb", "svm"])
def test_other_families_tune(family, dataset, split, folds, config):
    train, _ = split
    result = ModelTrainer(dataset, train, folds, config=config).tune(family)
    expected = config["search"]["lhs_size"] if family == "xgb" else 4
    assert len(result.cv_results) == expected
    assert result.cv_score > 0.6
    assert np.all((result.oof_proba >= 0) & (result.oof_proba <= 1))


def test_compare_oversampling_ratios(trainer):
    table = compare_oversampling_ratios(trainer, ratios=(0.5, 1.0), params=SMALL_FOREST)
    assert table["ratio"].tolist() == [0.5, 1.0]
    assert (table["n_failed_folds"] == 0).all()
    assert (table["mean_auc"] > 0.6).all()
