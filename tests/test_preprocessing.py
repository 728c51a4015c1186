"""Tests for the preprocessing recipe and its fold isolation."""

import numpy as np
import pandas as pd
import pytest

from mortality_ml.dataset import DEFAULT_SCHEMA
from mortality_ml.preprocessing import (
    CorrelationFilter,
    NearZeroVariance,
    NumericKNNImputation,
    Oversample,
    PowerTransform,
    Recipe,
    Standardize,
    audit_fold_isolation,
    build_recipe,
)


@pytest.fixture(scope="module")
def fitted_full(dataset, split, config):
    train, _ = split
    recipe = build_recipe(config)
    return recipe.fit_transform(dataset.features(train), dataset.labels(train), random_state=5)


def test_apply_is_idempotent(dataset, split, fitted_full):
    """Applying the fitted recipe twice to the same data gives identical output."""
    fitted, _, _ = fitted_full
    _, test = split
    X_test = dataset.features(test)
    first = fitted.apply(X_test)
    second = fitted.apply(X_test)
    pd.testing.assert_frame_equal(first, second)
    assert not first.isna().any().any()


def test_apply_does_not_mutate_input(dataset, split, fitted_full):
    fitted, _, _ = fitted_full
    _, test = split
    X_test = dataset.features(test)
    before = X_test.copy()
    fitted.apply(X_test)
    pd.testing.assert_frame_equal(X_test, before)


def test_oversampling_only_at_fit(dataset, split, fitted_full):
    fitted, X_res, y_res = fitted_full
    train, _ = split
    y_train = dataset.labels(train)

    assert len(y_res) > len(y_train)
    assert y_res.sum() == (y_res == 0).sum()
    # Applying to the training partition returns exactly its rows
    assert len(fitted.apply(dataset.features(train))) == len(train)


def test_dummy_coding_uses_reference_level(fitted_full):
    fitted, _, _ = fitted_full
    names = fitted.feature_names
    assert "severity_moderate" in names and "severity_severe" in names
    assert "severity_mild" not in names
    assert fitted.parents["severity_severe"] == ("severity",)


def test_correlation_filter_removes_one_of_a_correlated_pair():
    rng = np.random.default_rng(0)
    x = rng.normal(size=200)
    X = pd.DataFrame({"a": x, "b": x + rng.normal(scale=0.01, size=200), "c": rng.normal(size=200)})
    kinds = {col: DEFAULT_SCHEMA["age"] for col in X.columns}
    params = CorrelationFilter(threshold=0.6).fit(X, None, kinds)
    assert len(params["removed"]) == 1
    assert params["removed"][0] in ("a", "b")


def test_near_zero_variance_removes_rare_indicator():
    values = np.zeros(400)
    values[:5] = 1
    X = pd.DataFrame({"rare": values, "spread": np.arange(400.0)})
    kinds = {col: DEFAULT_SCHEMA["age"] for col in X.columns}
    params = NearZeroVariance().fit(X, None, kinds)
    assert params["removed"] == ["rare"]


def test_knn_imputation_passes_observed_values(dataset, split):
    train, _ = split
    X = dataset.features(train)
    kinds = dict(DEFAULT_SCHEMA.attributes)
    step = NumericKNNImputation(n_neighbors=5)
    params = step.fit(X, None, kinds)
    imputed = step.apply(X, params)

    observed = X["albumin"].notna()
    np.testing.assert_array_equal(imputed.loc[observed, "albumin"], X.loc[observed, "albumin"])
    assert not imputed[DEFAULT_SCHEMA.numeric].isna().any().any()


def test_degenerate_column_is_dropped(dataset, split):
    train, _ = split
    schema = DEFAULT_SCHEMA.without(DEFAULT_SCHEMA.discrete)
    X = dataset.features(train)[schema.names].copy()
    X["platelets"] = 150000.0
    recipe = Recipe([NumericKNNImputation(), PowerTransform(), Standardize()], schema=schema)

    fitted, X_out, _ = recipe.fit_transform(X, dataset.labels(train))
    assert fitted.degenerate == ["platelets"]
    assert "platelets" not in fitted.feature_names
    assert "platelets" in fitted.removed_columns["drop"]
    assert not X_out.isna().any().any()


def test_standardization_learned_per_fold(dataset, folds, config):
    """Each fold's training data standardizes to mean 0 / SD 1 with its own statistics."""
    recipe = build_recipe(config)
    means = []
    for fold in folds:
        X_train = dataset.features(fold.train)
        fitted = recipe.fit(X_train, dataset.labels(fold.train), random_state=1)
        stats = fitted.standardization
        baked = fitted.apply(X_train)[list(stats.index)]

        np.testing.assert_allclose(baked.mean().to_numpy(), 0.0, atol=1e-9)
        np.testing.assert_allclose(baked.std(ddof=0).to_numpy(), 1.0, atol=1e-9)
        means.append(stats.loc["age", "mean"])

    assert len(set(means)) == len(folds)


def test_audit_fold_isolation(dataset, folds, config):
    audit = audit_fold_isolation(dataset, folds, build_recipe(config), random_state=1)
    assert len(audit) == len(folds)
    assert (audit["max_abs_mean"] < 1e-9).all()
    assert (audit["max_abs_sd_error"] < 1e-9).all()
    assert audit["raw_mean_age"].nunique() == len(folds)
    assert (audit["prevalence_after_oversampling"] == 0.5).all()


def test_baseline_recipe_has_no_oversampling(dataset, split, config):
    train, _ = split
    recipe = build_recipe(config, variant="baseline")
    assert not any(isinstance(step, Oversample) for step in recipe.steps)
    _, _, y_res = recipe.fit_transform(dataset.features(train), dataset.labels(train))
    assert len(y_res) == len(train)


def test_drop_removes_attribute_and_its_dummies(dataset, split, config):
    train, _ = split
    recipe = build_recipe(config, drop=["severity"], oversample=False)
    fitted = recipe.fit(dataset.features(train), dataset.labels(train))
    assert not any(name.startswith("severity") for name in fitted.feature_names)


def test_unknown_variant(config):
    with pytest.raises(ValueError):
        build_recipe(config, variant="minimal")
