"""Tests for Shapley attributions, consensus ranking and bootstrap stability."""

import numpy as np
import pandas as pd
import pytest

from mortality_ml.config import DEFAULT_CONFIG
from mortality_ml.explain import (
    BASELINE_LABEL,
    PREDICTION_LABEL,
    ConsensusRanking,
    bootstrap_stability,
    collapse_attributions,
    consensus_ranking,
    global_importance,
    parent_attribute,
    select_production_attributes,
    shapley_attribution,
)
from mortality_ml.preprocessing import build_recipe

from conftest import HIGH_RISK_PATIENT, LOW_RISK_PATIENT

ATTRIBUTES = ["age", "sex", "severity", "albumin"]


@pytest.fixture(scope="module")
def rf_workflow(tuned):
    return tuned["rf"].workflow


def test_attribution_is_additive(rf_workflow):
    table = shapley_attribution(rf_workflow, HIGH_RISK_PATIENT, rf_workflow.background, n_permutations=8)
    attribution = collapse_attributions(table)

    assert table["variable"].iloc[0] == BASELINE_LABEL
    assert table["variable"].iloc[-1] == PREDICTION_LABEL
    assert attribution.residual == pytest.approx(0.0, abs=1e-9)
    assert attribution.prediction == pytest.approx(rf_workflow.predict(HIGH_RISK_PATIENT))
    assert attribution.baseline == pytest.approx(rf_workflow.predict_proba(rf_workflow.background).mean())


def test_attribution_covers_every_raw_attribute(rf_workflow):
    attribution = rf_workflow.explain(LOW_RISK_PATIENT, n_permutations=5)
    assert set(attribution.contributions) == set(rf_workflow.schema.names)
    frame = attribution.to_frame()
    assert list(frame.columns) == ["attribute", "value", "contribution", "direction"]
    assert frame["contribution"].abs().is_monotonic_decreasing


def test_attribution_is_seeded(rf_workflow):
    first = rf_workflow.explain(HIGH_RISK_PATIENT, n_permutations=5, random_state=3)
    second = rf_workflow.explain(HIGH_RISK_PATIENT, n_permutations=5, random_state=3)
    assert first.contributions == second.contributions


def test_parent_attribute_labels():
    assert parent_attribute("age", ATTRIBUTES) == "age"
    assert parent_attribute("severity = severe", ATTRIBUTES) == "severity"
    assert parent_attribute("severity_moderate", ATTRIBUTES) == "severity"
    assert parent_attribute("lactate", ATTRIBUTES) is None


def test_collapse_sums_dummy_columns():
    table = pd.DataFrame({
        "variable": ["intercept", "severity_moderate", "severity_severe", "age = 70", "sex_female", PREDICTION_LABEL],
        "contribution": [0.2, 0.05, 0.10, 0.03, -0.01, 0.37],
    })
    attribution = collapse_attributions(table, "m", ATTRIBUTES)
    assert attribution.baseline == pytest.approx(0.2)
    assert attribution.contributions["severity"] == pytest.approx(0.15)
    assert attribution.contributions["age"] == pytest.approx(0.03)
    assert attribution.contributions["sex"] == pytest.approx(-0.01)
    assert attribution.residual == pytest.approx(0.0)


def _importance(order):
    return pd.DataFrame({
        "attribute": order,
        "mean_abs_contribution": np.linspace(0.2, 0.01, len(order)),
        "mean_contribution": 0.0,
        "rank": np.arange(1, len(order) + 1),
    })


def test_consensus_ranking_and_agreement():
    importances = {
        "rf": _importance(["severity", "age", "albumin", "sex"]),
        "xgb": _importance(["severity", "albumin", "age", "sex"]),
        "svm": _importance(["severity", "age", "albumin", "sex"]),
    }
    consensus = consensus_ranking(importances)

    assert consensus.attributes[0] == "severity"
    severity = consensus.table.set_index("attribute").loc["severity"]
    assert severity["sd_rank"] == 0.0
    assert severity["consistency"] == 1.0
    assert len(consensus.correlations) == 3
    assert consensus.agreement


def test_consensus_detects_disagreement():
    importances = {
        "rf": _importance(["severity", "age", "albumin", "sex"]),
        "xgb": _importance(["sex", "albumin", "age", "severity"]),
    }
    assert not consensus_ranking(importances).agreement


def test_select_production_attributes():
    table = pd.DataFrame({
        "attribute": ["severity", "age", "albumin", "sex"],
        "mean_rank": [1.0, 2.0, 3.0, 4.0],
        "sd_rank": [0.0, 0.2, 1.5, 0.5],
        "consistency": [1.0, 0.9, 0.5, 0.875],
        "mean_abs_contribution": [0.2, 0.1, 0.05, 0.01],
        "stability_pct": [100.0, 85.0, 95.0, 40.0],
    })
    consensus = ConsensusRanking(table=table, correlations=pd.DataFrame())
    assert select_production_attributes(consensus) == ["severity", "age"]
    assert select_production_attributes(consensus, max_attributes=1) == ["severity"]


def test_selection_needs_stability():
    consensus = consensus_ranking({"rf": _importance(ATTRIBUTES), "xgb": _importance(ATTRIBUTES)})
    with pytest.raises(ValueError, match="stability"):
        select_production_attributes(consensus)


def test_global_importance(rf_workflow, dataset, split):
    _, test = split
    X = dataset.features(test).head(12)
    importance = global_importance(rf_workflow, X, n_permutations=4, random_state=2)
    assert importance["attribute"].tolist()[0] in {"severity", "albumin", "age"}
    assert importance["rank"].tolist() == list(range(1, len(rf_workflow.schema.names) + 1))
    assert importance["mean_abs_contribution"].is_monotonic_decreasing


def test_bootstrap_stability(dataset, split, config):
    train, _ = split
    stability = bootstrap_stability(
        dataset.features(train),
        dataset.labels(train),
        build_recipe(config),
        n_bootstraps=6,
        top_n=3,
        params={"n_estimators": 40, "max_features": 0.5, "min_samples_split": 20},
        random_state=4,
    )
    assert set(stability["attribute"]) == set(dataset.attributes)
    assert stability["frequency"].sum() == 6 * 3
    assert stability["stability_pct"].between(0, 100).all()
    assert stability["stability_pct"].is_monotonic_decreasing


def test_default_stability_top_n_is_selective(dataset, split, config):
    train, _ = split
    stability = bootstrap_stability(
        dataset.features(train),
        dataset.labels(train),
        build_recipe(config),
        n_bootstraps=6,
        top_n=DEFAULT_CONFIG["explain"]["stability_top_n"],
        params={"n_estimators": 40, "max_features": 0.5, "min_samples_split": 20},
        random_state=4,
    )
    assert not (stability["stability_pct"] == 100.0).all()
    assert stability["stability_pct"].min() < DEFAULT_CONFIG["explain"]["stability_min_pct"]


@pytest.mark.parametrize("top_n", [0, 8, 10])
def test_stability_rejects_unselective_top_n(dataset, split, config, top_n):
    train, _ = split
    with pytest.raises(ValueError, match="top_n"):
        bootstrap_stability(
            dataset.features(train),
            dataset.labels(train),
            build_recipe(config),
            n_bootstraps=2,
            top_n=top_n,
        )
