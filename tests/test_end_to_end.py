"""End-to-end behaviour on the synthetic cohort: risk separation and ablation."""

import pytest

from mortality_ml.tuning import ablation_study

from conftest import HIGH_RISK_PATIENT, LOW_RISK_PATIENT


@pytest.fixture(scope="module")
def rf_workflow(tuned):
    return tuned["rf"].workflow


def test_high_and_low_risk_patients(rf_workflow):
    assert rf_workflow.predict(HIGH_RISK_PATIENT) > 0.5
    assert rf_workflow.predict(LOW_RISK_PATIENT) < 0.3


def test_severity_drives_the_explanations(rf_workflow):
    high = rf_workflow.explain(HIGH_RISK_PATIENT, n_permutations=10)
    low = rf_workflow.explain(LOW_RISK_PATIENT, n_permutations=10)
    assert high.contributions["severity"] > 0
    assert low.contributions["severity"] <= 0


def test_partially_observed_record_is_imputed(rf_workflow):
    record = {k: v for k, v in HIGH_RISK_PATIENT.items() if k not in ("albumin", "platelets")}
    risk = rf_workflow.predict(record)
    assert 0.0 <= risk <= 1.0


def test_ablating_severity_lowers_test_auc(trainer, tuned, split):
    _, test = split
    ablation = ablation_study(trainer, tuned["rf"], test, ["severity"])
    assert ablation["ablated_auc"] < ablation["full_auc"]
    assert ablation["delta_auc"] < 0
    assert not any(name.startswith("severity") for name in ablation["workflow"].recipe.feature_names)
