"""Tests for workflow bundles, persistence and reporting."""

import json

import numpy as np
import pytest

from mortality_ml.comparison import compare_workflows
from mortality_ml.config import DEFAULT_CONFIG, load_config
from mortality_ml.exceptions import SchemaViolation
from mortality_ml.reporting import create_delong_table, create_performance_table, generate_all_reports
from mortality_ml.workflow import METADATA_FILE, load_workflow, save_workflow

from conftest import HIGH_RISK_PATIENT, LOW_RISK_PATIENT


def test_save_and_load_roundtrip(tuned, dataset, split, tmp_path):
    _, test = split
    workflow = tuned["rf"].workflow
    path = save_workflow(workflow, tmp_path / "rf")
    restored = load_workflow(path)

    X_test = dataset.features(test)
    np.testing.assert_array_equal(restored.predict_proba(X_test), workflow.predict_proba(X_test))
    assert restored.threshold == workflow.threshold
    assert restored.predict(HIGH_RISK_PATIENT) == workflow.predict(HIGH_RISK_PATIENT)

    metadata = json.loads((path / METADATA_FILE).read_text())
    assert metadata["family"] == "rf"
    assert metadata["features"] == workflow.recipe.feature_names


def test_loaded_workflow_explains_without_training_data(tuned, tmp_path):
    path = save_workflow(tuned["logreg"].workflow, tmp_path / "logreg")
    attribution = load_workflow(path).explain(LOW_RISK_PATIENT, n_permutations=4)
    assert attribution.residual == pytest.approx(0.0, abs=1e-9)


def test_load_rejects_other_objects(tmp_path):
    import joblib

    joblib.dump({"not": "a workflow"}, tmp_path / "bundle.joblib")
    with pytest.raises(TypeError):
        load_workflow(tmp_path / "bundle.joblib")


def test_predict_rejects_invalid_record(tuned):
    with pytest.raises(SchemaViolation):
        tuned["rf"].workflow.predict({**LOW_RISK_PATIENT, "severity": "critical"})


def test_workflow_derivatives_are_new_objects(tuned):
    workflow = tuned["rf"].workflow
    original = workflow.threshold
    moved = workflow.with_threshold(0.2)
    assert moved is not workflow
    assert moved.threshold == 0.2
    assert workflow.threshold == original
    expected = (workflow.predict_proba(workflow.background) >= 0.2).astype(int)
    np.testing.assert_array_equal(moved.classify(workflow.background), expected)


def test_load_config_merges_over_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("cv_folds: 3\nsearch:\n  svm:\n    C_levels: 3\n")
    config = load_config(str(path))
    assert config["cv_folds"] == 3
    assert config["search"]["svm"]["C_levels"] == 3
    assert config["search"]["svm"]["gamma_levels"] == DEFAULT_CONFIG["search"]["svm"]["gamma_levels"]
    assert load_config(str(tmp_path / "missing.yaml")) == DEFAULT_CONFIG


def test_generate_all_reports(tuned, dataset, split, config, tmp_path):
    _, test = split
    workflows = {name: result.workflow for name, result in tuned.items()}
    report = compare_workflows(workflows, dataset.features(test), dataset.labels(test), config=config)

    performance = create_performance_table(report)
    assert list(performance["Model"]) == [
        "Random Forest" if name == "rf" else "Logistic Regression" for name in report.ranking()
    ]
    assert create_delong_table(report)["verdict"].iloc[0] in {"A better", "B better", "not significant"}

    written = generate_all_reports(report, tmp_path, tuning_results=tuned)
    assert all(path.exists() for path in written)
    assert (tmp_path / "artifacts" / "best_params_rf.json").exists()
    assert (tmp_path / "artifacts" / "cv_results_logreg.csv").exists()
