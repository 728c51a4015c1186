"""Shared fixtures: a synthetic admission cohort with a known risk structure."""

import numpy as np
import pandas as pd
import pytest

from mortality_ml.config import resolve_config
from mortality_ml.dataset import Dataset
from mortality_ml.partition import stratified_kfold, stratified_split

SEVERITY_EFFECT = {"mild": -1.5, "moderate": 0.5, "severe": 2.5}

SMALL_CONFIG = {
    "random_state": 7,
    "cv_folds": 3,
    "n_jobs": 1,
    "models": ["rf"],
    "search": {
        "lhs_size": 3,
        "random_forest": {
            "n_estimators": 50,
            "max_features_levels": 2,
            "min_samples_split_levels": 2,
        },
        "xgboost": {"n_estimators": 30},
        "svm": {"C_levels": 2, "gamma_levels": 2},
    },
    "evaluation": {"n_bootstraps": 200},
    "explain": {
        "n_permutations": 10,
        "stability_bootstraps": 8,
        "stability_top_n": 3,
        "stability_forest": {"n_estimators": 50, "max_features": 0.5, "min_samples_split": 20},
    },
}

HIGH_RISK_PATIENT = {
    "age": 75.0,
    "sex": "male",
    "severity": "severe",
    "albumin": 2.5,
    "platelets": 150000.0,
    "bilirubin": 2.0,
    "dyspnea": True,
    "headache": False,
}

LOW_RISK_PATIENT = {
    "age": 35.0,
    "sex": "female",
    "severity": "mild",
    "albumin": 4.2,
    "platelets": 250000.0,
    "bilirubin": 0.8,
    "dyspnea": False,
    "headache": True,
}


def make_cohort(n: int = 600, seed: int = 0, missing: bool = True) -> pd.DataFrame:
    """Simulate admissions whose mortality depends on severity, age, albumin and dyspnea."""
    rng = np.random.default_rng(seed)

    age = np.clip(rng.normal(65, 14, n), 18, 100).round()
    sex = rng.choice(["male", "female"], size=n)
    severity = rng.choice(["mild", "moderate", "severe"], size=n, p=[0.45, 0.35, 0.20])
    albumin = np.clip(rng.normal(3.5, 0.6, n), 1.5, 5.5).round(1)
    platelets = np.clip(rng.normal(220000, 70000, n), 20000, 600000).round(-3)
    bilirubin = np.exp(rng.normal(0.0, 0.6, n)).round(2)
    dyspnea = rng.random(n) < 0.3
    headache = rng.random(n) < 0.2

    logit = (
        -2.0
        + np.array([SEVERITY_EFFECT[s] for s in severity])
        + 0.06 * (age - 65)
        - 1.2 * (albumin - 3.5)
        + 0.8 * dyspnea
        + 0.3 * np.log(bilirubin + 0.1)
    )
    deceased = (rng.random(n) < 1 / (1 + np.exp(-logit))).astype(int)

    frame = pd.DataFrame({
        "age": age,
        "sex": pd.Series(sex, dtype=object),
        "severity": pd.Series(severity, dtype=object),
        "albumin": albumin,
        "platelets": platelets,
        "bilirubin": bilirubin,
        "dyspnea": pd.Series(dyspnea, dtype=object),
        "headache": pd.Series(headache, dtype=object),
        "deceased": deceased,
    })

    if missing:
        for col, rate in (("albumin", 0.08), ("bilirubin", 0.05), ("platelets", 0.03)):
            frame.loc[rng.random(n) < rate, col] = np.nan
        frame.loc[rng.random(n) < 0.03, "severity"] = None

    return frame


@pytest.fixture(scope="session")
def cohort_frame():
    return make_cohort()


@pytest.fixture(scope="session")
def dataset(cohort_frame):
    return Dataset(cohort_frame)


@pytest.fixture(scope="session")
def config():
    return resolve_config(SMALL_CONFIG)


@pytest.fixture(scope="session")
def split(dataset, config):
    return stratified_split(dataset, test_size=0.25, random_state=config["random_state"])


@pytest.fixture(scope="session")
def folds(dataset, split, config):
    train, _ = split
    return stratified_kfold(dataset, train, n_folds=config["cv_folds"], random_state=config["random_state"])


@pytest.fixture(scope="session")
def trainer(dataset, split, folds, config):
    from mortality_ml.tuning import ModelTrainer

    train, _ = split
    return ModelTrainer(dataset, train, folds, config=config)


@pytest.fixture(scope="session")
def tuned(trainer):
    """Random Forest plus the logistic regression baseline, tuned once per session."""
    return trainer.run(["rf"])
