"""Tests for the clinical schema, dataset validation and loading."""

import numpy as np
import pandas as pd
import pytest

from mortality_ml.dataset import DEFAULT_SCHEMA, Dataset, Partition, conform_features, validate_record
from mortality_ml.exceptions import InsufficientSamples, SchemaViolation
from mortality_ml.io import completion_rates, load_dataset, read_table

from conftest import LOW_RISK_PATIENT, make_cohort


def test_dataset_keeps_schema_order_and_types(dataset):
    features = dataset.features()
    assert list(features.columns) == DEFAULT_SCHEMA.names
    for name in DEFAULT_SCHEMA.numeric:
        assert features[name].dtype == float
    for name in DEFAULT_SCHEMA.discrete:
        assert features[name].dtype == object


def test_dataset_rejects_unknown_level():
    frame = make_cohort(n=50, missing=False)
    frame.loc[3, "severity"] = "critical"
    with pytest.raises(SchemaViolation, match="unknown level"):
        Dataset(frame)


def test_dataset_rejects_column_outside_schema():
    frame = make_cohort(n=50, missing=False)
    frame["ferritin"] = 1.0
    with pytest.raises(SchemaViolation, match="outside the schema"):
        Dataset(frame)


def test_dataset_rejects_duplicated_columns():
    """Two raw columns renamed to the same attribute are rejected, not repaired."""
    frame = make_cohort(n=50, missing=False)
    duplicated = pd.concat([frame, frame[["albumin"]]], axis=1)
    with pytest.raises(SchemaViolation, match="Duplicated"):
        Dataset(duplicated)


def test_dataset_rejects_missing_attribute_and_outcome():
    frame = make_cohort(n=50, missing=False)
    with pytest.raises(SchemaViolation):
        Dataset(frame.drop(columns=["platelets"]))
    with pytest.raises(SchemaViolation):
        Dataset(frame.drop(columns=["deceased"]))


def test_dataset_rejects_non_binary_outcome():
    frame = make_cohort(n=50, missing=False)
    frame.loc[0, "deceased"] = 2
    with pytest.raises(SchemaViolation, match="binary"):
        Dataset(frame)


def test_boolean_attribute_is_not_coerced():
    frame = make_cohort(n=50, missing=False)
    frame["dyspnea"] = frame["dyspnea"].map({True: "yes", False: "no"})
    with pytest.raises(SchemaViolation, match="boolean"):
        Dataset(frame)


def test_numeric_attribute_rejects_strings():
    frame = make_cohort(n=50, missing=False)
    frame["age"] = frame["age"].astype(object)
    frame.loc[1, "age"] = "old"
    with pytest.raises(SchemaViolation, match="numeric"):
        Dataset(frame)


def test_validate_record_fills_absent_attributes():
    record = {k: v for k, v in LOW_RISK_PATIENT.items() if k != "albumin"}
    row = validate_record(record)
    assert list(row.columns) == DEFAULT_SCHEMA.names
    assert np.isnan(row.at[0, "albumin"])
    assert row.at[0, "severity"] == "mild"


def test_validate_record_rejects_unknown_attribute():
    with pytest.raises(SchemaViolation):
        validate_record({**LOW_RISK_PATIENT, "lactate": 2.0})


def test_conform_features_adds_absent_columns():
    frame = pd.DataFrame({"age": [70.0, 50.0]})
    conformed = conform_features(frame)
    assert list(conformed.columns) == DEFAULT_SCHEMA.names
    assert conformed["sex"].isna().all()


def test_partition_indices_are_read_only(dataset):
    partition = Partition("head", [0, 1, 2])
    with pytest.raises(ValueError):
        partition.indices[0] = 5
    assert len(dataset.features(partition)) == 3


def test_load_dataset_roundtrip_csv(tmp_path):
    frame = make_cohort(n=80, missing=False)
    path = tmp_path / "cohort.csv"
    frame.to_csv(path, index=False)

    dataset = load_dataset(path)
    assert len(dataset) == 80
    assert dataset.prevalence() == pytest.approx(frame["deceased"].mean())
    assert all(rate == 1.0 for rate in completion_rates(dataset).values())


def test_load_dataset_single_class(tmp_path):
    frame = make_cohort(n=40, missing=False)
    frame["deceased"] = 0
    path = tmp_path / "cohort.csv"
    frame.to_csv(path, index=False)
    with pytest.raises(InsufficientSamples):
        load_dataset(path)


def test_read_table_rejects_unknown_extension(tmp_path):
    path = tmp_path / "cohort.parquet"
    path.write_text("")
    with pytest.raises(ValueError, match="Unsupported"):
        read_table(path)
