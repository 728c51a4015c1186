"""Tests for stratified partitioning and seeding."""

import numpy as np
import pytest

from mortality_ml.dataset import Dataset
from mortality_ml.exceptions import InsufficientSamples
from mortality_ml.partition import (
    bootstrap_partition,
    stratified_kfold,
    stratified_sample,
    stratified_split,
)
from mortality_ml.seeding import derive_seed

from conftest import make_cohort


@pytest.mark.parametrize("test_size", [0.1, 0.2, 0.25, 0.3, 0.5])
def test_split_preserves_prevalence(dataset, test_size):
    train, test = stratified_split(dataset, test_size=test_size, random_state=5)
    overall = dataset.prevalence()
    assert abs(dataset.prevalence(train) - overall) < 0.01
    assert abs(dataset.prevalence(test) - overall) < 0.01


def test_split_is_disjoint_and_complete(dataset, split):
    train, test = split
    assert set(train.indices).isdisjoint(test.indices)
    assert len(train) + len(test) == len(dataset)


def test_split_is_reproducible(dataset):
    first, _ = stratified_split(dataset, random_state=11)
    second, _ = stratified_split(dataset, random_state=11)
    other, _ = stratified_split(dataset, random_state=12)
    np.testing.assert_array_equal(first.indices, second.indices)
    assert not np.array_equal(first.indices, other.indices)


def test_folds_cover_training_partition(dataset, split, folds):
    train, _ = split
    validation = np.concatenate([fold.validation.indices for fold in folds])
    assert sorted(validation) == sorted(train.indices)
    for fold in folds:
        assert set(fold.train.indices).isdisjoint(fold.validation.indices)
        assert abs(dataset.prevalence(fold.validation) - dataset.prevalence(train)) < 0.01 + 1 / len(fold.validation)


def test_split_needs_two_records_per_class():
    frame = make_cohort(n=30, missing=False)
    frame["deceased"] = 0
    frame.loc[0, "deceased"] = 1
    with pytest.raises(InsufficientSamples):
        stratified_split(Dataset(frame))


def test_kfold_needs_enough_records_per_class():
    frame = make_cohort(n=40, missing=False)
    frame["deceased"] = 0
    frame.loc[:2, "deceased"] = 1
    dataset = Dataset(frame)
    with pytest.raises(InsufficientSamples):
        stratified_kfold(dataset, dataset.full_partition(), n_folds=5)


def test_stratified_bootstrap_keeps_class_counts(dataset, split):
    train, _ = split
    resample = bootstrap_partition(dataset, train, random_state=3, stratified=True)
    assert len(resample) == len(train)
    assert dataset.labels(resample).sum() == dataset.labels(train).sum()


def test_stratified_sample_draws_both_classes(dataset, split):
    train, _ = split
    background = stratified_sample(dataset, train, n_per_class=5, random_state=1)
    labels = dataset.labels(background)
    assert len(background) == 10
    assert labels.sum() == 5
    assert set(background.indices).issubset(train.indices)


def test_derive_seed_depends_only_on_keys():
    assert derive_seed(2026, "bootstrap", "rf", 3) == derive_seed(2026, "bootstrap", "rf", 3)
    assert derive_seed(2026, "bootstrap", "rf", 3) != derive_seed(2026, "bootstrap", "rf", 4)
    assert derive_seed(2026, "bootstrap", "rf", 3) != derive_seed(2027, "bootstrap", "rf", 3)


def test_partitions_ignore_global_random_state(dataset, split):
    train, _ = split
    np.random.seed(0)
    first_split, _ = stratified_split(dataset, random_state=11)
    first_resample = bootstrap_partition(dataset, train, random_state=3)
    np.random.seed(123)
    second_split, _ = stratified_split(dataset, random_state=11)
    second_resample = bootstrap_partition(dataset, train, random_state=3)
    np.testing.assert_array_equal(first_split.indices, second_split.indices)
    np.testing.assert_array_equal(first_resample.indices, second_resample.indices)
