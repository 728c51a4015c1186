"""
Stratified partitioning of a :class:`~mortality_ml.dataset.Dataset`.

All functions are pure functions of the data and an explicit seed; they only
produce index arrays, never copies of the records.
"""

import logging
from typing import List, NamedTuple, Optional, Tuple

import numpy as np
from sklearn.model_selection import StratifiedKFold, train_test_split

from mortality_ml.dataset import Dataset, Partition
from mortality_ml.exceptions import InsufficientSamples
from mortality_ml.seeding import make_rng

logger = logging.getLogger(__name__)


class Fold(NamedTuple):
    """One cross-validation fold (training and validation partitions)."""

    index: int
    train: Partition
    validation: Partition


def _class_counts(labels: np.ndarray) -> np.ndarray:
    return np.bincount(labels, minlength=2)


def stratified_split(
    dataset: Dataset,
    test_size: float = 0.2,
    random_state: int = 2026,
) -> Tuple[Partition, Partition]:
    """
    Split the dataset into training and test partitions preserving prevalence.

    Parameters
    ----------
    dataset : Dataset
        Full cohort
    test_size : float
        Fraction of records held out for testing
    random_state : int
        Seed

    Returns
    -------
    train, test : Partition
    """
    labels = dataset.labels()
    counts = _class_counts(labels)
    if counts.min() < 2:
        raise InsufficientSamples(
            f"Stratified split needs at least 2 records per class, got {counts.tolist()}"
        )

    positions = np.arange(len(dataset))
    train_idx, test_idx = train_test_split(
        positions,
        test_size=test_size,
        stratify=labels,
        random_state=random_state,
    )
    train = Partition("train", np.sort(train_idx))
    test = Partition("test", np.sort(test_idx))

    logger.info(
        f"Train/test split: {len(train)}/{len(test)} records "
        f"(prevalence {dataset.prevalence(train)*100:.1f}% / {dataset.prevalence(test)*100:.1f}%)"
    )
    return train, test


def stratified_kfold(
    dataset: Dataset,
    partition: Partition,
    n_folds: int = 5,
    random_state: int = 2026,
) -> List[Fold]:
    """
    Build stratified folds over a partition.

    The folds are generated once and shared by every model family so that all
    candidates are scored on identical validation sets.

    Parameters
    ----------
    dataset : Dataset
        Parent dataset
    partition : Partition
        Partition to split (normally the training partition)
    n_folds : int
        Number of folds
    random_state : int
        Seed

    Returns
    -------
    list of Fold
    """
    labels = dataset.labels(partition)
    counts = _class_counts(labels)
    if counts.min() < n_folds:
        raise InsufficientSamples(
            f"{n_folds}-fold stratification needs at least {n_folds} records per class, "
            f"got {counts.tolist()}"
        )

    skf = StratifiedKFold(n_splits=n_folds, shuffle=True, random_state=random_state)
    folds = []
    for i, (train_pos, val_pos) in enumerate(skf.split(np.zeros(len(labels)), labels)):
        folds.append(
            Fold(
                index=i,
                train=Partition(f"fold{i}_train", partition.indices[train_pos]),
                validation=Partition(f"fold{i}_validation", partition.indices[val_pos]),
            )
        )

    logger.debug(f"Created {n_folds} stratified folds over '{partition.name}'")
    return folds


def bootstrap_partition(
    dataset: Dataset,
    partition: Partition,
    random_state: int,
    name: Optional[str] = None,
    stratified: bool = False,
) -> Partition:
    """
    Resample a partition's indices with replacement.

    With ``stratified=True`` cases and controls are resampled separately so the
    resample keeps the partition's class counts.
    """
    rng = np.random.default_rng(random_state)
    indices = partition.indices
    if stratified:
        labels = dataset.labels(partition)
        parts = [
            rng.choice(indices[labels == cls], size=int((labels == cls).sum()), replace=True)
            for cls in (0, 1)
        ]
        sampled = np.concatenate(parts)
    else:
        sampled = rng.choice(indices, size=len(indices), replace=True)
    return Partition(name or f"{partition.name}_boot", sampled)


def stratified_sample(
    dataset: Dataset,
    partition: Partition,
    n_per_class: int,
    random_state: int,
    name: str = "background",
) -> Partition:
    """
    Draw ``n_per_class`` real records of each outcome class without replacement.

    Used to build the reference background for explanations.
    """
    labels = dataset.labels(partition)
    counts = _class_counts(labels)
    if counts.min() < n_per_class:
        raise InsufficientSamples(
            f"Need {n_per_class} records per class for '{name}', got {counts.tolist()}"
        )

    rng = make_rng(random_state, name)
    chosen = []
    for cls in (0, 1):
        pool = partition.indices[labels == cls]
        chosen.append(np.sort(rng.choice(pool, size=n_per_class, replace=False)))
    return Partition(name, np.concatenate(chosen))
