"""Deterministic per-task seeds derived from one top-level seed."""

import zlib

import numpy as np


def derive_seed(base_seed: int, *keys) -> int:
    """
    Derive an independent seed for one work unit.

    The result depends only on ``base_seed`` and the task identifiers in
    ``keys`` (e.g. ``("bootstrap", "rf", 17)``), never on scheduling order,
    so parallel and sequential runs draw the same random numbers.

    Parameters
    ----------
    base_seed : int
        Top-level run seed
    *keys
        Stable task identifiers (strings or integers)

    Returns
    -------
    int
        Seed in [0, 2**32), usable as a scikit-learn ``random_state``
    """
    spawn_key = tuple(zlib.crc32(str(key).encode("utf-8")) for key in keys)
    sequence = np.random.SeedSequence(entropy=int(base_seed), spawn_key=spawn_key)
    return int(sequence.generate_state(1, dtype=np.uint32)[0])


def make_rng(base_seed: int, *keys) -> np.random.Generator:
    """Numpy generator seeded with :func:`derive_seed`."""
    return np.random.default_rng(derive_seed(base_seed, *keys))
