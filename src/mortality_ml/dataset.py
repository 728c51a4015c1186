"""
Clinical schema, immutable dataset and index-based partitions.

Every attribute has a declared semantic kind (numeric, boolean or
categorical with fixed levels). Inputs are checked against the schema when
they enter the system; values are never coerced into a different kind.
"""

import logging
import numbers
from collections import OrderedDict
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from mortality_ml import OUTCOME_COLUMN
from mortality_ml.exceptions import SchemaViolation

logger = logging.getLogger(__name__)

NUMERIC = "numeric"
BOOLEAN = "boolean"
CATEGORICAL = "categorical"

_KINDS = (NUMERIC, BOOLEAN, CATEGORICAL)


class AttributeSpec:
    """Declared kind (and levels, for discrete kinds) of one attribute."""

    def __init__(self, kind: str, levels: Optional[Sequence[Any]] = None):
        if kind not in _KINDS:
            raise ValueError(f"Unknown attribute kind: {kind}. Available: {list(_KINDS)}")
        if kind == BOOLEAN:
            levels = (False, True)
        elif kind == CATEGORICAL and not levels:
            raise ValueError("Categorical attributes need a fixed set of levels")
        self.kind = kind
        self.levels: Tuple[Any, ...] = tuple(levels) if levels is not None else ()

    @property
    def is_discrete(self) -> bool:
        return self.kind in (BOOLEAN, CATEGORICAL)

    def __repr__(self) -> str:
        if self.is_discrete:
            return f"AttributeSpec({self.kind!r}, levels={list(self.levels)!r})"
        return f"AttributeSpec({self.kind!r})"


class ClinicalSchema:
    """
    Ordered mapping of attribute name -> :class:`AttributeSpec`.

    Parameters
    ----------
    attributes : mapping
        Attribute name to spec, in column order
    outcome : str
        Name of the binary outcome column
    """

    def __init__(self, attributes: Mapping[str, AttributeSpec], outcome: str = OUTCOME_COLUMN):
        self.attributes: "OrderedDict[str, AttributeSpec]" = OrderedDict(attributes)
        self.outcome = outcome

    @property
    def names(self) -> List[str]:
        return list(self.attributes.keys())

    def names_of_kind(self, *kinds: str) -> List[str]:
        return [name for name, spec in self.attributes.items() if spec.kind in kinds]

    @property
    def numeric(self) -> List[str]:
        return self.names_of_kind(NUMERIC)

    @property
    def discrete(self) -> List[str]:
        return self.names_of_kind(BOOLEAN, CATEGORICAL)

    def __getitem__(self, name: str) -> AttributeSpec:
        return self.attributes[name]

    def __contains__(self, name: str) -> bool:
        return name in self.attributes

    def without(self, names: Sequence[str]) -> "ClinicalSchema":
        """Schema with the given attributes removed (used for ablations)."""
        return ClinicalSchema(
            OrderedDict((k, v) for k, v in self.attributes.items() if k not in set(names)),
            outcome=self.outcome,
        )


# The eight admission variables used by the risk calculator
DEFAULT_SCHEMA = ClinicalSchema(
    OrderedDict(
        [
            ("age", AttributeSpec(NUMERIC)),
            ("sex", AttributeSpec(CATEGORICAL, ["male", "female"])),
            ("severity", AttributeSpec(CATEGORICAL, ["mild", "moderate", "severe"])),
            ("albumin", AttributeSpec(NUMERIC)),
            ("platelets", AttributeSpec(NUMERIC)),
            ("bilirubin", AttributeSpec(NUMERIC)),
            ("dyspnea", AttributeSpec(BOOLEAN)),
            ("headache", AttributeSpec(BOOLEAN)),
        ]
    )
)


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, float) and np.isnan(value)) or value is pd.NA


def _check_value(name: str, spec: AttributeSpec, value: Any) -> Any:
    """Validate one value against its spec; returns the stored representation."""
    if _is_missing(value):
        return np.nan

    if spec.kind == NUMERIC:
        if isinstance(value, (bool, np.bool_)) or not isinstance(value, numbers.Real):
            raise SchemaViolation(
                f"Attribute '{name}' is numeric, got {type(value).__name__} value {value!r}"
            )
        return float(value)

    if spec.kind == BOOLEAN:
        if not isinstance(value, (bool, np.bool_)):
            raise SchemaViolation(
                f"Attribute '{name}' is boolean, got {type(value).__name__} value {value!r}"
            )
        return bool(value)

    if value not in spec.levels:
        raise SchemaViolation(
            f"Attribute '{name}' has unknown level {value!r}. "
            f"Known levels: {list(spec.levels)}"
        )
    return value


def conform_features(frame: pd.DataFrame, schema: ClinicalSchema = DEFAULT_SCHEMA) -> pd.DataFrame:
    """
    Check a raw feature frame against the schema and return it in schema order.

    Attributes outside the schema, duplicated columns and out-of-kind or
    out-of-level values raise :class:`SchemaViolation`. Schema attributes that
    are absent from ``frame`` are added as missing (the recipe imputes them).

    Parameters
    ----------
    frame : pd.DataFrame
        Raw features (no outcome column)
    schema : ClinicalSchema
        Fixed schema

    Returns
    -------
    pd.DataFrame
        Copy with columns in schema order; numeric columns as float,
        discrete columns as object
    """
    if frame.columns.duplicated().any():
        duplicated = frame.columns[frame.columns.duplicated()].tolist()
        raise SchemaViolation(f"Duplicated columns: {duplicated}")

    unknown = [col for col in frame.columns if col not in schema]
    if unknown:
        raise SchemaViolation(f"Attributes outside the schema: {unknown}")

    conformed = pd.DataFrame(index=frame.index)
    for name, spec in schema.attributes.items():
        if name not in frame.columns:
            conformed[name] = np.nan if spec.kind == NUMERIC else pd.Series(
                [np.nan] * len(frame), index=frame.index, dtype=object
            )
            continue

        column = frame[name]
        if spec.kind == NUMERIC:
            if column.dtype == bool or not (
                pd.api.types.is_numeric_dtype(column) or column.isna().all()
            ):
                # Fall back to per-value checks to produce a precise message
                values = [_check_value(name, spec, v) for v in column.tolist()]
                conformed[name] = pd.Series(values, index=frame.index, dtype=float)
            else:
                conformed[name] = column.astype(float)
        else:
            values = [_check_value(name, spec, v) for v in column.tolist()]
            conformed[name] = pd.Series(values, index=frame.index, dtype=object)

    return conformed


def validate_record(record: Mapping[str, Any], schema: ClinicalSchema = DEFAULT_SCHEMA) -> pd.DataFrame:
    """
    Validate a single raw patient record and return it as a one-row frame.

    Parameters
    ----------
    record : mapping
        Attribute name -> raw value
    schema : ClinicalSchema
        Fixed schema

    Returns
    -------
    pd.DataFrame
        One row, schema-ordered columns
    """
    unknown = [key for key in record if key not in schema]
    if unknown:
        raise SchemaViolation(f"Attributes outside the schema: {unknown}")

    row = {name: [_check_value(name, spec, record.get(name))] for name, spec in schema.attributes.items()}
    frame = pd.DataFrame(row)
    for name in schema.discrete:
        frame[name] = frame[name].astype(object)

    absent = [name for name in schema.names if name not in record]
    if absent:
        logger.debug(f"Record is missing {absent}; values will be imputed")
    return frame


class Partition:
    """
    Named subset of a :class:`Dataset`, identified by row positions only.

    Indices may repeat (bootstrap resamples). The index array is read-only.
    """

    def __init__(self, name: str, indices: Sequence[int]):
        indices = np.array(indices, dtype=np.int64)
        indices.setflags(write=False)
        self.name = name
        self.indices = indices

    def __len__(self) -> int:
        return len(self.indices)

    def __repr__(self) -> str:
        return f"Partition({self.name!r}, n={len(self)})"


class Dataset:
    """
    Immutable collection of patient records with a fixed schema.

    Parameters
    ----------
    frame : pd.DataFrame
        Raw features plus the outcome column
    schema : ClinicalSchema
        Fixed schema; any drift raises :class:`SchemaViolation`
    """

    def __init__(self, frame: pd.DataFrame, schema: ClinicalSchema = DEFAULT_SCHEMA):
        if schema.outcome not in frame.columns:
            raise SchemaViolation(f"Outcome column '{schema.outcome}' not found")

        missing = [name for name in schema.names if name not in frame.columns]
        if missing:
            raise SchemaViolation(f"Schema attributes missing from input: {missing}")

        features = conform_features(frame.drop(columns=[schema.outcome]), schema)

        outcome = frame[schema.outcome]
        if outcome.isna().any():
            raise SchemaViolation(f"Outcome column '{schema.outcome}' has missing values")
        if not set(pd.unique(outcome)).issubset({0, 1}):
            raise SchemaViolation(
                f"Outcome column '{schema.outcome}' must be binary 0/1, "
                f"found {sorted(map(str, pd.unique(outcome)))}"
            )

        self.schema = schema
        self._features = features.reset_index(drop=True)
        self._labels = outcome.to_numpy().astype(int)
        self._labels.setflags(write=False)

    def __len__(self) -> int:
        return len(self._labels)

    @property
    def attributes(self) -> List[str]:
        return self.schema.names

    def full_partition(self, name: str = "all") -> Partition:
        return Partition(name, np.arange(len(self)))

    def features(self, partition: Optional[Partition] = None) -> pd.DataFrame:
        """Copy of the raw features of a partition (positional index)."""
        if partition is None:
            return self._features.copy()
        return self._features.iloc[partition.indices].reset_index(drop=True)

    def labels(self, partition: Optional[Partition] = None) -> np.ndarray:
        if partition is None:
            return self._labels.copy()
        return self._labels[partition.indices].copy()

    def prevalence(self, partition: Optional[Partition] = None) -> float:
        return float(self.labels(partition).mean())

    def summary(self) -> Dict[str, Any]:
        return {
            "n_records": len(self),
            "n_deceased": int(self._labels.sum()),
            "prevalence": self.prevalence(),
            "missing": self._features.isna().sum().to_dict(),
        }
