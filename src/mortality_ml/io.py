"""
Data I/O module for loading the admission cohort.

Responsibilities:
- Load data from CSV or Excel file
- Validate every column against the fixed clinical schema
- Report outcome prevalence and per-attribute completion
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Union

import pandas as pd

from mortality_ml.dataset import DEFAULT_SCHEMA, ClinicalSchema, Dataset
from mortality_ml.exceptions import InsufficientSamples

logger = logging.getLogger(__name__)


def read_table(filepath: Union[str, Path], sheet_name: Optional[str] = None) -> pd.DataFrame:
    """
    Read a raw table from CSV or Excel.

    Parameters
    ----------
    filepath : Path
        Path to a ``.csv``, ``.xlsx`` or ``.xls`` file
    sheet_name : str, optional
        Excel sheet name to load. If None, loads first sheet.

    Returns
    -------
    pd.DataFrame
        Raw table, no type coercion beyond the reader's own parsing
    """
    filepath = Path(filepath)
    logger.info(f"Loading data from {filepath}")

    if filepath.suffix.lower() in (".xlsx", ".xls"):
        df = pd.read_excel(filepath, sheet_name=0 if sheet_name is None else sheet_name)
        if sheet_name is None:
            logger.info(f"Loaded first sheet with shape {df.shape}")
        else:
            logger.info(f"Loaded sheet '{sheet_name}' with shape {df.shape}")
    elif filepath.suffix.lower() == ".csv":
        df = pd.read_csv(filepath)
        logger.info(f"Loaded CSV with shape {df.shape}")
    else:
        raise ValueError(f"Unsupported file type: {filepath.suffix}. Use .csv or .xlsx")

    return df


def completion_rates(dataset: Dataset) -> Dict[str, float]:
    """Fraction of non-missing values per attribute (0-1)."""
    features = dataset.features()
    return {col: float(1 - features[col].isna().mean()) for col in features.columns}


def load_dataset(
    filepath: Union[str, Path],
    sheet_name: Optional[str] = None,
    schema: ClinicalSchema = DEFAULT_SCHEMA,
) -> Dataset:
    """
    Load and validate the cohort.

    Steps:
    1. Read CSV / Excel
    2. Validate columns and values against the schema (no repair of
       duplicated or unknown columns)
    3. Check that both outcome classes are present

    Parameters
    ----------
    filepath : Path
        Path to data file
    sheet_name : str, optional
        Excel sheet name to load
    schema : ClinicalSchema
        Fixed clinical schema

    Returns
    -------
    Dataset
        Validated, immutable dataset
    """
    df = read_table(filepath, sheet_name=sheet_name)
    dataset = Dataset(df, schema=schema)

    n_deceased = int(dataset.labels().sum())
    logger.info(f"Final dataset: {len(dataset)} patients, {len(schema.names)} attributes")
    logger.info(
        f"Mortality prevalence: {n_deceased}/{len(dataset)} "
        f"({dataset.prevalence()*100:.1f}%)"
    )

    if n_deceased == 0 or n_deceased == len(dataset):
        raise InsufficientSamples(
            f"Outcome '{schema.outcome}' has a single class in {len(dataset)} records. "
            "Cannot train a classifier without both outcomes."
        )

    rates = completion_rates(dataset)
    incomplete = {col: f"{(1 - rate)*100:.1f}%" for col, rate in rates.items() if rate < 1.0}
    if incomplete:
        logger.info(f"Missing values (will be imputed inside each fold): {incomplete}")

    return dataset
