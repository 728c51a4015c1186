"""
Reporting module for generating tables and summaries.

Includes:
- Test-set performance table with bootstrap CIs
- DeLong and calibration tables
- CSV / JSON artifacts
- Pretty console summary (applies the significance policy)
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from mortality_ml.comparison import ComparisonReport
from mortality_ml.models import get_model_name
from mortality_ml.workflow import _to_serializable

logger = logging.getLogger(__name__)

PERFORMANCE_COLUMNS = {
    "auc": "AUC",
    "pr_auc": "PR_AUC",
    "brier": "BRIER",
    "calibration_intercept": "CAL_INTERCEPT",
    "calibration_slope": "CAL_SLOPE",
    "sensitivity": "SENSITIVITY",
    "specificity": "SPECIFICITY",
    "ppv": "PPV",
    "npv": "NPV",
    "kappa": "KAPPA",
}


def _display_name(name: str) -> str:
    return get_model_name(name)


def create_performance_table(report: ComparisonReport) -> pd.DataFrame:
    """
    One row per workflow with "estimate (lower-upper)" strings.

    Parameters
    ----------
    report : ComparisonReport
        Output of :func:`mortality_ml.comparison.compare_workflows`

    Returns
    -------
    pd.DataFrame
        Performance table ordered by test AUC
    """
    rows = []
    for name in report.ranking():
        evaluation = report.evaluations[name]
        row = {"Model": _display_name(name), "THRESHOLD": f"{evaluation.threshold:.3f}"}
        for metric, column in PERFORMANCE_COLUMNS.items():
            row[column] = evaluation.metrics[metric].format()
        rows.append(row)
    return pd.DataFrame(rows)


def create_delong_table(report: ComparisonReport) -> pd.DataFrame:
    """Pairwise DeLong tests with the significance verdict."""
    df = report.comparison_frame()
    if df.empty:
        return df
    df["model_a"] = df["model_a"].map(_display_name)
    df["model_b"] = df["model_b"].map(_display_name)
    df["verdict"] = [
        "A better" if comp.delta_auc > 0 and comp.p_value < report.alpha
        else "B better" if comp.delta_auc < 0 and comp.p_value < report.alpha
        else "not significant"
        for comp in report.comparisons
    ]
    return df


def create_calibration_table(report: ComparisonReport) -> pd.DataFrame:
    """Calibration intercept/slope with standard errors and p-values."""
    rows = []
    for name, evaluation in report.evaluations.items():
        cal = evaluation.calibration
        rows.append({
            "Model": _display_name(name),
            "intercept": cal["intercept"],
            "intercept_se": cal["intercept_se"],
            "intercept_p": cal["intercept_p"],
            "slope": cal["slope"],
            "slope_se": cal["slope_se"],
            "slope_p": cal["slope_p"],
            "n_clipped": cal["n_clipped"],
        })
    return pd.DataFrame(rows)


def save_summary_table(
    df: pd.DataFrame,
    output_dir: Path,
    filename_stem: str = "summary",
) -> Path:
    """
    Save a table to CSV.

    Parameters
    ----------
    df : pd.DataFrame
        Table
    output_dir : Path
        Output directory
    filename_stem : str
        Filename stem (without extension)

    Returns
    -------
    Path
        Written file
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    csv_path = output_dir / f"{filename_stem}.csv"
    df.to_csv(csv_path, index=False)
    logger.info(f"Saved {filename_stem} table to {csv_path}")
    return csv_path


def save_best_params_summary(tuning_results: Dict[str, Any], output_dir: Path):
    """
    Save the selected hyperparameters, CV score and failure counts per family.

    Parameters
    ----------
    tuning_results : dict
        family -> TuningResult
    output_dir : Path
        Output directory
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    for family, result in tuning_results.items():
        output_path = output_dir / f"best_params_{family}.json"
        params_data = {
            "model": get_model_name(family),
            "model_type": family,
            "best_trial": result.best_trial,
            "cv_auc": result.cv_score,
            "threshold": result.workflow.threshold,
            "params": result.best_params,
            "failures": result.failures,
        }
        with open(output_path, "w") as f:
            json.dump(_to_serializable(params_data), f, indent=2)

        result.cv_results.to_csv(output_dir / f"cv_results_{family}.csv", index=False)
        logger.info(f"Saved best params for {get_model_name(family)} to {output_path}")


def print_console_summary(report: ComparisonReport, performance: Optional[pd.DataFrame] = None):
    """
    Print pretty summary to console.

    Parameters
    ----------
    report : ComparisonReport
        Comparison report
    performance : pd.DataFrame, optional
        Precomputed performance table
    """
    if performance is None:
        performance = create_performance_table(report)

    first = next(iter(report.evaluations.values()), None)
    ci_pct = int(round(100 * first.ci_level)) if first else 95
    n_boot = first.n_bootstraps if first else 0

    print("\n" + "=" * 100)
    print("IN-HOSPITAL MORTALITY MODEL PERFORMANCE SUMMARY (TEST SET)")
    print("=" * 100)
    print(f"\nResults: estimate ({ci_pct}% stratified bootstrap CI, B={n_boot})\n")
    print(performance.to_string(index=False))
    print("\nPairwise DeLong tests (better = higher AUC and p < " f"{report.alpha}):")
    for line in report.describe():
        print(f"  - {line}")
    print("=" * 100 + "\n")


def generate_all_reports(
    report: ComparisonReport,
    output_dir: Path,
    tuning_results: Optional[Dict[str, Any]] = None,
    extra_tables: Optional[Dict[str, pd.DataFrame]] = None,
) -> List[Path]:
    """
    Generate all reports and save to output directory.

    Parameters
    ----------
    report : ComparisonReport
        Test-set comparison
    output_dir : Path
        Output directory
    tuning_results : dict, optional
        family -> TuningResult
    extra_tables : dict, optional
        Additional named tables (DCA, consensus, stability, ablation, ...)

    Returns
    -------
    list of Path
        Written table files
    """
    logger.info("Generating reports...")
    output_dir = Path(output_dir)
    tables_dir = output_dir / "tables"

    performance = create_performance_table(report)
    print_console_summary(report, performance)

    written = [
        save_summary_table(performance, tables_dir, "performance"),
        save_summary_table(create_delong_table(report), tables_dir, "delong"),
        save_summary_table(create_calibration_table(report), tables_dir, "calibration"),
        save_summary_table(
            pd.concat([ev.to_frame() for ev in report.evaluations.values()], ignore_index=True),
            tables_dir,
            "metrics_long",
        ),
    ]

    for name, table in (extra_tables or {}).items():
        if table is not None:
            written.append(save_summary_table(table, tables_dir, name))

    if tuning_results:
        save_best_params_summary(tuning_results, output_dir / "artifacts")

    logger.info(f"All reports saved to {output_dir}")
    return written
