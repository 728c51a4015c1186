#!/usr/bin/env python
"""
Main CLI entrypoint for the in-hospital mortality pipeline.

Usage:
    python scripts/run_pipeline.py --data cohort.xlsx --config configs/default.yaml --seed 2026
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from uuid import uuid4

import pandas as pd

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mortality_ml.comparison import compare_workflows
from mortality_ml.config import load_config
from mortality_ml.dca import decision_curves, threshold_grid
from mortality_ml.explain import (
    bootstrap_stability,
    consensus_ranking,
    global_importance,
    select_production_attributes,
)
from mortality_ml.io import completion_rates, load_dataset
from mortality_ml.models import TUNED_FAMILIES, get_model_name
from mortality_ml.partition import stratified_kfold, stratified_split
from mortality_ml.preprocessing import audit_fold_isolation, build_recipe
from mortality_ml.reporting import generate_all_reports
from mortality_ml.tuning import ModelTrainer, ablation_study, compare_oversampling_ratios
from mortality_ml.workflow import save_workflow

# Setup logging with UTF-8 encoding to handle special characters
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("mortality_ml.log", encoding="utf-8"),
    ],
)

logger = logging.getLogger(__name__)


def parse_args():
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Train, compare and explain in-hospital mortality models"
    )

    parser.add_argument(
        "--data",
        type=str,
        default="data.xlsx",
        help="Path to input CSV or Excel data file (default: data.xlsx)",
    )

    parser.add_argument(
        "--sheet",
        type=str,
        default=None,
        help="Excel sheet name (default: first sheet)",
    )

    parser.add_argument(
        "--config",
        type=str,
        default="configs/default.yaml",
        help="Path to configuration YAML file (default: configs/default.yaml)",
    )

    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed (overrides config)",
    )

    parser.add_argument(
        "--models",
        type=str,
        default="all",
        help="Comma-separated list of model families to tune (rf,xgb,svm) or 'all'. "
        "Overrides config file if provided. (default: use config file)",
    )

    parser.add_argument(
        "--no-baseline",
        action="store_true",
        help="Skip the reference logistic regression",
    )

    parser.add_argument(
        "--ablate",
        type=str,
        default="severity",
        help="Comma-separated attributes for the ablation study (empty string to skip)",
    )

    parser.add_argument(
        "--skip-explain",
        action="store_true",
        help="Skip Shapley importance, consensus ranking and bootstrap stability",
    )

    parser.add_argument(
        "--skip-oversampling-study",
        action="store_true",
        help="Skip the comparison of SMOTE target ratios",
    )

    parser.add_argument(
        "--n-jobs",
        type=int,
        default=None,
        help="Number of parallel work units (default: config value)",
    )

    parser.add_argument(
        "--output-dir",
        type=str,
        default="reports",
        help="Output directory for reports and workflows (default: reports)",
    )

    return parser.parse_args()


def select_models(args, config: dict):
    # Priority: command-line argument > config file > default (all tuned families)
    if args.models.lower() != "all":
        return [m.strip() for m in args.models.split(",") if m.strip()]
    if config.get("models"):
        return [m for m in config["models"] if m is not None]
    return list(TUNED_FAMILIES)


def run_explanations(dataset, train, test, workflows, config, output_dir, n_jobs):
    """Global importance per model, consensus ranking and bootstrap stability."""
    explain_cfg = config["explain"]
    seed = config["random_state"]

    X_test = dataset.features(test)
    importances = {}
    for name, workflow in workflows.items():
        logger.info(f"Computing Shapley importance for {workflow.display_name}")
        importances[name] = global_importance(
            workflow,
            X_test,
            n_permutations=explain_cfg["n_permutations"],
            random_state=seed,
            n_jobs=n_jobs,
        )

    stability = bootstrap_stability(
        dataset.features(train),
        dataset.labels(train),
        build_recipe(config),
        n_bootstraps=explain_cfg["stability_bootstraps"],
        top_n=explain_cfg["stability_top_n"],
        params=dict(explain_cfg["stability_forest"]),
        random_state=seed,
        n_jobs=n_jobs,
    )

    consensus = consensus_ranking(
        importances,
        stability=stability,
        agreement_threshold=explain_cfg["rank_agreement_min"],
    )
    selected = select_production_attributes(
        consensus,
        min_stability=explain_cfg["stability_min_pct"],
        min_consistency=explain_cfg["min_consistency"],
        max_attributes=explain_cfg["max_attributes"],
    )

    with open(output_dir / "production_attributes.json", "w") as f:
        json.dump(
            {
                "selected": selected,
                "rank_agreement": consensus.agreement,
                "min_stability_pct": explain_cfg["stability_min_pct"],
                "min_consistency": explain_cfg["min_consistency"],
            },
            f,
            indent=2,
        )

    importance_long = pd.concat(
        [imp.assign(model=name) for name, imp in importances.items()], ignore_index=True
    )
    return {
        "importance": importance_long,
        "consensus": consensus.table,
        "rank_correlations": consensus.correlations,
        "stability": stability,
    }


def main():
    """Main execution function."""
    args = parse_args()

    logger.info("=" * 100)
    logger.info("MORTALITY ML: Training, comparison and explanation pipeline")
    logger.info("=" * 100)

    # Load configuration (defaults fill any missing keys)
    config = load_config(args.config)

    # Override config with command-line arguments
    if args.seed is not None:
        config["random_state"] = args.seed
    if args.n_jobs is not None:
        config["n_jobs"] = args.n_jobs
    if args.no_baseline:
        config["include_baseline"] = False

    seed = config["random_state"]
    n_jobs = config["n_jobs"]

    model_types = select_models(args, config)
    logger.info(f"Selected models: {[get_model_name(m) for m in model_types]}")

    # Generate unique run ID
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_id = f"{timestamp}_{str(uuid4())[:8]}"
    output_dir = Path(args.output_dir) / f"run_{run_id}"
    output_dir.mkdir(parents=True, exist_ok=True)

    with open(output_dir / "run_info.json", "w") as f:
        json.dump(
            {
                "run_id": run_id,
                "timestamp": timestamp,
                "config_file": args.config,
                "data_file": args.data,
                "models": model_types,
                "config": config,
            },
            f,
            indent=2,
        )

    logger.info(f"Run ID: {run_id}")
    logger.info(f"Output directory: {output_dir}")

    # Step 1: Load and validate data
    logger.info(f"\nStep 1: Loading data from {args.data}")
    data_path = Path(args.data)
    if not data_path.exists():
        logger.error(f"Data file not found: {args.data}")
        sys.exit(1)

    dataset = load_dataset(data_path, sheet_name=args.sheet)
    with open(output_dir / "missing_data_info.json", "w") as f:
        json.dump(
            {
                "summary": {k: v for k, v in dataset.summary().items() if k != "missing"},
                "completion_rates_percent": {k: v * 100 for k, v in completion_rates(dataset).items()},
            },
            f,
            indent=2,
        )

    # Step 2: Partition
    logger.info("\nStep 2: Stratified train/test split and shared folds")
    train, test = stratified_split(dataset, test_size=config["test_size"], random_state=seed)
    folds = stratified_kfold(dataset, train, n_folds=config["cv_folds"], random_state=seed)

    audit = audit_fold_isolation(dataset, folds, build_recipe(config), random_state=seed)
    logger.info(
        f"Fold audit: max |mean| of standardized columns = {audit['max_abs_mean'].max():.2e}, "
        f"max |SD - 1| = {audit['max_abs_sd_error'].max():.2e}"
    )

    # Step 3: Tune and refit
    logger.info(f"\nStep 3: Tuning {len(model_types)} families on {config['cv_folds']} shared folds")
    trainer = ModelTrainer(dataset, train, folds, config=config, random_state=seed, n_jobs=n_jobs)
    tuning_results = trainer.run(model_types)
    workflows = {family: result.workflow for family, result in tuning_results.items()}

    for family, result in tuning_results.items():
        if result.n_failed_units:
            logger.warning(
                f"{get_model_name(family)}: {result.failures['failed']} failed, "
                f"{result.failures['abandoned']} abandoned fold units during search"
            )

    # Step 4: Test-set comparison
    logger.info("\nStep 4: Test-set evaluation with bootstrap CIs and DeLong tests")
    X_test = dataset.features(test)
    y_test = dataset.labels(test)
    report = compare_workflows(workflows, X_test, y_test, config=config, n_jobs=n_jobs)

    start, stop, step = config["evaluation"]["dca_thresholds"]
    dca = decision_curves(workflows, X_test, y_test, thresholds=threshold_grid(start, stop, step))

    extra_tables = {"fold_audit": audit, "decision_curves": dca}

    # Step 5: Ablation and oversampling studies
    ablate = [a.strip() for a in args.ablate.split(",") if a.strip()]
    if ablate:
        logger.info(f"\nStep 5a: Ablation of {ablate}")
        ablations = [
            ablation_study(trainer, result, test, ablate)
            for family, result in tuning_results.items()
            if family in TUNED_FAMILIES
        ]
        extra_tables["ablation"] = pd.DataFrame(
            [{k: v for k, v in a.items() if k != "workflow"} for a in ablations]
        )

    if not args.skip_oversampling_study:
        logger.info("\nStep 5b: SMOTE target ratio comparison")
        extra_tables["oversampling_ratios"] = compare_oversampling_ratios(trainer)

    # Step 6: Explanations
    if not args.skip_explain:
        logger.info("\nStep 6: Shapley importance, consensus ranking and stability")
        tuned = {name: wf for name, wf in workflows.items() if wf.family in TUNED_FAMILIES}
        extra_tables.update(run_explanations(dataset, train, test, tuned, config, output_dir, n_jobs))

    # Step 7: Persist workflows and reports
    logger.info("\nStep 7: Saving workflows and reports")
    for name, workflow in workflows.items():
        save_workflow(workflow, output_dir / "workflows" / name)

    generate_all_reports(
        report=report,
        output_dir=output_dir,
        tuning_results=tuning_results,
        extra_tables=extra_tables,
    )

    logger.info("\n" + "=" * 100)
    logger.info("Pipeline complete!")
    logger.info(f"Run ID: {run_id}")
    logger.info(f"Reports saved to: {output_dir / 'tables'}")
    logger.info(f"Workflows saved to: {output_dir / 'workflows'}")
    logger.info("=" * 100 + "\n")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logger.info("\nInterrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)
