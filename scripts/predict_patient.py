#!/usr/bin/env python
"""
Score and explain one patient with a saved workflow.

Usage:
    python scripts/predict_patient.py --workflow reports/run_xxx/workflows/rf --record patient.json
"""

import argparse
import json
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mortality_ml.workflow import load_workflow

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(description="Predict in-hospital mortality risk for one patient")
    parser.add_argument("--workflow", type=str, required=True, help="Saved workflow directory")
    parser.add_argument("--record", type=str, required=True, help="JSON file with the patient's attributes")
    parser.add_argument("--permutations", type=int, default=None, help="Shapley orderings")
    return parser.parse_args()


def main():
    args = parse_args()
    workflow = load_workflow(args.workflow)

    with open(args.record, "r") as f:
        record = json.load(f)

    risk = workflow.predict(record)
    attribution = workflow.explain(record, n_permutations=args.permutations)

    print(f"\n{workflow.display_name}: predicted mortality risk {risk:.3f} "
          f"({'HIGH' if risk >= workflow.threshold else 'low'} risk at threshold {workflow.threshold:.3f})")
    print(f"Baseline risk {attribution.baseline:.3f}\n")
    print(attribution.to_frame().to_string(index=False))


if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)
