"""
Mortality ML: In-hospital mortality risk prediction pipeline

A reproducible machine learning framework for predicting in-hospital mortality
from eight admission variables, using leakage-safe preprocessing recipes,
multi-model tuning with statistical comparison, and Shapley-based explanations.
"""

__version__ = "1.0.0"

# Name of the binary outcome column (1 = deceased)
OUTCOME_COLUMN = "deceased"

# Reporting policy: a difference is only called "better" below this p-value
SIGNIFICANCE_LEVEL = 0.05

# Score assigned to a configuration that could not be evaluated
WORST_SCORE = 0.0

__all__ = [
    "__version__",
    "OUTCOME_COLUMN",
    "SIGNIFICANCE_LEVEL",
    "WORST_SCORE",
]
