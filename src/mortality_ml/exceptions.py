"""
Error taxonomy for the mortality prediction pipeline.

Fatal setup errors (SchemaViolation, InsufficientSamples) stop a run.
DegenerateColumn and NonConvergence are recovered locally where the
pipeline can continue. ClippedProbability is a warning category.
"""


class MortalityMLError(Exception):
    """Base class for all pipeline errors."""


class SchemaViolation(MortalityMLError):
    """Input has an attribute outside the schema or a value outside its levels."""


class InsufficientSamples(MortalityMLError):
    """A stratum is too small for the requested split or number of folds."""


class DegenerateColumn(MortalityMLError):
    """A numeric feature became constant part-way through the recipe."""

    def __init__(self, column: str, message: str = None):
        self.column = column
        super().__init__(message or f"Column '{column}' is constant")


class NonConvergence(MortalityMLError):
    """An estimator configuration failed to fit."""


class ClippedProbability(UserWarning):
    """Predicted probabilities were clamped away from 0/1 before a logit."""
