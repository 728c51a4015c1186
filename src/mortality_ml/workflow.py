"""
Fitted workflow bundles and their persistence.

A :class:`Workflow` packages everything needed to score a new patient: the
fitted recipe, the fitted estimator, the operating threshold and the
explanation background. Workflows are frozen; derived copies are created with
:func:`dataclasses.replace`.
"""

import dataclasses
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import joblib
import numpy as np
import pandas as pd

from mortality_ml import __version__
from mortality_ml.dataset import DEFAULT_SCHEMA, ClinicalSchema, validate_record
from mortality_ml.models import get_model_name
from mortality_ml.preprocessing import FittedRecipe
from mortality_ml.threshold import classify

logger = logging.getLogger(__name__)

WORKFLOW_FILE = "workflow.joblib"
METADATA_FILE = "metadata.json"


def _to_serializable(obj: Any) -> Any:
    """Recursively convert numpy/pandas objects into JSON-serializable types."""
    if isinstance(obj, dict):
        return {str(k): _to_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_serializable(v) for v in obj]
    if isinstance(obj, (np.generic,)):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, pd.DataFrame):
        return obj.to_dict(orient="records")
    return obj


@dataclass(frozen=True, eq=False)
class Workflow:
    """
    Fitted recipe + estimator + operating threshold for one model family.

    Parameters
    ----------
    name : str
        Unique workflow name (e.g. ``"rf"``, ``"rf_without_severity"``)
    family : str
        Model type code
    params : dict
        Hyperparameters the estimator was fitted with
    recipe : FittedRecipe
        Preprocessing fitted on the full training partition
    estimator : object
        Fitted classifier exposing ``predict_proba``
    threshold : float
        Operating threshold (``proba >= threshold`` is high risk)
    background : pd.DataFrame, optional
        Raw reference patients for explanations
    cv_score : float
        Mean cross-validated AUC of the selected configuration
    random_state : int
        Seed the workflow was fitted with
    schema : ClinicalSchema
        Raw input schema
    """

    name: str
    family: str
    params: Dict[str, Any]
    recipe: FittedRecipe
    estimator: Any
    threshold: float = 0.5
    background: Optional[pd.DataFrame] = None
    cv_score: float = float("nan")
    random_state: int = 2026
    schema: ClinicalSchema = DEFAULT_SCHEMA
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return get_model_name(self.family) if self.name == self.family else self.name

    def predict_proba(self, X: pd.DataFrame) -> np.ndarray:
        """Mortality probability for every row of a raw attribute frame."""
        features = self.recipe.apply(X)
        return self.estimator.predict_proba(features)[:, 1]

    def predict(self, record: Mapping[str, Any]) -> float:
        """Mortality probability for one raw patient record."""
        return float(self.predict_proba(validate_record(record, self.schema))[0])

    def classify(self, X: pd.DataFrame) -> np.ndarray:
        return classify(self.predict_proba(X), self.threshold)

    def explain(self, record: Mapping[str, Any], n_permutations: Optional[int] = None, random_state: Optional[int] = None):
        """
        Shapley attribution of one patient's predicted risk.

        Returns
        -------
        AttributionSet
        """
        from mortality_ml.explain import DEFAULT_PERMUTATIONS, collapse_attributions, shapley_attribution

        if self.background is None:
            raise ValueError(f"Workflow '{self.name}' has no explanation background")

        table = shapley_attribution(
            self,
            record,
            self.background,
            n_permutations=n_permutations or DEFAULT_PERMUTATIONS,
            random_state=self.random_state if random_state is None else random_state,
        )
        return collapse_attributions(table, workflow_name=self.name)

    def with_threshold(self, threshold: float) -> "Workflow":
        return dataclasses.replace(self, threshold=float(threshold))

    def with_background(self, background: pd.DataFrame) -> "Workflow":
        return dataclasses.replace(self, background=background.reset_index(drop=True))

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "family": self.family,
            "model": get_model_name(self.family),
            "params": self.params,
            "threshold": self.threshold,
            "cv_auc": self.cv_score,
            "random_state": self.random_state,
            "features": self.recipe.feature_names,
            "removed_columns": self.recipe.removed_columns,
            "n_background": 0 if self.background is None else len(self.background),
            **self.metadata,
        }


def save_workflow(workflow: Workflow, path: Union[str, Path]) -> Path:
    """
    Persist a workflow bundle to a directory.

    Writes ``workflow.joblib`` (the full bundle) and ``metadata.json``
    (human-readable summary).

    Parameters
    ----------
    workflow : Workflow
        Workflow to save
    path : Path
        Target directory (created if needed)

    Returns
    -------
    Path
        Directory the bundle was written to
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)

    joblib.dump(workflow, path / WORKFLOW_FILE)

    metadata = {"package_version": __version__, **workflow.describe()}
    with open(path / METADATA_FILE, "w") as f:
        json.dump(_to_serializable(metadata), f, indent=2, default=str)

    logger.info(f"Saved workflow '{workflow.name}' to {path}")
    return path


def load_workflow(path: Union[str, Path]) -> Workflow:
    """Load a workflow bundle written by :func:`save_workflow`."""
    path = Path(path)
    bundle = path / WORKFLOW_FILE if path.is_dir() else path
    workflow = joblib.load(bundle)
    if not isinstance(workflow, Workflow):
        raise TypeError(f"{bundle} does not contain a Workflow (got {type(workflow).__name__})")
    logger.info(f"Loaded workflow '{workflow.name}' from {bundle}")
    return workflow
