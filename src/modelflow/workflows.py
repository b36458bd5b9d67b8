"""
Workflows: a recipe and a model specification fitted together.

Fitting a workflow preps the recipe on the training data, bakes it, and
fits the estimator on the result, so that preprocessing never sees the
data it is later evaluated on.
"""

import copy
import logging
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd

from modelflow import CLASSIFICATION_THRESHOLD
from modelflow.models import ModelSpec, build_estimator, finalize_model, get_model_name
from modelflow.recipes import Recipe

logger = logging.getLogger(__name__)


class Workflow:
    """
    Preprocessing recipe plus model specification.

    Parameters
    ----------
    recipe : Recipe
        Untrained recipe (defines the outcome)
    model : ModelSpec
        Model specification, possibly with ``tune()`` placeholders
    random_state : int
        Random state passed to the estimator
    """

    def __init__(self, recipe: Recipe, model: ModelSpec, random_state: int = 42):
        self.recipe = recipe
        self.model = model
        self.random_state = random_state

    @property
    def outcome(self) -> str:
        return self.recipe.outcome

    def tunable(self):
        return self.model.tunable()

    def fit(self, data: pd.DataFrame) -> "FittedWorkflow":
        """
        Prep the recipe and fit the model on ``data``.

        Returns
        -------
        FittedWorkflow
        """
        prepped = self.recipe.prep(data)
        juiced = prepped.juice()
        predictors = prepped.output_predictors()

        X = juiced[predictors]
        y = juiced[self.outcome]

        event_level = None
        classes = None
        if self.model.mode == "classification":
            classes = sorted(pd.unique(y.dropna()).tolist(), key=str)
            if len(classes) != 2:
                raise ValueError(
                    f"Classification needs exactly 2 outcome classes, "
                    f"found {len(classes)}: {classes}"
                )
            event_level = classes[1]
            y = (y == event_level).astype(int)

        estimator = build_estimator(
            self.model,
            n_features=len(predictors),
            n_samples=len(X),
            random_state=self.random_state,
        )
        estimator.fit(X, y)

        logger.debug(
            f"Fitted {get_model_name(self.model.model_type)} on "
            f"{len(X)} rows x {len(predictors)} predictors"
        )

        return FittedWorkflow(
            workflow=self,
            recipe=prepped,
            estimator=estimator,
            predictors=predictors,
            classes=classes,
            event_level=event_level,
        )

    def __repr__(self) -> str:
        return f"<Workflow>\n{self.recipe!r}\n{self.model!r}"


class FittedWorkflow:
    """A trained recipe and a fitted estimator."""

    def __init__(
        self,
        workflow: Workflow,
        recipe: Recipe,
        estimator: Any,
        predictors,
        classes=None,
        event_level=None,
    ):
        self.workflow = workflow
        self.recipe = recipe
        self.estimator = estimator
        self.predictors = list(predictors)
        self.classes = classes
        self.event_level = event_level

    @property
    def mode(self) -> str:
        return self.workflow.model.mode

    def predict(
        self,
        new_data: pd.DataFrame,
        threshold: float = CLASSIFICATION_THRESHOLD,
    ) -> pd.DataFrame:
        """
        Predict for new data.

        Returns
        -------
        pd.DataFrame
            ``.pred`` for regression; ``.pred_class`` and ``.pred_<event>``
            (probability of the second class level) for classification.
            Indexed like ``new_data``.
        """
        baked = self.recipe.bake(new_data)
        X = baked[self.predictors]

        if self.mode == "regression":
            return pd.DataFrame({".pred": self.estimator.predict(X)}, index=new_data.index)

        proba = self.estimator.predict_proba(X)[:, 1]
        labels = np.where(proba >= threshold, self.event_level, self.classes[0])
        return pd.DataFrame(
            {
                ".pred_class": labels,
                f".pred_{self.event_level}": proba,
            },
            index=new_data.index,
        )

    def variable_importance(self) -> pd.DataFrame:
        """
        Variable importance from the fitted estimator.

        Tree models report impurity/gain importances; linear models report
        absolute coefficients (with their sign).
        """
        est = self.estimator
        sign = None
        if hasattr(est, "feature_importances_"):
            importance = np.asarray(est.feature_importances_, dtype=float)
        elif hasattr(est, "coef_"):
            coef = np.ravel(est.coef_)
            importance = np.abs(coef)
            sign = np.where(coef >= 0, "POS", "NEG")
        else:
            raise ValueError(
                f"{type(est).__name__} does not expose feature importances or coefficients"
            )

        vi = pd.DataFrame({"Variable": self.predictors, "Importance": importance})
        if sign is not None:
            vi["Sign"] = sign
        return vi.sort_values("Importance", ascending=False).reset_index(drop=True)

    def __repr__(self) -> str:
        return f"<FittedWorkflow {type(self.estimator).__name__} on {len(self.predictors)} predictors>"


def finalize_workflow(workflow: Workflow, params: Dict[str, Any]) -> Workflow:
    """Fill the model's ``tune()`` placeholders with ``params``."""
    final = copy.copy(workflow)
    final.model = finalize_model(workflow.model, params)
    return final


def outcome_event_level(values: pd.Series) -> Optional[Any]:
    """The event (second) level of a binary outcome, as used by ``Workflow.fit``."""
    classes = sorted(pd.unique(values.dropna()).tolist(), key=str)
    return classes[1] if len(classes) == 2 else None
