"""
Model specifications.

A ``ModelSpec`` describes *what* to fit (model type, mode and main
arguments) separately from fitting it. Any main argument may be left as
``tune()`` so that it is filled in later by a tuning grid.

Includes:
- linear_reg: penalized linear regression (lasso / ridge / elastic net)
- logistic_reg: penalized logistic regression
- boost_tree: gradient boosted trees (XGBoost)
- rand_forest: random forest
- decision_tree: CART decision tree
- nearest_neighbor: K-nearest neighbors
"""

import copy
import logging
from typing import Any, Dict, List, Optional

import numpy as np
from sklearn.ensemble import RandomForestClassifier, RandomForestRegressor
from sklearn.linear_model import (
    ElasticNet,
    Lasso,
    LinearRegression,
    LogisticRegression,
    Ridge,
)
from sklearn.neighbors import KNeighborsClassifier, KNeighborsRegressor
from sklearn.tree import DecisionTreeClassifier, DecisionTreeRegressor
from xgboost import XGBClassifier, XGBRegressor

logger = logging.getLogger(__name__)


class TuneMarker:
    """Placeholder for an argument whose value is chosen by tuning."""

    def __init__(self, id: Optional[str] = None):
        self.id = id

    def __repr__(self) -> str:
        return f'tune("{self.id}")' if self.id else "tune()"

    def __eq__(self, other) -> bool:
        return isinstance(other, TuneMarker) and other.id == self.id

    def __hash__(self) -> int:
        return hash(("tune", self.id))


def tune(id: Optional[str] = None) -> TuneMarker:
    """Mark a model argument for tuning."""
    return TuneMarker(id)


def is_tune(value: Any) -> bool:
    return isinstance(value, TuneMarker)


MODEL_ARGS = {
    "linear_reg": ("penalty", "mixture"),
    "logistic_reg": ("penalty", "mixture"),
    "boost_tree": (
        "mtry",
        "trees",
        "min_n",
        "tree_depth",
        "learn_rate",
        "loss_reduction",
        "sample_size",
    ),
    "rand_forest": ("mtry", "trees", "min_n"),
    "decision_tree": ("cost_complexity", "tree_depth", "min_n"),
    "nearest_neighbor": ("neighbors", "weight_func"),
}

MODEL_MODES = {
    "linear_reg": ("regression",),
    "logistic_reg": ("classification",),
    "boost_tree": ("regression", "classification"),
    "rand_forest": ("regression", "classification"),
    "decision_tree": ("regression", "classification"),
    "nearest_neighbor": ("regression", "classification"),
}

MODEL_NAMES = {
    "linear_reg": "Penalized Linear Regression",
    "logistic_reg": "Penalized Logistic Regression",
    "boost_tree": "XGBoost",
    "rand_forest": "Random Forest",
    "decision_tree": "Decision Tree",
    "nearest_neighbor": "K-Nearest Neighbors",
}


class ModelSpec:
    """
    Model specification.

    Parameters
    ----------
    model_type : str
        One of ``MODEL_ARGS`` keys
    mode : str
        'regression' or 'classification'
    engine_args : dict, optional
        Extra keyword arguments passed to the underlying estimator
    **params
        Main arguments; use ``tune()`` for arguments to be tuned
    """

    def __init__(
        self,
        model_type: str,
        mode: str = "regression",
        engine_args: Optional[Dict[str, Any]] = None,
        **params: Any,
    ):
        if model_type not in MODEL_ARGS:
            raise ValueError(
                f"Unknown model type: {model_type}. "
                f"Available: {list(MODEL_ARGS.keys())}"
            )
        if mode not in MODEL_MODES[model_type]:
            raise ValueError(
                f"Mode '{mode}' not available for {model_type}. "
                f"Available: {list(MODEL_MODES[model_type])}"
            )

        unknown = set(params) - set(MODEL_ARGS[model_type])
        if unknown:
            raise ValueError(
                f"Unknown arguments for {model_type}: {sorted(unknown)}. "
                f"Available: {list(MODEL_ARGS[model_type])}"
            )

        self.model_type = model_type
        self.mode = mode
        self.engine_args = dict(engine_args or {})
        self.params = {k: v for k, v in params.items() if v is not None}

    def tunable(self) -> List[str]:
        """Names of the arguments marked with ``tune()``."""
        return [name for name, value in self.params.items() if is_tune(value)]

    def __repr__(self) -> str:
        args = ", ".join(f"{k}={v!r}" for k, v in self.params.items())
        return f"<{MODEL_NAMES[self.model_type]} ({self.mode}) {args}>"


def finalize_model(spec: ModelSpec, params: Dict[str, Any]) -> ModelSpec:
    """
    Replace ``tune()`` placeholders with concrete values.

    Parameters
    ----------
    spec : ModelSpec
        Specification with tunable arguments
    params : dict
        Values for (at least) every tunable argument; extra keys are ignored

    Returns
    -------
    ModelSpec
        New specification with no placeholders left for the given names
    """
    final = copy.deepcopy(spec)
    for name in spec.tunable():
        if name in params:
            value = params[name]
            if isinstance(value, np.generic):
                value = value.item()
            final.params[name] = value
    return final


def _mtry_fraction(mtry: Optional[int], n_features: int) -> float:
    if mtry is None or n_features <= 0:
        return 1.0
    mtry = int(min(max(1, mtry), n_features))
    return mtry / n_features


def create_linear_reg(
    params: Dict[str, Any],
    mode: str,
    n_features: int,
    n_samples: int,
    random_state: int = 42,
):
    """
    Create a penalized linear regression.

    ``penalty`` is the regularization amount on the per-observation scale
    (sklearn ``alpha`` for the lasso and elastic net) and ``mixture`` the L1
    proportion: 1 is the lasso, 0 is ridge. Ridge does not divide the
    residual sum of squares by the sample count, so its ``alpha`` is
    ``n_samples * penalty``.
    """
    penalty = params.get("penalty")
    mixture = params.get("mixture", 1.0)

    if penalty is None or penalty == 0:
        return LinearRegression()
    if mixture == 1:
        return Lasso(alpha=penalty, max_iter=10000, random_state=random_state)
    if mixture == 0:
        return Ridge(alpha=penalty * max(n_samples, 1), random_state=random_state)
    return ElasticNet(
        alpha=penalty,
        l1_ratio=mixture,
        max_iter=10000,
        random_state=random_state,
    )


def create_logistic_reg(
    params: Dict[str, Any],
    mode: str,
    n_features: int,
    n_samples: int,
    random_state: int = 42,
) -> LogisticRegression:
    """
    Create a penalized logistic regression.

    ``penalty`` is expressed on the per-observation scale, so the inverse
    regularization strength is ``C = 1 / (n_samples * penalty)``.
    """
    penalty = params.get("penalty")
    mixture = params.get("mixture", 1.0)

    if penalty is None or penalty == 0:
        return LogisticRegression(C=1e12, max_iter=1000, random_state=random_state)

    return LogisticRegression(
        penalty="elasticnet",
        solver="saga",
        C=1.0 / (max(n_samples, 1) * penalty),
        l1_ratio=mixture,
        max_iter=5000,
        random_state=random_state,
    )


def create_boost_tree(
    params: Dict[str, Any],
    mode: str,
    n_features: int,
    n_samples: int,
    random_state: int = 42,
):
    """
    Create an XGBoost model.

    ``mtry`` is a number of predictors and is converted to the per-node
    column fraction; ``sample_size`` is the row subsample proportion.
    """
    kwargs = dict(
        n_estimators=int(params.get("trees", 15)),
        max_depth=int(params.get("tree_depth", 6)),
        learning_rate=params.get("learn_rate", 0.3),
        min_child_weight=params.get("min_n", 1),
        gamma=params.get("loss_reduction", 0.0),
        subsample=params.get("sample_size", 1.0),
        colsample_bynode=_mtry_fraction(params.get("mtry"), n_features),
        random_state=random_state,
        n_jobs=1,
    )
    if mode == "classification":
        return XGBClassifier(eval_metric="logloss", **kwargs)
    return XGBRegressor(**kwargs)


def create_rand_forest(
    params: Dict[str, Any],
    mode: str,
    n_features: int,
    n_samples: int,
    random_state: int = 42,
):
    """Create a random forest; ``mtry`` defaults to sqrt(p) or p/3 by mode."""
    if mode == "classification":
        default_mtry = max(1, int(np.floor(np.sqrt(n_features))))
        default_min_n = 2
    else:
        default_mtry = max(1, n_features // 3)
        default_min_n = 5

    mtry = int(min(max(1, params.get("mtry", default_mtry)), max(n_features, 1)))
    kwargs = dict(
        n_estimators=int(params.get("trees", 500)),
        max_features=mtry,
        min_samples_split=max(2, int(params.get("min_n", default_min_n))),
        random_state=random_state,
        n_jobs=1,
    )
    if mode == "classification":
        return RandomForestClassifier(**kwargs)
    return RandomForestRegressor(**kwargs)


def create_decision_tree(
    params: Dict[str, Any],
    mode: str,
    n_features: int,
    n_samples: int,
    random_state: int = 42,
):
    """Create a CART decision tree with cost-complexity pruning."""
    kwargs = dict(
        ccp_alpha=params.get("cost_complexity", 0.0),
        max_depth=int(params.get("tree_depth", 30)),
        min_samples_split=max(2, int(params.get("min_n", 2))),
        random_state=random_state,
    )
    if mode == "classification":
        return DecisionTreeClassifier(**kwargs)
    return DecisionTreeRegressor(**kwargs)


WEIGHT_FUNCS = {
    "rectangular": "uniform",
    "uniform": "uniform",
    "inv": "distance",
    "distance": "distance",
}


def create_nearest_neighbor(
    params: Dict[str, Any],
    mode: str,
    n_features: int,
    n_samples: int,
    random_state: int = 42,
):
    """Create a K-nearest neighbors model."""
    weight_func = params.get("weight_func", "rectangular")
    if weight_func not in WEIGHT_FUNCS:
        raise ValueError(
            f"Unknown weight_func: {weight_func}. Available: {list(WEIGHT_FUNCS)}"
        )
    neighbors = int(min(max(1, params.get("neighbors", 5)), max(n_samples, 1)))
    kwargs = dict(n_neighbors=neighbors, weights=WEIGHT_FUNCS[weight_func])
    if mode == "classification":
        return KNeighborsClassifier(**kwargs)
    return KNeighborsRegressor(**kwargs)


MODEL_FACTORY = {
    "linear_reg": create_linear_reg,
    "logistic_reg": create_logistic_reg,
    "boost_tree": create_boost_tree,
    "rand_forest": create_rand_forest,
    "decision_tree": create_decision_tree,
    "nearest_neighbor": create_nearest_neighbor,
}


def build_estimator(
    spec: ModelSpec,
    n_features: int,
    n_samples: int,
    random_state: int = 42,
):
    """
    Build an unfitted estimator from a fully specified model.

    Parameters
    ----------
    spec : ModelSpec
        Model specification without ``tune()`` placeholders
    n_features : int
        Number of predictors after preprocessing
    n_samples : int
        Number of training rows
    random_state : int
        Random state

    Returns
    -------
    estimator
        Configured sklearn/xgboost estimator
    """
    remaining = spec.tunable()
    if remaining:
        raise ValueError(
            f"Arguments {remaining} are still marked tune(); "
            "finalize the model before fitting"
        )

    factory_func = MODEL_FACTORY[spec.model_type]
    estimator = factory_func(
        spec.params,
        mode=spec.mode,
        n_features=n_features,
        n_samples=n_samples,
        random_state=random_state,
    )

    if spec.engine_args:
        estimator.set_params(**spec.engine_args)

    return estimator


def get_model_name(model_type: str) -> str:
    """Get human-readable model name."""
    return MODEL_NAMES.get(model_type, model_type)


def spec_from_config(model_config: Dict[str, Any]) -> ModelSpec:
    """
    Build a ModelSpec from the ``model`` section of a config.

    String values ``"tune"`` or ``"tune()"`` become placeholders.
    """
    params = {}
    for name, value in (model_config.get("params") or {}).items():
        if isinstance(value, str) and value.strip() in ("tune", "tune()"):
            params[name] = tune()
        else:
            params[name] = value

    return ModelSpec(
        model_config.get("type", "linear_reg"),
        mode=model_config.get("mode", "regression"),
        engine_args=model_config.get("engine_args"),
        **params,
    )
