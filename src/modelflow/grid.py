"""
Tuning parameters and grid construction.

Each tunable model argument has a ``Parameter`` with a range on its
transformed scale (log10 for penalties and learning rates). Grids are built
on that scale and back-transformed:

- grid_regular: full factorial over evenly spaced levels
- grid_random: independent uniform draws
- grid_latin_hypercube: space-filling Latin hypercube design

Ranges are configurable via the ``grid.ranges`` config section, and the same
parameters drive Optuna suggestions for Bayesian tuning.
"""

import copy
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import optuna
import pandas as pd
from scipy.stats import qmc

from modelflow.models import ModelSpec

logger = logging.getLogger(__name__)


@dataclass
class Parameter:
    """
    A tunable parameter.

    Attributes
    ----------
    name : str
        Argument name
    range : tuple
        (lower, upper) on the transformed scale; ``None`` means unknown
    trans : str, optional
        ``"log10"`` or None (identity)
    kind : str
        ``"int"`` or ``"double"``
    label : str
        Human-readable label
    """

    name: str
    range: Tuple[Optional[float], Optional[float]]
    trans: Optional[str] = None
    kind: str = "double"
    label: str = ""

    @property
    def is_known(self) -> bool:
        return self.range[0] is not None and self.range[1] is not None

    def transform(self, values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=float)
        if self.trans == "log10":
            return np.log10(values)
        return values

    def inverse(self, values: np.ndarray) -> np.ndarray:
        """Map values from the transformed scale back to natural units."""
        values = np.asarray(values, dtype=float)
        if self.trans == "log10":
            values = np.power(10.0, values)
        if self.kind == "int":
            values = np.round(values).astype(int)
        return values

    def natural_range(self) -> Tuple[float, float]:
        lower, upper = self.inverse(np.array(self.range, dtype=float))
        return lower, upper

    def __repr__(self) -> str:
        scale = f" [{self.trans}]" if self.trans else ""
        lo, hi = self.range
        lo = "?" if lo is None else lo
        hi = "?" if hi is None else hi
        return f"{self.label or self.name} ({self.kind}) [{lo}, {hi}]{scale}"


PARAMETERS = {
    "penalty": Parameter("penalty", (-10.0, 0.0), trans="log10", label="Amount of Regularization"),
    "mixture": Parameter("mixture", (0.0, 1.0), label="Proportion of Lasso Penalty"),
    "trees": Parameter("trees", (1, 2000), kind="int", label="# Trees"),
    "tree_depth": Parameter("tree_depth", (1, 15), kind="int", label="Tree Depth"),
    "min_n": Parameter("min_n", (2, 40), kind="int", label="Minimal Node Size"),
    "loss_reduction": Parameter(
        "loss_reduction", (-10.0, 1.5), trans="log10", label="Minimum Loss Reduction"
    ),
    "sample_size": Parameter("sample_size", (0.1, 1.0), label="Proportion Observations Sampled"),
    "mtry": Parameter("mtry", (1, None), kind="int", label="# Randomly Selected Predictors"),
    "learn_rate": Parameter("learn_rate", (-10.0, -1.0), trans="log10", label="Learning Rate"),
    "cost_complexity": Parameter(
        "cost_complexity", (-10.0, -1.0), trans="log10", label="Cost-Complexity Parameter"
    ),
    "neighbors": Parameter("neighbors", (1, 10), kind="int", label="# Nearest Neighbors"),
}


def get_parameter(name: str) -> Parameter:
    if name not in PARAMETERS:
        raise ValueError(f"Unknown parameter: {name}. Available: {list(PARAMETERS.keys())}")
    return copy.deepcopy(PARAMETERS[name])


def update_range(param: Parameter, lower: Optional[float] = None, upper: Optional[float] = None) -> Parameter:
    """Return a copy of ``param`` with a new range (on the transformed scale)."""
    new = copy.deepcopy(param)
    new.range = (
        lower if lower is not None else param.range[0],
        upper if upper is not None else param.range[1],
    )
    if new.is_known and new.range[0] > new.range[1]:
        raise ValueError(f"Invalid range for {param.name}: {new.range}")
    return new


def finalize_parameter(param: Parameter, data: pd.DataFrame) -> Parameter:
    """
    Resolve unknown range bounds from the data.

    ``mtry`` gets the number of predictor columns as its upper bound.
    """
    if param.is_known:
        return param
    if param.name == "mtry":
        return update_range(param, upper=data.shape[1])
    raise ValueError(f"Don't know how to finalize parameter '{param.name}'")


def parameters_for(
    spec: ModelSpec,
    data: Optional[pd.DataFrame] = None,
    ranges: Optional[Dict[str, Sequence[float]]] = None,
) -> List[Parameter]:
    """
    Parameter set for the tunable arguments of a model spec.

    Parameters
    ----------
    spec : ModelSpec
        Model specification
    data : pd.DataFrame, optional
        Predictor data, used to finalize unknown ranges (mtry)
    ranges : dict, optional
        Range overrides ``{name: [lower, upper]}`` on the transformed scale

    Returns
    -------
    list of Parameter
    """
    ranges = ranges or {}
    params = []

    for name in spec.tunable():
        param = get_parameter(name)
        if name in ranges:
            lower, upper = ranges[name]
            param = update_range(param, lower, upper)
        if not param.is_known and data is not None:
            param = finalize_parameter(param, data)
        params.append(param)

    return params


def _check_known(params: Sequence[Parameter]):
    if not params:
        raise ValueError("No parameters to build a grid for")
    unknown = [p.name for p in params if not p.is_known]
    if unknown:
        raise ValueError(
            f"Parameters {unknown} have unknown ranges; "
            "finalize them with data first"
        )


def _finish_grid(params: Sequence[Parameter], unit: np.ndarray) -> pd.DataFrame:
    """Scale unit-cube samples to the parameter ranges and back-transform."""
    columns = {}
    for j, param in enumerate(params):
        lower, upper = param.range
        scaled = lower + unit[:, j] * (upper - lower)
        columns[param.name] = param.inverse(scaled)

    grid = pd.DataFrame(columns)
    n_before = len(grid)
    grid = grid.drop_duplicates().reset_index(drop=True)
    if len(grid) < n_before:
        logger.debug(f"Dropped {n_before - len(grid)} duplicate grid rows")
    return grid


def grid_regular(params: Sequence[Parameter], levels: Any = 3) -> pd.DataFrame:
    """
    Regular grid: every combination of evenly spaced levels.

    Parameters
    ----------
    params : list of Parameter
        Parameters to vary
    levels : int or dict
        Levels per parameter (a single int, or ``{name: levels}``)

    Returns
    -------
    pd.DataFrame
        One column per parameter, ``prod(levels)`` rows
    """
    _check_known(params)

    axes = []
    for param in params:
        n_levels = levels.get(param.name, 3) if isinstance(levels, dict) else int(levels)
        if n_levels < 1:
            raise ValueError(f"levels must be at least 1, got {n_levels}")
        lower, upper = param.range
        values = param.inverse(np.linspace(lower, upper, n_levels))
        if param.kind == "int":
            values = np.unique(values)
        axes.append(values)

    rows = list(itertools.product(*axes))
    return pd.DataFrame(rows, columns=[p.name for p in params])


def grid_random(params: Sequence[Parameter], size: int = 5, seed: Optional[int] = None) -> pd.DataFrame:
    """Random grid of ``size`` independent uniform draws on the transformed scale."""
    _check_known(params)
    if size < 1:
        raise ValueError(f"size must be at least 1, got {size}")

    rng = np.random.default_rng(seed)
    unit = rng.random((size, len(params)))
    return _finish_grid(params, unit)


def grid_latin_hypercube(
    params: Sequence[Parameter],
    size: int = 30,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """
    Space-filling Latin hypercube grid.

    Each parameter's transformed range is cut into ``size`` equal strata and
    every stratum holds exactly one grid point.

    Parameters
    ----------
    params : list of Parameter
        Parameters to vary
    size : int
        Number of candidates (default: 30)
    seed : int, optional
        Random seed

    Returns
    -------
    pd.DataFrame
        One column per parameter, ``size`` rows (fewer if integer
        parameters collapse onto duplicates)
    """
    _check_known(params)
    if size < 1:
        raise ValueError(f"size must be at least 1, got {size}")

    sampler = qmc.LatinHypercube(d=len(params), seed=seed)
    unit = sampler.random(n=size)
    return _finish_grid(params, unit)


GRID_FACTORY = {
    "regular": grid_regular,
    "random": grid_random,
    "latin_hypercube": grid_latin_hypercube,
}


def make_grid(
    params: Sequence[Parameter],
    grid_config: Dict[str, Any],
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """Build a grid from the ``grid`` section of a config."""
    grid_type = grid_config.get("type", "latin_hypercube")
    if grid_type not in GRID_FACTORY:
        raise ValueError(
            f"Unknown grid type: {grid_type}. Available: {list(GRID_FACTORY.keys())}"
        )

    if grid_type == "regular":
        grid = grid_regular(params, levels=grid_config.get("levels", 3))
    else:
        grid = GRID_FACTORY[grid_type](params, size=grid_config.get("size", 30), seed=seed)

    logger.info(f"Built {grid_type} grid with {len(grid)} candidates over {[p.name for p in params]}")
    return grid


def suggest(trial: optuna.Trial, param: Parameter) -> Any:
    """
    Suggest a value for ``param`` from an Optuna trial.

    log10 parameters are sampled log-uniformly over their natural range.
    """
    if not param.is_known:
        raise ValueError(f"Parameter '{param.name}' has an unknown range")

    lower, upper = param.range
    if param.trans == "log10":
        return trial.suggest_float(param.name, 10.0 ** lower, 10.0 ** upper, log=True)
    if param.kind == "int":
        return trial.suggest_int(param.name, int(lower), int(upper))
    return trial.suggest_float(param.name, float(lower), float(upper))
