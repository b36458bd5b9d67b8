"""
Configuration loading for the modelflow scripts.

Configuration is plain YAML. Missing keys are filled with the defaults below,
and command-line flags override whatever the file provides.
"""

import logging
import random
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np
import yaml

logger = logging.getLogger(__name__)

DEFAULT_METRIC_BY_MODE = {
    "regression": "rmse",
    "classification": "roc_auc",
}


def load_config(config_path: Optional[Union[str, Path]]) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    if config_path is None:
        return {}

    config_file = Path(config_path)

    if not config_file.exists():
        logger.warning(f"Config file {config_path} not found. Using defaults.")
        return {}

    with open(config_file, "r") as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(
            f"Config file {config_path} must contain a mapping at top level, "
            f"got {type(config).__name__}"
        )

    logger.info(f"Loaded configuration from {config_path}")
    return config


def apply_defaults(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fill in defaults for every key the pipeline reads.

    Nested sections (``model``, ``resampling``, ``grid``) are created when
    absent. The dictionary is modified in place and returned.
    """
    config.setdefault("random_state", 42)
    config.setdefault("split_prop", 0.75)
    config.setdefault("strata", None)
    config.setdefault("n_jobs", 1)
    config.setdefault("completion_threshold", 0.0)
    config.setdefault("id_columns", [])
    config.setdefault("drop_columns", [])

    model_cfg = config.setdefault("model", {})
    model_cfg.setdefault("type", "linear_reg")
    model_cfg.setdefault("mode", "regression")
    model_cfg.setdefault("params", {})

    resampling = config.setdefault("resampling", {})
    resampling.setdefault("method", "vfold")
    resampling.setdefault("v", 10)
    resampling.setdefault("repeats", 1)
    resampling.setdefault("times", 25)
    resampling.setdefault("strata", config.get("strata"))

    grid = config.setdefault("grid", {})
    grid.setdefault("type", "latin_hypercube")
    grid.setdefault("size", 30)
    grid.setdefault("levels", 5)
    grid.setdefault("ranges", {})

    config.setdefault("recipe", [])
    config.setdefault(
        "metric", DEFAULT_METRIC_BY_MODE.get(model_cfg["mode"], "rmse")
    )
    config.setdefault("metrics", None)
    config.setdefault("select", "best")

    return config


def set_random_seeds(seed: int):
    """Set all random seeds for reproducibility."""
    random.seed(seed)
    np.random.seed(seed)
    logger.info(f"Set random seeds to {seed}")
