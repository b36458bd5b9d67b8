"""
Evaluation metrics module.

Regression: RMSE, R², MAE
Classification: Accuracy, Sensitivity, Specificity, F1, Cohen's kappa,
ROC-AUC, PR-AUC, mean log loss, Brier score

Every metric is reported as a tidy row: ``.metric``, ``.estimator``,
``.estimate``.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import scipy.stats as stats
from sklearn.metrics import (
    accuracy_score,
    auc,
    brier_score_loss,
    cohen_kappa_score,
    f1_score,
    log_loss,
    mean_absolute_error,
    mean_squared_error,
    precision_recall_curve,
    recall_score,
    roc_auc_score,
    roc_curve,
)

from modelflow import CLASSIFICATION_THRESHOLD

logger = logging.getLogger(__name__)


def calculate_sensitivity(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """
    Calculate sensitivity (recall for positive class).

    Sensitivity = TP / (TP + FN)
    """
    return recall_score(y_true, y_pred, pos_label=1, zero_division=0)


def calculate_specificity(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """
    Calculate specificity (recall for negative class).

    Specificity = TN / (TN + FP)
    """
    return recall_score(y_true, y_pred, pos_label=0, zero_division=0)


def _rmse(y_true, y_pred, y_proba=None) -> float:
    return float(np.sqrt(mean_squared_error(y_true, y_pred)))


def _rsq(y_true, y_pred, y_proba=None) -> float:
    # squared correlation, which stays in [0, 1]
    if np.std(y_true) == 0 or np.std(y_pred) == 0:
        logger.warning("R² undefined for constant truth or predictions")
        return np.nan
    return float(np.corrcoef(y_true, y_pred)[0, 1] ** 2)


def _mae(y_true, y_pred, y_proba=None) -> float:
    return float(mean_absolute_error(y_true, y_pred))


def _accuracy(y_true, y_pred, y_proba=None) -> float:
    return float(accuracy_score(y_true, y_pred))


def _sensitivity(y_true, y_pred, y_proba=None) -> float:
    return float(calculate_sensitivity(y_true, y_pred))


def _specificity(y_true, y_pred, y_proba=None) -> float:
    return float(calculate_specificity(y_true, y_pred))


def _f1(y_true, y_pred, y_proba=None) -> float:
    return float(f1_score(y_true, y_pred, zero_division=0))


def _kap(y_true, y_pred, y_proba=None) -> float:
    return float(cohen_kappa_score(y_true, y_pred))


def _roc_auc(y_true, y_pred, y_proba) -> float:
    return float(roc_auc_score(y_true, y_proba))


def _pr_auc(y_true, y_pred, y_proba) -> float:
    precision, recall, _ = precision_recall_curve(y_true, y_proba)
    return float(auc(recall, precision))


def _mn_log_loss(y_true, y_pred, y_proba) -> float:
    return float(log_loss(y_true, y_proba, labels=[0, 1]))


def _brier(y_true, y_pred, y_proba) -> float:
    return float(brier_score_loss(y_true, y_proba))


# name -> (function, mode, direction, needs both classes)
METRICS = {
    "rmse": (_rmse, "regression", "minimize", False),
    "rsq": (_rsq, "regression", "maximize", False),
    "mae": (_mae, "regression", "minimize", False),
    "accuracy": (_accuracy, "classification", "maximize", False),
    "sensitivity": (_sensitivity, "classification", "maximize", False),
    "specificity": (_specificity, "classification", "maximize", False),
    "f1": (_f1, "classification", "maximize", False),
    "kap": (_kap, "classification", "maximize", False),
    "roc_auc": (_roc_auc, "classification", "maximize", True),
    "pr_auc": (_pr_auc, "classification", "maximize", True),
    "mn_log_loss": (_mn_log_loss, "classification", "minimize", False),
    "brier": (_brier, "classification", "minimize", False),
}

DEFAULT_METRICS = {
    "regression": ["rmse", "rsq"],
    "classification": ["accuracy", "roc_auc"],
}


def metric_set(names: Optional[Sequence[str]], mode: str) -> List[str]:
    """
    Validate a list of metric names for a mode.

    ``None`` gives the defaults for the mode (rmse/rsq or accuracy/roc_auc).
    """
    if names is None:
        return list(DEFAULT_METRICS[mode])

    names = list(names)
    for name in names:
        if name not in METRICS:
            raise ValueError(f"Unknown metric: {name}. Available: {list(METRICS.keys())}")
        if METRICS[name][1] != mode:
            raise ValueError(f"Metric '{name}' is a {METRICS[name][1]} metric, not {mode}")
    if not names:
        raise ValueError("metric_set needs at least one metric")
    return names


def metric_direction(name: str) -> str:
    """'maximize' or 'minimize'."""
    if name not in METRICS:
        raise ValueError(f"Unknown metric: {name}. Available: {list(METRICS.keys())}")
    return METRICS[name][2]


def compute_metrics(
    predictions: pd.DataFrame,
    truth: str,
    metrics: Sequence[str],
    mode: str,
    event_level: Any = None,
    threshold: float = CLASSIFICATION_THRESHOLD,
) -> pd.DataFrame:
    """
    Calculate metrics for a set of predictions.

    Parameters
    ----------
    predictions : pd.DataFrame
        Truth column plus ``.pred`` (regression) or ``.pred_<event>``
        probabilities (classification)
    truth : str
        Name of the truth column
    metrics : list
        Metric names (see ``METRICS``)
    mode : str
        'regression' or 'classification'
    event_level : any, optional
        Class treated as the positive event (classification)
    threshold : float
        Probability threshold for hard class predictions (default: 0.5)

    Returns
    -------
    pd.DataFrame
        Columns ``.metric``, ``.estimator``, ``.estimate``
    """
    metrics = metric_set(metrics, mode)
    rows = []

    if mode == "regression":
        y_true = predictions[truth].to_numpy(dtype=float)
        y_pred = predictions[".pred"].to_numpy(dtype=float)
        y_proba = None
        estimator = "standard"
    else:
        prob_col = f".pred_{event_level}"
        if prob_col not in predictions.columns:
            raise ValueError(
                f"Probability column '{prob_col}' not found in predictions; "
                f"available: {list(predictions.columns)}"
            )
        y_true = (predictions[truth] == event_level).astype(int).to_numpy()
        y_proba = predictions[prob_col].to_numpy(dtype=float)
        y_pred = (y_proba >= threshold).astype(int)
        estimator = "binary"

    single_class = mode == "classification" and len(np.unique(y_true)) < 2

    for name in metrics:
        func, _, _, needs_both = METRICS[name]
        if needs_both and single_class:
            logger.warning(f"Could not calculate {name}: only one class present in truth")
            value = np.nan
        else:
            try:
                value = func(y_true, y_pred, y_proba)
            except ValueError as e:
                logger.warning(f"Could not calculate {name}: {e}")
                value = np.nan
        rows.append({".metric": name, ".estimator": estimator, ".estimate": value})

    return pd.DataFrame(rows)


def summarize_metrics(metrics: pd.DataFrame, by: Sequence[str]) -> pd.DataFrame:
    """
    Summarize per-resample metrics.

    Parameters
    ----------
    metrics : pd.DataFrame
        One row per resample x metric (plus grouping columns)
    by : list
        Grouping columns (e.g. parameter columns and ``.config``)

    Returns
    -------
    pd.DataFrame
        ``mean``, ``n`` and ``std_err`` of ``.estimate`` per group and metric
    """
    group_cols = list(by) + [".metric", ".estimator"]

    summary = (
        metrics.groupby(group_cols, sort=False, dropna=False)[".estimate"]
        .agg(mean="mean", n="count", std="std")
        .reset_index()
    )
    summary["std_err"] = summary["std"] / np.sqrt(summary["n"])
    summary["n"] = summary["n"].astype(int)
    return summary.drop(columns=["std"])


def calculate_roc_curve_data(
    y_true: np.ndarray,
    y_proba: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Calculate ROC curve data.

    Returns
    -------
    fpr, tpr, thresholds : np.ndarray
    """
    fpr, tpr, thresholds = roc_curve(y_true, y_proba)
    return fpr, tpr, thresholds


def aggregate_metrics_across_folds(
    fold_metrics: List[Dict[str, float]],
    ci: float = 0.95,
) -> Dict[str, Tuple[float, float, float]]:
    """
    Aggregate metrics across folds with confidence intervals.

    Parameters
    ----------
    fold_metrics : list
        List of ``{metric_name: value}`` dictionaries, one per fold
    ci : float
        Confidence interval level (default: 0.95 for 95% CI)

    Returns
    -------
    dict
        Dictionary with metric_name: (mean, lower_ci, upper_ci)
    """
    aggregated = {}

    for metric_name in fold_metrics[0].keys():
        values = [fold[metric_name] for fold in fold_metrics if not np.isnan(fold[metric_name])]

        if not values:
            aggregated[metric_name] = (np.nan, np.nan, np.nan)
            continue

        mean_val = np.mean(values)
        std_val = np.std(values, ddof=1) if len(values) > 1 else 0

        if len(values) > 1:
            sem = std_val / np.sqrt(len(values))
            ci_delta = sem * stats.t.ppf((1 + ci) / 2, len(values) - 1)
            lower_ci = mean_val - ci_delta
            upper_ci = mean_val + ci_delta
        else:
            lower_ci = mean_val
            upper_ci = mean_val

        aggregated[metric_name] = (mean_val, lower_ci, upper_ci)

    return aggregated
