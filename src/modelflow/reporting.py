"""
Reporting module for tuning runs.

Includes:
- Tuning summary tables (CSV, Markdown)
- Best parameters and test-set metrics as JSON artifacts
- Resample and test-set predictions
- Pretty console summaries
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import joblib
import numpy as np
import pandas as pd

from modelflow import CLASSIFICATION_THRESHOLD
from modelflow.metrics import aggregate_metrics_across_folds, metric_direction
from modelflow.models import get_model_name

logger = logging.getLogger(__name__)

METRIC_DESCRIPTIONS = {
    "rmse": "Root mean squared error (lower is better)",
    "rsq": "Squared correlation between truth and prediction",
    "mae": "Mean absolute error (lower is better)",
    "accuracy": "Overall classification accuracy",
    "sensitivity": "True positive rate for the event class",
    "specificity": "True negative rate",
    "f1": "Harmonic mean of precision and recall",
    "kap": "Cohen's kappa (agreement beyond chance)",
    "roc_auc": "Area under the ROC curve",
    "pr_auc": "Area under the Precision-Recall curve",
    "mn_log_loss": "Mean log loss (lower is better)",
    "brier": "Brier score (lower is better; measures calibration)",
}


def _to_serializable(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, dict):
        return {k: _to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_serializable(v) for v in value]
    if isinstance(value, float) and np.isnan(value):
        return None
    return value


def create_tuning_summary_table(
    tune_results,
    metric: Optional[str] = None,
    n: int = 10,
) -> pd.DataFrame:
    """
    Summary of the best candidates.

    Parameters
    ----------
    tune_results : TuneResults
        Tuning results
    metric : str, optional
        Metric to rank by (default: first metric computed)
    n : int
        Number of candidates

    Returns
    -------
    pd.DataFrame
        One row per candidate: tuned parameters, then ``mean (std_err)`` for
        every metric computed
    """
    metric = tune_results._check_metric(metric)
    best = tune_results.show_best(metric, n=n)
    summary = tune_results.collect_metrics()

    rows = []
    for config_id in best[".config"]:
        cand = summary[summary[".config"] == config_id]
        row = {"Candidate": config_id}
        for name in tune_results.param_names:
            value = cand[name].iloc[0]
            row[name] = f"{value:.4g}" if isinstance(value, (float, np.floating)) else value
        for _, m in cand.iterrows():
            std_err = m["std_err"]
            se = f" ({std_err:.3f})" if pd.notna(std_err) else ""
            row[m[".metric"].upper()] = f"{m['mean']:.3f}{se}"
        rows.append(row)

    return pd.DataFrame(rows)


def save_summary_table(
    df: pd.DataFrame,
    output_dir: Path,
    filename_stem: str = "tuning_summary",
    title: str = "Tuning Summary",
    metrics: Optional[list] = None,
    resampling: str = "",
):
    """
    Save summary table to CSV and Markdown.

    Parameters
    ----------
    df : pd.DataFrame
        Summary table
    output_dir : Path
        Output directory
    filename_stem : str
        Filename stem (without extension)
    title : str
        Markdown title
    metrics : list, optional
        Metric names described in the interpretation section
    resampling : str
        Description of the resampling scheme
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    csv_path = output_dir / f"{filename_stem}.csv"
    df.to_csv(csv_path, index=False)
    logger.info(f"Saved summary table (CSV) to {csv_path}")

    md_path = output_dir / f"{filename_stem}.md"
    with open(md_path, "w", encoding="utf-8") as f:
        f.write(f"# {title}\n\n")
        if resampling:
            f.write(f"**Resampling**: {resampling}\n\n")
        f.write(df.to_markdown(index=False))
        f.write("\n\n")
        f.write("## Interpretation\n\n")
        f.write("Values shown as: **Mean (standard error)** across resamples.\n\n")
        if metrics:
            f.write("**Metrics:**\n")
            for name in metrics:
                f.write(f"- **{name.upper()}**: {METRIC_DESCRIPTIONS.get(name, name)}\n")
            f.write("\n")
        if metrics and any(m in ("sensitivity", "specificity", "accuracy", "f1", "kap") for m in metrics):
            f.write(
                "Hard class predictions use a probability threshold of "
                f"{CLASSIFICATION_THRESHOLD} for the event class.\n"
            )

    logger.info(f"Saved summary report (Markdown) to {md_path}")


def save_best_params(
    params: Dict[str, Any],
    output_dir: Path,
    model_type: Optional[str] = None,
    metric: Optional[str] = None,
    test_metrics: Optional[pd.DataFrame] = None,
    resample_metrics: Optional[pd.DataFrame] = None,
    ci: float = 0.95,
) -> Path:
    """
    Save the selected parameters as JSON.

    ``test_metrics`` are the ``last_fit`` estimates. ``resample_metrics`` are
    the per-resample rows of the selected candidate; they are summarized as a
    mean with a t-based confidence interval at level ``ci``.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    output_path = output_dir / "best_params.json"

    data = {
        "model": get_model_name(model_type) if model_type else None,
        "model_type": model_type,
        "metric": metric,
        "direction": metric_direction(metric) if metric else None,
        "params": _to_serializable({k: v for k, v in params.items() if k != ".config"}),
        "config": params.get(".config"),
    }
    if test_metrics is not None:
        data["test_metrics"] = {
            row[".metric"]: _to_serializable(row[".estimate"])
            for _, row in test_metrics.iterrows()
        }
    if resample_metrics is not None and not resample_metrics.empty:
        per_fold = resample_metrics.pivot_table(
            index="id", columns=".metric", values=".estimate", aggfunc="first"
        )
        aggregated = aggregate_metrics_across_folds(per_fold.to_dict("records"), ci=ci)
        data["resample_ci"] = {
            name: _to_serializable({"mean": mean, "lower": lower, "upper": upper})
            for name, (mean, lower, upper) in aggregated.items()
        }
        data["ci_level"] = ci

    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)

    logger.info(f"Saved best params to {output_path}")
    return output_path


def save_predictions(
    predictions: pd.DataFrame,
    output_dir: Path,
    filename: str = "predictions.csv",
) -> Path:
    """Save predictions to CSV."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    output_path = output_dir / filename
    predictions.to_csv(output_path, index=False)
    logger.info(f"Saved {len(predictions)} predictions to {output_path}")
    return output_path


def print_console_summary(
    df: pd.DataFrame,
    title: str = "TUNING SUMMARY",
    test_metrics: Optional[pd.DataFrame] = None,
):
    """
    Print pretty summary to console.

    Parameters
    ----------
    df : pd.DataFrame
        Summary table
    title : str
        Banner title
    test_metrics : pd.DataFrame, optional
        Test-set metrics from ``last_fit``
    """
    print("\n" + "=" * 100)
    print(title.upper())
    print("=" * 100)
    print("\nResampled performance (Mean (SE)):\n")
    print(df.to_string(index=False))
    if test_metrics is not None:
        print("\nTest set:\n")
        for _, row in test_metrics.iterrows():
            print(f"  {row['.metric']:<14} {row['.estimate']:.4f}")
    print("=" * 100 + "\n")


def generate_all_reports(
    tune_results,
    final_fit,
    best_params: Dict[str, Any],
    output_dir: Path,
    metric: Optional[str] = None,
    save_artifacts: bool = True,
    resampling: str = "",
):
    """
    Generate all reports and save to output directory.

    Parameters
    ----------
    tune_results : TuneResults
        Tuning results
    final_fit : LastFit
        Final fit on the training set, evaluated on the test set
    best_params : dict
        Selected parameters
    output_dir : Path
        Run directory; tables go to ``tables/`` and artifacts to ``artifacts/``
    metric : str, optional
        Metric used for selection
    save_artifacts : bool
        Also save the fitted workflow, metrics and predictions
    resampling : str
        Description of the resampling scheme
    """
    logger.info("Generating reports...")
    output_dir = Path(output_dir)
    model = tune_results.workflow.model

    df = create_tuning_summary_table(tune_results, metric)
    test_metrics = final_fit.collect_metrics()
    print_console_summary(
        df,
        title=f"{get_model_name(model.model_type)} tuning summary",
        test_metrics=test_metrics,
    )

    tables_dir = output_dir / "tables"
    save_summary_table(
        df,
        tables_dir,
        title=f"{get_model_name(model.model_type)} Tuning Summary",
        metrics=tune_results.metric_names,
        resampling=resampling,
    )
    test_metrics.to_csv(tables_dir / "test_metrics.csv", index=False)

    resample_metrics = tune_results.collect_metrics(summarize=False)
    selected = resample_metrics[resample_metrics[".config"] == best_params.get(".config")]

    artifacts_dir = output_dir / "artifacts"
    save_best_params(
        best_params,
        artifacts_dir,
        model_type=model.model_type,
        metric=metric,
        test_metrics=test_metrics,
        resample_metrics=selected,
    )

    if save_artifacts:
        resample_metrics.to_csv(
            artifacts_dir / "resample_metrics.csv", index=False
        )
        if tune_results.predictions is not None:
            save_predictions(tune_results.predictions, artifacts_dir, "resample_predictions.csv")
        save_predictions(final_fit.collect_predictions(), artifacts_dir, "test_predictions.csv")
        if tune_results.notes:
            pd.DataFrame(tune_results.notes).to_csv(artifacts_dir / "notes.csv", index=False)

        model_path = artifacts_dir / "fitted_workflow.joblib"
        joblib.dump(final_fit.fitted_workflow, model_path)
        logger.info(f"Saved fitted workflow to {model_path}")

    logger.info(f"All reports saved to {output_dir}")
