"""
Resampling-based model tuning and evaluation.

- tune_grid: evaluate every grid candidate on every resample
- fit_resamples: evaluate a single, fully specified workflow on resamples
- tune_bayes: Optuna TPE search scored by the mean resampled metric
- last_fit: fit on the training split, evaluate once on the testing split

The recipe is re-prepped on every analysis set, so preprocessing is fitted
ONLY on data the model is trained on.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import optuna
import pandas as pd
from joblib import Parallel, delayed
from tqdm import tqdm

from modelflow.grid import Parameter, grid_latin_hypercube, parameters_for, suggest
from modelflow.metrics import compute_metrics, metric_direction, metric_set, summarize_metrics
from modelflow.models import get_model_name
from modelflow.splitting import Resample, ResampleSet, Split, _names0
from modelflow.workflows import FittedWorkflow, Workflow, finalize_workflow, outcome_event_level

logger = logging.getLogger(__name__)


def _fit_resample(
    workflow: Workflow,
    data: pd.DataFrame,
    resample: Resample,
    params: Dict[str, Any],
    config_id: str,
    metrics: List[str],
    event_level: Any,
    save_pred: bool,
) -> Dict[str, Any]:
    """Fit one candidate on one resample and score it on the assessment set."""
    result = {"id": resample.id, ".config": config_id, "metrics": None, "predictions": None, "note": None}

    if len(resample.assessment_idx) == 0:
        result["note"] = "empty assessment set"
        return result

    try:
        fitted = finalize_workflow(workflow, params).fit(resample.analysis(data))
        assessment = resample.assessment(data)
        preds = fitted.predict(assessment)
    except (ValueError, ArithmeticError, np.linalg.LinAlgError) as e:
        result["note"] = f"{type(e).__name__}: {e}"
        return result

    preds[workflow.outcome] = assessment[workflow.outcome].to_numpy()
    preds[".row"] = resample.assessment_idx

    result["metrics"] = compute_metrics(
        preds,
        truth=workflow.outcome,
        metrics=metrics,
        mode=workflow.model.mode,
        event_level=event_level,
    )
    if save_pred:
        result["predictions"] = preds.reset_index(drop=True)
    return result


class TuneResults:
    """
    Results of tuning (or resampling) a workflow.

    Attributes
    ----------
    metrics : pd.DataFrame
        One row per candidate x resample x metric
    predictions : pd.DataFrame or None
        Assessment-set predictions when ``save_pred=True``
    notes : list of dict
        Fits that failed, with the error message
    param_names : list
        Tuned parameter names
    """

    def __init__(
        self,
        workflow: Workflow,
        resamples: ResampleSet,
        param_names: List[str],
        metric_names: List[str],
        metrics: pd.DataFrame,
        predictions: Optional[pd.DataFrame],
        notes: List[Dict[str, str]],
        parameters: Optional[List[Parameter]] = None,
    ):
        self.workflow = workflow
        self.resamples = resamples
        self.param_names = param_names
        self.metric_names = metric_names
        self.metrics = metrics
        self.predictions = predictions
        self.notes = notes
        self.parameters = parameters or []

    @property
    def mode(self) -> str:
        return self.workflow.model.mode

    def collect_metrics(self, summarize: bool = True) -> pd.DataFrame:
        """
        Resampled performance estimates.

        With ``summarize=True`` (default), one row per candidate and metric
        with ``mean``, ``n`` and ``std_err``; otherwise the per-resample rows.
        """
        if not summarize:
            return self.metrics.copy()

        summary = summarize_metrics(self.metrics, by=self.param_names + [".config"])
        cols = self.param_names + [".metric", ".estimator", "mean", "n", "std_err", ".config"]
        return summary[cols]

    def collect_predictions(self) -> pd.DataFrame:
        if self.predictions is None:
            raise ValueError("Predictions were not saved; rerun with save_pred=True")
        return self.predictions.copy()

    def _check_metric(self, metric: Optional[str]) -> str:
        if metric is None:
            metric = self.metric_names[0]
            logger.debug(f"No metric given; using '{metric}'")
        if metric not in self.metric_names:
            raise ValueError(
                f"Metric '{metric}' was not computed. Available: {self.metric_names}"
            )
        return metric

    def show_best(self, metric: Optional[str] = None, n: int = 5) -> pd.DataFrame:
        """Top ``n`` candidates for a metric, best first."""
        metric = self._check_metric(metric)
        summary = self.collect_metrics()
        summary = summary[summary[".metric"] == metric].dropna(subset=["mean"])
        ascending = metric_direction(metric) == "minimize"
        return summary.sort_values("mean", ascending=ascending).head(n).reset_index(drop=True)

    def _params_of(self, row: pd.Series) -> Dict[str, Any]:
        params = {}
        for name in self.param_names:
            value = row[name]
            params[name] = value.item() if isinstance(value, np.generic) else value
        params[".config"] = row[".config"]
        return params

    def select_best(self, metric: Optional[str] = None) -> Dict[str, Any]:
        """Parameters of the best candidate (plus its ``.config`` id)."""
        best = self.show_best(metric, n=1)
        if best.empty:
            raise ValueError("No successful candidates to select from")
        return self._params_of(best.iloc[0])

    def select_by_one_std_err(self, metric: Optional[str] = None, *order: str) -> Dict[str, Any]:
        """
        Simplest candidate within one standard error of the best.

        Parameters
        ----------
        metric : str
            Metric to select on
        *order : str
            Parameter names sorting candidates from simplest to most complex.
            Prefix with ``-`` for descending (e.g. ``"-penalty"``: larger
            penalties are simpler).
        """
        metric = self._check_metric(metric)
        if not order:
            raise ValueError("select_by_one_std_err needs at least one parameter to order by")

        summary = self.collect_metrics()
        summary = summary[summary[".metric"] == metric].dropna(subset=["mean"])
        if summary.empty:
            raise ValueError("No successful candidates to select from")

        maximize = metric_direction(metric) == "maximize"
        best_idx = summary["mean"].idxmax() if maximize else summary["mean"].idxmin()
        best = summary.loc[best_idx]
        std_err = 0.0 if pd.isna(best["std_err"]) else best["std_err"]

        if maximize:
            within = summary[summary["mean"] >= best["mean"] - std_err]
        else:
            within = summary[summary["mean"] <= best["mean"] + std_err]

        sort_cols = []
        ascending = []
        for key in order:
            name = key.lstrip("-")
            if name not in self.param_names:
                raise ValueError(f"Cannot order by '{name}'; tuned parameters: {self.param_names}")
            sort_cols.append(name)
            ascending.append(not key.startswith("-"))

        chosen = within.sort_values(sort_cols, ascending=ascending).iloc[0]
        return self._params_of(chosen)

    def __repr__(self) -> str:
        return (
            f"<TuneResults {get_model_name(self.workflow.model.model_type)}: "
            f"{self.metrics['.config'].nunique() if not self.metrics.empty else 0} candidates x "
            f"{len(self.resamples)} resamples, {len(self.notes)} notes>"
        )


def _evaluate_candidates(
    workflow: Workflow,
    resamples: ResampleSet,
    candidates: pd.DataFrame,
    metrics: List[str],
    n_jobs: int,
    save_pred: bool,
    config_ids: Optional[List[str]] = None,
    progress: bool = True,
):
    data = resamples.data
    event_level = (
        outcome_event_level(data[workflow.outcome])
        if workflow.model.mode == "classification"
        else None
    )
    param_names = list(candidates.columns)
    records = candidates.to_dict(orient="records") or [{}]
    config_ids = config_ids or _names0(len(records), "Preprocessor1_Model")

    tasks = [
        (config_id, params, resample)
        for config_id, params in zip(config_ids, records)
        for resample in resamples
    ]

    iterator = tqdm(tasks, desc="Tuning", disable=not progress or len(tasks) < 2)
    outputs = Parallel(n_jobs=n_jobs)(
        delayed(_fit_resample)(
            workflow, data, resample, params, config_id, metrics, event_level, save_pred
        )
        for config_id, params, resample in iterator
    )

    params_by_config = dict(zip(config_ids, records))
    metric_frames = []
    pred_frames = []
    notes = []

    for out in outputs:
        if out["note"] is not None:
            logger.warning(f"{out['id']} / {out['.config']}: {out['note']}")
            notes.append({"id": out["id"], ".config": out[".config"], "note": out["note"]})
            continue

        frame = out["metrics"]
        for name in param_names:
            frame[name] = params_by_config[out[".config"]][name]
        frame["id"] = out["id"]
        frame[".config"] = out[".config"]
        metric_frames.append(frame)

        if out["predictions"] is not None:
            pred = out["predictions"]
            for name in param_names:
                pred[name] = params_by_config[out[".config"]][name]
            pred["id"] = out["id"]
            pred[".config"] = out[".config"]
            pred_frames.append(pred)

    if not metric_frames:
        raise RuntimeError(
            f"All {len(tasks)} model fits failed. First error: "
            f"{notes[0]['note'] if notes else 'unknown'}"
        )

    metrics_df = pd.concat(metric_frames, ignore_index=True)
    metrics_df = metrics_df[param_names + ["id", ".metric", ".estimator", ".estimate", ".config"]]
    predictions_df = pd.concat(pred_frames, ignore_index=True) if pred_frames else None

    return metrics_df, predictions_df, notes


def workflow_parameters(workflow: Workflow, data: pd.DataFrame, ranges=None) -> List[Parameter]:
    """Parameter set for the workflow, with mtry finalized on the baked predictors."""
    prepped = workflow.recipe.prep(data)
    predictors = prepped.juice()[prepped.output_predictors()]
    return parameters_for(workflow.model, data=predictors, ranges=ranges)


def tune_grid(
    workflow: Workflow,
    resamples: ResampleSet,
    grid: Union[pd.DataFrame, int, None] = None,
    metrics: Optional[Sequence[str]] = None,
    n_jobs: int = 1,
    save_pred: bool = False,
    seed: Optional[int] = None,
) -> TuneResults:
    """
    Evaluate a grid of candidates over resamples.

    Parameters
    ----------
    workflow : Workflow
        Workflow whose model has ``tune()`` placeholders
    resamples : ResampleSet
        Resamples to evaluate on (e.g. from ``vfold_cv`` or ``bootstraps``)
    grid : pd.DataFrame or int, optional
        Candidate grid with one column per tuned parameter. An int builds
        a Latin hypercube of that size; None builds one of size 10.
    metrics : list, optional
        Metric names; defaults by mode
    n_jobs : int
        Parallel jobs over candidate x resample fits (default: 1)
    save_pred : bool
        Keep assessment-set predictions
    seed : int, optional
        Seed for the automatically built grid

    Returns
    -------
    TuneResults
    """
    metrics = metric_set(metrics, workflow.model.mode)
    tunable = workflow.tunable()
    if not tunable:
        raise ValueError(
            "Workflow has no tune() arguments; use fit_resamples() instead"
        )

    parameters = None
    if grid is None or isinstance(grid, int):
        parameters = workflow_parameters(workflow, resamples.data)
        grid = grid_latin_hypercube(parameters, size=grid or 10, seed=seed)

    missing = set(tunable) - set(grid.columns)
    extra = set(grid.columns) - set(tunable)
    if missing:
        raise ValueError(f"Grid is missing tuned parameters: {sorted(missing)}")
    if extra:
        raise ValueError(f"Grid has columns that are not tuned: {sorted(extra)}")
    if grid.empty:
        raise ValueError("Grid has no candidates")

    grid = grid[tunable].reset_index(drop=True)

    logger.info(
        f"Tuning {get_model_name(workflow.model.model_type)}: {len(grid)} candidates x "
        f"{len(resamples)} resamples ({len(grid) * len(resamples)} fits, n_jobs={n_jobs})"
    )

    metrics_df, predictions_df, notes = _evaluate_candidates(
        workflow, resamples, grid, metrics, n_jobs, save_pred
    )

    results = TuneResults(
        workflow=workflow,
        resamples=resamples,
        param_names=tunable,
        metric_names=metrics,
        metrics=metrics_df,
        predictions=predictions_df,
        notes=notes,
        parameters=parameters,
    )

    best = results.show_best(metrics[0], n=1)
    if not best.empty:
        logger.info(
            f"Best {metrics[0]} = {best['mean'].iloc[0]:.4f} "
            f"({best['.config'].iloc[0]})"
        )
    return results


def fit_resamples(
    workflow: Workflow,
    resamples: ResampleSet,
    metrics: Optional[Sequence[str]] = None,
    n_jobs: int = 1,
    save_pred: bool = False,
) -> TuneResults:
    """Evaluate a fully specified workflow on every resample."""
    if workflow.tunable():
        raise ValueError(
            f"Arguments {workflow.tunable()} are marked tune(); use tune_grid() "
            "or finalize the workflow first"
        )
    metrics = metric_set(metrics, workflow.model.mode)

    metrics_df, predictions_df, notes = _evaluate_candidates(
        workflow,
        resamples,
        pd.DataFrame(index=[0]),
        metrics,
        n_jobs,
        save_pred,
        config_ids=["Preprocessor1_Model1"],
    )
    return TuneResults(
        workflow=workflow,
        resamples=resamples,
        param_names=[],
        metric_names=metrics,
        metrics=metrics_df,
        predictions=predictions_df,
        notes=notes,
    )


def tune_bayes(
    workflow: Workflow,
    resamples: ResampleSet,
    params: Optional[List[Parameter]] = None,
    n_iter: int = 25,
    metrics: Optional[Sequence[str]] = None,
    seed: Optional[int] = 42,
    patience: Optional[int] = 10,
    n_jobs: int = 1,
) -> TuneResults:
    """
    Bayesian optimization of the tuned parameters with Optuna (TPE sampler).

    Each trial evaluates one candidate on every resample; the objective is
    the mean of the first metric. Stops early when ``patience`` consecutive
    trials bring no improvement.
    """
    metrics = metric_set(metrics, workflow.model.mode)
    metric = metrics[0]
    tunable = workflow.tunable()
    if not tunable:
        raise ValueError("Workflow has no tune() arguments")

    params = params or workflow_parameters(workflow, resamples.data)
    if sorted(p.name for p in params) != sorted(tunable):
        raise ValueError(
            f"Parameters {[p.name for p in params]} do not match tuned arguments {tunable}"
        )
    params = sorted(params, key=lambda p: tunable.index(p.name))

    optuna.logging.set_verbosity(optuna.logging.WARNING)

    metric_frames: List[pd.DataFrame] = []
    all_notes: List[Dict[str, str]] = []

    def objective(trial: optuna.Trial) -> float:
        candidate = {p.name: suggest(trial, p) for p in params}
        config_id = f"Iter{trial.number + 1}"
        try:
            frame, _, notes = _evaluate_candidates(
                workflow,
                resamples,
                pd.DataFrame([candidate]),
                metrics,
                n_jobs=1,
                save_pred=False,
                config_ids=[config_id],
                progress=False,
            )
        except RuntimeError as e:
            all_notes.append({"id": "all", ".config": config_id, "note": str(e)})
            raise optuna.TrialPruned(str(e))

        all_notes.extend(notes)
        metric_frames.append(frame)
        values = frame.loc[frame[".metric"] == metric, ".estimate"].dropna()
        if values.empty:
            raise optuna.TrialPruned(f"{metric} could not be computed")
        return float(values.mean())

    best_trial_number = [None]

    def callback(study: optuna.Study, trial: optuna.trial.FrozenTrial) -> None:
        """Log new best trials and stop after ``patience`` trials without improvement."""
        try:
            current_best = study.best_trial.number
        except ValueError:
            return

        if current_best != best_trial_number[0]:
            best_trial_number[0] = current_best
            logger.info(f"  Trial {current_best}: New best {metric} = {study.best_value:.4f}")

        if patience is not None and trial.number - current_best >= patience:
            logger.info(
                f"  Early stopping triggered: no improvement for {patience} trials "
                f"(best {metric} = {study.best_value:.4f} at trial {current_best})"
            )
            study.stop()

    study = optuna.create_study(
        direction=metric_direction(metric),
        sampler=optuna.samplers.TPESampler(seed=seed),
    )
    study.optimize(objective, n_trials=n_iter, n_jobs=n_jobs, callbacks=[callback])

    if not metric_frames:
        raise RuntimeError("No Bayesian tuning trial completed successfully")

    metrics_df = pd.concat(metric_frames, ignore_index=True)
    logger.info(
        f"Bayesian tuning complete: best {metric} = {study.best_value:.4f} "
        f"after {len(study.trials)}/{n_iter} trials"
    )

    return TuneResults(
        workflow=workflow,
        resamples=resamples,
        param_names=tunable,
        metric_names=metrics,
        metrics=metrics_df,
        predictions=None,
        notes=all_notes,
        parameters=params,
    )


class LastFit:
    """Final model fitted on the training split and evaluated on the testing split."""

    def __init__(
        self,
        fitted_workflow: FittedWorkflow,
        split: Split,
        metrics: pd.DataFrame,
        predictions: pd.DataFrame,
    ):
        self.fitted_workflow = fitted_workflow
        self.split = split
        self.metrics = metrics
        self.predictions = predictions

    def collect_metrics(self) -> pd.DataFrame:
        return self.metrics.copy()

    def collect_predictions(self) -> pd.DataFrame:
        return self.predictions.copy()

    def __repr__(self) -> str:
        return f"<LastFit {self.split!r}>"


def last_fit(
    workflow: Workflow,
    split: Split,
    metrics: Optional[Sequence[str]] = None,
) -> LastFit:
    """
    Fit the finalized workflow on the training set and evaluate on testing.

    Parameters
    ----------
    workflow : Workflow
        Workflow without ``tune()`` placeholders
    split : Split
        Initial split
    metrics : list, optional
        Metric names; defaults by mode

    Returns
    -------
    LastFit
    """
    metrics = metric_set(metrics, workflow.model.mode)
    training = split.training()
    testing = split.testing()

    fitted = workflow.fit(training)
    preds = fitted.predict(testing)
    preds[workflow.outcome] = testing[workflow.outcome].to_numpy()
    preds[".row"] = split.test_idx
    preds = preds.reset_index(drop=True)

    event_level = (
        outcome_event_level(split.data[workflow.outcome])
        if workflow.model.mode == "classification"
        else None
    )
    metric_df = compute_metrics(
        preds,
        truth=workflow.outcome,
        metrics=metrics,
        mode=workflow.model.mode,
        event_level=event_level,
    )

    summary = ", ".join(f"{m}={v:.3f}" for m, v in zip(metric_df[".metric"], metric_df[".estimate"]))
    logger.info(f"Last fit on {len(training)} rows, test set of {len(testing)}: {summary}")

    return LastFit(fitted_workflow=fitted, split=split, metrics=metric_df, predictions=preds)
