"""Tests for grid tuning, Bayesian tuning, resampling and the last fit."""

import numpy as np
import pandas as pd
import pytest

from modelflow.grid import get_parameter, grid_regular, update_range
from modelflow.metrics import metric_direction
from modelflow.models import ModelSpec, tune
from modelflow.recipes import Recipe
from modelflow.splitting import bootstraps, initial_split, vfold_cv
from modelflow.tuning import (
    fit_resamples,
    last_fit,
    tune_bayes,
    tune_grid,
    workflow_parameters,
)
from modelflow.workflows import Workflow, finalize_workflow


def _lasso_workflow():
    recipe = Recipe("y").update_role("id").step_dummy().step_normalize()
    return Workflow(recipe, ModelSpec("linear_reg", penalty=tune(), mixture=1), random_state=1)


def _penalty_grid(levels=4):
    return grid_regular([update_range(get_parameter("penalty"), -3, 0)], levels=levels)


@pytest.fixture
def lasso_results(regression_data):
    folds = vfold_cv(regression_data, v=3, seed=1)
    return tune_grid(_lasso_workflow(), folds, grid=_penalty_grid(), save_pred=True)


class TestTuneGrid:
    def test_collect_metrics(self, lasso_results):
        summary = lasso_results.collect_metrics()
        assert list(summary.columns) == [
            "penalty", ".metric", ".estimator", "mean", "n", "std_err", ".config"
        ]
        assert len(summary) == 4 * 2
        assert (summary["n"] == 3).all()
        assert sorted(summary[".config"].unique()) == [
            "Preprocessor1_Model1", "Preprocessor1_Model2",
            "Preprocessor1_Model3", "Preprocessor1_Model4",
        ]

    def test_unsummarized_metrics(self, lasso_results):
        raw = lasso_results.collect_metrics(summarize=False)
        assert len(raw) == 4 * 3 * 2
        assert list(raw.columns) == ["penalty", "id", ".metric", ".estimator", ".estimate", ".config"]

    def test_predictions(self, lasso_results, regression_data):
        preds = lasso_results.collect_predictions()
        assert len(preds) == 4 * len(regression_data)
        assert {".pred", "y", ".row", "id", ".config", "penalty"} <= set(preds.columns)
        one = preds[preds[".config"] == "Preprocessor1_Model1"].sort_values(".row")
        np.testing.assert_allclose(one["y"].to_numpy(), regression_data["y"].to_numpy())

    def test_no_predictions_saved(self, regression_data):
        folds = vfold_cv(regression_data, v=3, seed=1)
        results = tune_grid(_lasso_workflow(), folds, grid=_penalty_grid(2))
        with pytest.raises(ValueError):
            results.collect_predictions()

    def test_select_best(self, lasso_results):
        summary = lasso_results.collect_metrics()
        rmse = summary[summary[".metric"] == "rmse"]
        best = lasso_results.select_best("rmse")
        assert best["penalty"] == pytest.approx(rmse.loc[rmse["mean"].idxmin(), "penalty"])
        assert best[".config"] == rmse.loc[rmse["mean"].idxmin(), ".config"]

        rsq = summary[summary[".metric"] == "rsq"]
        assert lasso_results.select_best("rsq")[".config"] == rsq.loc[rsq["mean"].idxmax(), ".config"]

    def test_show_best_order(self, lasso_results):
        top = lasso_results.show_best("rmse", n=3)
        assert len(top) == 3
        assert top["mean"].is_monotonic_increasing
        assert lasso_results.show_best("rsq", n=4)["mean"].is_monotonic_decreasing

    def test_default_metric_is_first(self, lasso_results):
        assert lasso_results.select_best() == lasso_results.select_best("rmse")

    def test_unknown_metric(self, lasso_results):
        with pytest.raises(ValueError):
            lasso_results.select_best("roc_auc")

    def test_one_std_err(self, lasso_results):
        summary = lasso_results.collect_metrics()
        rmse = summary[summary[".metric"] == "rmse"]
        best_row = rmse.loc[rmse["mean"].idxmin()]

        chosen = lasso_results.select_by_one_std_err("rmse", "-penalty")
        chosen_row = rmse[rmse[".config"] == chosen[".config"]].iloc[0]
        assert chosen_row["mean"] <= best_row["mean"] + best_row["std_err"]
        assert chosen["penalty"] >= best_row["penalty"]
        # no simpler (larger penalty) candidate is also within one standard error
        within = rmse[rmse["mean"] <= best_row["mean"] + best_row["std_err"]]
        assert chosen["penalty"] == pytest.approx(within["penalty"].max())

    def test_one_std_err_needs_order(self, lasso_results):
        with pytest.raises(ValueError):
            lasso_results.select_by_one_std_err("rmse")
        with pytest.raises(ValueError):
            lasso_results.select_by_one_std_err("rmse", "mixture")

    def test_grid_validation(self, regression_data):
        folds = vfold_cv(regression_data, v=3, seed=1)
        wf = _lasso_workflow()
        with pytest.raises(ValueError):
            tune_grid(wf, folds, grid=pd.DataFrame({"mixture": [0.5]}))
        with pytest.raises(ValueError):
            tune_grid(wf, folds, grid=pd.DataFrame({"penalty": [0.1], "mixture": [0.5]}))
        with pytest.raises(ValueError):
            tune_grid(wf, folds, grid=pd.DataFrame({"penalty": []}))

    def test_requires_tunable_arguments(self, regression_data):
        folds = vfold_cv(regression_data, v=3, seed=1)
        wf = finalize_workflow(_lasso_workflow(), {"penalty": 0.1})
        with pytest.raises(ValueError):
            tune_grid(wf, folds, grid=_penalty_grid())

    def test_automatic_grid(self, regression_data):
        folds = vfold_cv(regression_data, v=3, seed=1)
        results = tune_grid(_lasso_workflow(), folds, grid=5, seed=2)
        assert results.collect_metrics()[".config"].nunique() == 5
        assert [p.name for p in results.parameters] == ["penalty"]

    def test_classification_with_bootstraps(self, classification_data):
        recipe = Recipe("outcome")
        wf = Workflow(recipe, ModelSpec("decision_tree", mode="classification", cost_complexity=tune()))
        boots = bootstraps(classification_data, times=3, seed=4)
        grid = pd.DataFrame({"cost_complexity": [1e-4, 1e-2]})
        results = tune_grid(wf, boots, grid=grid, metrics=["roc_auc", "accuracy"])
        summary = results.collect_metrics()
        assert set(summary[".metric"]) == {"roc_auc", "accuracy"}
        assert (summary["n"] == 3).all()
        assert summary["mean"].between(0, 1).all()

    def test_failed_fits_recorded(self, regression_data):
        data = regression_data.copy()
        data.loc[data.index[:5], "x1"] = np.nan
        folds = vfold_cv(data, v=3, seed=1)
        # no imputation step: every fit fails on missing values
        with pytest.raises(RuntimeError):
            tune_grid(_lasso_workflow(), folds, grid=_penalty_grid(2))


class TestFitResamples:
    def test_single_configuration(self, regression_data):
        wf = finalize_workflow(_lasso_workflow(), {"penalty": 0.01})
        folds = vfold_cv(regression_data, v=4, seed=1)
        results = fit_resamples(wf, folds, metrics=["rmse"])
        summary = results.collect_metrics()
        assert len(summary) == 1
        assert summary[".config"].iloc[0] == "Preprocessor1_Model1"
        assert summary["n"].iloc[0] == 4

    def test_rejects_placeholders(self, regression_data):
        folds = vfold_cv(regression_data, v=4, seed=1)
        with pytest.raises(ValueError):
            fit_resamples(_lasso_workflow(), folds)


class TestTuneBayes:
    def test_runs_trials(self, regression_data):
        folds = vfold_cv(regression_data, v=3, seed=1)
        wf = _lasso_workflow()
        params = workflow_parameters(wf, regression_data, ranges={"penalty": [-3, 0]})
        results = tune_bayes(wf, folds, params=params, n_iter=4, seed=3, patience=None)
        summary = results.collect_metrics()
        assert summary[".config"].nunique() == 4
        assert set(summary[".config"]) == {"Iter1", "Iter2", "Iter3", "Iter4"}
        assert summary["penalty"].between(1e-3, 1.0).all()
        best = results.select_best("rmse")
        assert 1e-3 <= best["penalty"] <= 1.0

    def test_early_stopping(self, regression_data):
        folds = vfold_cv(regression_data, v=3, seed=1)
        wf = _lasso_workflow()
        params = workflow_parameters(wf, regression_data, ranges={"penalty": [-3, 0]})
        results = tune_bayes(wf, folds, params=params, n_iter=30, seed=3, patience=2)
        assert results.collect_metrics()[".config"].nunique() < 30

    def test_mismatched_parameters(self, regression_data):
        folds = vfold_cv(regression_data, v=3, seed=1)
        with pytest.raises(ValueError):
            tune_bayes(_lasso_workflow(), folds, params=[get_parameter("mixture")], n_iter=2)


class TestLastFit:
    def test_evaluates_on_test_set(self, regression_data):
        split = initial_split(regression_data, prop=0.75, seed=5)
        wf = finalize_workflow(_lasso_workflow(), {"penalty": 0.01})
        fit = last_fit(wf, split)
        metrics = fit.collect_metrics()
        assert list(metrics[".metric"]) == ["rmse", "rsq"]
        preds = fit.collect_predictions()
        assert len(preds) == len(split.test_idx)
        assert np.array_equal(preds[".row"].to_numpy(), split.test_idx)
        assert metrics.set_index(".metric").loc["rsq", ".estimate"] > 0.8

    def test_classification(self, classification_data):
        split = initial_split(classification_data, strata="outcome", seed=5)
        wf = Workflow(Recipe("outcome"), ModelSpec("logistic_reg", mode="classification", penalty=0.001))
        fit = last_fit(wf, split, metrics=["roc_auc", "brier"])
        out = fit.collect_metrics().set_index(".metric")
        assert out.loc["roc_auc", ".estimate"] > 0.6
        assert metric_direction("brier") == "minimize"
        assert ".pred_yes" in fit.collect_predictions().columns
