"""Tests for tuning reports and saved artifacts."""

import json

import joblib
import pandas as pd
import pytest

from modelflow.grid import get_parameter, grid_regular, update_range
from modelflow.models import ModelSpec, tune
from modelflow.recipes import Recipe
from modelflow.reporting import (
    create_tuning_summary_table,
    generate_all_reports,
    save_best_params,
    save_summary_table,
)
from modelflow.splitting import initial_split, vfold_cv
from modelflow.tuning import last_fit, tune_grid
from modelflow.workflows import Workflow, finalize_workflow


@pytest.fixture
def tuned(regression_data):
    recipe = Recipe("y").update_role("id").step_dummy().step_normalize()
    wf = Workflow(recipe, ModelSpec("linear_reg", penalty=tune(), mixture=1))
    split = initial_split(regression_data, seed=1)
    grid = grid_regular([update_range(get_parameter("penalty"), -3, 0)], levels=4)
    results = tune_grid(wf, vfold_cv(split.training(), v=3, seed=1), grid=grid, save_pred=True)
    best = results.select_best("rmse")
    final = last_fit(finalize_workflow(wf, best), split)
    return results, final, best


class TestSummaryTable:
    def test_ranked_candidates(self, tuned):
        results, _, best = tuned
        table = create_tuning_summary_table(results, "rmse", n=3)
        assert list(table.columns) == ["Candidate", "penalty", "RMSE", "RSQ"]
        assert len(table) == 3
        assert table["Candidate"].iloc[0] == best[".config"]
        assert table["RMSE"].str.match(r"^\d+\.\d{3} \(\d+\.\d{3}\)$").all()

    def test_save_summary_table(self, tuned, temp_directory):
        results, _, _ = tuned
        table = create_tuning_summary_table(results)
        save_summary_table(table, temp_directory, metrics=["rmse", "rsq"], resampling="3-fold cross-validation")
        md = (temp_directory / "tuning_summary.md").read_text(encoding="utf-8")
        assert "**Resampling**: 3-fold cross-validation" in md
        assert "Root mean squared error" in md
        assert (temp_directory / "tuning_summary.csv").exists()


class TestArtifacts:
    def test_best_params_json(self, tuned, temp_directory):
        results, final, best = tuned
        path = save_best_params(
            best, temp_directory, model_type="linear_reg", metric="rmse",
            test_metrics=final.collect_metrics(),
        )
        data = json.loads(path.read_text())
        assert data["model"] == "Penalized Linear Regression"
        assert data["direction"] == "minimize"
        assert data["params"]["penalty"] == pytest.approx(best["penalty"])
        assert data["config"] == best[".config"]
        assert set(data["test_metrics"]) == {"rmse", "rsq"}

    def test_generate_all_reports(self, tuned, temp_directory):
        results, final, best = tuned
        generate_all_reports(results, final, best, temp_directory, metric="rmse")
        tables = temp_directory / "tables"
        artifacts = temp_directory / "artifacts"
        for path in [
            tables / "tuning_summary.csv",
            tables / "tuning_summary.md",
            tables / "test_metrics.csv",
            artifacts / "best_params.json",
            artifacts / "resample_metrics.csv",
            artifacts / "resample_predictions.csv",
            artifacts / "test_predictions.csv",
            artifacts / "fitted_workflow.joblib",
        ]:
            assert path.exists(), path

        fitted = joblib.load(artifacts / "fitted_workflow.joblib")
        test = final.split.testing()
        pd.testing.assert_frame_equal(
            fitted.predict(test), final.fitted_workflow.predict(test)
        )

    def test_without_artifacts(self, tuned, temp_directory):
        results, final, best = tuned
        generate_all_reports(results, final, best, temp_directory, save_artifacts=False)
        assert (temp_directory / "artifacts" / "best_params.json").exists()
        assert not (temp_directory / "artifacts" / "fitted_workflow.joblib").exists()


class TestResampleInterval:
    def test_interval_around_resampled_mean(self, tuned, temp_directory):
        results, _, best = tuned
        rows = results.collect_metrics(summarize=False)
        selected = rows[rows[".config"] == best[".config"]]
        path = save_best_params(best, temp_directory, metric="rmse", resample_metrics=selected)
        data = json.loads(path.read_text())

        summary = results.collect_metrics()
        expected = summary[(summary[".config"] == best[".config"]) & (summary[".metric"] == "rmse")]
        rmse = data["resample_ci"]["rmse"]
        assert rmse["mean"] == pytest.approx(expected["mean"].iloc[0])
        assert rmse["lower"] < rmse["mean"] < rmse["upper"]
        assert data["ci_level"] == 0.95

    def test_written_by_generate_all_reports(self, tuned, temp_directory):
        results, final, best = tuned
        generate_all_reports(results, final, best, temp_directory, metric="rmse", save_artifacts=False)
        data = json.loads((temp_directory / "artifacts" / "best_params.json").read_text())
        assert set(data["resample_ci"]) == {"rmse", "rsq"}
