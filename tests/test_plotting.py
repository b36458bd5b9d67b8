"""Tests for report figures."""

import numpy as np
import pytest

from modelflow.grid import get_parameter, grid_regular, update_range
from modelflow.mockstudy import adverse_event_frequencies, proportion_survived
from modelflow.models import ModelSpec, tune
from modelflow.plotting import (
    palette_colors,
    plot_all_clinical_figures,
    plot_all_model_figures,
    plot_missing_data,
    plot_roc_curve,
)
from modelflow.recipes import Recipe
from modelflow.splitting import initial_split, vfold_cv
from modelflow.tuning import last_fit, tune_grid
from modelflow.workflows import Workflow, finalize_workflow


def _saved(output_dir, stem):
    return (output_dir / f"{stem}.png").exists() and (output_dir / f"{stem}.svg").exists()


class TestPalette:
    def test_sampled_from_begin(self):
        colors = palette_colors("viridis", 3)
        assert colors.shape == (3, 4)
        np.testing.assert_allclose(colors[-1], palette_colors("viridis", 1, begin=1.0)[0])

    def test_unknown_palette(self):
        with pytest.raises(ValueError):
            palette_colors("not-a-colormap", 2)


class TestClinicalFigures:
    def test_all_figures_saved(self, mockdata, temp_directory):
        prop = proportion_survived(mockdata)
        ae = adverse_event_frequencies(mockdata)
        plot_all_clinical_figures(mockdata, prop, ae, temp_directory, palette="magma")
        for stem in [
            "age_histogram",
            "age_density",
            "age_boxplot",
            "survival_percent",
            "survival_days",
            "adverse_events",
            "survival_curve",
        ]:
            assert _saved(temp_directory, stem), stem


class TestModelFigures:
    def test_regression_figures(self, regression_data, temp_directory):
        recipe = Recipe("y").update_role("id").step_dummy().step_normalize()
        wf = Workflow(recipe, ModelSpec("linear_reg", penalty=tune(), mixture=1))
        split = initial_split(regression_data, seed=1)
        grid = grid_regular([update_range(get_parameter("penalty"), -3, 0)], levels=3)
        results = tune_grid(wf, vfold_cv(split.training(), v=3, seed=1), grid=grid)
        final = last_fit(finalize_workflow(wf, results.select_best("rmse")), split)

        plot_all_model_figures(
            results,
            final,
            temp_directory,
            metric="rmse",
            completion_rates={"x1": 1.0, "x2": 0.95, "sparse": 0.4},
            retained_features=["x1", "x2"],
            threshold=0.9,
        )
        for stem in ["tuning_results", "variable_importance", "predicted_vs_observed", "missing_data"]:
            assert _saved(temp_directory, stem), stem

    def test_classification_figures(self, classification_data, temp_directory):
        wf = Workflow(
            Recipe("outcome"),
            ModelSpec("boost_tree", mode="classification", trees=10, tree_depth=tune()),
        )
        split = initial_split(classification_data, strata="outcome", seed=1)
        results = tune_grid(
            wf, vfold_cv(split.training(), v=3, seed=1), grid=grid_regular([get_parameter("tree_depth")], 2)
        )
        final = last_fit(finalize_workflow(wf, results.select_best()), split)
        plot_all_model_figures(results, final, temp_directory)
        for stem in ["tuning_results", "variable_importance", "roc_curve"]:
            assert _saved(temp_directory, stem), stem
        assert not (temp_directory / "missing_data.png").exists()

    def test_roc_curve_per_resample(self, classification_data, temp_directory):
        wf = Workflow(
            Recipe("outcome"),
            ModelSpec("logistic_reg", mode="classification", penalty=tune()),
        )
        results = tune_grid(
            wf,
            vfold_cv(classification_data, v=3, seed=2),
            grid=grid_regular([update_range(get_parameter("penalty"), -3, -2)], levels=1),
            save_pred=True,
        )
        plot_roc_curve(
            results.collect_predictions(), "outcome", "yes", output_path=temp_directory / "roc.png"
        )
        assert _saved(temp_directory, "roc")

    def test_roc_curve_needs_probabilities(self, classification_data):
        with pytest.raises(ValueError):
            plot_roc_curve(classification_data, "outcome", "yes")

    def test_missing_data_plot(self, temp_directory):
        plot_missing_data(
            {"a": 1.0, "b": 0.5}, ["a"], threshold=0.9, output_path=temp_directory / "nested" / "missing.png"
        )
        assert _saved(temp_directory / "nested", "missing")
