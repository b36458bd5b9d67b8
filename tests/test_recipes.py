"""Tests for preprocessing recipes."""

import numpy as np
import pandas as pd
import pytest

from modelflow.recipes import Recipe, all_nominal, all_numeric, recipe_from_config


@pytest.fixture
def train_test(regression_data):
    return regression_data.iloc[:90].copy(), regression_data.iloc[90:].copy()


class TestPrepBake:
    def test_normalize_uses_training_statistics(self, train_test):
        train, test = train_test
        rec = Recipe("y").update_role("id", new_role="id").step_normalize(all_numeric()).prep(train)
        juiced = rec.juice()
        assert juiced["x1"].mean() == pytest.approx(0.0, abs=1e-10)
        assert juiced["x1"].std(ddof=0) == pytest.approx(1.0)

        baked = rec.bake(test)
        expected = (test["x1"] - train["x1"].mean()) / train["x1"].std(ddof=0)
        np.testing.assert_allclose(baked["x1"].to_numpy(), expected.to_numpy())

    def test_outcome_untouched(self, train_test):
        train, _ = train_test
        rec = Recipe("y").update_role("id").step_normalize().prep(train)
        np.testing.assert_allclose(rec.juice()["y"].to_numpy(), train["y"].to_numpy())

    def test_prep_returns_trained_copy(self, train_test):
        train, _ = train_test
        rec = Recipe("y").step_normalize("x1")
        trained = rec.prep(train)
        assert trained.trained
        assert not rec.trained

    def test_bake_before_prep(self, train_test):
        _, test = train_test
        with pytest.raises(ValueError):
            Recipe("y").step_normalize().bake(test)

    def test_bake_missing_predictor(self, train_test):
        train, test = train_test
        rec = Recipe("y").update_role("id").prep(train)
        with pytest.raises(ValueError):
            rec.bake(test.drop(columns=["x1"]))

    def test_bake_without_outcome(self, train_test):
        train, test = train_test
        rec = Recipe("y").update_role("id").step_normalize().prep(train)
        baked = rec.bake(test.drop(columns=["y"]))
        assert "y" not in baked.columns
        assert len(baked) == len(test)

    def test_id_role_carried_through(self, train_test):
        train, test = train_test
        rec = Recipe("y").update_role("id", new_role="id").step_dummy(all_nominal()).prep(train)
        assert "id" in rec.bake(test).columns
        assert "id" not in rec.output_predictors()


class TestSteps:
    def test_dummy_drops_reference_level(self, train_test):
        train, test = train_test
        rec = Recipe("y", predictors=["x1", "group"]).step_dummy("group").prep(train)
        assert rec.output_predictors() == ["x1", "group_b", "group_c"]

    def test_dummy_one_hot_and_unseen_levels(self, train_test):
        train, _ = train_test
        rec = Recipe("y", predictors=["group"]).step_dummy("group", one_hot=True).prep(train)
        new = pd.DataFrame({"group": ["a", "z", None], "y": [0.0, 0.0, 0.0]})
        baked = rec.bake(new)
        assert list(baked["group_a"][:2]) == [1.0, 0.0]
        assert baked.loc[1, ["group_a", "group_b", "group_c"]].sum() == 0
        assert baked.loc[2, ["group_a", "group_b", "group_c"]].isna().all()

    def test_zv_removes_constant(self, train_test):
        train, _ = train_test
        train = train.assign(constant=1.0)
        rec = Recipe("y").update_role("id").step_zv().prep(train)
        assert "constant" not in rec.output_predictors()
        assert "x1" in rec.output_predictors()

    def test_impute_median(self):
        train = pd.DataFrame({"x": [1.0, 2.0, np.nan, 10.0], "y": [1, 2, 3, 4]})
        rec = Recipe("y").step_impute_median().prep(train)
        assert rec.juice()["x"].tolist() == [1.0, 2.0, 2.0, 10.0]
        baked = rec.bake(pd.DataFrame({"x": [np.nan], "y": [0]}))
        assert baked["x"].iloc[0] == 2.0

    def test_impute_mode(self):
        train = pd.DataFrame({"g": ["a", "b", "b", None], "y": [1, 2, 3, 4]})
        rec = Recipe("y").step_impute_mode().prep(train)
        assert rec.juice()["g"].tolist() == ["a", "b", "b", "b"]

    def test_other_pools_rare_levels(self):
        train = pd.DataFrame({"g": ["a"] * 18 + ["b", "c"], "y": range(20)})
        rec = Recipe("y").step_other("g", threshold=0.1).prep(train)
        assert set(rec.juice()["g"]) == {"a", "other"}

    def test_log(self):
        train = pd.DataFrame({"x": [1.0, 10.0, 100.0], "y": [1, 2, 3]})
        rec = Recipe("y").step_log("x", base=10).prep(train)
        np.testing.assert_allclose(rec.juice()["x"], [0.0, 1.0, 2.0])

    def test_pca(self, train_test):
        train, test = train_test
        rec = (
            Recipe("y", predictors=["x1", "x2", "noise"])
            .step_normalize()
            .step_pca(num_comp=2)
            .prep(train)
        )
        assert rec.output_predictors() == ["PC1", "PC2"]
        assert list(rec.bake(test).columns) == ["y", "PC1", "PC2"]

    def test_smote_only_at_prep(self, classification_data):
        data = classification_data.copy()
        data["outcome"] = np.where(data["x1"] > 1.0, "yes", "no")
        rec = Recipe("outcome").step_smote(seed=1).prep(data)
        counts = rec.juice()["outcome"].value_counts()
        assert counts["yes"] == counts["no"]
        assert len(rec.bake(data)) == len(data)

    def test_impute_knn(self):
        train = pd.DataFrame(
            {"x1": [1.0, 2.0, 3.0, 4.0, np.nan], "x2": [1.0, 2.0, 3.0, 4.0, 4.0], "y": range(5)}
        )
        rec = Recipe("y").step_impute_knn(neighbors=2).prep(train)
        assert rec.juice()["x1"].iloc[4] == pytest.approx(3.5)
        baked = rec.bake(pd.DataFrame({"x1": [np.nan], "x2": [1.0], "y": [0]}))
        assert baked["x1"].iloc[0] == pytest.approx(1.5)

    def test_pca_threshold(self):
        rng = np.random.default_rng(3)
        x = rng.normal(size=200)
        train = pd.DataFrame(
            {"a": x, "b": 2 * x, "c": rng.normal(size=200), "y": rng.normal(size=200)}
        )
        rec = Recipe("y").step_normalize().step_pca(threshold=0.9).prep(train)
        assert rec.output_predictors() == ["PC1", "PC2"]
        ratios = rec.steps[-1].pca_.explained_variance_ratio_
        assert ratios.sum() >= 0.9
        assert ratios[0] < 0.9

    def test_smote_single_class(self, classification_data):
        data = classification_data.copy()
        data["outcome"] = "no"
        with pytest.raises(ValueError):
            Recipe("outcome").step_smote().prep(data)

    def test_unknown_column(self, train_test):
        train, _ = train_test
        with pytest.raises(ValueError):
            Recipe("y").step_normalize("nope").prep(train)


class TestSummaryAndConfig:
    def test_summary_roles(self, regression_data):
        rec = Recipe("y", data=regression_data).update_role("id")
        summary = rec.summary().set_index("variable")
        assert summary.loc["y", "role"] == "outcome"
        assert summary.loc["id", "role"] == "id"
        assert summary.loc["x1", "type"] == "numeric"
        assert summary.loc["group", "type"] == "nominal"

    def test_summary_marks_derived_columns(self, regression_data):
        rec = Recipe("y").update_role("id").step_dummy().prep(regression_data)
        summary = rec.summary().set_index("variable")
        assert summary.loc["group_b", "source"] == "derived"
        assert summary.loc["x1", "source"] == "original"

    def test_from_config(self, regression_data):
        rec = recipe_from_config(
            "y",
            [{"step": "dummy", "columns": ["all_nominal"]}, {"step": "normalize"}],
            id_columns=["id"],
        )
        trained = rec.prep(regression_data)
        assert "group_b" in trained.output_predictors()
        assert trained.juice()["group_b"].mean() == pytest.approx(0.0, abs=1e-10)

    def test_unknown_step(self):
        with pytest.raises(ValueError):
            recipe_from_config("y", [{"step": "boxcox"}])
