"""Tests for model specifications and estimator construction."""

import numpy as np
import pytest
from sklearn.linear_model import ElasticNet, Lasso, LinearRegression, LogisticRegression, Ridge
from sklearn.tree import DecisionTreeClassifier
from xgboost import XGBClassifier, XGBRegressor

from modelflow.models import (
    ModelSpec,
    build_estimator,
    finalize_model,
    get_model_name,
    is_tune,
    spec_from_config,
    tune,
)


class TestModelSpec:
    def test_tunable(self):
        spec = ModelSpec("linear_reg", penalty=tune(), mixture=1)
        assert spec.tunable() == ["penalty"]

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            ModelSpec("svm_rbf")

    def test_unsupported_mode(self):
        with pytest.raises(ValueError):
            ModelSpec("linear_reg", mode="classification")

    def test_unknown_argument(self):
        with pytest.raises(ValueError):
            ModelSpec("linear_reg", alpha=0.1)

    def test_tune_markers_compare(self):
        assert tune() == tune()
        assert tune("a") != tune("b")
        assert repr(tune()) == "tune()"

    def test_finalize(self):
        spec = ModelSpec("boost_tree", mode="classification", trees=1000, tree_depth=tune(), learn_rate=tune())
        final = finalize_model(spec, {"tree_depth": 4, "learn_rate": 0.05, ".config": "x"})
        assert final.tunable() == []
        assert final.params == {"trees": 1000, "tree_depth": 4, "learn_rate": 0.05}
        assert spec.tunable() == ["tree_depth", "learn_rate"]


class TestBuildEstimator:
    def test_placeholders_rejected(self):
        with pytest.raises(ValueError):
            build_estimator(ModelSpec("linear_reg", penalty=tune()), n_features=3, n_samples=10)

    @pytest.mark.parametrize(
        "mixture, expected",
        [(1, Lasso), (0, Ridge), (0.5, ElasticNet)],
    )
    def test_linear_reg_engines(self, mixture, expected):
        est = build_estimator(ModelSpec("linear_reg", penalty=0.1, mixture=mixture), 3, 10)
        assert isinstance(est, expected)

    def test_ridge_penalty_scale(self):
        est = build_estimator(ModelSpec("linear_reg", penalty=0.1, mixture=0), 3, 10)
        assert est.alpha == pytest.approx(1.0)

    def test_penalty_continuous_at_zero_mixture(self):
        rng = np.random.default_rng(0)
        X = rng.normal(size=(1000, 3))
        y = X @ np.array([2.0, -1.0, 0.5]) + rng.normal(scale=0.5, size=1000)
        coefs = []
        for mixture in [0, 1e-6]:
            est = build_estimator(ModelSpec("linear_reg", penalty=0.5, mixture=mixture), 3, len(X))
            coefs.append(est.fit(X, y).coef_)
        np.testing.assert_allclose(coefs[0], coefs[1], rtol=0.01)
        # shrunk towards zero, not the unpenalized fit
        assert np.all(np.abs(coefs[0]) < np.array([2.0, 1.0, 0.5]))

    def test_unpenalized_linear_reg(self):
        est = build_estimator(ModelSpec("linear_reg"), 3, 10)
        assert isinstance(est, LinearRegression)

    def test_logistic_penalty_scale(self):
        est = build_estimator(ModelSpec("logistic_reg", mode="classification", penalty=0.01), 3, 200)
        assert isinstance(est, LogisticRegression)
        assert est.C == pytest.approx(1.0 / (200 * 0.01))

    def test_boost_tree(self):
        spec = ModelSpec("boost_tree", mode="classification", trees=50, mtry=2, sample_size=0.8)
        est = build_estimator(spec, n_features=4, n_samples=100)
        assert isinstance(est, XGBClassifier)
        params = est.get_params()
        assert params["n_estimators"] == 50
        assert params["colsample_bynode"] == pytest.approx(0.5)
        assert params["subsample"] == 0.8

    def test_boost_tree_regression(self):
        est = build_estimator(ModelSpec("boost_tree", mode="regression"), 4, 100)
        assert isinstance(est, XGBRegressor)

    def test_decision_tree(self):
        spec = ModelSpec("decision_tree", mode="classification", cost_complexity=0.01)
        est = build_estimator(spec, 4, 100)
        assert isinstance(est, DecisionTreeClassifier)
        assert est.ccp_alpha == 0.01

    def test_engine_args(self):
        spec = ModelSpec("rand_forest", mode="regression", trees=10, engine_args={"max_depth": 3})
        assert build_estimator(spec, 4, 100).max_depth == 3

    def test_knn_weight_func(self):
        with pytest.raises(ValueError):
            build_estimator(ModelSpec("nearest_neighbor", weight_func="gaussian"), 2, 10)


class TestSpecFromConfig:
    def test_tune_strings(self):
        spec = spec_from_config(
            {"type": "linear_reg", "mode": "regression", "params": {"penalty": "tune()", "mixture": 1}}
        )
        assert is_tune(spec.params["penalty"])
        assert spec.params["mixture"] == 1
        assert spec.tunable() == ["penalty"]

    def test_model_name(self):
        assert get_model_name("boost_tree") == "XGBoost"
        assert get_model_name("other") == "other"
