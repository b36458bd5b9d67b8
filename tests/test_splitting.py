"""Tests for the initial split and resampling schemes."""

import numpy as np
import pandas as pd
import pytest

from modelflow.splitting import bootstraps, initial_split, make_resamples, vfold_cv


class TestInitialSplit:
    def test_partition(self, regression_data):
        split = initial_split(regression_data, prop=0.75, seed=1)
        n = len(regression_data)
        assert len(split.train_idx) == int(np.floor(0.75 * n))
        assert len(np.intersect1d(split.train_idx, split.test_idx)) == 0
        assert sorted(np.concatenate([split.train_idx, split.test_idx])) == list(range(n))
        assert len(split.training()) + len(split.testing()) == n

    def test_reproducible(self, regression_data):
        a = initial_split(regression_data, seed=123)
        b = initial_split(regression_data, seed=123)
        c = initial_split(regression_data, seed=124)
        assert np.array_equal(a.train_idx, b.train_idx)
        assert not np.array_equal(a.train_idx, c.train_idx)

    def test_stratified_proportions(self, classification_data):
        split = initial_split(classification_data, prop=0.75, strata="outcome", seed=3)
        training = split.training()
        for level, count in classification_data["outcome"].value_counts().items():
            assert (training["outcome"] == level).sum() == int(np.floor(0.75 * count))

    def test_numeric_strata(self, regression_data):
        split = initial_split(regression_data, prop=0.8, strata="y", seed=3)
        assert len(split.test_idx) > 0

    def test_invalid_prop(self, regression_data):
        with pytest.raises(ValueError):
            initial_split(regression_data, prop=1.0)
        with pytest.raises(ValueError):
            initial_split(regression_data, prop=0)

    def test_repr(self, regression_data):
        split = initial_split(regression_data, prop=0.75, seed=1)
        assert repr(split) == "<Training/Testing/Total> <90/30/120>"


class TestVfoldCv:
    def test_assessment_sets_partition_data(self, regression_data):
        folds = vfold_cv(regression_data, v=10, seed=1)
        assert len(folds) == 10
        held_out = np.concatenate([r.assessment_idx for r in folds])
        assert sorted(held_out) == list(range(len(regression_data)))
        for r in folds:
            assert len(np.intersect1d(r.analysis_idx, r.assessment_idx)) == 0
            assert len(r.analysis_idx) + len(r.assessment_idx) == len(regression_data)

    def test_ids(self, regression_data):
        assert vfold_cv(regression_data, v=10, seed=1).ids[:2] == ["Fold01", "Fold02"]
        assert vfold_cv(regression_data, v=5, seed=1).ids[-1] == "Fold5"

    def test_repeats(self, regression_data):
        folds = vfold_cv(regression_data, v=3, repeats=2, seed=1)
        assert folds.ids == [
            "Repeat1_Fold1", "Repeat1_Fold2", "Repeat1_Fold3",
            "Repeat2_Fold1", "Repeat2_Fold2", "Repeat2_Fold3",
        ]

    def test_stratified(self, classification_data):
        folds = vfold_cv(classification_data, v=5, strata="outcome", seed=2)
        overall = (classification_data["outcome"] == "yes").mean()
        for r in folds:
            rate = (r.assessment(classification_data)["outcome"] == "yes").mean()
            assert abs(rate - overall) < 0.1

    def test_invalid(self, regression_data):
        with pytest.raises(ValueError):
            vfold_cv(regression_data, v=1)
        with pytest.raises(ValueError):
            vfold_cv(regression_data.head(3), v=5)
        with pytest.raises(ValueError):
            vfold_cv(regression_data, v=5, repeats=0)


class TestBootstraps:
    def test_out_of_bag_assessment(self, regression_data):
        boots = bootstraps(regression_data, times=5, seed=1)
        n = len(regression_data)
        assert boots.method == "bootstraps"
        assert boots.ids[0] == "Bootstrap1"
        for r in boots:
            assert len(r.analysis_idx) == n
            assert len(np.intersect1d(r.analysis_idx, r.assessment_idx)) == 0
            expected = np.setdiff1d(np.arange(n), r.analysis_idx)
            assert np.array_equal(r.assessment_idx, expected)

    def test_ids_zero_padded(self, regression_data):
        assert bootstraps(regression_data, times=25, seed=1).ids[:2] == ["Bootstrap01", "Bootstrap02"]

    def test_invalid_times(self, regression_data):
        with pytest.raises(ValueError):
            bootstraps(regression_data, times=0)


class TestMakeResamples:
    def test_dispatch(self, regression_data):
        assert make_resamples(regression_data, {"method": "vfold", "v": 4}, seed=1).method == "vfold"
        boots = make_resamples(regression_data, {"method": "bootstraps", "times": 3}, seed=1)
        assert len(boots) == 3

    def test_unknown_method(self, regression_data):
        with pytest.raises(ValueError):
            make_resamples(regression_data, {"method": "loo"})

    def test_frame_access(self):
        data = pd.DataFrame({"a": range(10), "y": range(10)})
        folds = vfold_cv(data, v=2, seed=0)
        r = folds[0]
        assert len(r.analysis(data)) + len(r.assessment(data)) == 10
