"""Tests for the clinical mock study."""

import numpy as np
import pandas as pd
import pytest

from modelflow.mockstudy import (
    AE_COLUMNS,
    ARMS,
    MOCKSTUDY_ROWS,
    BSD_SAMPLE,
    add_target_counts,
    adverse_event_frequencies,
    assign_sites,
    count_enrollment,
    export_site_samples,
    generate_mockstudy,
    prepare_mockdata,
    proportion_survived,
    sample_sites,
)


class TestGenerate:
    def test_shape_and_columns(self):
        df = generate_mockstudy()
        assert len(df) == MOCKSTUDY_ROWS
        for col in ["case", "age", "arm", "sex", "race", "fu_time", "fu_stat", "bmi", "age_ord"]:
            assert col in df.columns
        for col in AE_COLUMNS:
            assert set(df[col].unique()) <= {0, 1}

    def test_values(self):
        df = generate_mockstudy()
        assert set(df["arm"]) == set(ARMS)
        assert set(df["fu_stat"]) == {1, 2}
        assert (df["fu_time"] > 0).all()
        assert df["bmi"].isna().any()
        assert df["age"].between(19, 88).all()
        assert set(df["age_ord"]) <= {
            "10-19", "20-29", "30-39", "40-49", "50-59", "60-69", "70-79", "80-89"
        }

    def test_reproducible(self):
        pd.testing.assert_frame_equal(generate_mockstudy(seed=5), generate_mockstudy(seed=5))

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            generate_mockstudy(n=0)


class TestSites:
    def test_site_blocks(self, mockstudy):
        counts = mockstudy["site"].value_counts()
        assert counts["Boston"] == 100
        assert counts["Madrid"] == 50
        assert counts["Mexico City"] == 84
        assert counts["Nur-Sultan"] == 15
        assert mockstudy.iloc[0]["site"] == "Portland"
        assert mockstudy.iloc[-1]["site"] == "Nur-Sultan"
        assert (mockstudy["country"] == "USA").sum() == 1200

    def test_wrong_row_count(self):
        with pytest.raises(ValueError):
            assign_sites(generate_mockstudy(n=100))

    def test_target_counts(self, mockstudy):
        targets = mockstudy.groupby("site")["n_target"].first()
        assert targets["Boston"] == 34
        assert targets["Madrid"] == 17
        assert targets["Mexico City"] == 28
        assert targets["Nur-Sultan"] == 5

    def test_sample_sites(self, mockstudy):
        sample = sample_sites(mockstudy, BSD_SAMPLE, seed=1984)
        assert sample["site"].value_counts().to_dict() == BSD_SAMPLE
        assert not sample["case"].duplicated().any()
        again = sample_sites(mockstudy, BSD_SAMPLE, seed=1984)
        assert list(sample["case"]) == list(again["case"])

    def test_sample_errors(self, mockstudy):
        with pytest.raises(ValueError):
            sample_sites(mockstudy, {"Paris": 5})
        with pytest.raises(ValueError):
            sample_sites(mockstudy, {"Nur-Sultan": 16})

    def test_count_enrollment(self, mockstudy):
        counts = count_enrollment(sample_sites(mockstudy, {"Boston": 50}))
        assert list(counts.columns) == ["arm", "site", "country", "n_target", "n"]
        assert counts["n"].sum() == 50
        assert (counts["n_target"] == 34).all()

    def test_export_site_samples(self, mockstudy, temp_directory):
        paths = export_site_samples(mockstudy, temp_directory, seed=1984)
        assert set(paths) == {"mockboston", "mockbsd"}
        bsd = pd.read_csv(paths["mockbsd"])
        assert bsd["n"].sum() == sum(BSD_SAMPLE.values())
        assert pd.read_csv(paths["mockboston"])["n"].sum() == 50

    def test_bsd_sizes_per_site(self, mockstudy, temp_directory):
        paths = export_site_samples(mockstudy, temp_directory, seed=1984)
        per_site = pd.read_csv(paths["mockbsd"]).groupby("site")["n"].sum().to_dict()
        assert per_site == {"Boston": 50, "Denver": 62, "Seattle": 78}


class TestPrepared:
    def test_prepare_excludes_sites(self, mockdata):
        assert len(mockdata) == MOCKSTUDY_ROWS - 15
        assert "Nur-Sultan" not in set(mockdata["site"])
        assert list(mockdata["fu_fct"].cat.categories) == ["Lived", "Died"]
        assert isinstance(mockdata["ae_vomiting"].dtype, pd.CategoricalDtype)
        assert mockdata.attrs["labels"]["sex"] == "Gender"

    def test_vital_status_decoding(self, mockdata):
        lived = mockdata["fu_fct"] == "Lived"
        assert (mockdata.loc[lived, "fu_stat"] == 1).all()
        assert (mockdata.loc[~lived, "fu_stat"] == 2).all()

    def test_proportion_survived(self, mockdata):
        prop = proportion_survived(mockdata)
        assert list(prop.columns) == ["arm", "fu_fct", "by_surv", "arm_total", "prop"]
        assert len(prop) == len(ARMS)
        assert (prop["fu_fct"] == "Lived").all()
        for _, row in prop.iterrows():
            arm = mockdata[mockdata["arm"] == row["arm"]]
            assert row["arm_total"] == len(arm)
            assert row["prop"] == pytest.approx((arm["fu_stat"] == 1).mean())

    def test_adverse_event_frequencies(self, mockdata):
        freq = adverse_event_frequencies(mockdata)
        assert list(freq.columns) == ["arm", "per_arm", "ae_type", "n", "ae_prop"]
        np.testing.assert_allclose(freq["ae_prop"], freq["n"] / freq["per_arm"])
        row = freq[(freq["arm"] == ARMS[0]) & (freq["ae_type"] == "ae_diarrhea")].iloc[0]
        arm = mockdata[mockdata["arm"] == ARMS[0]]
        assert row["n"] == (arm["ae_diarrhea"].astype(int) == 1).sum()
        assert row["per_arm"] == len(arm)

    def test_adverse_events_required(self, mockdata):
        with pytest.raises(ValueError):
            adverse_event_frequencies(mockdata.drop(columns=AE_COLUMNS))

    def test_add_target_counts_after_prepare(self, mockstudy):
        # the targets are computed on the full study, before any site is excluded
        prepared = prepare_mockdata(add_target_counts(mockstudy))
        assert prepared.groupby("site")["n_target"].first()["Boston"] == 34
