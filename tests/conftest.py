"""Test configuration and fixtures."""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest


@pytest.fixture
def regression_data():
    """Small regression dataset: two informative predictors, one noise column and a category."""
    rng = np.random.default_rng(42)
    n = 120
    x1 = rng.normal(0, 1, n)
    x2 = rng.normal(5, 2, n)
    noise = rng.normal(0, 1, n)
    group = rng.choice(["a", "b", "c"], size=n)
    y = 3 * x1 - 0.5 * x2 + np.where(group == "b", 1.0, 0.0) + rng.normal(0, 0.5, n)
    return pd.DataFrame(
        {
            "id": [f"R{i:03d}" for i in range(n)],
            "x1": x1,
            "x2": x2,
            "noise": noise,
            "group": group,
            "y": y,
        }
    )


@pytest.fixture
def classification_data():
    """Binary outcome ('no'/'yes') driven by x1 and x2."""
    rng = np.random.default_rng(7)
    n = 200
    x1 = rng.normal(0, 1, n)
    x2 = rng.normal(0, 1, n)
    logit = 1.5 * x1 - 1.0 * x2
    prob = 1 / (1 + np.exp(-logit))
    outcome = np.where(rng.random(n) < prob, "yes", "no")
    return pd.DataFrame({"x1": x1, "x2": x2, "x3": rng.normal(0, 1, n), "outcome": outcome})


@pytest.fixture
def mockstudy():
    """Synthetic mock study with sites and enrollment targets."""
    from modelflow.mockstudy import add_target_counts, assign_sites, generate_mockstudy

    return add_target_counts(assign_sites(generate_mockstudy(seed=1984)))


@pytest.fixture
def mockdata(mockstudy):
    """Mock study prepared for reporting (Nur-Sultan excluded)."""
    from modelflow.mockstudy import prepare_mockdata

    return prepare_mockdata(mockstudy)


@pytest.fixture
def temp_directory(tmp_path):
    """Temporary output directory."""
    out = tmp_path / "out"
    out.mkdir()
    return out
