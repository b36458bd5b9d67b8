"""
Clinical mock study: synthesis, site assignment and derived summaries.

The mock study mirrors a three-arm oncology trial of 1499 patients: baseline
demographics and laboratory values, follow-up time and vital status, and a
set of binary adverse-event indicators. Sites and countries are assigned in
fixed blocks so that per-site enrollment targets and site samples are
reproducible.
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Sequence, Union

import numpy as np
import pandas as pd

from modelflow.io import write_csv

logger = logging.getLogger(__name__)

MOCKSTUDY_ROWS = 1499

ARMS = ["A: IFL", "F: FOLFOX", "G: IROX"]
RACES = ["Caucasian", "African-Am", "Hispanic", "Asian", "Native-Am/Alaska", "Other"]
RACE_PROBS = [0.83, 0.08, 0.04, 0.02, 0.01, 0.02]
AE_COLUMNS = ["ae_blood_clot", "ae_vomiting", "ae_diarrhea", "ae_neuropathy", "ae_low_wbc"]

# (site, country, rows), in row order
SITE_BLOCKS = [
    ("Portland", "USA", 100),
    ("Ann Arbor", "USA", 100),
    ("St. Louis", "USA", 100),
    ("Rochester", "USA", 100),
    ("New Haven", "USA", 100),
    ("Boston", "USA", 100),
    ("Chapel Hill", "USA", 100),
    ("Gainesville", "USA", 100),
    ("Denver", "USA", 100),
    ("Los Angeles", "USA", 100),
    ("Seattle", "USA", 100),
    ("New York", "USA", 100),
    ("Madrid", "Spain", 50),
    ("Barcelona", "Spain", 50),
    ("Rio de Janeiro", "Brasil", 50),
    ("Sao Paulo", "Brasil", 50),
    ("Mexico City", "Mexico", 84),
    ("Nur-Sultan", "Kazakhstan", 15),
]

BOSTON_SAMPLE = {"Boston": 50}
BSD_SAMPLE = {"Boston": 50, "Denver": 62, "Seattle": 78}

MOCK_LABELS = {
    "sex": "Gender",
    "race": "Race",
    "age": "Age, years",
    "bmi": "Body Mass Index (kg/m2)",
    "fu_time": "Follow-up (days)",
    "fu_fct": "Vital Status",
}

# per-arm adverse event rates
AE_RATES = {
    "ae_blood_clot": (0.04, 0.03, 0.05),
    "ae_vomiting": (0.15, 0.08, 0.20),
    "ae_diarrhea": (0.24, 0.11, 0.22),
    "ae_neuropathy": (0.06, 0.28, 0.12),
    "ae_low_wbc": (0.12, 0.22, 0.17),
}


def _with_missing(rng: np.random.Generator, values: np.ndarray, rate: float) -> np.ndarray:
    values = values.astype(float)
    values[rng.random(len(values)) < rate] = np.nan
    return values


def generate_mockstudy(n: int = MOCKSTUDY_ROWS, seed: int = 1984) -> pd.DataFrame:
    """
    Synthesize the clinical mock study.

    Parameters
    ----------
    n : int
        Number of patients (default: 1499, the size ``assign_sites`` expects)
    seed : int
        Random seed

    Returns
    -------
    pd.DataFrame
        One row per patient, with snake_case columns
    """
    if n < 1:
        raise ValueError(f"n must be positive, got {n}")

    rng = np.random.default_rng(seed)

    arm_idx = rng.choice(len(ARMS), size=n, p=[0.28, 0.46, 0.26])
    arm = np.array(ARMS)[arm_idx]
    age = np.clip(np.round(rng.normal(60, 11.5, size=n)), 19, 88).astype(int)
    sex = rng.choice(["Male", "Female"], size=n, p=[0.6, 0.4])
    race = rng.choice(RACES, size=n, p=RACE_PROBS)
    race = np.where(rng.random(n) < 0.005, None, race)

    ps = _with_missing(rng, rng.choice([0, 1, 2], size=n, p=[0.4, 0.5, 0.1]), 0.18)
    hgb = _with_missing(rng, np.round(rng.normal(12.3, 1.6, size=n), 1), 0.18)
    bmi = _with_missing(rng, np.round(rng.lognormal(np.log(27), 0.2, size=n), 2), 0.02)
    alk_phos = _with_missing(rng, np.round(rng.lognormal(np.log(120), 0.6, size=n)), 0.18)
    ast = _with_missing(rng, np.round(rng.lognormal(np.log(28), 0.5, size=n)), 0.18)
    mdquality_s = _with_missing(rng, (rng.random(n) < 0.9).astype(int), 0.17)

    # hazard depends on arm and performance score
    arm_effect = np.array([1.0, 0.8, 0.9])[arm_idx]
    ps_effect = 1 + 0.3 * np.nan_to_num(ps, nan=1.0)
    fu_time = np.ceil(rng.exponential(620 / (arm_effect * ps_effect))).astype(int)
    censor_time = rng.uniform(30, 2200, size=n)
    fu_stat = np.where(fu_time <= censor_time, 2, 1)
    fu_time = np.minimum(fu_time, np.ceil(censor_time).astype(int))

    age_ord = pd.cut(
        age,
        bins=[0, 19, 29, 39, 49, 59, 69, 79, 120],
        labels=["10-19", "20-29", "30-39", "40-49", "50-59", "60-69", "70-79", "80-89"],
    ).astype(str)

    df = pd.DataFrame(
        {
            "case": np.arange(1, n + 1),
            "age": age,
            "arm": arm,
            "sex": sex,
            "race": race,
            "fu_time": fu_time,
            "fu_stat": fu_stat,
            "ps": ps,
            "hgb": hgb,
            "bmi": bmi,
            "alk_phos": alk_phos,
            "ast": ast,
            "mdquality_s": mdquality_s,
            "age_ord": age_ord,
        }
    )

    for col in AE_COLUMNS:
        rates = np.array(AE_RATES[col])[arm_idx]
        df[col] = (rng.random(n) < rates).astype(int)

    logger.info(f"Generated mock study: {n} patients, {len(ARMS)} arms")
    return df


def assign_sites(df: pd.DataFrame) -> pd.DataFrame:
    """Add ``site`` and ``country`` columns in fixed row blocks."""
    if len(df) != MOCKSTUDY_ROWS:
        raise ValueError(
            f"Site blocks cover exactly {MOCKSTUDY_ROWS} rows, data has {len(df)}"
        )

    df = df.copy()
    df["site"] = np.repeat([s for s, _, _ in SITE_BLOCKS], [k for _, _, k in SITE_BLOCKS])
    df["country"] = np.repeat([c for _, c, _ in SITE_BLOCKS], [k for _, _, k in SITE_BLOCKS])
    return df


def add_target_counts(df: pd.DataFrame, arm_col: str = "arm") -> pd.DataFrame:
    """
    Add the per-site enrollment target.

    ``n_target`` is the site's row count divided by the number of arms,
    rounded up.
    """
    n_arms = df[arm_col].nunique()
    df = df.copy()
    per_site = df.groupby(["site", "country"])["site"].transform("size")
    df["n_target"] = np.ceil(per_site / n_arms).astype(int)
    return df


def sample_sites(
    df: pd.DataFrame,
    sizes: Dict[str, int],
    seed: Optional[int] = 1984,
) -> pd.DataFrame:
    """
    Randomly sample patients per site, without replacement.

    Parameters
    ----------
    df : pd.DataFrame
        Mock study with a ``site`` column
    sizes : dict
        ``{site: sample size}``
    seed : int, optional
        Random seed

    Returns
    -------
    pd.DataFrame
        Concatenated samples, in the order of ``sizes``
    """
    rng = np.random.default_rng(seed)
    samples = []

    for site, size in sizes.items():
        rows = df[df["site"] == site]
        if rows.empty:
            raise ValueError(f"Site '{site}' not found in data")
        if size > len(rows):
            raise ValueError(
                f"Cannot sample {size} rows from site '{site}' with {len(rows)} rows"
            )
        samples.append(rows.sample(n=size, random_state=rng))

    return pd.concat(samples).reset_index(drop=True)


def count_enrollment(sample: pd.DataFrame) -> pd.DataFrame:
    """Count sampled patients by arm, site, country and target."""
    return (
        sample.groupby(["arm", "site", "country", "n_target"])
        .size()
        .reset_index(name="n")
    )


def prepare_mockdata(
    df: pd.DataFrame,
    exclude_sites: Sequence[str] = ("Nur-Sultan",),
) -> pd.DataFrame:
    """
    Prepare the mock study for reporting.

    Adverse-event indicators become categorical, vital status is decoded
    into ``fu_fct`` (Lived/Died), and excluded sites are dropped.
    """
    df = df.copy()

    for col in [c for c in df.columns if c.startswith("ae_")]:
        df[col] = pd.Categorical(df[col])

    df["fu_fct"] = pd.Categorical(
        df["fu_stat"].map({1: "Lived", 2: "Died"}),
        categories=["Lived", "Died"],
    )

    if "site" in df.columns and exclude_sites:
        n_before = len(df)
        df = df[~df["site"].isin(list(exclude_sites))].reset_index(drop=True)
        logger.info(f"Excluded sites {list(exclude_sites)}: {n_before - len(df)} rows dropped")

    df.attrs["labels"] = dict(MOCK_LABELS)
    return df


def proportion_survived(df: pd.DataFrame, arm_col: str = "arm") -> pd.DataFrame:
    """
    Proportion of patients alive at last follow-up, per arm.

    Arms with no survivors are kept with a proportion of 0.
    """
    counts = (
        df.groupby([arm_col, "fu_fct"], observed=False)
        .size()
        .rename("by_surv")
        .reset_index()
    )
    if not isinstance(df["fu_fct"].dtype, pd.CategoricalDtype):
        full = pd.MultiIndex.from_product(
            [counts[arm_col].unique(), ["Lived", "Died"]], names=[arm_col, "fu_fct"]
        )
        counts = (
            counts.set_index([arm_col, "fu_fct"])
            .reindex(full, fill_value=0)
            .reset_index()
        )

    counts["arm_total"] = counts.groupby(arm_col, observed=False)["by_surv"].transform("sum")
    counts["prop"] = counts["by_surv"] / counts["arm_total"]
    lived = counts[counts["fu_fct"] == "Lived"].reset_index(drop=True)
    lived["fu_fct"] = lived["fu_fct"].astype(str)
    return lived


def adverse_event_frequencies(df: pd.DataFrame, arm_col: str = "arm") -> pd.DataFrame:
    """
    Adverse-event frequencies per arm.

    Returns
    -------
    pd.DataFrame
        ``arm``, ``per_arm``, ``ae_type``, ``n`` (patients with the event)
        and ``ae_prop = n / per_arm``
    """
    ae_cols = [c for c in df.columns if c.startswith("ae_")]
    if not ae_cols:
        raise ValueError("No adverse event (ae_*) columns found")

    per_arm = df.groupby(arm_col).size().rename("per_arm")
    long = df[[arm_col] + ae_cols].melt(id_vars=arm_col, var_name="ae_type", value_name="value")
    events = long[long["value"].astype(str) == "1"]

    freq = (
        events.groupby([arm_col, "ae_type"])
        .size()
        .rename("n")
        .reset_index()
        .merge(per_arm.reset_index(), on=arm_col)
    )
    freq["ae_type"] = pd.Categorical(freq["ae_type"], categories=ae_cols)
    freq = freq.sort_values([arm_col, "ae_type"]).reset_index(drop=True)
    freq["ae_prop"] = freq["n"] / freq["per_arm"]
    return freq[[arm_col, "per_arm", "ae_type", "n", "ae_prop"]]


def export_site_samples(
    df: pd.DataFrame,
    out_dir: Union[str, Path],
    seed: int = 1984,
) -> Dict[str, Path]:
    """
    Export enrollment counts for the Boston and Boston/Denver/Seattle samples.

    Writes ``mockboston.csv`` and ``mockbsd.csv``; each sample is drawn with
    ``seed``.
    """
    out_dir = Path(out_dir)
    targets = df if "n_target" in df.columns else add_target_counts(df)

    paths = {}
    for stem, sizes in [("mockboston", BOSTON_SAMPLE), ("mockbsd", BSD_SAMPLE)]:
        counts = count_enrollment(sample_sites(targets, sizes, seed=seed))
        paths[stem] = write_csv(counts, out_dir / f"{stem}.csv")
        logger.info(f"Saved {stem} enrollment counts ({int(counts['n'].sum())} patients)")

    return paths
