"""
Data I/O module for loading and filtering tabular datasets.

Responsibilities:
- Load CSV data from a local path or an HTTP(S) URL
- Clean column names to snake_case
- Join tables on free-text natural keys (episode names, site names)
- Select predictors and apply a completion filter
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^0-9a-zA-Z]+")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def _is_url(source: Union[str, Path]) -> bool:
    return isinstance(source, str) and source.lower().startswith(("http://", "https://"))


def clean_names(df: pd.DataFrame) -> pd.DataFrame:
    """
    Convert column names to snake_case.

    ``"Episode Name"`` becomes ``episode_name``, ``"fuTime"`` becomes
    ``fu_time``. Names that collide after cleaning get a ``_2``, ``_3``...
    suffix so that no column is lost.

    Parameters
    ----------
    df : pd.DataFrame
        Input dataframe

    Returns
    -------
    pd.DataFrame
        Copy of the dataframe with cleaned column names
    """
    cleaned = []
    seen: Dict[str, int] = {}

    for col in df.columns:
        name = _CAMEL_BOUNDARY.sub("_", str(col))
        name = _NON_ALNUM.sub("_", name).strip("_").lower()
        if not name:
            name = "x"
        if name[0].isdigit():
            name = f"x{name}"

        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 1
        cleaned.append(name)

    out = df.copy()
    out.columns = cleaned
    return out


def load_data(
    source: Union[str, Path],
    outcome: Optional[str] = None,
    clean: bool = True,
    **read_kwargs: Any,
) -> pd.DataFrame:
    """
    Load a rectangular dataset from CSV.

    Parameters
    ----------
    source : str or Path
        Local path or HTTP(S) URL of a CSV file
    outcome : str, optional
        Outcome column that must be present after cleaning
    clean : bool
        Whether to convert column names to snake_case (default: True)
    **read_kwargs
        Passed through to ``pd.read_csv``

    Returns
    -------
    pd.DataFrame
        Loaded dataframe
    """
    if _is_url(source):
        logger.info(f"Downloading data from {source}")
    else:
        source = Path(source)
        if not source.exists():
            raise FileNotFoundError(f"Data file not found: {source}")
        logger.info(f"Loading data from {source}")

    df = pd.read_csv(source, **read_kwargs)
    logger.info(f"Loaded data with shape {df.shape}")

    if clean:
        df = clean_names(df)

    if outcome is not None and outcome not in df.columns:
        raise ValueError(
            f"Outcome column '{outcome}' not found. "
            f"Available columns: {list(df.columns)}"
        )

    return df


def write_csv(df: pd.DataFrame, path: Union[str, Path]) -> Path:
    """Write a table to CSV, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    logger.info(f"Saved {len(df)} rows to {path}")
    return path


def normalize_key(values: pd.Series) -> pd.Series:
    """
    Normalize a free-text key for joining.

    Lower-cases and removes punctuation and whitespace, so that
    ``"The Dundies"`` and ``"the dundies."`` match.
    """
    return (
        values.astype("string")
        .str.lower()
        .str.replace(r"[^0-9a-z]", "", regex=True)
    )


def join_on_key(
    left: pd.DataFrame,
    right: pd.DataFrame,
    on: str,
    how: str = "inner",
    right_on: Optional[str] = None,
) -> pd.DataFrame:
    """
    Join two tables on a normalized natural key.

    Parameters
    ----------
    left, right : pd.DataFrame
        Tables to join
    on : str
        Key column in ``left`` (and in ``right`` unless ``right_on`` is given)
    how : str
        Join type passed to ``DataFrame.merge`` (default: inner)
    right_on : str, optional
        Key column in ``right`` when named differently

    Returns
    -------
    pd.DataFrame
        Joined table. Row identity of ``left`` is preserved.
    """
    right_on = right_on or on

    if on not in left.columns:
        raise ValueError(f"Key column '{on}' not found in left table")
    if right_on not in right.columns:
        raise ValueError(f"Key column '{right_on}' not found in right table")

    left_keyed = left.copy()
    right_keyed = right.copy()
    left_keyed["_join_key"] = normalize_key(left_keyed[on])
    right_keyed["_join_key"] = normalize_key(right_keyed[right_on])

    duplicated = right_keyed["_join_key"].duplicated(keep=False)
    if duplicated.any():
        examples = right_keyed.loc[duplicated, right_on].head(5).tolist()
        raise ValueError(
            f"Join key '{right_on}' is not unique in the right table "
            f"(e.g. {examples}); joining would duplicate rows"
        )

    right_keyed = right_keyed.drop(columns=[right_on]) if right_on == on else right_keyed

    unmatched = ~left_keyed["_join_key"].isin(right_keyed["_join_key"])
    if unmatched.any():
        logger.info(
            f"{int(unmatched.sum())}/{len(left_keyed)} rows have no match on '{on}'"
        )
        logger.debug(f"Unmatched keys: {left_keyed.loc[unmatched, on].head(10).tolist()}")

    joined = left_keyed.merge(
        right_keyed,
        on="_join_key",
        how=how,
        suffixes=("", "_right"),
        validate="m:1",
    )
    return joined.drop(columns=["_join_key"])


def apply_completion_filter(
    df: pd.DataFrame,
    feature_cols: List[str],
    threshold: float = 0.90,
    outcome: Optional[str] = None,
) -> Tuple[pd.DataFrame, List[str], Dict[str, float]]:
    """
    Filter features to retain only those with ≥ threshold completion rate.

    Parameters
    ----------
    df : pd.DataFrame
        Input dataframe
    feature_cols : list
        List of feature column names to filter
    threshold : float
        Minimum completion rate
    outcome : str, optional
        Outcome column appended to the returned frame

    Returns
    -------
    df_filtered : pd.DataFrame
        Dataframe with only retained features (plus outcome)
    retained_features : list
        List of feature names that passed the filter
    completion_rates : dict
        Dictionary mapping feature names to their completion rates (0-1)
    """
    completion_rates = {}
    for col in feature_cols:
        completion_rates[col] = float(1 - df[col].isna().mean())

    retained_features = [
        col for col, rate in completion_rates.items() if rate >= threshold
    ]

    logger.info(
        f"Completion filter (≥{threshold*100:.0f}%): "
        f"{len(retained_features)}/{len(feature_cols)} features retained"
    )

    dropped_features = set(feature_cols) - set(retained_features)
    if dropped_features:
        logger.info(f"Dropped {len(dropped_features)} features due to low completion:")
        for col in sorted(dropped_features):
            logger.info(f"  {col}: {completion_rates[col]*100:.1f}% complete")

    keep = list(retained_features)
    if outcome is not None and outcome in df.columns:
        keep.append(outcome)

    return df[keep].copy(), retained_features, completion_rates


def prepare_dataset(
    source: Union[str, Path, pd.DataFrame],
    config: Dict[str, Any],
) -> Tuple[pd.DataFrame, List[str], Dict[str, float]]:
    """
    Complete data preparation pipeline.

    Steps:
    1. Load data (or take an already loaded frame)
    2. Drop configured columns and excluded rows
    3. Detect predictors (everything but outcome and id columns)
    4. Apply completion filter
    5. Drop rows with a missing outcome

    Parameters
    ----------
    source : str, Path or pd.DataFrame
        CSV path/URL, or a dataframe
    config : dict
        Configuration dictionary. Reads ``outcome``, ``id_columns``,
        ``drop_columns``, ``rows_exclude`` and ``completion_threshold``.

    Returns
    -------
    df_clean : pd.DataFrame
        Cleaned dataframe with id columns, retained features and the outcome
    feature_names : list
        List of predictor column names
    completion_rates : dict
        Completion rate of every candidate predictor
    """
    outcome = config.get("outcome")
    if not outcome:
        raise ValueError("Config must name an 'outcome' column")

    if isinstance(source, pd.DataFrame):
        df = clean_names(source)
        if outcome not in df.columns:
            raise ValueError(
                f"Outcome column '{outcome}' not found. "
                f"Available columns: {list(df.columns)}"
            )
    else:
        df = load_data(source, outcome=outcome)

    drop_columns = [c for c in config.get("drop_columns") or [] if c in df.columns]
    if drop_columns:
        df = df.drop(columns=drop_columns)
        logger.info(f"Dropped columns: {drop_columns}")

    for col, values in (config.get("rows_exclude") or {}).items():
        if col not in df.columns:
            logger.warning(f"rows_exclude column '{col}' not found; ignoring")
            continue
        before = len(df)
        df = df[~df[col].isin(values)]
        logger.info(f"Excluded {before - len(df)} rows where {col} in {values}")

    id_columns = [c for c in config.get("id_columns") or [] if c in df.columns]
    predictors = [c for c in df.columns if c != outcome and c not in id_columns]

    if not predictors:
        raise ValueError("No predictor columns left after dropping outcome and ids!")

    df_filtered, feature_names, completion_rates = apply_completion_filter(
        df=df,
        feature_cols=predictors,
        threshold=config.get("completion_threshold", 0.0),
        outcome=outcome,
    )
    df_clean = pd.concat([df[id_columns], df_filtered], axis=1)

    missing_outcome = df_clean[outcome].isna()
    if missing_outcome.any():
        logger.warning(f"Dropping {int(missing_outcome.sum())} rows with missing outcome")
        df_clean = df_clean[~missing_outcome]

    df_clean = df_clean.reset_index(drop=True)

    logger.info(
        f"Final dataset: {df_clean.shape[0]} rows, {len(feature_names)} predictors"
    )

    missing_pct = df_clean[feature_names].isna().mean() * 100
    if missing_pct.sum() > 0:
        logger.info(
            f"Remaining missing values (handled by recipe): "
            f"{missing_pct[missing_pct > 0].round(1).to_dict()}"
        )

    return df_clean, feature_names, completion_rates


def stack_sides(
    df: pd.DataFrame,
    sides: Dict[str, str],
    stats: List[str],
    members: List[str],
    keep: Optional[List[str]] = None,
    outcome: str = "outcome",
    pattern: str = "{side}_{member}_tot_{stat}",
) -> pd.DataFrame:
    """
    Reshape one-row-per-contest data into one row per side.

    Each side's statistics are summed over its members, e.g. with the default
    pattern ``w_p1_tot_kills + w_p2_tot_kills`` becomes ``kills`` on the
    winners' row. Rows with a missing statistic are dropped.

    Parameters
    ----------
    df : pd.DataFrame
        Wide data, one row per contest
    sides : dict
        ``{column prefix: outcome label}``, e.g. ``{"w": "win", "l": "lose"}``
    stats : list
        Statistic names to sum
    members : list
        Member names per side, e.g. ``["p1", "p2"]``
    keep : list, optional
        Contest-level columns copied to every side
    outcome : str
        Name of the column holding the side label
    pattern : str
        Column name template with ``side``, ``member`` and ``stat`` fields

    Returns
    -------
    pd.DataFrame
        Long data: ``keep`` columns, one column per statistic and ``outcome``
    """
    keep = list(keep or [])
    missing = [c for c in keep if c not in df.columns]
    for side in sides:
        for stat in stats:
            for member in members:
                col = pattern.format(side=side, member=member, stat=stat)
                if col not in df.columns:
                    missing.append(col)
    if missing:
        raise ValueError(f"Columns not found for stacking: {missing[:10]}")

    frames = []
    for side, label in sides.items():
        part = df[keep].copy()
        for stat in stats:
            cols = [pattern.format(side=side, member=m, stat=stat) for m in members]
            part[stat] = df[cols].sum(axis=1, min_count=len(cols))
        part[outcome] = label
        frames.append(part)

    stacked = pd.concat(frames, ignore_index=True)
    n_before = len(stacked)
    stacked = stacked.dropna(subset=stats).reset_index(drop=True)
    logger.info(
        f"Stacked {len(df)} rows into {len(stacked)} side rows "
        f"({n_before - len(stacked)} dropped for missing statistics)"
    )
    return stacked
