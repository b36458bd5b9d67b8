"""
Data splitting and resampling.

Includes:
- Initial training/testing split (optionally stratified)
- V-fold cross-validation (optionally repeated and stratified)
- Bootstrap resamples with out-of-bag assessment sets

Every split stores row *positions* into the original data, so that
predictions can always be joined back to the rows they came from.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import numpy as np
import pandas as pd
from sklearn.model_selection import KFold, StratifiedKFold

logger = logging.getLogger(__name__)

# Numeric strata are binned into quantiles, with at least this many rows per bin
MIN_ROWS_PER_STRATUM_BIN = 20


def _names0(n: int, prefix: str) -> List[str]:
    """Zero-padded ids: Fold01..Fold10 for n=10, Fold1..Fold5 for n=5."""
    width = len(str(n))
    return [f"{prefix}{str(i).zfill(width)}" for i in range(1, n + 1)]


def make_strata(values: pd.Series, breaks: int = 4) -> Optional[np.ndarray]:
    """
    Build integer stratum codes for a column.

    Numeric columns are binned into ``breaks`` quantile bins, reduced when
    there are fewer than ``MIN_ROWS_PER_STRATUM_BIN`` rows per bin.
    Categorical columns use their levels, with missing values as their
    own level.

    Returns
    -------
    np.ndarray or None
        Stratum code per row, or None if the data are too small to stratify
    """
    if pd.api.types.is_numeric_dtype(values) and values.nunique() > breaks:
        n_bins = min(breaks, len(values) // MIN_ROWS_PER_STRATUM_BIN)
        if n_bins < 2:
            logger.warning(
                f"Too few rows ({len(values)}) to stratify on numeric "
                f"'{values.name}'; falling back to unstratified sampling"
            )
            return None
        binned = pd.qcut(values, q=n_bins, labels=False, duplicates="drop")
        return binned.fillna(-1).astype(int).to_numpy()

    codes, _ = pd.factorize(values.astype("object"), use_na_sentinel=False)
    return codes


@dataclass
class Resample:
    """A single analysis/assessment split of a dataset."""

    id: str
    analysis_idx: np.ndarray
    assessment_idx: np.ndarray

    def analysis(self, data: pd.DataFrame) -> pd.DataFrame:
        return data.iloc[self.analysis_idx]

    def assessment(self, data: pd.DataFrame) -> pd.DataFrame:
        return data.iloc[self.assessment_idx]

    def __repr__(self) -> str:
        return (
            f"<Resample {self.id}: "
            f"{len(self.analysis_idx)}/{len(self.assessment_idx)}>"
        )


@dataclass
class Split:
    """Initial training/testing split."""

    data: pd.DataFrame
    train_idx: np.ndarray
    test_idx: np.ndarray
    strata: Optional[str] = None

    def training(self) -> pd.DataFrame:
        return self.data.iloc[self.train_idx]

    def testing(self) -> pd.DataFrame:
        return self.data.iloc[self.test_idx]

    def __repr__(self) -> str:
        return (
            f"<Training/Testing/Total> <{len(self.train_idx)}/"
            f"{len(self.test_idx)}/{len(self.data)}>"
        )


@dataclass
class ResampleSet:
    """An ordered collection of resamples over the same data."""

    data: pd.DataFrame
    resamples: List[Resample]
    method: str
    params: Dict[str, Any] = field(default_factory=dict)

    def __iter__(self) -> Iterator[Resample]:
        return iter(self.resamples)

    def __len__(self) -> int:
        return len(self.resamples)

    def __getitem__(self, item: int) -> Resample:
        return self.resamples[item]

    @property
    def ids(self) -> List[str]:
        return [r.id for r in self.resamples]


def initial_split(
    data: pd.DataFrame,
    prop: float = 0.75,
    strata: Optional[str] = None,
    seed: Optional[int] = None,
) -> Split:
    """
    Randomly split data into training and testing sets.

    Parameters
    ----------
    data : pd.DataFrame
        Data to split
    prop : float
        Proportion of rows used for training (default: 0.75)
    strata : str, optional
        Column to stratify on. Each stratum contributes ``prop`` of its rows.
    seed : int, optional
        Random seed

    Returns
    -------
    Split
        The split, with ``training()`` and ``testing()`` accessors
    """
    if not 0 < prop < 1:
        raise ValueError(f"prop must be in (0, 1), got {prop}")
    if len(data) < 2:
        raise ValueError("Need at least 2 rows to split data")

    rng = np.random.default_rng(seed)
    n = len(data)

    codes = make_strata(data[strata]) if strata is not None else None

    if codes is None:
        perm = rng.permutation(n)
        n_train = int(np.floor(prop * n))
        train_idx = perm[:n_train]
    else:
        train_parts = []
        for code in np.unique(codes):
            members = np.flatnonzero(codes == code)
            members = rng.permutation(members)
            n_take = int(np.floor(prop * len(members)))
            train_parts.append(members[:n_take])
        train_idx = np.concatenate(train_parts)

    train_idx = np.sort(train_idx)
    test_idx = np.setdiff1d(np.arange(n), train_idx)

    if len(train_idx) == 0 or len(test_idx) == 0:
        raise ValueError(
            f"Split with prop={prop} leaves an empty training or testing set "
            f"for {n} rows"
        )

    logger.info(f"Initial split: {len(train_idx)} training / {len(test_idx)} testing rows")
    return Split(data=data, train_idx=train_idx, test_idx=test_idx, strata=strata)


def vfold_cv(
    data: pd.DataFrame,
    v: int = 10,
    repeats: int = 1,
    strata: Optional[str] = None,
    seed: Optional[int] = None,
) -> ResampleSet:
    """
    V-fold cross-validation.

    The assessment sets of each repeat partition the data.

    Parameters
    ----------
    data : pd.DataFrame
        Data to resample (usually the training split)
    v : int
        Number of folds (default: 10)
    repeats : int
        Number of times to repeat the partitioning (default: 1)
    strata : str, optional
        Column to stratify on
    seed : int, optional
        Random seed

    Returns
    -------
    ResampleSet
        ``v * repeats`` resamples
    """
    n = len(data)
    if v < 2:
        raise ValueError(f"v must be at least 2, got {v}")
    if v > n:
        raise ValueError(f"v ({v}) cannot exceed the number of rows ({n})")
    if repeats < 1:
        raise ValueError(f"repeats must be at least 1, got {repeats}")

    rng = np.random.default_rng(seed)
    codes = make_strata(data[strata]) if strata is not None else None
    fold_ids = _names0(v, "Fold")
    repeat_ids = _names0(repeats, "Repeat")

    resamples = []
    for r in range(repeats):
        repeat_seed = int(rng.integers(0, 2**31 - 1))
        if codes is None:
            splitter = KFold(n_splits=v, shuffle=True, random_state=repeat_seed)
            folds = splitter.split(np.zeros(n))
        else:
            splitter = StratifiedKFold(n_splits=v, shuffle=True, random_state=repeat_seed)
            folds = splitter.split(np.zeros(n), codes)

        for fold_id, (analysis_idx, assessment_idx) in zip(fold_ids, folds):
            rid = fold_id if repeats == 1 else f"{repeat_ids[r]}_{fold_id}"
            resamples.append(
                Resample(id=rid, analysis_idx=analysis_idx, assessment_idx=assessment_idx)
            )

    logger.info(
        f"Created {len(resamples)} resamples ({v}-fold"
        f"{f', {repeats} repeats' if repeats > 1 else ''}"
        f"{f', strata={strata}' if strata else ''})"
    )
    return ResampleSet(
        data=data,
        resamples=resamples,
        method="vfold",
        params={"v": v, "repeats": repeats, "strata": strata},
    )


def bootstraps(
    data: pd.DataFrame,
    times: int = 25,
    strata: Optional[str] = None,
    seed: Optional[int] = None,
) -> ResampleSet:
    """
    Bootstrap resampling.

    Each analysis set is a sample of size ``n`` drawn with replacement
    (within strata when given); the assessment set is the out-of-bag rows.

    Parameters
    ----------
    data : pd.DataFrame
        Data to resample
    times : int
        Number of bootstrap samples (default: 25)
    strata : str, optional
        Column to stratify on
    seed : int, optional
        Random seed

    Returns
    -------
    ResampleSet
        ``times`` resamples
    """
    if times < 1:
        raise ValueError(f"times must be at least 1, got {times}")

    n = len(data)
    if n < 2:
        raise ValueError("Need at least 2 rows to bootstrap")

    rng = np.random.default_rng(seed)
    codes = make_strata(data[strata]) if strata is not None else None
    all_idx = np.arange(n)

    resamples = []
    for rid in _names0(times, "Bootstrap"):
        if codes is None:
            analysis_idx = rng.choice(all_idx, size=n, replace=True)
        else:
            parts = []
            for code in np.unique(codes):
                members = np.flatnonzero(codes == code)
                parts.append(rng.choice(members, size=len(members), replace=True))
            analysis_idx = np.concatenate(parts)

        assessment_idx = np.setdiff1d(all_idx, analysis_idx)
        if len(assessment_idx) == 0:
            logger.warning(f"{rid} has an empty out-of-bag assessment set")

        resamples.append(
            Resample(id=rid, analysis_idx=np.sort(analysis_idx), assessment_idx=assessment_idx)
        )

    logger.info(
        f"Created {times} bootstrap resamples"
        f"{f' (strata={strata})' if strata else ''}"
    )
    return ResampleSet(
        data=data,
        resamples=resamples,
        method="bootstraps",
        params={"times": times, "strata": strata},
    )


def make_resamples(data: pd.DataFrame, config: Dict[str, Any], seed: Optional[int] = None) -> ResampleSet:
    """Build resamples from the ``resampling`` section of a config."""
    method = config.get("method", "vfold")
    strata = config.get("strata")

    if method == "vfold":
        return vfold_cv(
            data,
            v=config.get("v", 10),
            repeats=config.get("repeats", 1),
            strata=strata,
            seed=seed,
        )
    if method == "bootstraps":
        return bootstraps(data, times=config.get("times", 25), strata=strata, seed=seed)

    raise ValueError(f"Unknown resampling method: {method}. Available: ['vfold', 'bootstraps']")
