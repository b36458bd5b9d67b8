"""
Descriptive summary tables by group.

- summary_table: per-group counts/percentages for categorical variables and
  summary statistics for numeric variables, with a test p-value per variable
- survival_table: Kaplan-Meier events, median survival and survival at
  chosen times per group, with a log-rank p-value

Tables are long data frames (one row per statistic) that save to CSV and
render to Markdown with footnotes naming the tests used.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from lifelines import KaplanMeierFitter
from lifelines.statistics import multivariate_logrank_test
from lifelines.utils import median_survival_times
from scipy import stats

logger = logging.getLogger(__name__)

TEST_NAMES = {
    "chisq": "Pearson's Chi-squared test",
    "fisher": "Fisher's Exact Test for Count Data",
    "anova": "Linear Model ANOVA",
    "kwt": "Kruskal-Wallis rank sum test",
    "logrank": "Log-rank test",
}

NUMERIC_STATS = ("meansd", "median", "q1q3", "range", "nmiss")

STAT_LABELS = {
    "nmiss": "N-Miss",
    "meansd": "Mean (SD)",
    "median": "Median",
    "q1q3": "Q1, Q3",
    "range": "Range",
}


def label_columns(df: pd.DataFrame, labels: Dict[str, str]) -> pd.DataFrame:
    """
    Attach display labels to columns.

    Labels are kept in ``df.attrs["labels"]`` and merged with any existing
    ones. Returns a copy.
    """
    unknown = set(labels) - set(df.columns)
    if unknown:
        raise ValueError(f"Cannot label missing columns: {sorted(unknown)}")

    df = df.copy()
    merged = dict(df.attrs.get("labels", {}))
    merged.update(labels)
    df.attrs["labels"] = merged
    return df


def get_label(df: pd.DataFrame, column: str) -> str:
    return df.attrs.get("labels", {}).get(column, column)


def _format_p(p: float, digits_p: int) -> str:
    if p is None or np.isnan(p):
        return ""
    floor = 10.0 ** -digits_p
    if p < floor:
        return f"< {floor:.{digits_p}f}"
    return f"{p:.{digits_p}f}"


def _is_numeric(series: pd.Series) -> bool:
    return pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series)


def _default_test(series: pd.Series) -> str:
    if isinstance(series.dtype, pd.CategoricalDtype) or not _is_numeric(series):
        return "chisq"
    return "anova"


def _levels(series: pd.Series) -> List[Any]:
    if isinstance(series.dtype, pd.CategoricalDtype):
        return list(series.cat.categories)
    return sorted(series.dropna().unique().tolist(), key=str)


def _categorical_p(values: pd.Series, groups: pd.Series, test: str) -> float:
    mask = values.notna() & groups.notna()
    table = pd.crosstab(values[mask], groups[mask])
    table = table.loc[table.sum(axis=1) > 0, table.sum(axis=0) > 0]
    if table.shape[0] < 2 or table.shape[1] < 2:
        return np.nan

    if test == "fisher":
        if table.shape != (2, 2):
            raise ValueError(
                f"Fisher's exact test needs a 2x2 table, got {table.shape[0]}x{table.shape[1]}"
            )
        return float(stats.fisher_exact(table.to_numpy())[1])

    return float(stats.chi2_contingency(table.to_numpy())[1])


def _numeric_p(values: pd.Series, groups: pd.Series, group_levels: Sequence, test: str) -> float:
    samples = [values[(groups == g) & values.notna()].to_numpy(dtype=float) for g in group_levels]
    samples = [s for s in samples if len(s) > 0]
    if len(samples) < 2:
        return np.nan
    if test == "kwt":
        return float(stats.kruskal(*samples).pvalue)
    return float(stats.f_oneway(*samples).pvalue)


def _numeric_cells(values: pd.Series, stat: str, digits: int) -> str:
    x = values.dropna().astype(float)
    if stat == "nmiss":
        return str(int(values.isna().sum()))
    if x.empty:
        return "NA"
    if stat == "meansd":
        sd = x.std(ddof=1) if len(x) > 1 else np.nan
        return f"{x.mean():.{digits}f} ({sd:.{digits}f})"
    if stat == "median":
        return f"{x.median():.{digits}f}"
    if stat == "q1q3":
        return f"{x.quantile(0.25):.{digits}f}, {x.quantile(0.75):.{digits}f}"
    if stat == "range":
        return f"{x.min():.{digits}f} - {x.max():.{digits}f}"
    raise ValueError(f"Unknown numeric statistic: {stat}")


def _variable_options(variables, df: pd.DataFrame) -> Dict[str, Dict[str, Any]]:
    """Normalize ``variables`` into ``{column: {"test": ..., **overrides}}``."""
    if isinstance(variables, dict):
        items = variables.items()
    else:
        items = [(col, None) for col in variables]

    options = {}
    for col, opt in items:
        if col not in df.columns:
            raise ValueError(f"Variable '{col}' not found in data")
        if opt is None:
            opt = {}
        elif isinstance(opt, str):
            opt = {"test": opt}
        else:
            opt = dict(opt)
        opt.setdefault("test", _default_test(df[col]))
        if opt["test"] not in ("chisq", "fisher", "anova", "kwt"):
            raise ValueError(
                f"Unknown test '{opt['test']}' for {col}. "
                "Available: ['chisq', 'fisher', 'anova', 'kwt']"
            )
        options[col] = opt
    return options


def _group_columns(df: pd.DataFrame, by: str):
    if by not in df.columns:
        raise ValueError(f"Grouping column '{by}' not found in data")
    group_levels = _levels(df[by])
    sizes = df[by].value_counts()
    names = {g: f"{g} (N={int(sizes.get(g, 0))})" for g in group_levels}
    total_name = f"Total (N={int(df[by].notna().sum())})"
    return group_levels, names, total_name


def summary_table(
    df: pd.DataFrame,
    by: str,
    variables: Union[Sequence[str], Dict[str, Any]],
    numeric_stats: Sequence[str] = ("meansd", "range"),
    digits: int = 2,
    digits_p: int = 2,
    digits_pct: int = 1,
    total: bool = True,
) -> pd.DataFrame:
    """
    Summarize variables by group, with a test per variable.

    Parameters
    ----------
    df : pd.DataFrame
        Data; display labels are read from ``df.attrs["labels"]``
    by : str
        Grouping column (rows with a missing group are dropped)
    variables : list or dict
        Columns to summarize. A dict maps each column to a test name
        (``chisq``, ``fisher``, ``anova``, ``kwt``) or to a dict of options
        such as ``{"test": "anova", "digits": 1}``. Numeric columns default
        to ``anova`` and the rest to ``chisq``.
    numeric_stats : sequence
        Statistics for numeric variables, from ``NUMERIC_STATS``.
        ``N-Miss`` is always shown when values are missing.
    digits, digits_p, digits_pct : int
        Decimal places for statistics, p-values and percentages
    total : bool
        Include a Total column

    Returns
    -------
    pd.DataFrame
        Columns ``variable``, ``label``, ``term``, one column per group,
        ``Total``, ``p value`` and ``test``. Header rows (empty ``term``)
        carry the p-value; ``attrs["footnotes"]`` lists the tests used.
    """
    bad = [s for s in numeric_stats if s not in NUMERIC_STATS]
    if bad:
        raise ValueError(f"Unknown numeric statistics {bad}. Available: {list(NUMERIC_STATS)}")

    if by not in df.columns:
        raise ValueError(f"Grouping column '{by}' not found in data")

    options = _variable_options(variables, df)
    data = df[df[by].notna()]
    group_levels, group_names, total_name = _group_columns(data, by)
    groups = data[by]

    rows = []
    tests_used = []

    for col, opt in options.items():
        test = opt["test"]
        values = data[col]
        label = get_label(df, col)

        if test in ("chisq", "fisher"):
            p = _categorical_p(values, groups, test)
        else:
            if not _is_numeric(values):
                raise ValueError(f"Test '{test}' needs a numeric variable, '{col}' is {values.dtype}")
            p = _numeric_p(values, groups, group_levels, test)

        if test not in tests_used:
            tests_used.append(test)

        header = {"variable": col, "label": label, "term": ""}
        for g in group_levels:
            header[group_names[g]] = ""
        if total:
            header[total_name] = ""
        header["p value"] = _format_p(p, opt.get("digits_p", digits_p))
        header["test"] = test
        rows.append(header)

        subsets = [(group_names[g], values[groups == g]) for g in group_levels]
        if total:
            subsets.append((total_name, values))

        if test in ("chisq", "fisher"):
            pct_digits = opt.get("digits_pct", digits_pct)
            if values.isna().any():
                row = {"variable": col, "label": label, "term": "N-Miss"}
                for name, subset in subsets:
                    row[name] = str(int(subset.isna().sum()))
                rows.append(row)
            for level in _levels(values):
                row = {"variable": col, "label": label, "term": str(level)}
                for name, subset in subsets:
                    n_level = int((subset == level).sum())
                    denom = int(subset.notna().sum())
                    pct = 100.0 * n_level / denom if denom else 0.0
                    row[name] = f"{n_level} ({pct:.{pct_digits}f}%)"
                rows.append(row)
        else:
            stat_digits = opt.get("digits", digits)
            stats_here = list(opt.get("numeric_stats", numeric_stats))
            if values.isna().any() and "nmiss" not in stats_here:
                stats_here = ["nmiss"] + stats_here
            for stat in stats_here:
                row = {"variable": col, "label": label, "term": STAT_LABELS[stat]}
                for name, subset in subsets:
                    row[name] = _numeric_cells(subset, stat, stat_digits)
                rows.append(row)

    columns = ["variable", "label", "term"] + [group_names[g] for g in group_levels]
    if total:
        columns.append(total_name)
    columns += ["p value", "test"]

    table = pd.DataFrame(rows, columns=columns).fillna("")
    table.attrs["footnotes"] = [TEST_NAMES[t] for t in tests_used]
    table.attrs["by"] = by
    logger.debug(f"Summary table by {by}: {len(options)} variables, tests {tests_used}")
    return table


def survival_table(
    df: pd.DataFrame,
    time: str,
    status: str,
    by: str,
    event_value: Any = 2,
    times: Optional[Sequence[float]] = None,
    digits: int = 2,
    digits_p: int = 2,
) -> pd.DataFrame:
    """
    Kaplan-Meier survival summary by group.

    Parameters
    ----------
    df : pd.DataFrame
        Data with follow-up time, status and group columns
    time : str
        Follow-up time column
    status : str
        Status column; ``status == event_value`` is an event
    by : str
        Grouping column
    event_value : any
        Status value marking an event (default: 2, died)
    times : sequence, optional
        Times at which to report the survival probability
    digits, digits_p : int
        Decimal places for estimates and p-value

    Returns
    -------
    pd.DataFrame
        Same layout as ``summary_table``, with ``Events``, ``Median
        Survival`` and ``Survival at t`` rows
    """
    for col in (time, status, by):
        if col not in df.columns:
            raise ValueError(f"Column '{col}' not found in data")

    data = df[[time, status, by]].dropna()
    durations = data[time].astype(float)
    events = (data[status] == event_value).astype(int)
    group_levels, group_names, total_name = _group_columns(data, by)

    result = multivariate_logrank_test(durations, data[by], events)
    p = float(result.p_value)

    label = f"Surv({get_label(df, time)}, {get_label(df, status)})"
    header = {"variable": time, "label": label, "term": ""}
    for g in group_levels:
        header[group_names[g]] = ""
    header[total_name] = ""
    header["p value"] = _format_p(p, digits_p)
    header["test"] = "logrank"

    event_row = {"variable": time, "label": label, "term": "Events"}
    median_row = {"variable": time, "label": label, "term": "Median Survival"}
    time_rows = {
        t: {"variable": time, "label": label, "term": f"Survival at {t:g}"} for t in (times or [])
    }

    subsets = [(group_names[g], data[by] == g) for g in group_levels]
    subsets.append((total_name, pd.Series(True, index=data.index)))

    for name, mask in subsets:
        kmf = KaplanMeierFitter()
        kmf.fit(durations[mask], event_observed=events[mask], label=name)

        event_row[name] = str(int(events[mask].sum()))

        median = kmf.median_survival_time_
        ci = median_survival_times(kmf.confidence_interval_)
        lower, upper = ci.iloc[0, 0], ci.iloc[0, 1]
        median_row[name] = (
            f"{median:.{digits}f} ({lower:.{digits}f}, {upper:.{digits}f})"
            if np.isfinite(median)
            else "NA"
        )

        for t, row in time_rows.items():
            surv = float(kmf.survival_function_at_times(t).iloc[0])
            row[name] = f"{surv:.{digits}f}"

    rows = [header, event_row, median_row] + list(time_rows.values())
    columns = ["variable", "label", "term"] + [group_names[g] for g in group_levels]
    columns += [total_name, "p value", "test"]

    table = pd.DataFrame(rows, columns=columns).fillna("")
    table.attrs["footnotes"] = [TEST_NAMES["logrank"]]
    table.attrs["by"] = by
    logger.info(f"Survival by {by}: log-rank p = {p:.4f}")
    return table


def to_markdown(table: pd.DataFrame) -> str:
    """Render a summary table to Markdown, with test footnotes."""
    footnotes = table.attrs.get("footnotes", [])
    test_numbers = {}
    for test, name in TEST_NAMES.items():
        if name in footnotes:
            test_numbers[test] = footnotes.index(name) + 1

    shown = table.copy()
    is_header = shown["term"] == ""
    shown.loc[is_header, "label"] = "**" + shown.loc[is_header, "label"] + "**"
    shown.loc[~is_header, "label"] = "&nbsp;&nbsp;&nbsp;" + shown.loc[~is_header, "term"]

    def mark(row):
        if row["p value"] and row["test"] in test_numbers:
            return f"{row['p value']}<sup>{test_numbers[row['test']]}</sup>"
        return row["p value"]

    shown["p value"] = shown.apply(mark, axis=1)
    shown = shown.drop(columns=["variable", "term", "test"]).rename(columns={"label": ""})

    lines = [shown.to_markdown(index=False), ""]
    for i, name in enumerate(footnotes, start=1):
        lines.append(f"{i}. {name}")
    return "\n".join(lines) + "\n"


def save_table(table: pd.DataFrame, out_dir: Union[str, Path], stem: str) -> Dict[str, Path]:
    """Save a summary table as CSV and Markdown."""
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    csv_path = out_dir / f"{stem}.csv"
    table.to_csv(csv_path, index=False)

    md_path = out_dir / f"{stem}.md"
    with open(md_path, "w", encoding="utf-8") as f:
        f.write(to_markdown(table))

    logger.info(f"Saved table {stem} to {out_dir}")
    return {"csv": csv_path, "md": md_path}
