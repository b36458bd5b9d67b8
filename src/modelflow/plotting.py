"""
Plotting module for report figures.

Clinical mock-study figures:
- Age histogram, density by sex and boxplot by arm
- Percent survived and survival days by arm
- Adverse event frequencies
- Kaplan-Meier survival curves with an at-risk table

Modeling figures:
- Tuning results per parameter
- Variable importance
- ROC curve (classification) and predicted vs observed (regression)
- Missing data barplot

Every figure is saved as PNG and SVG. Colors are sampled from a matplotlib
colormap, starting at 30% of its range.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import matplotlib
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from lifelines import KaplanMeierFitter
from lifelines.plotting import add_at_risk_counts
from matplotlib.patches import Patch
from matplotlib.ticker import MaxNLocator, PercentFormatter
from scipy.stats import gaussian_kde

from modelflow.grid import PARAMETERS
from modelflow.metrics import calculate_roc_curve_data, metric_direction
from modelflow.models import get_model_name

logger = logging.getLogger(__name__)

DEFAULT_PALETTE = "viridis"
AE_MARKERS = ["o", "s", "D", "^", "v"]

# Plot styling
plt.rcParams.update(
    {
        "font.size": 11,
        "axes.labelsize": 12,
        "axes.titlesize": 13,
        "xtick.labelsize": 11,
        "ytick.labelsize": 11,
        "legend.fontsize": 11,
        "figure.titlesize": 14,
        "figure.dpi": 150,
        "axes.spines.top": False,
        "axes.spines.right": False,
    }
)


def _save_figure(fig: plt.Figure, output_path: Optional[Path], description: str):
    """Save PNG and SVG variants for a figure."""
    if not output_path:
        return

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=300, bbox_inches="tight")
    svg_path = output_path.with_suffix(".svg")
    fig.savefig(svg_path, bbox_inches="tight")
    logger.info(f"Saved {description} to {output_path} and {svg_path}")


def palette_colors(palette: str, n: int, begin: float = 0.3) -> np.ndarray:
    """``n`` RGBA colors from a colormap, sampled over ``[begin, 1]``."""
    try:
        cmap = matplotlib.colormaps[palette]
    except KeyError:
        raise ValueError(f"Unknown palette: {palette}") from None
    if n <= 1:
        return cmap(np.array([begin]))
    return cmap(np.linspace(begin, 1.0, n))


def _levels(series: pd.Series) -> List[Any]:
    if isinstance(series.dtype, pd.CategoricalDtype):
        return [c for c in series.cat.categories if (series == c).any()]
    return sorted(series.dropna().unique().tolist(), key=str)


def plot_age_histogram(
    df: pd.DataFrame,
    palette: str = DEFAULT_PALETTE,
    output_path: Optional[Path] = None,
):
    """Histogram of age (20 bins)."""
    fig, ax = plt.subplots(figsize=(7, 5))
    ax.hist(df["age"].dropna(), bins=20, color=palette_colors(palette, 1)[0], edgecolor="white")
    ax.set_xlabel("Age")
    ax.set_ylabel("Count")
    ax.yaxis.set_major_locator(MaxNLocator(integer=True))
    plt.tight_layout()

    _save_figure(fig, output_path, "age histogram")
    plt.close(fig)


def plot_age_density(
    df: pd.DataFrame,
    by: str = "sex",
    palette: str = DEFAULT_PALETTE,
    output_path: Optional[Path] = None,
):
    """Gaussian kernel density of age per group."""
    groups = _levels(df[by])
    colors = palette_colors(palette, len(groups))
    ages = df["age"].dropna()
    grid = np.linspace(ages.min(), ages.max(), 200)

    fig, ax = plt.subplots(figsize=(7, 5))
    for group, color in zip(groups, colors):
        values = df.loc[df[by] == group, "age"].dropna().to_numpy(dtype=float)
        if len(values) < 2:
            logger.warning(f"Skipping density for {by}={group}: fewer than 2 values")
            continue
        density = gaussian_kde(values)(grid)
        ax.fill_between(grid, density, color=color, alpha=0.8, edgecolor="white", label=str(group))

    ax.set_xlabel("Age, years")
    ax.set_ylabel("Density")
    ax.set_title(f"Age Distributions by {by}")
    ax.legend(title=by)
    plt.tight_layout()

    _save_figure(fig, output_path, "age density")
    plt.close(fig)


def _dodged_positions(n_x: int, n_hue: int, width: float = 0.8) -> np.ndarray:
    """x positions (n_x, n_hue) for side-by-side groups."""
    step = width / n_hue
    offsets = -width / 2 + step / 2 + step * np.arange(n_hue)
    return np.arange(n_x)[:, None] + offsets[None, :]


def plot_age_boxplot(
    df: pd.DataFrame,
    x: str = "arm",
    hue: str = "sex",
    palette: str = DEFAULT_PALETTE,
    output_path: Optional[Path] = None,
):
    """Age boxplots by ``x``, side by side for each ``hue`` level."""
    x_levels = _levels(df[x])
    hue_levels = _levels(df[hue])
    colors = palette_colors(palette, len(hue_levels))
    positions = _dodged_positions(len(x_levels), len(hue_levels))
    width = 0.8 / len(hue_levels) * 0.9

    fig, ax = plt.subplots(figsize=(8, 5))
    for j, (level, color) in enumerate(zip(hue_levels, colors)):
        data = [
            df.loc[(df[x] == xv) & (df[hue] == level), "age"].dropna().to_numpy()
            for xv in x_levels
        ]
        bp = ax.boxplot(data, positions=positions[:, j], widths=width, patch_artist=True)
        for box in bp["boxes"]:
            box.set_facecolor(color)
            box.set_alpha(0.8)

    ax.set_xticks(np.arange(len(x_levels)))
    ax.set_xticklabels([str(v) for v in x_levels])
    ax.set_xlabel("Arm" if x == "arm" else x)
    ax.set_ylabel("Age, years")
    ax.legend(
        handles=[Patch(facecolor=c, alpha=0.8, label=str(h)) for h, c in zip(hue_levels, colors)],
        title=hue,
    )
    plt.tight_layout()

    _save_figure(fig, output_path, "age boxplot")
    plt.close(fig)


def plot_survival_percent(
    prop_surv: pd.DataFrame,
    palette: str = DEFAULT_PALETTE,
    output_path: Optional[Path] = None,
):
    """Percent survived per arm, from ``mockstudy.proportion_survived``."""
    fig, ax = plt.subplots(figsize=(7, 5))
    ax.bar(prop_surv["arm"].astype(str), prop_surv["prop"], color=palette_colors(palette, 1)[0])
    ax.yaxis.set_major_formatter(PercentFormatter(1.0, decimals=1))
    ax.set_xlabel("Study Arm")
    ax.set_ylabel("Percent Survived")
    plt.tight_layout()

    _save_figure(fig, output_path, "percent survived")
    plt.close(fig)


def plot_survival_days(
    df: pd.DataFrame,
    palette: str = DEFAULT_PALETTE,
    output_path: Optional[Path] = None,
):
    """Follow-up days by arm: violins with narrow boxplots, dodged by vital status."""
    arms = _levels(df["arm"])
    statuses = _levels(df["fu_fct"])
    colors = palette_colors(palette, len(statuses))
    positions = _dodged_positions(len(arms), len(statuses), width=0.9)

    fig, ax = plt.subplots(figsize=(8, 5))
    for j, (status, color) in enumerate(zip(statuses, colors)):
        for i, arm in enumerate(arms):
            days = df.loc[(df["arm"] == arm) & (df["fu_fct"] == status), "fu_time"].dropna()
            if len(days) < 2:
                continue
            parts = ax.violinplot([days], positions=[positions[i, j]], widths=0.4, showextrema=False)
            for body in parts["bodies"]:
                body.set_facecolor(color)
                body.set_edgecolor("none")
                body.set_alpha(0.6)
            bp = ax.boxplot(
                [days],
                positions=[positions[i, j]],
                widths=0.08,
                patch_artist=True,
                flierprops={"markerfacecolor": "black", "markersize": 4},
            )
            for box in bp["boxes"]:
                box.set_facecolor(color)
                box.set_edgecolor("white")
                box.set_alpha(0.8)

    ax.set_xticks(np.arange(len(arms)))
    ax.set_xticklabels([str(a) for a in arms])
    ax.set_xlabel("Study Arm")
    ax.set_ylabel("Survival Time in\nDays (Censored)")
    ax.legend(
        handles=[Patch(facecolor=c, alpha=0.6, label=str(s)) for s, c in zip(statuses, colors)],
        title="Follow-up status:",
        loc="lower center",
        bbox_to_anchor=(0.5, 1.0),
        ncol=len(statuses),
        frameon=False,
    )
    plt.tight_layout()

    _save_figure(fig, output_path, "survival days")
    plt.close(fig)


def plot_adverse_events(
    ae_freq: pd.DataFrame,
    palette: str = DEFAULT_PALETTE,
    output_path: Optional[Path] = None,
):
    """Adverse event proportions by type, one marker per arm."""
    arms = _levels(ae_freq["arm"])
    colors = palette_colors(palette, len(arms))
    if isinstance(ae_freq["ae_type"].dtype, pd.CategoricalDtype):
        ae_types = [str(a) for a in ae_freq["ae_type"].cat.categories]
    else:
        ae_types = list(dict.fromkeys(ae_freq["ae_type"].astype(str)))
    y_pos = {ae: i for i, ae in enumerate(ae_types)}

    fig, ax = plt.subplots(figsize=(8, 5))
    for k, (arm, color) in enumerate(zip(arms, colors)):
        sub = ae_freq[ae_freq["arm"] == arm]
        ax.scatter(
            sub["ae_prop"],
            [y_pos[str(a)] for a in sub["ae_type"]],
            s=60,
            facecolor=color,
            edgecolor="black",
            marker=AE_MARKERS[k % len(AE_MARKERS)],
            label=str(arm),
            zorder=3,
        )

    ax.set_yticks(range(len(ae_types)))
    ax.set_yticklabels(ae_types)
    ax.xaxis.set_major_formatter(PercentFormatter(1.0, decimals=0))
    upper = max(0.3, float(ae_freq["ae_prop"].max()) * 1.05) if len(ae_freq) else 0.3
    ax.set_xlim(0, upper)
    ax.set_xlabel("Percent of patients")
    ax.set_title("Frequency of adverse events by type and treatment arm")
    ax.grid(axis="x", alpha=0.3)
    ax.legend(title="Treatment arm")
    plt.tight_layout()

    _save_figure(fig, output_path, "adverse events")
    plt.close(fig)


def plot_survival_curve(
    df: pd.DataFrame,
    time: str = "fu_time",
    status: str = "fu_stat",
    by: str = "arm",
    event_value: Any = 2,
    palette: str = DEFAULT_PALETTE,
    output_path: Optional[Path] = None,
):
    """
    Kaplan-Meier curves per group.

    Shows confidence bands, horizontal/vertical median survival lines and an
    at-risk table below the axes.
    """
    data = df[[time, status, by]].dropna()
    groups = _levels(data[by])
    colors = palette_colors(palette, len(groups))

    fig, ax = plt.subplots(figsize=(9, 6))
    fitters = []
    for group, color in zip(groups, colors):
        mask = data[by] == group
        kmf = KaplanMeierFitter()
        kmf.fit(
            data.loc[mask, time],
            event_observed=(data.loc[mask, status] == event_value).astype(int),
            label=str(group),
        )
        kmf.plot_survival_function(ax=ax, ci_show=True, color=color)
        fitters.append(kmf)

        median = kmf.median_survival_time_
        if np.isfinite(median):
            ax.hlines(0.5, 0, median, colors="gray", linestyles="--", linewidth=1)
            ax.vlines(median, 0, 0.5, colors="gray", linestyles="--", linewidth=1)

    ax.set_xlabel("Time")
    ax.set_ylabel("Survival probability")
    ax.set_ylim(0, 1.02)
    ax.legend(title=by)
    add_at_risk_counts(*fitters, ax=ax)
    plt.tight_layout()

    _save_figure(fig, output_path, "survival curves")
    plt.close(fig)


def plot_tuning_results(
    tune_results,
    metric: Optional[str] = None,
    palette: str = DEFAULT_PALETTE,
    output_path: Optional[Path] = None,
):
    """Mean resampled metric against each tuned parameter, with standard errors."""
    metric = tune_results._check_metric(metric)
    summary = tune_results.collect_metrics()
    summary = summary[summary[".metric"] == metric]
    params = tune_results.param_names
    if not params:
        logger.warning("No tuned parameters to plot")
        return

    color = palette_colors(palette, 1)[0]
    fig, axes = plt.subplots(1, len(params), figsize=(5 * len(params), 4.5), squeeze=False)

    for ax, name in zip(axes[0], params):
        ax.errorbar(
            summary[name],
            summary["mean"],
            yerr=summary["std_err"].fillna(0),
            fmt="o",
            color=color,
            ecolor="gray",
            alpha=0.8,
            capsize=2,
        )
        param = PARAMETERS.get(name)
        if param is not None and param.trans == "log10":
            ax.set_xscale("log")
        ax.set_xlabel(param.label if param is not None else name)
        ax.set_ylabel(metric)
        ax.grid(alpha=0.3)

    direction = "higher" if metric_direction(metric) == "maximize" else "lower"
    fig.suptitle(
        f"{get_model_name(tune_results.workflow.model.model_type)} tuning "
        f"({metric}, {direction} is better)"
    )
    plt.tight_layout()

    _save_figure(fig, output_path, "tuning results")
    plt.close(fig)


def plot_variable_importance(
    fitted,
    top_n: int = 20,
    palette: str = DEFAULT_PALETTE,
    output_path: Optional[Path] = None,
):
    """Top ``top_n`` variables by importance; colored by coefficient sign when available."""
    vi = fitted.variable_importance().head(top_n).iloc[::-1]

    if "Sign" in vi.columns:
        pos, neg = palette_colors(palette, 2)
        colors = [pos if s == "POS" else neg for s in vi["Sign"]]
    else:
        colors = [palette_colors(palette, 1)[0]] * len(vi)

    fig, ax = plt.subplots(figsize=(8, max(4, 0.35 * len(vi))))
    ax.barh(vi["Variable"], vi["Importance"], color=colors)
    ax.set_xlabel("Importance")
    ax.set_ylabel("")
    if "Sign" in vi.columns:
        ax.legend(
            handles=[Patch(facecolor=pos, label="POS"), Patch(facecolor=neg, label="NEG")],
            title="Sign",
            loc="lower right",
        )
    plt.tight_layout()

    _save_figure(fig, output_path, "variable importance")
    plt.close(fig)


def plot_roc_curve(
    predictions: pd.DataFrame,
    truth: str,
    event_level: Any,
    palette: str = DEFAULT_PALETTE,
    output_path: Optional[Path] = None,
    title: str = "ROC Curve",
):
    """
    ROC curve for the event class.

    Resampled predictions (with an ``id`` column) get one curve per resample.
    """
    prob_col = f".pred_{event_level}"
    if prob_col not in predictions.columns:
        raise ValueError(f"Probability column '{prob_col}' not found in predictions")

    if "id" in predictions.columns:
        groups = list(predictions.groupby("id", sort=True))
    else:
        groups = [("test set", predictions)]
    colors = palette_colors(palette, len(groups))

    fig, ax = plt.subplots(figsize=(7, 6.5))
    for (name, group), color in zip(groups, colors):
        y_true = (group[truth] == event_level).astype(int).to_numpy()
        if len(np.unique(y_true)) < 2:
            logger.warning(f"Skipping ROC curve for {name}: only one class present")
            continue
        fpr, tpr, _ = calculate_roc_curve_data(y_true, group[prob_col].to_numpy())
        ax.plot(fpr, tpr, color=color, lw=2, alpha=0.8, label=str(name))

    ax.plot([0, 1], [0, 1], "k--", lw=1)
    ax.set_xlabel("1 - Specificity")
    ax.set_ylabel("Sensitivity")
    ax.set_aspect("equal")
    ax.set_title(title)
    if len(groups) <= 10:
        ax.legend(loc="lower right")
    ax.grid(alpha=0.3)
    plt.tight_layout()

    _save_figure(fig, output_path, "ROC curve")
    plt.close(fig)


def plot_predicted_vs_observed(
    predictions: pd.DataFrame,
    truth: str,
    palette: str = DEFAULT_PALETTE,
    output_path: Optional[Path] = None,
    title: str = "Predicted vs Observed",
):
    """Scatter of ``.pred`` against the truth, with the identity line."""
    observed = predictions[truth].to_numpy(dtype=float)
    predicted = predictions[".pred"].to_numpy(dtype=float)

    fig, ax = plt.subplots(figsize=(6.5, 6.5))
    ax.scatter(observed, predicted, color=palette_colors(palette, 1)[0], alpha=0.6, edgecolor="white")
    lo = np.nanmin([observed.min(), predicted.min()])
    hi = np.nanmax([observed.max(), predicted.max()])
    ax.plot([lo, hi], [lo, hi], "k--", lw=1)
    ax.set_xlabel(f"Observed {truth}")
    ax.set_ylabel(f"Predicted {truth}")
    ax.set_title(title)
    ax.grid(alpha=0.3)
    plt.tight_layout()

    _save_figure(fig, output_path, "predicted vs observed")
    plt.close(fig)


def plot_missing_data(
    completion_rates: Dict[str, float],
    retained_features: List[str],
    threshold: float = 0.90,
    output_path: Optional[Path] = None,
    title: str = "Missing Data Percentage by Feature",
):
    """
    Barplot of the percentage of missing values per feature.

    Gray bars are retained features, red bars are features dropped by the
    completion threshold.
    """
    features = sorted(completion_rates, key=lambda f: completion_rates[f])
    missing_pct = np.array([(1 - completion_rates[f]) * 100 for f in features])
    retained = [f in retained_features for f in features]

    fig, ax = plt.subplots(figsize=(9, max(4, 0.3 * len(features))))
    y_pos = np.arange(len(features))
    ax.barh(
        y_pos,
        missing_pct,
        color=["gray" if r else "red" for r in retained],
        edgecolor=["#404040" if r else "#8B0000" for r in retained],
        alpha=0.7,
    )
    ax.axvline((1 - threshold) * 100, color="black", linestyle="--", linewidth=1.5)

    ax.set_yticks(y_pos)
    ax.set_yticklabels(features)
    ax.set_xlabel("Missing Data (%)")
    ax.set_title(title)
    ax.grid(axis="x", alpha=0.3, linestyle="--")
    ax.legend(
        handles=[
            Patch(facecolor="gray", alpha=0.7, label="Retained features"),
            Patch(facecolor="red", alpha=0.7, label="Dropped features"),
            plt.Line2D([0], [0], color="black", linestyle="--",
                       label=f"Inclusion threshold ({threshold * 100:.0f}% complete)"),
        ],
        loc="lower right",
    )
    plt.tight_layout()

    _save_figure(fig, output_path, "missing data plot")
    plt.close(fig)


def plot_all_model_figures(
    tune_results,
    final_fit,
    output_dir: Path,
    metric: Optional[str] = None,
    palette: str = DEFAULT_PALETTE,
    completion_rates: Optional[Dict[str, float]] = None,
    retained_features: Optional[List[str]] = None,
    threshold: float = 0.0,
):
    """
    Generate all modeling figures.

    Parameters
    ----------
    tune_results : TuneResults
        Tuning results
    final_fit : LastFit
        Final fit evaluated on the test set
    output_dir : Path
        Directory to save figures
    metric : str, optional
        Metric for the tuning plot
    palette : str
        Colormap name
    completion_rates, retained_features, threshold : optional
        Missing data summary from ``io.prepare_dataset``
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Generating model figures...")

    if tune_results.param_names:
        plot_tuning_results(
            tune_results, metric, palette=palette, output_path=output_dir / "tuning_results.png"
        )

    fitted = final_fit.fitted_workflow
    try:
        plot_variable_importance(
            fitted, palette=palette, output_path=output_dir / "variable_importance.png"
        )
    except ValueError as e:
        logger.warning(f"Skipping variable importance plot: {e}")

    predictions = final_fit.collect_predictions()
    truth = tune_results.workflow.outcome
    if fitted.mode == "classification":
        plot_roc_curve(
            predictions,
            truth,
            fitted.event_level,
            palette=palette,
            output_path=output_dir / "roc_curve.png",
        )
    else:
        plot_predicted_vs_observed(
            predictions, truth, palette=palette, output_path=output_dir / "predicted_vs_observed.png"
        )

    if completion_rates:
        plot_missing_data(
            completion_rates,
            retained_features or list(completion_rates),
            threshold=threshold,
            output_path=output_dir / "missing_data.png",
        )

    logger.info(f"All model figures saved to {output_dir}")


def plot_all_clinical_figures(
    mockdata: pd.DataFrame,
    prop_surv: pd.DataFrame,
    ae_freq: pd.DataFrame,
    output_dir: Path,
    palette: str = DEFAULT_PALETTE,
):
    """Generate all mock-study figures."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Generating clinical figures...")

    plot_age_histogram(mockdata, palette, output_path=output_dir / "age_histogram.png")
    plot_age_density(mockdata, "sex", palette, output_path=output_dir / "age_density.png")
    plot_age_boxplot(mockdata, "arm", "sex", palette, output_path=output_dir / "age_boxplot.png")
    plot_survival_percent(prop_surv, palette, output_path=output_dir / "survival_percent.png")
    plot_survival_days(mockdata, palette, output_path=output_dir / "survival_days.png")
    plot_adverse_events(ae_freq, palette, output_path=output_dir / "adverse_events.png")
    plot_survival_curve(mockdata, palette=palette, output_path=output_dir / "survival_curve.png")

    logger.info(f"All clinical figures saved to {output_dir}")
