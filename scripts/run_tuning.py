#!/usr/bin/env python
"""
Main CLI entrypoint for tuning a model workflow.

Usage:
    python scripts/run_tuning.py --config configs/office_lasso.yaml --seed 1234
    python scripts/run_tuning.py --config configs/volleyball_xgb.yaml --grid-size 20 --n-jobs 4
"""

import argparse
import json
import logging
import sys
import warnings
from datetime import datetime
from pathlib import Path
from uuid import uuid4

import matplotlib

matplotlib.use("Agg")

warnings.filterwarnings(
    "ignore",
    message=r"resource_tracker: .*",
    category=UserWarning,
)

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from modelflow.config import apply_defaults, load_config, set_random_seeds
from modelflow.grid import make_grid
from modelflow.io import join_on_key, load_data, prepare_dataset, stack_sides
from modelflow.metrics import DEFAULT_METRICS
from modelflow.models import get_model_name, spec_from_config
from modelflow.plotting import plot_all_model_figures
from modelflow.recipes import recipe_from_config
from modelflow.reporting import generate_all_reports
from modelflow.splitting import initial_split, make_resamples
from modelflow.tuning import fit_resamples, last_fit, tune_bayes, tune_grid, workflow_parameters
from modelflow.workflows import Workflow, finalize_workflow

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("modelflow.log", encoding="utf-8"),
    ],
)

logger = logging.getLogger(__name__)


def parse_args():
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Tune a preprocessing + model workflow with resampling"
    )

    parser.add_argument(
        "--data",
        type=str,
        default=None,
        help="Path or URL of the input CSV (overrides config 'data')",
    )

    parser.add_argument(
        "--config",
        type=str,
        default="configs/office_lasso.yaml",
        help="Path to configuration YAML file (default: configs/office_lasso.yaml)",
    )

    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed (overrides config)",
    )

    parser.add_argument(
        "--n-jobs",
        type=int,
        default=None,
        help="Number of parallel jobs over candidate x resample fits (overrides config)",
    )

    parser.add_argument(
        "--grid-size",
        type=int,
        default=None,
        help="Number of grid candidates, or levels per parameter for regular grids "
        "(overrides config)",
    )

    parser.add_argument(
        "--output-dir",
        type=str,
        default="reports",
        help="Output directory for reports and figures (default: reports)",
    )

    parser.add_argument(
        "--no-artifacts",
        dest="save_artifacts",
        action="store_false",
        help="Skip saving the fitted workflow, predictions and resample metrics",
    )
    parser.set_defaults(save_artifacts=True)

    return parser.parse_args()


def load_source(config: dict):
    """
    Load the main table, then apply the optional ``join`` and ``stack`` sections.

    ``join`` merges a second table on a natural key; ``stack`` reshapes
    one-row-per-contest data into one row per side.
    """
    df = load_data(config["data"])

    join_cfg = config.get("join")
    if join_cfg:
        right = load_data(join_cfg["source"])
        if join_cfg.get("columns"):
            right = right[[join_cfg.get("right_on", join_cfg["on"])] + list(join_cfg["columns"])]
        n_left = len(df)
        df = join_on_key(
            df,
            right,
            on=join_cfg["on"],
            how=join_cfg.get("how", "inner"),
            right_on=join_cfg.get("right_on"),
        )
        logger.info(f"Joined {n_left} x {len(right)} rows on '{join_cfg['on']}': {len(df)} rows")

    stack_cfg = config.get("stack")
    if stack_cfg:
        df = stack_sides(
            df,
            sides=stack_cfg["sides"],
            stats=stack_cfg["stats"],
            members=stack_cfg["members"],
            keep=stack_cfg.get("keep"),
            outcome=config["outcome"],
        )

    return df


def describe_resampling(resampling: dict) -> str:
    if resampling["method"] == "bootstraps":
        return f"{resampling['times']} bootstrap resamples"
    repeats = f", repeated {resampling['repeats']} times" if resampling["repeats"] > 1 else ""
    return f"{resampling['v']}-fold cross-validation{repeats}"


def main():
    """Main execution function."""
    args = parse_args()

    logger.info("=" * 100)
    logger.info("MODELFLOW: Workflow Tuning Pipeline")
    logger.info("=" * 100)

    config = load_config(args.config)

    # Override config with command-line arguments
    if args.seed is not None:
        config["random_state"] = args.seed
    if args.n_jobs is not None:
        config["n_jobs"] = args.n_jobs
    if args.data is not None:
        config["data"] = args.data
    if args.grid_size is not None:
        grid_cfg = config.setdefault("grid", {})
        grid_cfg["size"] = args.grid_size
        grid_cfg["levels"] = args.grid_size

    config = apply_defaults(config)
    seed = config["random_state"]
    set_random_seeds(seed)

    if not config.get("data"):
        raise ValueError("No data source given: pass --data or set 'data' in the config")

    # Generate unique run ID
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_id = f"{timestamp}_{str(uuid4())[:8]}"
    output_dir = Path(args.output_dir) / f"run_{run_id}"
    output_dir.mkdir(parents=True, exist_ok=True)

    run_info = {
        "run_id": run_id,
        "timestamp": timestamp,
        "config_file": args.config,
        "data": config["data"],
        "model": config["model"],
        "resampling": config["resampling"],
        "grid": config["grid"],
        "metric": config["metric"],
        "random_state": seed,
        "n_jobs": config["n_jobs"],
        "save_artifacts": args.save_artifacts,
    }
    with open(output_dir / "run_info.json", "w") as f:
        json.dump(run_info, f, indent=2, default=str)

    logger.info(f"Run ID: {run_id}")
    logger.info(f"Output directory: {output_dir}")

    # Step 1: Load and prepare data
    logger.info(f"\nStep 1: Loading data from {config['data']}")
    source = load_source(config)
    df, feature_names, completion_rates = prepare_dataset(source, config)
    outcome = config["outcome"]

    # Step 2: Split
    logger.info("\nStep 2: Splitting data")
    split = initial_split(df, prop=config["split_prop"], strata=config["strata"], seed=seed)
    logger.info(f"  {split!r}")
    resamples = make_resamples(split.training(), config["resampling"], seed=seed)
    resampling_desc = describe_resampling(config["resampling"])
    logger.info(f"  Resampling: {resampling_desc}")

    # Step 3: Workflow
    recipe = recipe_from_config(
        outcome,
        config["recipe"],
        id_columns=[c for c in config["id_columns"] if c in df.columns],
        predictors=feature_names,
    )
    model = spec_from_config(config["model"])
    workflow = Workflow(recipe, model, random_state=seed)
    logger.info(f"\nStep 3: Workflow\n{workflow!r}")

    metric = config["metric"]
    metrics = list(config["metrics"] or DEFAULT_METRICS[model.mode])
    if metric not in metrics:
        metrics.insert(0, metric)

    # Step 4: Tune (or resample)
    tuner = config.get("tuner", "grid")
    if workflow.tunable():
        params = workflow_parameters(workflow, split.training(), ranges=config["grid"]["ranges"])
        if tuner == "bayes":
            bayes_cfg = config.get("bayes", {})
            logger.info(f"\nStep 4: Bayesian tuning of {workflow.tunable()}")
            results = tune_bayes(
                workflow,
                resamples,
                params=params,
                n_iter=bayes_cfg.get("n_iter", 25),
                metrics=metrics,
                seed=seed,
                patience=bayes_cfg.get("patience", 10),
                n_jobs=config["n_jobs"],
            )
        else:
            grid = make_grid(params, config["grid"], seed=seed)
            logger.info(f"\nStep 4: Grid tuning of {workflow.tunable()} ({len(grid)} candidates)")
            results = tune_grid(
                workflow,
                resamples,
                grid=grid,
                metrics=metrics,
                n_jobs=config["n_jobs"],
                save_pred=True,
            )

        if config["select"] == "one_std_err":
            order = config.get("select_order") or results.param_names
            best_params = results.select_by_one_std_err(metric, *order)
        else:
            best_params = results.select_best(metric)
        logger.info(f"Selected ({config['select']}): {best_params}")
    else:
        logger.info("\nStep 4: No tuned arguments; resampling the workflow")
        results = fit_resamples(
            workflow, resamples, metrics=metrics, n_jobs=config["n_jobs"], save_pred=True
        )
        best_params = {}

    # Step 5: Final fit on training, evaluation on testing
    logger.info("\nStep 5: Final fit")
    final_workflow = finalize_workflow(workflow, best_params)
    final_fit = last_fit(final_workflow, split, metrics=results.metric_names)

    # Step 6: Reports and figures
    logger.info("\nStep 6: Generating reports and figures")
    generate_all_reports(
        results,
        final_fit,
        best_params,
        output_dir,
        metric=metric,
        save_artifacts=args.save_artifacts,
        resampling=resampling_desc,
    )

    figures_dir = output_dir / "figures"
    plot_all_model_figures(
        results,
        final_fit,
        figures_dir,
        metric=metric,
        palette=config.get("palette", "viridis"),
        completion_rates=completion_rates if config["completion_threshold"] > 0 else None,
        retained_features=feature_names,
        threshold=config["completion_threshold"],
    )

    logger.info("\n" + "=" * 100)
    logger.info("Pipeline complete!")
    logger.info(f"Model: {get_model_name(model.model_type)}")
    logger.info(f"Run ID: {run_id}")
    logger.info(f"Reports saved to: {output_dir / 'tables'}")
    logger.info(f"Figures saved to: {figures_dir}")
    logger.info("=" * 100 + "\n")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logger.info("\nInterrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)
