#!/usr/bin/env python
"""
CLI entrypoint for the clinical mock-study report.

Builds (or loads) the mock study, assigns sites, exports the site samples,
and writes the demographic, follow-up, adverse event and survival tables
plus the accompanying figures.

Usage:
    python scripts/mock_report.py --config configs/mockstudy.yaml
    python scripts/mock_report.py --data data/mockdata.csv --output-dir reports
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from uuid import uuid4

import matplotlib

matplotlib.use("Agg")

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from modelflow.config import load_config, set_random_seeds
from modelflow.io import load_data, write_csv
from modelflow.mockstudy import (
    MOCK_LABELS,
    MOCKSTUDY_ROWS,
    add_target_counts,
    adverse_event_frequencies,
    assign_sites,
    export_site_samples,
    generate_mockstudy,
    prepare_mockdata,
    proportion_survived,
)
from modelflow.plotting import plot_all_clinical_figures
from modelflow.tables import label_columns, save_table, summary_table, survival_table

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
    parser = argparse.ArgumentParser(description="Clinical mock-study tables and figures")

    parser.add_argument(
        "--data",
        type=str,
        default=None,
        help="Mock study CSV (default: synthesize one)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default="configs/mockstudy.yaml",
        help="Path to configuration YAML file (default: configs/mockstudy.yaml)",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default="reports",
        help="Output directory for tables and figures (default: reports)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed for synthesis and site samples (overrides config)",
    )
    parser.add_argument(
        "--site-samples",
        action="store_true",
        help="Also export the Boston and Boston/Denver/Seattle enrollment samples",
    )

    return parser.parse_args()


def main():
    """Main execution function."""
    args = parse_args()

    logger.info("=" * 100)
    logger.info("MODELFLOW: Mock Study Report")
    logger.info("=" * 100)

    config = load_config(args.config)
    if args.seed is not None:
        config["random_state"] = args.seed
    seed = config.setdefault("random_state", 1984)
    config.setdefault("exclude_sites", ["Nur-Sultan"])
    config.setdefault("palette", "viridis")
    config.setdefault("survival_times", [365, 730])
    set_random_seeds(seed)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_id = f"{timestamp}_{str(uuid4())[:8]}"
    output_dir = Path(args.output_dir) / f"run_{run_id}"
    tables_dir = output_dir / "tables"
    figures_dir = output_dir / "figures"
    data_dir = output_dir / "data"
    output_dir.mkdir(parents=True, exist_ok=True)

    with open(output_dir / "run_info.json", "w") as f:
        json.dump(
            {
                "run_id": run_id,
                "timestamp": timestamp,
                "config_file": args.config,
                "data_file": args.data,
                "random_state": seed,
                "exclude_sites": config["exclude_sites"],
                "palette": config["palette"],
                "site_samples": args.site_samples,
            },
            f,
            indent=2,
        )
    logger.info(f"Run ID: {run_id}")

    # Step 1: Mock study with sites
    if args.data:
        logger.info(f"\nStep 1: Loading mock study from {args.data}")
        raw = load_data(args.data)
    else:
        logger.info(f"\nStep 1: Synthesizing mock study ({MOCKSTUDY_ROWS} patients)")
        raw = generate_mockstudy(seed=seed)

    if "site" not in raw.columns:
        raw = assign_sites(raw)
    targets = add_target_counts(raw)
    write_csv(targets, data_dir / "mockdata.csv")

    if args.site_samples:
        export_site_samples(targets, data_dir, seed=seed)

    # Step 2: Prepare for reporting
    logger.info("\nStep 2: Preparing mock data")
    mockdata = prepare_mockdata(targets, exclude_sites=config["exclude_sites"])
    mockdata = label_columns(mockdata, {k: v for k, v in MOCK_LABELS.items() if k in mockdata.columns})

    # Step 3: Tables
    logger.info("\nStep 3: Summary tables")
    demo_tab = summary_table(
        mockdata,
        by="arm",
        variables={
            "sex": "chisq",
            "race": "chisq",
            "age": {"test": "anova", "digits": 1},
            "bmi": {"test": "anova", "digits": 1},
        },
    )
    save_table(demo_tab, tables_dir, "demographics")

    fu_tab = summary_table(
        mockdata,
        by="arm",
        variables={"fu_fct": "chisq", "fu_time": {"test": "anova", "digits": 0}},
        numeric_stats=("median", "q1q3"),
    )
    save_table(fu_tab, tables_dir, "follow_up")

    ae_cols = [c for c in mockdata.columns if c.startswith("ae_")]
    ae_tab = summary_table(mockdata, by="arm", variables=ae_cols)
    save_table(ae_tab, tables_dir, "adverse_events")

    surv_tab = survival_table(
        mockdata, "fu_time", "fu_stat", by="sex", times=config["survival_times"]
    )
    save_table(surv_tab, tables_dir, "survival")

    prop_surv = proportion_survived(mockdata)
    ae_freq = adverse_event_frequencies(mockdata)
    write_csv(prop_surv, tables_dir / "proportion_survived.csv")
    write_csv(ae_freq, tables_dir / "adverse_event_frequencies.csv")

    # Step 4: Figures
    logger.info("\nStep 4: Figures")
    plot_all_clinical_figures(mockdata, prop_surv, ae_freq, figures_dir, palette=config["palette"])

    logger.info("\n" + "=" * 100)
    logger.info("Mock study report complete!")
    logger.info(f"Tables saved to: {tables_dir}")
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
