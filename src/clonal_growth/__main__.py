"""Command-line validation sweep.

Run the configured sweep and print summary tables::

    python -m clonal_growth
    python -m clonal_growth --n 50 100 --birth-rate 1 --death-rate 0.5 0.9 \\
        --replicates 200 --methods internal_lengths logistic_growth --output summary.csv
"""

from __future__ import annotations

import argparse
import logging
import sys

from clonal_growth.config.environment import detect_cpu_count
from clonal_growth.config.settings import get_typed_config
from clonal_growth.domain.errors import ClonalGrowthError
from clonal_growth.domain.events import UNIT_FAILED, Event, EventBus
from clonal_growth.domain.models import SweepConfig
from clonal_growth.evaluation.harness import run_sweep
from clonal_growth.evaluation.metrics import (
    format_coverage_table,
    format_cutoff_table,
    format_summary_table,
)
from clonal_growth.inference.estimators import ESTIMATORS

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line argument parser.

    Returns
    -------
    argparse.ArgumentParser
        Configured argument parser.  Options left unset fall back to the
        ``sweep`` section of the configuration.
    """
    parser = argparse.ArgumentParser(
        prog="clonal_growth",
        description="Validate clonal growth-rate estimators on simulated trees.",
    )
    parser.add_argument("--n", type=int, nargs="+", help="Sample sizes (tips per tree).")
    parser.add_argument("--birth-rate", type=float, nargs="+", help="Birth rates a.")
    parser.add_argument("--death-rate", type=float, nargs="+", help="Death rates b.")
    parser.add_argument("--clone-age", type=float, nargs="+", help="Clone ages T.")
    parser.add_argument("--replicates", type=int, help="Trees per condition.")
    parser.add_argument(
        "--methods", nargs="+", choices=sorted(ESTIMATORS), help="Estimators to run.",
    )
    parser.add_argument(
        "--max-workers", type=int,
        help="Worker processes for the sweep; 0 uses every available core.",
    )
    parser.add_argument("--seed", type=int, help="Root random seed.")
    parser.add_argument(
        "--by", choices=("n", "r"), default="n",
        help="Order summaries by sample size or growth rate (default: n).",
    )
    parser.add_argument(
        "--coverage", action="store_true", default=False,
        help="Also print coverage per diagnostic-ratio bin.",
    )
    parser.add_argument("--output", type=str, help="Write the summary table to this CSV file.")
    parser.add_argument(
        "--debug", action="store_true", default=False,
        help="Enable debug logging.",
    )
    return parser


def _configure_logging(level: str | int) -> None:
    """Set up root logger."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, run the sweep and print its summaries."""
    args = build_parser().parse_args(argv)
    app_config = get_typed_config()
    level = "DEBUG" if args.debug else str(app_config.get("logging.level", "INFO")).upper()
    _configure_logging(level)

    max_workers = args.max_workers
    if max_workers == 0:
        max_workers = detect_cpu_count()
        logger.info("Using %d worker processes", max_workers)

    try:
        config = SweepConfig.from_app_config(
            app_config,
            n=args.n, birth_rate=args.birth_rate, death_rate=args.death_rate,
            clone_age=args.clone_age, replicates=args.replicates,
            methods=args.methods, max_workers=max_workers, seed=args.seed,
        )
        bus = EventBus()
        bus.subscribe(UNIT_FAILED, _print_failure)
        result = run_sweep(config, bus=bus)
    except ClonalGrowthError as exc:
        logger.error("%s %s", exc, exc.context or "")
        return 2

    stats = result.summaries(by=args.by)
    print(format_summary_table(stats))
    print()
    print(format_cutoff_table(result.cutoff()))
    if args.coverage:
        curve = result.coverage_curve(
            bin_width=float(app_config.get("diagnostics.bin_width", 1.0)),
            n_bins=int(app_config.get("diagnostics.n_bins", 21)),
        )
        print()
        print(format_coverage_table(curve))
    if result.failures:
        print(f"\n{len(result.failures)} failed units")

    if args.output:
        result.summary_table(by=args.by).to_csv(args.output, index=False)
        logger.info("Summary table written to %s", args.output)
    return 0


def _print_failure(event: Event) -> None:
    unit = event.payload["unit"]
    print(
        f"failed: condition {unit.condition_index} tree {unit.tree_index} "
        f"{unit.method or 'simulation'}: {unit.error_type}",
        file=sys.stderr,
    )


if __name__ == "__main__":
    sys.exit(main())
