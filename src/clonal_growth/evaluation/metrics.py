"""Accuracy, coverage and cutoff metrics over batches of growth-rate estimates.

All reductions are sums and counts over sorted inputs, so they do not
depend on the order in which parallel tasks finished.  Coverage is
reported as ``None`` when a batch, bin or partition holds no usable
interval.
"""
from __future__ import annotations

import logging
import math
from collections import defaultdict
from typing import Any, Iterable, Sequence

import numpy as np
import pandas as pd

from clonal_growth.domain.errors import DegenerateBatchError
from clonal_growth.domain.models import (
    CoverageBin,
    CoverageCurve,
    EstimateResult,
    SummaryStats,
)
from clonal_growth.phylo.diagnostics import DEFAULT_RATIO_CUTOFF

logger = logging.getLogger(__name__)

_SUMMARY_COLUMNS = [
    "method", "n", "true_growth_rate", "clone_age", "n_results",
    "mean_estimate", "median_estimate", "sd_estimate", "rmse", "coverage",
    "mean_runtime_s", "sd_runtime_s", "n_diverged", "n_inapplicable",
]


# ---------------------------------------------------------------------------
# Coverage
# ---------------------------------------------------------------------------

def _sort_key(result: EstimateResult) -> tuple[Any, ...]:
    return (
        result.method, result.n, result.true_growth_rate or 0.0,
        result.clone_age or 0.0,
        -1 if result.tree_index is None else result.tree_index, result.tree_id,
    )


def _truth_of(result: EstimateResult, truth: float | None) -> float:
    value = truth if truth is not None else result.true_growth_rate
    if value is None:
        raise DegenerateBatchError(
            "Result carries no ground-truth growth rate",
            context={"tree_id": result.tree_id, "method": result.method},
        )
    return float(value)


def coverage_probability(
    results: Iterable[EstimateResult],
    true_growth_rate: float | None = None,
) -> float | None:
    """Fraction of intervals containing the true growth rate.

    Each result is compared against *true_growth_rate* when given, else
    against its own ``true_growth_rate``.  Results whose interval could
    not be computed (non-finite bounds) are excluded; ``None`` is
    returned when nothing remains.
    """
    hits = total = 0
    for r in results:
        if not (math.isfinite(r.lower_bound) and math.isfinite(r.upper_bound)):
            continue
        total += 1
        hits += int(r.covers(_truth_of(r, true_growth_rate)))
    return hits / total if total else None


def _normalized_rmse(results: Sequence[EstimateResult], truth: float | None = None) -> float:
    errors = [
        (r.estimate - _truth_of(r, truth)) / _truth_of(r, truth)
        for r in results if math.isfinite(r.estimate)
    ]
    if not errors:
        return float("nan")
    return float(np.sqrt(np.mean(np.square(errors))))


# ---------------------------------------------------------------------------
# Summary statistics
# ---------------------------------------------------------------------------

def summarize(
    results: Sequence[EstimateResult],
    ground_truth_growth_rate: float | None = None,
    clone_age: float | None = None,
) -> SummaryStats:
    """Aggregate a homogeneous batch into :class:`SummaryStats`.

    Parameters
    ----------
    results:
        Estimates sharing method, tip count and ground truth.
    ground_truth_growth_rate:
        True growth rate ``r``.  Defaults to the value carried by the
        results.
    clone_age:
        Clone age recorded on the summary.  Defaults to the value carried
        by the results.

    Returns
    -------
    SummaryStats
        RMSE is normalised by the true growth rate and computed over
        finite estimates.

    Raises
    ------
    DegenerateBatchError
        If *results* is empty or mixes methods, tip counts or ground
        truths.
    """
    if not results:
        raise DegenerateBatchError("Cannot summarise an empty batch")
    ordered = sorted(results, key=_sort_key)

    methods = {r.method for r in ordered}
    tips = {r.n for r in ordered}
    carried = {r.true_growth_rate for r in ordered if r.true_growth_rate is not None}
    if ground_truth_growth_rate is not None:
        carried.add(float(ground_truth_growth_rate))
    if len(methods) != 1 or len(tips) != 1 or len(carried) > 1:
        raise DegenerateBatchError(
            "Batch mixes methods, tip counts or ground truths",
            context={
                "methods": sorted(methods), "n": sorted(tips),
                "true_growth_rate": sorted(carried),
            },
        )
    if not carried:
        raise DegenerateBatchError("No ground-truth growth rate for batch")
    truth = carried.pop()
    if clone_age is None:
        ages = {r.clone_age for r in ordered if r.clone_age is not None}
        clone_age = ages.pop() if len(ages) == 1 else None

    estimates = np.array([r.estimate for r in ordered], dtype=np.float64)
    finite = estimates[np.isfinite(estimates)]
    runtimes = np.array([r.runtime_s for r in ordered], dtype=np.float64)
    sd = float(np.std(finite, ddof=1)) if len(finite) > 1 else float("nan")

    return SummaryStats(
        method=methods.pop(),
        n=tips.pop(),
        true_growth_rate=truth,
        clone_age=clone_age,
        n_results=len(ordered),
        mean_estimate=float(np.mean(finite)) if len(finite) else float("nan"),
        median_estimate=float(np.median(finite)) if len(finite) else float("nan"),
        sd_estimate=sd,
        rmse=_normalized_rmse(ordered, truth),
        coverage=coverage_probability(ordered, truth),
        mean_runtime_s=float(np.mean(runtimes)),
        sd_runtime_s=float(np.std(runtimes, ddof=1)) if len(runtimes) > 1 else 0.0,
        n_diverged=sum(1 for r in ordered if r.diverged),
        n_inapplicable=sum(1 for r in ordered if not r.applicable),
    )


def summarize_by(
    results: Sequence[EstimateResult], by: str = "n",
) -> list[SummaryStats]:
    """One :class:`SummaryStats` per homogeneous group, ordered by *by*.

    Groups are keyed on (method, n, true growth rate, clone age) so that
    every aggregate is homogeneous; ``by="n"`` orders them by sample size
    within each method and ``by="r"`` by growth rate.
    """
    if by not in ("n", "r"):
        raise ValueError(f"by must be 'n' or 'r', got {by!r}")
    groups: dict[tuple[Any, ...], list[EstimateResult]] = defaultdict(list)
    for r in results:
        truth = _truth_of(r, None)
        groups[(r.method, r.n, truth, r.clone_age)].append(r)

    def order(key: tuple[Any, ...]) -> tuple[Any, ...]:
        method, n, truth, age = key
        age = -1.0 if age is None else age
        return (method, n, truth, age) if by == "n" else (method, truth, n, age)

    return [summarize(groups[key]) for key in sorted(groups, key=order)]


# ---------------------------------------------------------------------------
# Ratio-binned coverage
# ---------------------------------------------------------------------------

def coverage_by_ratio_bin(
    results: Sequence[EstimateResult],
    bin_width: float = 1.0,
    n_bins: int = 21,
) -> CoverageCurve:
    """Coverage per method within ratio bins ``[i w, (i + 1) w)``, ``i = 0..n_bins-1``.

    Results whose ratio falls outside every bin (or is NaN) are left out.
    Empty bins are kept with ``count=0`` and ``coverage=None``.
    """
    if bin_width <= 0 or n_bins < 1:
        raise ValueError("bin_width must be positive and n_bins >= 1")
    binned: dict[tuple[str, int], list[EstimateResult]] = defaultdict(list)
    methods = sorted({r.method for r in results})
    dropped = 0
    for r in sorted(results, key=_sort_key):
        ratio = r.ext_int_ratio
        idx = int(math.floor(ratio / bin_width)) if math.isfinite(ratio) else -1
        if not 0 <= idx < n_bins:
            dropped += 1
            continue
        binned[(r.method, idx)].append(r)
    if dropped:
        logger.debug("%d results outside the ratio bins", dropped)

    bins = []
    for method in methods:
        for i in range(n_bins):
            members = binned.get((method, i), [])
            bins.append(CoverageBin(
                lower=i * bin_width,
                upper=(i + 1) * bin_width,
                method=method,
                count=len(members),
                coverage=coverage_probability(members) if members else None,
            ))
    return CoverageCurve(bins=tuple(bins))


# ---------------------------------------------------------------------------
# Applicability cutoff
# ---------------------------------------------------------------------------

def apply_cutoff(
    results: Sequence[EstimateResult],
    threshold: float = DEFAULT_RATIO_CUTOFF,
) -> tuple[list[EstimateResult], list[EstimateResult]]:
    """Partition into ``(passing, failing)`` by ``ext_int_ratio >= threshold``.

    NaN ratios fail.
    """
    passing: list[EstimateResult] = []
    failing: list[EstimateResult] = []
    for r in sorted(results, key=_sort_key):
        (passing if r.ext_int_ratio >= threshold else failing).append(r)
    return passing, failing


def compare_cutoff(
    results: Sequence[EstimateResult],
    threshold: float = DEFAULT_RATIO_CUTOFF,
) -> list[dict[str, Any]]:
    """Per-method RMSE and coverage on each side of the cutoff.

    Errors are normalised per result by its own true growth rate, so the
    comparison may pool several simulated conditions.  Returns one record
    per (method, partition) with ``count``, ``rmse`` and ``coverage``
    (``None`` for an empty partition).
    """
    passing, failing = apply_cutoff(results, threshold)
    records: list[dict[str, Any]] = []
    for method in sorted({r.method for r in results}):
        for label, part in (("passing", passing), ("failing", failing)):
            members = [r for r in part if r.method == method]
            records.append({
                "method": method,
                "partition": label,
                "threshold": float(threshold),
                "count": len(members),
                "rmse": _normalized_rmse(members) if members else None,
                "coverage": coverage_probability(members) if members else None,
            })
    return records


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

def summary_table(stats: Sequence[SummaryStats]) -> pd.DataFrame:
    """Tabular summary records, one row per :class:`SummaryStats`."""
    rows = [{col: getattr(s, col) for col in _SUMMARY_COLUMNS} for s in stats]
    return pd.DataFrame(rows, columns=_SUMMARY_COLUMNS)


def coverage_table(curve: CoverageCurve) -> pd.DataFrame:
    return pd.DataFrame(
        curve.to_records(), columns=["lower", "upper", "method", "count", "coverage"],
    )


def _fmt(value: Any, spec: str) -> str:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "N/A"
    return format(value, spec)


def format_summary_table(stats: Sequence[SummaryStats]) -> str:
    """Format summaries as a markdown table.

    | Method | n | r | Age | Runs | Median | RMSE | Coverage | Runtime (s) |
    """
    lines = [
        "| Method | n | r | Age | Runs | Median | RMSE | Coverage | Runtime (s) |",
        "| :--- | ---: | ---: | ---: | ---: | ---: | ---: | ---: | ---: |",
    ]
    for s in stats:
        lines.append(
            f"| {s.method} | {s.n} | {_fmt(s.true_growth_rate, '.3g')} "
            f"| {_fmt(s.clone_age, '.3g')} | {s.n_results} "
            f"| {_fmt(s.median_estimate, '.3f')} | {_fmt(s.rmse, '.3f')} "
            f"| {_fmt(s.coverage, '.1%')} | {_fmt(s.mean_runtime_s, '.3f')} |"
        )
    return "\n".join(lines)


def format_cutoff_table(records: Sequence[dict[str, Any]]) -> str:
    """Format :func:`compare_cutoff` records as a markdown table."""
    lines = [
        "| Method | Partition | Count | RMSE | Coverage |",
        "| :--- | :--- | ---: | ---: | ---: |",
    ]
    for rec in records:
        lines.append(
            f"| {rec['method']} | {rec['partition']} (ratio "
            f"{'>=' if rec['partition'] == 'passing' else '<'} {rec['threshold']:g}) "
            f"| {rec['count']} | {_fmt(rec['rmse'], '.3f')} "
            f"| {_fmt(rec['coverage'], '.1%')} |"
        )
    return "\n".join(lines)


def format_coverage_table(curve: CoverageCurve) -> str:
    """Format a coverage curve as a markdown table, one row per non-empty bin."""
    lines = [
        "| Method | Ratio bin | Count | Coverage |",
        "| :--- | :--- | ---: | ---: |",
    ]
    for b in curve.bins:
        if b.count == 0:
            continue
        lines.append(
            f"| {b.method} | [{b.lower:g}, {b.upper:g}) | {b.count} "
            f"| {_fmt(b.coverage, '.1%')} |"
        )
    return "\n".join(lines)
