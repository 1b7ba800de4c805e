"""Validation of growth-rate estimators on simulated clones.

Provides accuracy and coverage summaries, ratio-binned coverage curves,
the applicability cutoff comparison, and the sweep harness that produces
the estimates they score.
"""
from clonal_growth.evaluation.harness import (
    SweepResult,
    build_conditions,
    estimator_options,
    run_sweep,
)
from clonal_growth.evaluation.metrics import (
    apply_cutoff,
    compare_cutoff,
    coverage_by_ratio_bin,
    coverage_probability,
    coverage_table,
    format_coverage_table,
    format_cutoff_table,
    format_summary_table,
    summarize,
    summarize_by,
    summary_table,
)

__all__ = [
    "SweepResult",
    "build_conditions",
    "estimator_options",
    "run_sweep",
    "coverage_probability",
    "summarize",
    "summarize_by",
    "coverage_by_ratio_bin",
    "apply_cutoff",
    "compare_cutoff",
    "summary_table",
    "coverage_table",
    "format_coverage_table",
    "format_summary_table",
    "format_cutoff_table",
]
