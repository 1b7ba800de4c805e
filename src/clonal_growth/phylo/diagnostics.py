"""External-to-internal branch length ratio.

A high ratio means the coalescences cluster near the root (a star-like
tree), which is what a strongly supercritical, exponentially growing clone
produces and where the constant/exponential-rate approximations hold.  A
low ratio means the sample reaches back into the stochastic early phase of
the clone where they break down.
"""
from __future__ import annotations

import logging
import warnings

import numpy as np

from clonal_growth.domain.errors import InapplicableModelWarning
from clonal_growth.domain.models import Tree

logger = logging.getLogger(__name__)

DEFAULT_RATIO_CUTOFF = 3.0


def partition_branch_lengths(tree: Tree) -> tuple[float, float]:
    """Return ``(external_length, internal_length)`` of *tree*.

    External branches end in a tip; every other branch is internal.  The
    root edge belongs to neither.
    """
    graph = tree.graph
    external = 0.0
    internal = 0.0
    for parent, child, length in graph.edges(data="length", default=0.0):
        if graph.out_degree(child) == 0:
            external += float(length)
        else:
            internal += float(length)
    return external, internal


def diagnostic_ratio(tree: Tree) -> float:
    """External over internal branch length; ``inf`` when there is no internal length."""
    external, internal = partition_branch_lengths(tree)
    if internal <= 0.0:
        return float("inf") if external > 0.0 else float("nan")
    return float(external / internal)


def check_applicability(
    ratio: float,
    threshold: float = DEFAULT_RATIO_CUTOFF,
    tree_id: str = "",
) -> bool:
    """Return whether *ratio* meets *threshold*.

    Issues an :class:`InapplicableModelWarning` when it does not, so that
    interactive callers see the flag; batch code records the returned
    boolean on the result instead.
    """
    ok = is_applicable(ratio, threshold)
    if not ok:
        warnings.warn(
            f"Tree {tree_id or '?'} has ext/int ratio {ratio:.3g} < {threshold:g}; "
            "supercritical approximations may not hold",
            InapplicableModelWarning,
            stacklevel=2,
        )
    return ok


def is_applicable(ratio: float, threshold: float = DEFAULT_RATIO_CUTOFF) -> bool:
    """Non-warning form of :func:`check_applicability`; NaN is never applicable."""
    return bool(not np.isnan(ratio) and ratio >= threshold)
