"""Coalescence-time extraction.

Turns a validated tree into the descending vector of branching times that
the logistic-growth coalescent model consumes.
"""
from __future__ import annotations

import logging

import numpy as np

from clonal_growth.domain.errors import InvalidTreeError
from clonal_growth.domain.models import CoalescenceTimes, Tree
from clonal_growth.phylo.tree import node_heights, validate_tree

logger = logging.getLogger(__name__)


def extract_coalescence_times(tree: Tree) -> CoalescenceTimes:
    """Return the branching times of *tree*, descending, with a trailing 0.

    For a tree with ``N`` tips the vector holds ``N - 1`` strictly positive
    times followed by the sentinel 0.  ``depth`` is the total depth T
    (root edge included), so ``min_t = T - t_1`` is the root edge and
    ``max_t = 2 T``.

    Raises
    ------
    InvalidTreeError
        If the tree is not rooted, binary and ultrametric, or a branching
        time is not strictly positive.
    """
    validate_tree(tree)
    heights = node_heights(tree)
    internal = np.array([heights[v] for v in tree.internal_nodes], dtype=np.float64)
    if np.any(internal <= 0.0):
        raise InvalidTreeError(
            "Branching times must be strictly positive",
            context={"tree_id": tree.tree_id, "n_zero": int(np.sum(internal <= 0.0))},
        )
    times = np.append(np.sort(internal)[::-1], 0.0)
    depth = float(tree.root_edge + heights[tree.root])
    logger.debug(
        "Tree %s: %d coalescences, depth %.4g", tree.tree_id, len(internal), depth,
    )
    return CoalescenceTimes(times=times, depth=depth)
