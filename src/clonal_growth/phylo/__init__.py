"""Lineage trees -- construction, coalescence times, diagnostics, simulation.

- **Trees**: building and validating rooted binary ultrametric trees.
- **Coalescence**: the descending branching-time vector used by the
  logistic-growth model.
- **Diagnostics**: the external/internal branch length ratio that decides
  whether supercritical approximations apply.
- **Simulator**: birth-death clone genealogies from the coalescent point
  process.
"""

from __future__ import annotations

from clonal_growth.phylo.coalescence import extract_coalescence_times
from clonal_growth.phylo.diagnostics import (
    DEFAULT_RATIO_CUTOFF,
    check_applicability,
    diagnostic_ratio,
    is_applicable,
    partition_branch_lengths,
)
from clonal_growth.phylo.simulator import (
    expand_per_replicate,
    sample_node_depths,
    simulate_trees,
)
from clonal_growth.phylo.tree import (
    branching_times,
    build_tree,
    node_heights,
    tree_depth,
    tree_from_node_depths,
    validate_tree,
)

__all__ = [
    # Trees
    "build_tree",
    "tree_from_node_depths",
    "validate_tree",
    "node_heights",
    "branching_times",
    "tree_depth",
    # Coalescence
    "extract_coalescence_times",
    # Diagnostics
    "DEFAULT_RATIO_CUTOFF",
    "partition_branch_lengths",
    "diagnostic_ratio",
    "check_applicability",
    "is_applicable",
    # Simulator
    "expand_per_replicate",
    "sample_node_depths",
    "simulate_trees",
]
