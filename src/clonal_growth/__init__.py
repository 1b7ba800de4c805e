"""Growth-rate inference for clonal expansions from lineage trees.

Fits a logistic-growth coalescent model to the branching times of a
reconstructed clone phylogeny, scores the resulting growth-rate
estimates against simulated ground truth, and flags trees whose
external/internal branch length ratio makes the model inapplicable.
"""

from __future__ import annotations

__version__ = "0.1.0"
