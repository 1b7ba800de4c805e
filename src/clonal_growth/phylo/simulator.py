"""Birth-death clone simulator based on the coalescent point process.

A clone starts from one cell at time 0 and grows by a linear birth-death
process with birth rate ``a`` and death rate ``b`` (``r = a - b > 0``).
At age ``T`` a sample of ``n`` cells is taken.  Given survival, the
population size is geometric; conditioning on at least ``n`` cells and
sampling a fraction ``y = n / N`` of them, the ``n - 1`` node depths of
the sample genealogy are i.i.d. with inverse tail

    F(t) = 1 + (y a / r) (exp(r t) - 1),      0 < t < T,

and the tree is the max-Cartesian tree of those depths.  All arithmetic
is done in log space so that ``r T`` in the hundreds does not overflow.
"""
from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from clonal_growth.domain.errors import ConfigurationError
from clonal_growth.domain.models import Tree
from clonal_growth.phylo.tree import tree_from_node_depths

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Per-replicate parameter handling
# ---------------------------------------------------------------------------

def expand_per_replicate(
    value: float | Sequence[float] | np.ndarray,
    replicates: int,
    name: str,
) -> np.ndarray:
    """Return *value* as a float array of length *replicates*.

    Scalars and length-1 sequences are broadcast; any other length must
    equal *replicates*.

    Raises
    ------
    ConfigurationError
        If the length is neither 1 nor *replicates*.
    """
    arr = np.atleast_1d(np.asarray(value, dtype=np.float64))
    if arr.ndim != 1:
        raise ConfigurationError(f"{name} must be a scalar or a 1-D array")
    if len(arr) == 1:
        return np.full(replicates, float(arr[0]))
    if len(arr) != replicates:
        raise ConfigurationError(
            f"{name} has {len(arr)} values but replicates={replicates}; "
            "pass one value or one per replicate",
            context={"parameter": name, "length": len(arr), "replicates": replicates},
        )
    return arr.copy()


# ---------------------------------------------------------------------------
# Node depth sampling
# ---------------------------------------------------------------------------

def _log_expm1(x: float) -> float:
    """``log(exp(x) - 1)`` for ``x > 0`` without overflow."""
    return float(x + np.log(-np.expm1(-x)))


def sample_node_depths(
    birth_rate: float,
    death_rate: float,
    clone_age: float,
    n: int,
    rng: np.random.Generator,
) -> tuple[np.ndarray, dict[str, float]]:
    """Draw the ``n - 1`` node depths of a sampled genealogy.

    Returns
    -------
    tuple[np.ndarray, dict[str, float]]
        Node depths in tip order and a dict with ``population_size`` and
        ``sampling_fraction``.
    """
    a, b, age = float(birth_rate), float(death_rate), float(clone_age)
    r = a - b
    decay = np.exp(-r * age)
    log_p = np.log(r) - r * age - np.log(a - b * decay)

    # Population at age T given survival is geometric(p); condition on >= n.
    e = rng.exponential()
    if log_p > -25.0:
        p = float(np.exp(log_p))
        extra = max(float(np.ceil(e / -np.log1p(-p))), 1.0)
        log_pop = float(np.log(n - 1 + extra))
    else:
        log_pop = float(np.logaddexp(np.log(n - 1), np.log(e) - log_p))
    log_alpha = np.log(n) - log_pop + np.log(a / r)

    # Conditional on depth < T: u ~ U(0, G(T)], G(T) = 1 - 1 / F(T).
    log_f_age = float(np.logaddexp(0.0, log_alpha + _log_expm1(r * age)))
    g_age = -np.expm1(-log_f_age)
    u = g_age * (1.0 - rng.random(n - 1))
    z = np.log(u) - np.log1p(-u) - log_alpha
    depths = np.minimum(np.logaddexp(0.0, z) / r, age)

    info = {
        "population_size": float(np.exp(log_pop)),
        "sampling_fraction": float(np.exp(np.log(n) - log_pop)),
    }
    return depths, info


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def simulate_trees(
    birth_rate: float | Sequence[float],
    death_rate: float | Sequence[float],
    clone_age: float | Sequence[float],
    n: int,
    replicates: int = 1,
    seed: int | np.random.Generator | None = None,
) -> list[Tree]:
    """Simulate *replicates* sampled clone genealogies with *n* tips.

    Parameters
    ----------
    birth_rate, death_rate, clone_age:
        Scalars or per-replicate arrays of length *replicates*.
    n:
        Number of sampled cells (tips), at least 2.
    replicates:
        Number of independent trees.
    seed:
        Seed or generator for reproducibility.

    Returns
    -------
    list[Tree]
        Trees whose depth equals the clone age; ``metadata`` records the
        rates, the population size and the sampling fraction.

    Raises
    ------
    ConfigurationError
        If any rate array has the wrong length, the process is not
        supercritical, or ``n < 2``.
    """
    if int(n) < 2:
        raise ConfigurationError(f"n must be at least 2, got {n}")
    if int(replicates) < 1:
        raise ConfigurationError(f"replicates must be positive, got {replicates}")
    n, replicates = int(n), int(replicates)
    a = expand_per_replicate(birth_rate, replicates, "birth_rate")
    b = expand_per_replicate(death_rate, replicates, "death_rate")
    ages = expand_per_replicate(clone_age, replicates, "clone_age")
    if np.any(b < 0) or np.any(a <= b):
        raise ConfigurationError(
            "Simulation requires 0 <= death_rate < birth_rate (supercritical clone)",
        )
    if np.any(ages <= 0):
        raise ConfigurationError("clone_age must be positive")

    rng = seed if isinstance(seed, np.random.Generator) else np.random.default_rng(seed)
    trees: list[Tree] = []
    for i in range(replicates):
        depths, info = sample_node_depths(a[i], b[i], ages[i], n, rng)
        trees.append(tree_from_node_depths(
            depths,
            root_edge=max(float(ages[i] - np.max(depths)), 0.0),
            metadata={
                "birth_rate": float(a[i]),
                "death_rate": float(b[i]),
                "growth_rate": float(a[i] - b[i]),
                "clone_age": float(ages[i]),
                "replicate": i,
                **info,
            },
        ))
    logger.debug(
        "Simulated %d trees with n=%d (r range %.3g-%.3g)",
        replicates, n, float(np.min(a - b)), float(np.max(a - b)),
    )
    return trees
