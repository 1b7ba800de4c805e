"""Shared pytest fixtures for the clonal growth test suite."""

from __future__ import annotations

import numpy as np
import pytest

from clonal_growth.domain.models import EstimateResult, Tree
from clonal_growth.phylo.simulator import simulate_trees
from clonal_growth.phylo.tree import build_tree, tree_from_node_depths


# ---------------------------------------------------------------------------
# Hand-built trees
# ---------------------------------------------------------------------------


@pytest.fixture()
def star_tree() -> Tree:
    """20 tips whose coalescences all sit within 0.2 of the root at depth 10."""
    depths = 10.0 - 0.01 * np.arange(19)
    return tree_from_node_depths(depths, root_edge=1.0, tree_id="star")


@pytest.fixture()
def caterpillar_tree() -> Tree:
    """10-tip ladder with node depths 1, 2, 4, ..., 256 (ext/int ratio ~2)."""
    depths = 2.0 ** np.arange(9)
    return tree_from_node_depths(depths, tree_id="caterpillar")


@pytest.fixture()
def balanced_tree() -> Tree:
    """Four tips, two cherries of height 1 under a root of height 2."""
    edges = [
        ("root", "x", 1.0), ("root", "y", 1.0),
        ("x", "a", 1.0), ("x", "b", 1.0),
        ("y", "c", 1.0), ("y", "d", 1.0),
    ]
    return build_tree(edges, tree_id="balanced")


@pytest.fixture()
def two_tip_tree() -> Tree:
    """A single cherry: no internal branch length."""
    return tree_from_node_depths([1.5], tree_id="cherry")


# ---------------------------------------------------------------------------
# Simulated data
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def simulated_batch() -> list[Tree]:
    """Five 30-tip trees with a=1, b=0.5 (r=0.5) and clone age 40."""
    return simulate_trees(1.0, 0.5, 40.0, n=30, replicates=5, seed=1)


def make_result(
    estimate: float,
    lower: float,
    upper: float,
    *,
    truth: float | None = 0.5,
    n: int = 100,
    method: str = "mock",
    ratio: float = 5.0,
    tree_index: int = 0,
) -> EstimateResult:
    """Build an EstimateResult for metric tests."""
    return EstimateResult(
        lower_bound=lower,
        estimate=estimate,
        upper_bound=upper,
        runtime_s=0.01,
        n=n,
        method=method,
        ext_int_ratio=ratio,
        tree_index=tree_index,
        tree_id=f"t{tree_index}",
        true_growth_rate=truth,
        clone_age=40.0,
    )


@pytest.fixture()
def result_factory():
    """The :func:`make_result` builder, for tests that need custom batches."""
    return make_result


@pytest.fixture()
def gaussian_mock_results() -> list[EstimateResult]:
    """2000 exact 95% Gaussian intervals around r = 0.5 with sd 0.05."""
    rng = np.random.default_rng(seed=7)
    sd, truth = 0.05, 0.5
    estimates = rng.normal(truth, sd, size=2000)
    return [
        make_result(est, est - 1.959964 * sd, est + 1.959964 * sd, tree_index=i)
        for i, est in enumerate(estimates)
    ]
