"""Construction and validation of ultrametric lineage trees.

Trees are :class:`~clonal_growth.domain.models.Tree` values wrapping a
``networkx.DiGraph`` whose edges point from parent to child and carry a
``length``.  Tips sit at height 0; the height of an internal node is its
distance to the tips (its branching time).
"""
from __future__ import annotations

import logging
from typing import Any, Hashable, Iterable

import networkx as nx
import numpy as np

from clonal_growth.domain.errors import InvalidTreeError
from clonal_growth.domain.models import Tree

logger = logging.getLogger(__name__)

_ULTRAMETRIC_RTOL = 1e-6


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

def build_tree(
    edges: Iterable[tuple[Hashable, Hashable, float]],
    root_edge: float = 0.0,
    tree_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    validate: bool = True,
) -> Tree:
    """Build a tree from ``(parent, child, length)`` triples.

    The root is the unique node without a parent.  With *validate* the
    result is checked by :func:`validate_tree`.
    """
    graph = nx.DiGraph()
    for parent, child, length in edges:
        graph.add_edge(parent, child, length=float(length))
    roots = [v for v, d in graph.in_degree() if d == 0]
    if len(roots) != 1:
        raise InvalidTreeError(
            f"Expected exactly one root, found {len(roots)}",
            context={"roots": roots[:10]},
        )
    kwargs: dict[str, Any] = {"metadata": dict(metadata or {})}
    if tree_id is not None:
        kwargs["tree_id"] = tree_id
    tree = Tree(graph=graph, root=roots[0], root_edge=float(root_edge), **kwargs)
    if validate:
        validate_tree(tree)
    return tree


def tree_from_node_depths(
    node_depths: np.ndarray | Iterable[float],
    root_edge: float = 0.0,
    tree_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Tree:
    """Assemble the ultrametric tree of a coalescent point process.

    ``node_depths[i]`` is the depth of the node joining tip ``i`` and tip
    ``i + 1``.  The tree is the max-Cartesian tree of the depths: each node
    is the parent of the highest nodes to its left and right within the
    interval bounded by higher nodes.  Tips are ``0 .. n-1`` and internal
    nodes ``n .. 2n-2``.
    """
    h = np.asarray(list(node_depths), dtype=np.float64)
    if h.ndim != 1 or len(h) < 1:
        raise InvalidTreeError("At least one node depth is required for two tips")
    n = len(h) + 1

    parent = np.full(n - 1, -1, dtype=np.int64)
    stack: list[int] = []
    for i in range(n - 1):
        last = -1
        while stack and h[stack[-1]] < h[i]:
            last = stack.pop()
        if last != -1:
            parent[last] = i
        if stack:
            parent[i] = stack[-1]
        stack.append(i)

    edges: list[tuple[int, int, float]] = []
    for i in range(n - 1):
        if parent[i] >= 0:
            edges.append((n + int(parent[i]), n + i, float(h[parent[i]] - h[i])))
    for j in range(n):
        if j == 0:
            anchor = 0
        elif j == n - 1:
            anchor = n - 2
        else:
            anchor = j - 1 if h[j - 1] < h[j] else j
        edges.append((n + anchor, j, float(h[anchor])))

    return build_tree(edges, root_edge=root_edge, tree_id=tree_id, metadata=metadata)


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

def root_distances(tree: Tree) -> dict[Hashable, float]:
    """Distance from the root to every node."""
    return nx.single_source_dijkstra_path_length(tree.graph, tree.root, weight="length")


def node_heights(tree: Tree) -> dict[Hashable, float]:
    """Height of every node above the tips (0 for tips).

    Uses the deepest tip as the reference so that small ultrametric
    tolerances never produce negative heights.
    """
    dist = root_distances(tree)
    tip_depth = max(dist[v] for v in tree.tips)
    return {v: max(tip_depth - d, 0.0) for v, d in dist.items()}


def branching_times(tree: Tree) -> np.ndarray:
    """Heights of all internal nodes, sorted in decreasing order."""
    heights = node_heights(tree)
    times = np.array([heights[v] for v in tree.internal_nodes], dtype=np.float64)
    return np.sort(times)[::-1]


def tree_depth(tree: Tree) -> float:
    """Total depth T: root edge plus root-to-tip distance."""
    return float(tree.root_edge + node_heights(tree)[tree.root])


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_tree(tree: Tree, rtol: float = _ULTRAMETRIC_RTOL) -> None:
    """Raise :class:`InvalidTreeError` unless *tree* is rooted, binary and ultrametric.

    Parameters
    ----------
    tree:
        The tree to check.
    rtol:
        Relative tolerance on root-to-tip distances.
    """
    graph = tree.graph
    context = {"tree_id": tree.tree_id}
    if graph.number_of_nodes() < 3:
        raise InvalidTreeError("Tree must have at least two tips", context=context)
    if not nx.is_arborescence(graph):
        raise InvalidTreeError("Graph is not a rooted tree", context=context)
    if graph.in_degree(tree.root) != 0:
        raise InvalidTreeError(
            f"Node {tree.root!r} is not the root", context=context,
        )
    if not np.isfinite(tree.root_edge) or tree.root_edge < 0:
        raise InvalidTreeError(
            f"Root edge must be a non-negative number, got {tree.root_edge}",
            context=context,
        )

    non_binary = [v for v, d in graph.out_degree() if d not in (0, 2)]
    if non_binary:
        raise InvalidTreeError(
            f"{len(non_binary)} internal node(s) do not have exactly two children",
            context={**context, "nodes": non_binary[:10]},
        )

    lengths = np.array(
        [graph.edges[e].get("length", np.nan) for e in graph.edges], dtype=np.float64,
    )
    if not np.all(np.isfinite(lengths)) or np.any(lengths < 0):
        raise InvalidTreeError(
            "Branch lengths must be finite and non-negative", context=context,
        )

    dist = root_distances(tree)
    tip_depths = np.array([dist[v] for v in tree.tips], dtype=np.float64)
    spread = float(np.max(tip_depths) - np.min(tip_depths))
    if spread > rtol * max(float(np.max(tip_depths)), 1.0):
        raise InvalidTreeError(
            f"Tree is not ultrametric (root-to-tip spread {spread:.3g})",
            context={**context, "spread": spread},
        )
    logger.debug("Validated tree %s with %d tips", tree.tree_id, len(tip_depths))
