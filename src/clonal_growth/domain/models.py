"""Domain models for clonal growth-rate inference and validation.

Records are frozen dataclasses, so a value handed to a worker process
cannot change under it.  Array and mapping fields get fresh defaults from
the small factories below.
"""

from __future__ import annotations

import dataclasses
import math
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Hashable, Mapping

import networkx as nx
import numpy as np
import yaml


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _uuid() -> str:
    """Fresh tree identifier."""
    return str(uuid.uuid4())


def _empty_array() -> np.ndarray:
    return np.empty(0, dtype=np.float64)


def _empty_dict() -> dict[str, Any]:
    return {}


# ---------------------------------------------------------------------------
# Trees
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Tree:
    """A rooted phylogeny stored as a directed graph.

    Edges point from parent to child and carry a ``length`` attribute.
    ``root_edge`` is the stem length above the root node, so that the total
    depth of a simulated clone equals its age.  Use
    :func:`clonal_growth.phylo.tree.build_tree` to construct validated
    instances.
    """

    graph: nx.DiGraph = field(default_factory=nx.DiGraph)
    root: Hashable = 0
    root_edge: float = 0.0
    tree_id: str = field(default_factory=_uuid)
    metadata: dict[str, Any] = field(default_factory=_empty_dict)

    @property
    def tips(self) -> list[Hashable]:
        """Leaf nodes (out-degree zero)."""
        return [v for v, d in self.graph.out_degree() if d == 0]

    @property
    def internal_nodes(self) -> list[Hashable]:
        """Nodes with at least one child, the root included."""
        return [v for v, d in self.graph.out_degree() if d > 0]

    @property
    def n_tips(self) -> int:
        return sum(1 for _, d in self.graph.out_degree() if d == 0)


@dataclass(frozen=True)
class CoalescenceTimes:
    """Branching times of a tree, sorted descending with a trailing zero.

    ``times`` has length ``N`` for a tree with ``N`` tips: the ``N - 1``
    internal-node heights followed by the sentinel 0 that marks the
    sampling time.
    """

    times: np.ndarray = field(default_factory=_empty_array)
    depth: float = 0.0

    @property
    def n_tips(self) -> int:
        return int(len(self.times))

    @property
    def min_t(self) -> float:
        """Lower bound for the inflection time: ``T - t_1``."""
        return float(self.depth - self.times[0]) if len(self.times) else 0.0

    @property
    def max_t(self) -> float:
        """Upper bound for the inflection time: ``2 T``."""
        return float(2.0 * self.depth)


# ---------------------------------------------------------------------------
# Model parameters and priors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModelParameters:
    """Logistic-growth parameters: rate ``s``, inflection ``tm``, log10 capacity ``ln``."""

    s: float = 1.0
    tm: float = 0.0
    ln: float = 5.0

    def as_array(self) -> np.ndarray:
        return np.array([self.s, self.tm, self.ln], dtype=np.float64)

    @classmethod
    def from_array(cls, x: np.ndarray) -> ModelParameters:
        return cls(s=float(x[0]), tm=float(x[1]), ln=float(x[2]))


@dataclass(frozen=True)
class PriorBounds:
    """Box of uniform prior bounds for (S, tm, LN)."""

    s_min: float = 0.0001
    s_max: float = 4.0
    tm_min: float = 0.0
    tm_max: float = 1.0
    ln_min: float = 4.0
    ln_max: float = 7.0

    @property
    def lower(self) -> np.ndarray:
        return np.array([self.s_min, self.tm_min, self.ln_min], dtype=np.float64)

    @property
    def upper(self) -> np.ndarray:
        return np.array([self.s_max, self.tm_max, self.ln_max], dtype=np.float64)

    def contains(self, params: ModelParameters) -> bool:
        """Return True when *params* lies inside the closed box."""
        x = params.as_array()
        return bool(np.all(x >= self.lower) and np.all(x <= self.upper))


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SamplerConfig:
    """Settings for one posterior-sampling call.

    Passed explicitly into every sampler invocation; there is no shared
    module-level sampler state.  ``target_accept`` is the NUTS step-size
    adaptation target (numpyro's ``target_accept_prob``).
    """

    n_chains: int = 1
    n_cores: int = 1
    chain_length: int = 2000
    warmup_fraction: float = 0.5
    target_accept: float = 0.8
    rhat_threshold: float = 1.05
    n_init: int = 32
    timeout_s: float | None = None

    @property
    def warmup(self) -> int:
        return int(self.chain_length * self.warmup_fraction)

    @classmethod
    def from_app_config(cls, config: AppConfig, **overrides: Any) -> SamplerConfig:
        """Build from the ``sampler`` section, applying keyword overrides."""
        section = config.section("sampler")
        known = {f.name for f in dataclasses.fields(cls)}
        values = {k: v for k, v in section.items() if k in known}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass(frozen=True)
class PosteriorSample:
    """Post-warmup draws from one or more chains with diagnostics."""

    samples: np.ndarray = field(
        default_factory=lambda: np.empty((0, 0, 0), dtype=np.float64)
    )
    param_names: tuple[str, ...] = ()
    chain_length: int = 0
    warmup: int = 0
    n_chains: int = 0
    n_cores: int = 1
    acceptance_rates: tuple[float, ...] = ()
    rhat: float = float("nan")
    ess: float = float("nan")
    runtime_s: float = 0.0
    timed_out: bool = False
    n_divergent: int = 0
    divergence: str | None = None

    def pooled(self, name: str) -> np.ndarray:
        """Return draws of parameter *name* pooled across chains."""
        idx = self.param_names.index(name)
        return np.asarray(self.samples[:, :, idx], dtype=np.float64).reshape(-1)

    @property
    def n_draws(self) -> int:
        return int(self.samples.shape[0] * self.samples.shape[1]) if self.samples.ndim == 3 else 0


# ---------------------------------------------------------------------------
# Estimates
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EstimateResult:
    """One growth-rate estimate for one tree by one method.

    ``n_chains``, ``n_cores`` and ``chain_length`` default to ``None``,
    meaning the method does not sample.  ``true_growth_rate`` and
    ``clone_age`` are filled in by the validation harness.
    """

    lower_bound: float = float("nan")
    estimate: float = float("nan")
    upper_bound: float = float("nan")
    runtime_s: float = 0.0
    n: int = 0
    alpha: float = 0.05
    method: str = ""
    n_chains: int | None = None
    n_cores: int | None = None
    chain_length: int | None = None
    ext_int_ratio: float = float("nan")
    applicable: bool = True
    diverged: bool = False
    warnings: tuple[str, ...] = ()
    tree_id: str = ""
    tree_index: int | None = None
    true_growth_rate: float | None = None
    clone_age: float | None = None

    def with_ground_truth(
        self,
        true_growth_rate: float,
        clone_age: float | None = None,
        tree_index: int | None = None,
    ) -> EstimateResult:
        """Return a copy annotated with the simulation ground truth."""
        return dataclasses.replace(
            self,
            true_growth_rate=float(true_growth_rate),
            clone_age=None if clone_age is None else float(clone_age),
            tree_index=self.tree_index if tree_index is None else tree_index,
        )

    def covers(self, value: float) -> bool:
        """True when ``lower_bound <= value <= upper_bound``."""
        return bool(self.lower_bound <= value <= self.upper_bound)

    def to_record(self) -> dict[str, Any]:
        """Flat dictionary for tabulation."""
        record = dataclasses.asdict(self)
        record["warnings"] = "; ".join(self.warnings)
        return record


@dataclass(frozen=True)
class SummaryStats:
    """Aggregate accuracy of one method on a homogeneous batch."""

    method: str = ""
    n: int = 0
    true_growth_rate: float = float("nan")
    clone_age: float | None = None
    n_results: int = 0
    mean_estimate: float = float("nan")
    median_estimate: float = float("nan")
    sd_estimate: float = float("nan")
    rmse: float = float("nan")
    coverage: float | None = None
    mean_runtime_s: float = float("nan")
    sd_runtime_s: float = float("nan")
    n_diverged: int = 0
    n_inapplicable: int = 0


@dataclass(frozen=True)
class CoverageBin:
    """Coverage of one method within one diagnostic-ratio bin ``[lower, upper)``."""

    lower: float = 0.0
    upper: float = 1.0
    method: str = ""
    count: int = 0
    coverage: float | None = None


@dataclass(frozen=True)
class CoverageCurve:
    """Ordered, disjoint ratio bins for one or more methods."""

    bins: tuple[CoverageBin, ...] = ()

    @property
    def methods(self) -> list[str]:
        return sorted({b.method for b in self.bins})

    def for_method(self, method: str) -> CoverageCurve:
        return CoverageCurve(bins=tuple(b for b in self.bins if b.method == method))

    def to_records(self) -> list[dict[str, Any]]:
        return [dataclasses.asdict(b) for b in self.bins]


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SweepCondition:
    """One simulated configuration within a sweep."""

    index: int = 0
    n: int = 100
    birth_rate: float = 1.0
    death_rate: float = 0.5
    clone_age: float = 40.0

    @property
    def growth_rate(self) -> float:
        return self.birth_rate - self.death_rate


@dataclass(frozen=True)
class SweepConfig:
    """Sweep over sample size, birth/death rate pairs and clone age.

    ``birth_rate`` and ``death_rate`` are paired element-wise; a length-1
    sequence is broadcast against the other.  Conditions are the Cartesian
    product ``n x rate pairs x clone_age``.
    """

    n: tuple[int, ...] = (100,)
    birth_rate: tuple[float, ...] = (1.0,)
    death_rate: tuple[float, ...] = (0.5,)
    clone_age: tuple[float, ...] = (40.0,)
    replicates: int = 100
    methods: tuple[str, ...] = ("internal_lengths", "max_likelihood")
    alpha: float = 0.05
    n_chains: int = 1
    n_cores: int = 1
    chain_length: int = 2000
    max_workers: int = 1
    task_timeout_s: float | None = None
    seed: int | None = 42
    ratio_cutoff: float = 3.0
    min_ln: float = 4.0
    max_ln: float = 7.0
    s_min: float = 0.0001
    s_max: float = 4.0
    sampler_config: SamplerConfig | None = None

    @classmethod
    def from_app_config(cls, config: AppConfig, **overrides: Any) -> SweepConfig:
        """Build from the ``sweep`` section, filling sampler, prior and cutoff settings.

        The whole ``sampler`` section becomes ``sampler_config``; its chain
        counts and length are also copied to the top-level fields, which
        sampling estimators apply over it.
        """
        values: dict[str, Any] = {}
        sampler = SamplerConfig.from_app_config(config)
        values["sampler_config"] = sampler
        values["n_chains"] = sampler.n_chains
        values["n_cores"] = sampler.n_cores
        values["chain_length"] = sampler.chain_length
        if "alpha" in config.section("estimation"):
            values["alpha"] = config.get("estimation.alpha")
        if "ratio_cutoff" in config.section("diagnostics"):
            values["ratio_cutoff"] = config.get("diagnostics.ratio_cutoff")
        prior = config.section("prior")
        for key in ("min_ln", "max_ln", "s_min", "s_max"):
            if key in prior:
                values[key] = prior[key]
        known = {f.name for f in dataclasses.fields(cls)}
        values.update({k: v for k, v in config.section("sweep").items() if k in known})
        values.update({k: v for k, v in overrides.items() if v is not None})
        for key in ("n", "birth_rate", "death_rate", "clone_age", "methods"):
            if key in values and not isinstance(values[key], (list, tuple)):
                values[key] = (values[key],)
            if key in values:
                values[key] = tuple(values[key])
        return cls(**values)


@dataclass(frozen=True)
class FailedUnit:
    """Manifest entry for a unit of sweep work that raised."""

    condition_index: int = 0
    tree_index: int | None = None
    method: str = ""
    tree_id: str = ""
    error_type: str = ""
    message: str = ""


# ---------------------------------------------------------------------------
# Application configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AppConfig:
    """Merged configuration tree.

    Layers, later ones winning key by key:

    1. ``config/default.yaml``
    2. a platform overlay such as ``config/slurm.yaml``
    3. ``CGR_``-prefixed environment variables, ``__`` separating levels
    """

    data: dict[str, Any] = field(default_factory=_empty_dict)

    @classmethod
    def load(
        cls,
        default_path: str | Path = "config/default.yaml",
        overlay_path: str | Path | None = None,
        env_prefix: str = "CGR_",
    ) -> AppConfig:
        """Read the YAML layers and apply environment overrides.

        Missing files contribute nothing.  ``CGR_SAMPLER__CHAIN_LENGTH=4000``
        sets ``sampler.chain_length`` to the integer 4000.
        """
        layers = [_read_layer(default_path)]
        if overlay_path is not None:
            layers.append(_read_layer(overlay_path))
        layers.append(_env_layer(env_prefix, os.environ))

        data: dict[str, Any] = {}
        for layer in layers:
            data = _deep_merge(data, layer)
        return cls(data=data)

    def get(self, dotted_key: str, default: Any = None) -> Any:
        """Value at a dotted path such as ``sampler.chain_length``, else *default*."""
        node: Any = self.data
        for part in dotted_key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def section(self, name: str) -> dict[str, Any]:
        """Copy of a top-level mapping; ``{}`` when absent or not a mapping."""
        value = self.data.get(name)
        return dict(value) if isinstance(value, dict) else {}


def _read_layer(path: str | Path) -> dict[str, Any]:
    path = Path(path)
    if not path.is_file():
        return {}
    with open(path, "r", encoding="utf-8") as fh:
        loaded = yaml.safe_load(fh)
    return loaded if isinstance(loaded, dict) else {}


def _env_layer(prefix: str, environ: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for name, raw in environ.items():
        if not name.startswith(prefix) or len(name) == len(prefix):
            continue
        *parents, leaf = name[len(prefix):].lower().split("__")
        node = layer
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = _parse_env_value(raw)
    return layer


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """New dict with *overlay* merged into *base*; nested mappings merge recursively."""
    out = dict(base)
    for key, value in overlay.items():
        current = out.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            out[key] = _deep_merge(current, value)
        else:
            out[key] = value
    return out


def _parse_env_value(raw: str) -> Any:
    """Read an environment string as a YAML scalar or list.

    ``none`` is accepted as null and exponent forms such as ``1e-6`` as
    floats; anything that does not parse stays a string.
    """
    text = raw.strip()
    if text.lower() == "none":
        return None
    try:
        value = yaml.safe_load(text)
    except yaml.YAMLError:
        return raw
    if isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return raw
        return number if math.isfinite(number) else raw
    if isinstance(value, (bool, int, float, list)) or value is None:
        return value
    return raw
