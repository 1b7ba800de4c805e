"""Validation sweeps: simulate trees, run estimators, score against ground truth.

A sweep is the Cartesian product of sample sizes, paired birth/death
rates and clone ages.  Each condition yields ``replicates`` simulated
trees, and every (tree, method) pair is one independent unit of work.
Units run on a :class:`~concurrent.futures.ProcessPoolExecutor` when
``max_workers > 1`` and are re-joined by
``(condition_index, tree_index, method)``.  A failing unit is recorded in
the failure manifest and never aborts the sweep.
"""
from __future__ import annotations

import itertools
import logging
import multiprocessing
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import numpy as np
import pandas as pd

from clonal_growth.domain.errors import ConfigurationError
from clonal_growth.domain.events import (
    ESTIMATE_COMPLETED,
    SWEEP_COMPLETED,
    SWEEP_STARTED,
    TREES_SIMULATED,
    UNIT_FAILED,
    EventBus,
)
from clonal_growth.domain.models import (
    CoverageCurve,
    EstimateResult,
    FailedUnit,
    SummaryStats,
    SweepCondition,
    SweepConfig,
    Tree,
)
from clonal_growth.domain.protocols import TreeSimulator
from clonal_growth.evaluation.metrics import (
    compare_cutoff,
    coverage_by_ratio_bin,
    summarize_by,
    summary_table,
)
from clonal_growth.inference.estimators import ESTIMATOR_OPTIONS, ESTIMATORS
from clonal_growth.phylo.simulator import simulate_trees

logger = logging.getLogger(__name__)

UnitKey = tuple[int, int, str]


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SweepResult:
    """Joined estimates, failure manifest and the conditions that produced them."""

    results: tuple[EstimateResult, ...] = ()
    failures: tuple[FailedUnit, ...] = ()
    conditions: tuple[SweepCondition, ...] = ()
    config: SweepConfig = field(default_factory=SweepConfig)
    runtime_s: float = 0.0

    @property
    def complete(self) -> bool:
        return not self.failures

    def summaries(self, by: str = "n") -> list[SummaryStats]:
        """Grouped summary statistics, ordered by sample size or growth rate."""
        return summarize_by(self.results, by=by)

    def summary_table(self, by: str = "n") -> pd.DataFrame:
        return summary_table(self.summaries(by))

    def coverage_curve(self, bin_width: float = 1.0, n_bins: int = 21) -> CoverageCurve:
        return coverage_by_ratio_bin(self.results, bin_width=bin_width, n_bins=n_bins)

    def cutoff(self, threshold: float | None = None) -> list[dict[str, Any]]:
        """RMSE and coverage per method above and below the ratio cutoff."""
        value = self.config.ratio_cutoff if threshold is None else threshold
        return compare_cutoff(self.results, value)

    def to_frame(self) -> pd.DataFrame:
        """One row per estimate."""
        return pd.DataFrame([r.to_record() for r in self.results])


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

def build_conditions(config: SweepConfig) -> list[SweepCondition]:
    """Expand *config* into its list of simulated conditions.

    Birth and death rates are paired element-wise, broadcasting a
    length-1 sequence against the other.

    Raises
    ------
    ConfigurationError
        If the rate sequences cannot be paired, a pair is not
        supercritical, or a size or age is out of range.
    """
    births, deaths = list(config.birth_rate), list(config.death_rate)
    if len(births) == 1 and len(deaths) > 1:
        births = births * len(deaths)
    elif len(deaths) == 1 and len(births) > 1:
        deaths = deaths * len(births)
    if len(births) != len(deaths) or not births:
        raise ConfigurationError(
            "birth_rate and death_rate must have equal length or length 1",
            context={"birth_rate": config.birth_rate, "death_rate": config.death_rate},
        )
    for a, b in zip(births, deaths):
        if not 0.0 <= b < a:
            raise ConfigurationError(
                "Each rate pair must satisfy 0 <= death_rate < birth_rate",
                context={"birth_rate": a, "death_rate": b},
            )
    if not config.n or any(int(n) < 2 for n in config.n):
        raise ConfigurationError("Sample sizes must be at least 2", context={"n": config.n})
    if not config.clone_age or any(age <= 0 for age in config.clone_age):
        raise ConfigurationError(
            "Clone ages must be positive", context={"clone_age": config.clone_age},
        )
    if config.replicates < 1:
        raise ConfigurationError("replicates must be >= 1")

    return [
        SweepCondition(index=i, n=int(n), birth_rate=float(a), death_rate=float(b),
                       clone_age=float(age))
        for i, (n, (a, b), age) in enumerate(
            itertools.product(config.n, zip(births, deaths), config.clone_age)
        )
    ]


def _resolve_methods(
    config: SweepConfig,
    estimators: Mapping[str, Callable[..., list[EstimateResult]]] | None,
) -> dict[str, Callable[..., list[EstimateResult]]]:
    available = dict(ESTIMATORS)
    if estimators:
        available.update(estimators)
    unknown = [m for m in config.methods if m not in available]
    if unknown:
        raise ConfigurationError(
            f"Unknown methods: {unknown}", context={"available": sorted(available)},
        )
    if not config.methods:
        raise ConfigurationError("No methods selected")
    return {m: available[m] for m in config.methods}


def estimator_options(method: str, options: Mapping[str, Any]) -> dict[str, Any]:
    """Keep the *options* listed for *method* in :data:`ESTIMATOR_OPTIONS`.

    A method with no entry there receives every option.
    """
    accepted = ESTIMATOR_OPTIONS.get(method)
    if accepted is None:
        return dict(options)
    return {k: v for k, v in options.items() if k in accepted}


# ---------------------------------------------------------------------------
# Units of work
# ---------------------------------------------------------------------------

def _run_unit(
    estimator: Callable[..., list[EstimateResult]],
    tree: Tree,
    options: dict[str, Any],
) -> EstimateResult:
    results = estimator([tree], **options)
    if len(results) != 1:
        raise RuntimeError(f"Estimator returned {len(results)} results for one tree")
    return results[0]


def _seed_int(seq: np.random.SeedSequence) -> int:
    return int(seq.generate_state(1)[0])


def run_sweep(
    config: SweepConfig | None = None,
    estimators: Mapping[str, Callable[..., list[EstimateResult]]] | None = None,
    bus: EventBus | None = None,
    simulator: TreeSimulator = simulate_trees,
) -> SweepResult:
    """Run a validation sweep.

    Parameters
    ----------
    config:
        Sweep definition; defaults to :class:`SweepConfig()`.
    estimators:
        Extra or replacement estimators by method name, merged over the
        built-in registry.  They receive every sweep option as keywords
        and, with ``max_workers > 1``, must be picklable (module-level
        functions).
    bus:
        Optional event bus receiving sweep lifecycle events.
    simulator:
        Tree simulator; defaults to :func:`simulate_trees`.

    Returns
    -------
    SweepResult
        Estimates sorted by ``(condition_index, tree_index, method)``
        with ground truth attached, plus the failure manifest.
    """
    config = config or SweepConfig()
    conditions = build_conditions(config)
    methods = _resolve_methods(config, estimators)
    bus = bus or EventBus()
    t0 = time.perf_counter()

    n_units = len(conditions) * config.replicates * len(methods)
    logger.info(
        "Sweep: %d conditions x %d replicates x %d methods = %d units",
        len(conditions), config.replicates, len(methods), n_units,
    )
    bus.publish(SWEEP_STARTED, {
        "n_conditions": len(conditions), "replicates": config.replicates,
        "methods": list(methods), "n_units": n_units,
    })

    base_options = {
        "alpha": config.alpha,
        "ratio_cutoff": config.ratio_cutoff,
        "n_chains": config.n_chains,
        "n_cores": config.n_cores,
        "chain_length": config.chain_length,
        "timeout_s": config.task_timeout_s,
        "min_ln": config.min_ln,
        "max_ln": config.max_ln,
        "s_min": config.s_min,
        "s_max": config.s_max,
        "sampler_config": config.sampler_config,
    }
    custom = set(estimators or ())
    failures: list[FailedUnit] = []
    trees_by_key: dict[tuple[int, int], Tree] = {}
    tasks: list[tuple[UnitKey, Callable[..., list[EstimateResult]], Tree, dict[str, Any]]] = []

    condition_seeds = np.random.SeedSequence(config.seed).spawn(len(conditions))
    for cond, cond_seed in zip(conditions, condition_seeds):
        sim_seed, est_seed = cond_seed.spawn(2)
        try:
            trees = simulator(
                cond.birth_rate, cond.death_rate, cond.clone_age, cond.n,
                replicates=config.replicates, seed=np.random.default_rng(sim_seed),
            )
        except Exception as exc:
            logger.warning("Condition %d: simulation failed: %s", cond.index, exc)
            unit = FailedUnit(
                condition_index=cond.index, error_type=type(exc).__name__,
                message=str(exc),
            )
            failures.append(unit)
            bus.publish(UNIT_FAILED, {"unit": unit})
            continue
        bus.publish(TREES_SIMULATED, {"condition": cond, "n_trees": len(trees)})
        logger.debug("Condition %d: simulated %d trees", cond.index, len(trees))

        unit_seeds = est_seed.spawn(len(trees) * len(methods))
        for ti, tree in enumerate(trees):
            trees_by_key[(cond.index, ti)] = tree
            for mi, (name, fn) in enumerate(methods.items()):
                opts = dict(base_options, seed=_seed_int(unit_seeds[ti * len(methods) + mi]))
                if name not in custom:
                    opts = estimator_options(name, opts)
                tasks.append(((cond.index, ti, name), fn, tree, opts))

    joined: dict[UnitKey, EstimateResult] = {}
    by_index = {c.index: c for c in conditions}

    def record(key: UnitKey, result: EstimateResult | None, exc: BaseException | None) -> None:
        ci, ti, method = key
        tree = trees_by_key[(ci, ti)]
        if exc is not None:
            logger.warning(
                "Unit (%d, %d, %s) failed: %s: %s", ci, ti, method, type(exc).__name__, exc,
            )
            unit = FailedUnit(
                condition_index=ci, tree_index=ti, method=method, tree_id=tree.tree_id,
                error_type=type(exc).__name__, message=str(exc),
            )
            failures.append(unit)
            bus.publish(UNIT_FAILED, {"unit": unit})
            return
        cond = by_index[ci]
        result = result.with_ground_truth(cond.growth_rate, cond.clone_age, tree_index=ti)
        joined[key] = result
        bus.publish(ESTIMATE_COMPLETED, {
            "condition_index": ci, "tree_index": ti, "method": method,
            "estimate": result.estimate,
        })

    if config.max_workers > 1 and tasks:
        # Units may run JAX, which is not fork-safe once initialised.
        context = multiprocessing.get_context("spawn")
        with ProcessPoolExecutor(max_workers=config.max_workers, mp_context=context) as pool:
            fut_map = {
                pool.submit(_run_unit, fn, tree, opts): key
                for key, fn, tree, opts in tasks
            }
            for fut in as_completed(fut_map):
                exc = fut.exception()
                record(fut_map[fut], None if exc is not None else fut.result(), exc)
    else:
        for key, fn, tree, opts in tasks:
            try:
                result = _run_unit(fn, tree, opts)
            except Exception as exc:
                record(key, None, exc)
            else:
                record(key, result, None)

    ordered = tuple(joined[k] for k in sorted(joined))
    failures.sort(key=lambda u: (u.condition_index, -1 if u.tree_index is None else u.tree_index,
                                 u.method))
    runtime = time.perf_counter() - t0
    logger.info(
        "Sweep finished in %.1fs: %d results, %d failed units",
        runtime, len(ordered), len(failures),
    )
    bus.publish(SWEEP_COMPLETED, {
        "n_results": len(ordered), "n_failed": len(failures), "runtime_s": runtime,
    })
    return SweepResult(
        results=ordered, failures=tuple(failures), conditions=tuple(conditions),
        config=config, runtime_s=runtime,
    )
