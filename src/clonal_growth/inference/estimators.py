"""Growth-rate estimators: logistic-growth posterior plus reference methods.

Every estimator takes a batch of trees and returns one
:class:`EstimateResult` per tree with the diagnostic ratio attached:

- ``logistic_growth`` -- posterior median and credible interval of S under
  the logistic-growth coalescent (:func:`fit_logistic_growth` for one tree).
- ``internal_lengths`` -- ``n / L_internal`` with a Wald interval.
- ``max_likelihood`` -- coalescent point process MLE with an
  observed-information interval.
- ``birth_death_mcmc`` -- posterior of r under the point process.
"""
from __future__ import annotations

import dataclasses
import logging
import time
from typing import Any, Callable, Sequence

import numpy as np

from clonal_growth.domain.errors import InvalidTreeError
from clonal_growth.domain.models import EstimateResult, SamplerConfig, Tree
from clonal_growth.inference.intervals import credible_interval, normal_interval
from clonal_growth.inference.logistic_model import (
    DEFAULT_MAX_LN,
    DEFAULT_MIN_LN,
    LogisticCoalescentModel,
)
from clonal_growth.inference.point_process import (
    CoalescentPointProcessModel,
    fit_cpp_mle,
)
from clonal_growth.inference.sampler import sample_posterior
from clonal_growth.phylo.diagnostics import (
    DEFAULT_RATIO_CUTOFF,
    check_applicability,
    diagnostic_ratio,
    is_applicable,
    partition_branch_lengths,
)
from clonal_growth.phylo.tree import branching_times, validate_tree

logger = logging.getLogger(__name__)

_LN10 = float(np.log(10.0))


def _sampler_config(
    sampler_config: SamplerConfig | None,
    n_chains: int,
    n_cores: int,
    chain_length: int,
    timeout_s: float | None,
) -> SamplerConfig:
    base = sampler_config or SamplerConfig()
    return dataclasses.replace(
        base,
        n_chains=int(n_chains),
        n_cores=int(n_cores),
        chain_length=int(chain_length),
        timeout_s=timeout_s if timeout_s is not None else base.timeout_s,
    )


def _seeds(seed: int | None, count: int) -> list[np.random.SeedSequence]:
    return np.random.SeedSequence(seed).spawn(count)


# ---------------------------------------------------------------------------
# Logistic growth (posterior sampling)
# ---------------------------------------------------------------------------

def fit_logistic_growth(
    tree: Tree,
    n_chains: int = 1,
    n_cores: int = 1,
    min_ln: float = DEFAULT_MIN_LN,
    max_ln: float = DEFAULT_MAX_LN,
    chain_length: int = 2000,
    alpha: float = 0.05,
    *,
    sampler_config: SamplerConfig | None = None,
    seed: int | np.random.SeedSequence | None = None,
    ratio_cutoff: float = DEFAULT_RATIO_CUTOFF,
    timeout_s: float | None = None,
    strict: bool = False,
    warn_inapplicable: bool = True,
    s_min: float = 0.0001,
    s_max: float = 4.0,
) -> EstimateResult:
    """Estimate the growth rate of one tree under the logistic-growth coalescent.

    Samples (S, tm, LN) with uniform priors ``S ~ U(s_min, s_max)``
    (default ``U(0.0001, 4)``),
    ``tm ~ U(T - t_1, 2T)`` and ``LN ~ U(min_ln, max_ln)`` and reduces
    the pooled S draws to their median and ``alpha``-level credible
    interval.

    Parameters
    ----------
    tree:
        Rooted binary ultrametric tree.
    n_chains, n_cores, chain_length:
        Number of chains, worker processes and iterations per chain
        (half of which are warmup by default).
    min_ln, max_ln:
        Bounds of the log10 carrying capacity.
    alpha:
        Significance level of the credible interval.
    sampler_config:
        Base sampler settings; the explicit arguments above override it.
    seed:
        Root seed for the chains.
    ratio_cutoff:
        Diagnostic-ratio threshold for the ``applicable`` flag.
    timeout_s:
        Cooperative per-chain time budget.
    strict:
        Raise :class:`SamplingDivergenceError` on non-convergence instead of
        recording it on the result.
    warn_inapplicable:
        Issue :class:`InapplicableModelWarning` for low-ratio trees.
    s_min, s_max:
        Bounds of the growth-rate prior.

    Returns
    -------
    EstimateResult
        With ``method="logistic_growth"`` and sampler metadata populated.

    Raises
    ------
    InvalidTreeError
        If *tree* is not rooted, binary and ultrametric.
    """
    t0 = time.perf_counter()
    model = LogisticCoalescentModel.from_tree(
        tree, min_ln=min_ln, max_ln=max_ln, s_min=s_min, s_max=s_max,
    )
    config = _sampler_config(sampler_config, n_chains, n_cores, chain_length, timeout_s)
    posterior = sample_posterior(model, config, seed=seed, strict=strict)
    lower, estimate, upper = credible_interval(posterior.pooled("s"), alpha)

    ratio = diagnostic_ratio(tree)
    if warn_inapplicable:
        applicable = check_applicability(ratio, ratio_cutoff, tree_id=tree.tree_id)
    else:
        applicable = is_applicable(ratio, ratio_cutoff)
    notes: list[str] = []
    if posterior.divergence:
        notes.append(f"SamplingDivergenceError: {posterior.divergence}")
    if posterior.timed_out:
        notes.append("sampling stopped at time budget")

    return EstimateResult(
        lower_bound=lower,
        estimate=estimate,
        upper_bound=upper,
        runtime_s=time.perf_counter() - t0,
        n=tree.n_tips,
        alpha=alpha,
        method="logistic_growth",
        n_chains=posterior.n_chains,
        n_cores=posterior.n_cores,
        chain_length=posterior.chain_length,
        ext_int_ratio=ratio,
        applicable=applicable,
        diverged=posterior.divergence is not None,
        warnings=tuple(notes),
        tree_id=tree.tree_id,
    )


def estimate_logistic_growth(
    trees: Sequence[Tree],
    n_chains: int = 1,
    n_cores: int = 1,
    chain_length: int = 2000,
    alpha: float = 0.05,
    min_ln: float = DEFAULT_MIN_LN,
    max_ln: float = DEFAULT_MAX_LN,
    seed: int | None = None,
    ratio_cutoff: float = DEFAULT_RATIO_CUTOFF,
    timeout_s: float | None = None,
    sampler_config: SamplerConfig | None = None,
    s_min: float = 0.0001,
    s_max: float = 4.0,
) -> list[EstimateResult]:
    """Batch form of :func:`fit_logistic_growth`; one independent seed per tree."""
    seeds = _seeds(seed, len(trees))
    return [
        fit_logistic_growth(
            tree, n_chains=n_chains, n_cores=n_cores, min_ln=min_ln,
            max_ln=max_ln, chain_length=chain_length, alpha=alpha,
            sampler_config=sampler_config, seed=seeds[i],
            ratio_cutoff=ratio_cutoff, timeout_s=timeout_s,
            warn_inapplicable=False, s_min=s_min, s_max=s_max,
        )
        for i, tree in enumerate(trees)
    ]


# ---------------------------------------------------------------------------
# Internal lengths
# ---------------------------------------------------------------------------

def internal_lengths(
    trees: Sequence[Tree],
    alpha: float = 0.05,
    ratio_cutoff: float = DEFAULT_RATIO_CUTOFF,
) -> list[EstimateResult]:
    """``r = n / L_internal`` with interval ``r -/+ z r / sqrt(n)``."""
    results: list[EstimateResult] = []
    for tree in trees:
        t0 = time.perf_counter()
        validate_tree(tree)
        external, internal = partition_branch_lengths(tree)
        n = tree.n_tips
        if internal <= 0.0:
            raise InvalidTreeError(
                "Tree has no internal branch length", context={"tree_id": tree.tree_id},
            )
        r_hat = n / internal
        lower, upper = normal_interval(r_hat, r_hat / np.sqrt(n), alpha)
        ratio = external / internal
        results.append(EstimateResult(
            lower_bound=lower, estimate=r_hat, upper_bound=upper,
            runtime_s=time.perf_counter() - t0, n=n, alpha=alpha,
            method="internal_lengths", ext_int_ratio=ratio,
            applicable=is_applicable(ratio, ratio_cutoff), tree_id=tree.tree_id,
        ))
    return results


# ---------------------------------------------------------------------------
# Maximum likelihood
# ---------------------------------------------------------------------------

def max_likelihood(
    trees: Sequence[Tree],
    alpha: float = 0.05,
    ratio_cutoff: float = DEFAULT_RATIO_CUTOFF,
) -> list[EstimateResult]:
    """Coalescent point process MLE of r with a delta-method Wald interval."""
    results: list[EstimateResult] = []
    for tree in trees:
        t0 = time.perf_counter()
        validate_tree(tree)
        x_hat, cov = fit_cpp_mle(branching_times(tree))
        r_hat = float(np.exp(x_hat[0]))
        notes: tuple[str, ...] = ()
        if cov is None:
            lower = upper = float("nan")
            notes = ("observed information is not positive definite",)
            logger.warning("Tree %s: %s", tree.tree_id, notes[0])
        else:
            lower, upper = normal_interval(r_hat, r_hat * float(np.sqrt(cov[0, 0])), alpha)
        ratio = diagnostic_ratio(tree)
        results.append(EstimateResult(
            lower_bound=lower, estimate=r_hat, upper_bound=upper,
            runtime_s=time.perf_counter() - t0, n=tree.n_tips, alpha=alpha,
            method="max_likelihood", ext_int_ratio=ratio,
            applicable=is_applicable(ratio, ratio_cutoff),
            warnings=notes, tree_id=tree.tree_id,
        ))
    return results


# ---------------------------------------------------------------------------
# Birth-death MCMC
# ---------------------------------------------------------------------------

def birth_death_mcmc(
    trees: Sequence[Tree],
    n_chains: int = 1,
    n_cores: int = 1,
    chain_length: int = 2000,
    alpha: float = 0.05,
    seed: int | None = None,
    ratio_cutoff: float = DEFAULT_RATIO_CUTOFF,
    timeout_s: float | None = None,
    sampler_config: SamplerConfig | None = None,
    s_min: float = 0.0001,
    s_max: float = 4.0,
) -> list[EstimateResult]:
    """Posterior median and credible interval of r under the point process.

    The prior on r is ``U(s_min, s_max)``.  Chains start near the
    maximum-likelihood point because the admissible ``log10_alpha`` range
    grows with tree depth.
    """
    config = _sampler_config(sampler_config, n_chains, n_cores, chain_length, timeout_s)
    seeds = _seeds(seed, len(trees))
    results: list[EstimateResult] = []
    for i, tree in enumerate(trees):
        t0 = time.perf_counter()
        model = CoalescentPointProcessModel.from_tree(tree, r_min=s_min, r_max=s_max)
        x_hat, _ = fit_cpp_mle(model.depths)
        start = np.clip(
            np.array([np.exp(x_hat[0]), x_hat[1] / _LN10]), model.lower, model.upper,
        )
        posterior = sample_posterior(model, config, seed=seeds[i], initial=start)
        lower, estimate, upper = credible_interval(posterior.pooled("r"), alpha)
        ratio = diagnostic_ratio(tree)
        notes = (
            (f"SamplingDivergenceError: {posterior.divergence}",)
            if posterior.divergence else ()
        )
        results.append(EstimateResult(
            lower_bound=lower, estimate=estimate, upper_bound=upper,
            runtime_s=time.perf_counter() - t0, n=tree.n_tips, alpha=alpha,
            method="birth_death_mcmc", n_chains=posterior.n_chains,
            n_cores=posterior.n_cores, chain_length=posterior.chain_length,
            ext_int_ratio=ratio, applicable=is_applicable(ratio, ratio_cutoff),
            diverged=posterior.divergence is not None, warnings=notes,
            tree_id=tree.tree_id,
        ))
    return results


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

ESTIMATORS: dict[str, Callable[..., list[EstimateResult]]] = {
    "internal_lengths": internal_lengths,
    "max_likelihood": max_likelihood,
    "birth_death_mcmc": birth_death_mcmc,
    "logistic_growth": estimate_logistic_growth,
}

SAMPLING_METHODS = frozenset({"birth_death_mcmc", "logistic_growth"})

_COMMON_OPTIONS = frozenset({"alpha", "ratio_cutoff"})
_SAMPLING_OPTIONS = _COMMON_OPTIONS | {
    "n_chains", "n_cores", "chain_length", "seed", "timeout_s", "sampler_config",
    "s_min", "s_max",
}

# Keyword options each registered estimator accepts from a sweep.
ESTIMATOR_OPTIONS: dict[str, frozenset[str]] = {
    "internal_lengths": _COMMON_OPTIONS,
    "max_likelihood": _COMMON_OPTIONS,
    "birth_death_mcmc": _SAMPLING_OPTIONS,
    "logistic_growth": _SAMPLING_OPTIONS | {"min_ln", "max_ln"},
}


def get_estimator(name: str) -> Callable[..., list[EstimateResult]]:
    """Look up a registered estimator by name."""
    try:
        return ESTIMATORS[name]
    except KeyError:
        raise ValueError(
            f"Unknown method: {name}; choose from {sorted(ESTIMATORS)}"
        ) from None


def describe_estimators() -> dict[str, dict[str, Any]]:
    """Sampling flag, accepted options and docstring summary per estimator."""
    return {
        name: {
            "sampling": name in SAMPLING_METHODS,
            "options": sorted(ESTIMATOR_OPTIONS[name]),
            "summary": (fn.__doc__ or "").strip().splitlines()[0],
        }
        for name, fn in ESTIMATORS.items()
    }
