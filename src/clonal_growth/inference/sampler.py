"""Posterior sampling with the No-U-Turn Sampler.

Every :class:`~clonal_growth.domain.protocols.PosteriorTarget` describes
itself as a numpyro model (uniform priors on its bounds box plus its
log-likelihood as a factor).  One chain is one :class:`numpyro.infer.MCMC`
run of :class:`numpyro.infer.NUTS`, whose step size adapts during warmup
toward ``SamplerConfig.target_accept``.  Bounded priors are sampled in
numpyro's unconstrained space, so no draw ever leaves the prior support.

Chains start from the best of a Latin hypercube over the prior box (or
from a jittered supplied point).  They are independent: with
``n_cores > 1`` they run on a :class:`~concurrent.futures.ProcessPoolExecutor`
and are re-joined by chain index.  Convergence is summarised with ArviZ's
rank-normalised split R-hat and bulk ESS on the first parameter (the
growth rate).
"""
from __future__ import annotations

import logging
import multiprocessing
import time
import warnings
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field

import arviz as az
import numpy as np
from jax import random
from numpyro.infer import MCMC, NUTS, init_to_value
from scipy.stats.qmc import LatinHypercube

from clonal_growth.domain.errors import SamplingDivergenceError
from clonal_growth.domain.models import PosteriorSample, SamplerConfig
from clonal_growth.domain.protocols import PosteriorTarget

logger = logging.getLogger(__name__)

# With a time budget, post-warmup draws are taken in blocks of this size and
# the deadline is checked between blocks.
_DRAW_BLOCK = 250
_INITIAL_JITTER = 0.01
_INTERIOR = 1e-6
_EXTRA_FIELDS = ("accept_prob", "diverging")


@dataclass(frozen=True)
class ChainResult:
    """Kept draws and bookkeeping for one chain."""

    chain_index: int = 0
    draws: np.ndarray = field(default_factory=lambda: np.empty((0, 0), dtype=np.float64))
    acceptance_rate: float = 0.0
    step_size: float = float("nan")
    n_divergent: int = 0
    n_iterations: int = 0
    timed_out: bool = False


# ---------------------------------------------------------------------------
# Starting points
# ---------------------------------------------------------------------------

def reflect_into_bounds(x: np.ndarray, lower: np.ndarray, upper: np.ndarray) -> np.ndarray:
    """Fold *x* back into ``[lower, upper]`` by mirror reflection at the walls."""
    width = upper - lower
    y = np.mod(x - lower, 2.0 * width)
    y = np.where(y > width, 2.0 * width - y, y)
    return lower + y


def initial_point(
    target: PosteriorTarget,
    rng: np.random.Generator,
    n_init: int = 32,
    initial: np.ndarray | None = None,
) -> np.ndarray | None:
    """Choose a chain's starting point strictly inside the prior box.

    With *initial* the point is jittered by about 1% of each prior width;
    otherwise it is the best of *n_init* Latin hypercube points by log
    posterior.  Returns ``None`` when the log posterior is not finite there.
    """
    lo = np.asarray(target.lower, dtype=np.float64)
    hi = np.asarray(target.upper, dtype=np.float64)
    width = hi - lo
    if initial is not None:
        jitter = rng.normal(0.0, _INITIAL_JITTER, size=len(lo)) * width
        x = reflect_into_bounds(np.asarray(initial, dtype=np.float64) + jitter, lo, hi)
    else:
        lhs = LatinHypercube(d=len(lo), seed=int(rng.integers(2**32)))
        candidates = lo + lhs.random(n=max(n_init, 1)) * width
        values = np.array([target.log_posterior(c) for c in candidates])
        finite = np.isfinite(values)
        if not np.any(finite):
            return None
        x = candidates[int(np.argmax(np.where(finite, values, -np.inf)))]
    x = np.clip(x, lo + _INTERIOR * width, hi - _INTERIOR * width)
    return x if np.isfinite(target.log_posterior(x)) else None


# ---------------------------------------------------------------------------
# Single chain
# ---------------------------------------------------------------------------

def run_chain(
    target: PosteriorTarget,
    config: SamplerConfig,
    chain_index: int = 0,
    seed: np.random.SeedSequence | int | None = None,
    initial: np.ndarray | None = None,
) -> ChainResult:
    """Run one NUTS chain of ``config.chain_length`` iterations.

    The first ``config.warmup`` iterations adapt the step size and mass
    matrix and are discarded.  Once ``config.timeout_s`` has elapsed the
    chain stops at the end of the current block of draws and keeps what it
    has; warmup always runs to completion.
    """
    rng = np.random.default_rng(seed)
    names = tuple(target.param_names)
    start = initial_point(target, rng, config.n_init, initial)
    if start is None:
        logger.warning("Chain %d: no finite starting point in the prior box", chain_index)
        return ChainResult(chain_index=chain_index, draws=np.empty((0, len(names))))

    warmup = min(int(config.warmup), int(config.chain_length) - 1)
    n_keep = int(config.chain_length) - warmup
    kernel = NUTS(
        target.numpyro_model,
        target_accept_prob=config.target_accept,
        init_strategy=init_to_value(values=dict(zip(names, start.tolist()))),
    )
    deadline = time.monotonic() + config.timeout_s if config.timeout_s else None
    mcmc = MCMC(
        kernel,
        num_warmup=warmup,
        num_samples=n_keep if deadline is None else min(_DRAW_BLOCK, n_keep),
        num_chains=1,
        progress_bar=False,
    )

    blocks: list[np.ndarray] = []
    accept_probs: list[np.ndarray] = []
    diverging: list[np.ndarray] = []
    timed_out = False
    mcmc.run(random.PRNGKey(int(rng.integers(2**31 - 1))), extra_fields=_EXTRA_FIELDS)
    while True:
        samples = mcmc.get_samples()
        extra = mcmc.get_extra_fields()
        blocks.append(np.column_stack([np.asarray(samples[n], dtype=np.float64) for n in names]))
        accept_probs.append(np.asarray(extra["accept_prob"], dtype=np.float64))
        diverging.append(np.asarray(extra["diverging"], dtype=bool))
        if sum(len(b) for b in blocks) >= n_keep:
            break
        if deadline is not None and time.monotonic() > deadline:
            timed_out = True
            break
        mcmc.post_warmup_state = mcmc.last_state
        mcmc.run(mcmc.post_warmup_state.rng_key, extra_fields=_EXTRA_FIELDS)

    draws = np.concatenate(blocks)[:n_keep]
    rate = float(np.mean(np.concatenate(accept_probs)[: len(draws)]))
    n_divergent = int(np.sum(np.concatenate(diverging)[: len(draws)]))
    step_size = float(mcmc.last_state.adapt_state.step_size)
    logger.debug(
        "Chain %d: %d warmup, %d kept, mean acceptance %.2f, %d divergent%s",
        chain_index, warmup, len(draws), rate, n_divergent,
        " (timed out)" if timed_out else "",
    )
    return ChainResult(
        chain_index=chain_index, draws=draws, acceptance_rate=rate,
        step_size=step_size, n_divergent=n_divergent,
        n_iterations=warmup + len(draws), timed_out=timed_out,
    )


# ---------------------------------------------------------------------------
# Multiple chains
# ---------------------------------------------------------------------------

def sample_posterior(
    target: PosteriorTarget,
    config: SamplerConfig | None = None,
    seed: int | np.random.SeedSequence | None = None,
    initial: np.ndarray | None = None,
    strict: bool = False,
) -> PosteriorSample:
    """Draw ``config.n_chains`` independent chains from *target*.

    Parameters
    ----------
    target:
        Bounded posterior exposing a numpyro model (see
        :class:`PosteriorTarget`).
    config:
        Sampler settings; defaults to :class:`SamplerConfig()`.
    seed:
        Root seed or seed sequence; chains receive independent spawned
        streams.
    initial:
        Optional starting point shared (with jitter) by all chains.
    strict:
        Raise :class:`SamplingDivergenceError` instead of recording the
        divergence on the returned sample.

    Returns
    -------
    PosteriorSample
        Post-warmup draws shaped ``(n_chains, n_kept, n_params)``.
    """
    config = config or SamplerConfig()
    if config.n_chains < 1 or config.chain_length < 2:
        raise ValueError("n_chains must be >= 1 and chain_length >= 2")
    if not 0.0 <= config.warmup_fraction < 1.0:
        raise ValueError("warmup_fraction must be in [0, 1)")
    if not 0.0 < config.target_accept < 1.0:
        raise ValueError("target_accept must be in (0, 1)")

    root = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
    seeds = root.spawn(config.n_chains)
    t0 = time.perf_counter()
    results: dict[int, ChainResult] = {}
    workers = min(config.n_cores, config.n_chains)
    if workers > 1:
        # JAX is not fork-safe once initialised.
        context = multiprocessing.get_context("spawn")
        with ProcessPoolExecutor(max_workers=workers, mp_context=context) as pool:
            futures = [
                pool.submit(run_chain, target, config, i, seeds[i], initial)
                for i in range(config.n_chains)
            ]
            for fut in as_completed(futures):
                res = fut.result()
                results[res.chain_index] = res
    else:
        for i in range(config.n_chains):
            results[i] = run_chain(target, config, i, seeds[i], initial)
    runtime = time.perf_counter() - t0

    chains = [results[i] for i in range(config.n_chains)]
    n_kept = min(len(c.draws) for c in chains)
    samples = np.stack([c.draws[len(c.draws) - n_kept:] for c in chains])
    rhat, ess = convergence_diagnostics(samples[:, :, 0])
    rates = tuple(c.acceptance_rate for c in chains)
    timed_out = any(c.timed_out for c in chains)
    n_divergent = sum(c.n_divergent for c in chains)
    if n_divergent:
        logger.debug("%d divergent transitions across %d chains", n_divergent, len(chains))

    divergence = _divergence_message(rhat, rates, config.rhat_threshold, n_kept)
    if divergence is not None:
        if strict:
            raise SamplingDivergenceError(
                divergence, context={"rhat": rhat, "acceptance_rates": rates},
            )
        logger.warning("Sampling did not converge: %s", divergence)

    return PosteriorSample(
        samples=samples,
        param_names=tuple(target.param_names),
        chain_length=config.chain_length,
        warmup=config.warmup,
        n_chains=config.n_chains,
        n_cores=workers,
        acceptance_rates=rates,
        rhat=rhat,
        ess=ess,
        runtime_s=runtime,
        timed_out=timed_out,
        n_divergent=n_divergent,
        divergence=divergence,
    )


def convergence_diagnostics(draws: np.ndarray) -> tuple[float, float]:
    """Rank-normalised split R-hat and bulk ESS of ``(chain, draw)`` *draws*."""
    draws = np.atleast_2d(np.asarray(draws, dtype=np.float64))
    if draws.shape[1] < 4:
        return float("nan"), float("nan")
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        rhat = float(az.rhat(draws))
        ess = float(az.ess(draws))
    return rhat, ess


def _divergence_message(
    rhat: float, rates: tuple[float, ...], threshold: float, n_kept: int,
) -> str | None:
    if n_kept == 0:
        return "no post-warmup draws"
    if any(rate == 0.0 for rate in rates):
        return "a chain accepted no proposals after warmup"
    if np.isnan(rhat):
        return "R-hat is undefined"
    if rhat > threshold:
        return f"R-hat {rhat:.3f} exceeds {threshold:.3f}"
    return None
