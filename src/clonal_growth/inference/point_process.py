"""Coalescent point process likelihood for a supercritical birth-death clone.

Under the coalescent point process the node depths ``H_1 .. H_{n-1}`` of
a sampled birth-death genealogy are i.i.d. with inverse tail

    F(h) = 1 + alpha (exp(r h) - 1),

so the density is ``f(h) = alpha r exp(r h) / F(h)**2``.  ``alpha`` folds
the sampling fraction and birth rate together (``y a / r``).  This model
backs the maximum-likelihood and birth-death MCMC estimators.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import ClassVar

import jax.numpy as jnp
import numpy as np
import numpyro
import numpyro.distributions as dist
from scipy.optimize import minimize
from scipy.stats.qmc import LatinHypercube

from clonal_growth.domain.models import Tree
from clonal_growth.inference.logistic_model import log_expm1
from clonal_growth.phylo.tree import branching_times, validate_tree

logger = logging.getLogger(__name__)

_LN10 = float(np.log(10.0))
_N_STARTS = 12
_LOG_R_BOUNDS = (np.log(1e-4), np.log(10.0))


def _log_density(xp, depths, r, log_alpha):
    log_f = xp.logaddexp(0.0, log_alpha + log_expm1(r * depths, xp))
    return xp.sum(log_alpha + xp.log(r) + r * depths - 2.0 * log_f)


def cpp_log_likelihood(depths: np.ndarray, r: float, log_alpha: float) -> float:
    """Log-likelihood of node *depths* for rate *r* and natural-log ``alpha``."""
    if not r > 0.0:
        return -np.inf
    with np.errstate(divide="ignore"):
        return float(_log_density(np, np.asarray(depths, dtype=np.float64), r, log_alpha))


# ---------------------------------------------------------------------------
# Posterior target
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CoalescentPointProcessModel:
    """Posterior target for ``(r, log10_alpha)`` with uniform priors."""

    depths: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.float64))
    r_min: float = 0.0001
    r_max: float = 4.0
    log10_alpha_min: float = -30.0
    log10_alpha_max: float = 2.0

    param_names: ClassVar[tuple[str, ...]] = ("r", "log10_alpha")

    @classmethod
    def from_tree(
        cls, tree: Tree, r_min: float = 0.0001, r_max: float = 4.0,
    ) -> CoalescentPointProcessModel:
        """Use the tree's branching times; the alpha range scales with tree depth.

        ``alpha`` is roughly ``exp(-r H)`` for typical depths, so the lower
        bound allows ``r_max`` times the deepest node.
        """
        validate_tree(tree)
        depths = branching_times(tree)
        lowest = -(r_max * float(np.max(depths))) / _LN10 - 2.0
        return cls(
            depths=depths, r_min=r_min, r_max=r_max,
            log10_alpha_min=min(lowest, -2.0), log10_alpha_max=2.0,
        )

    @property
    def lower(self) -> np.ndarray:
        return np.array([self.r_min, self.log10_alpha_min], dtype=np.float64)

    @property
    def upper(self) -> np.ndarray:
        return np.array([self.r_max, self.log10_alpha_max], dtype=np.float64)

    def log_likelihood(self, x: np.ndarray) -> float:
        return cpp_log_likelihood(self.depths, float(x[0]), float(x[1]) * _LN10)

    def log_posterior(self, x: np.ndarray) -> float:
        x = np.asarray(x, dtype=np.float64)
        if np.any(x < self.lower) or np.any(x > self.upper):
            return -np.inf
        ll = self.log_likelihood(x)
        return ll if np.isfinite(ll) else -np.inf

    def numpyro_model(self) -> None:
        """Uniform priors on ``(r, log10_alpha)`` with the likelihood as a factor."""
        r, log10_alpha = (
            numpyro.sample(name, dist.Uniform(lo, hi))
            for name, lo, hi in zip(self.param_names, self.lower, self.upper)
        )
        depths = jnp.asarray(self.depths, dtype=jnp.float64)
        numpyro.factor("log_likelihood", _log_density(jnp, depths, r, log10_alpha * _LN10))


# ---------------------------------------------------------------------------
# Maximum likelihood
# ---------------------------------------------------------------------------

def fit_cpp_mle(
    depths: np.ndarray, seed: int = 42,
) -> tuple[np.ndarray, np.ndarray | None]:
    """Maximise the point-process likelihood over ``(log r, log alpha)``.

    Multi-start L-BFGS-B from a Latin hypercube.  Returns the optimum in
    ``(log r, log alpha)`` and its covariance from the inverse observed
    information, or ``None`` when the Hessian is not positive definite.
    """
    h = np.asarray(depths, dtype=np.float64)
    h_max = float(np.max(h))
    bounds = [
        _LOG_R_BOUNDS,
        (-(np.exp(_LOG_R_BOUNDS[1]) * h_max) - 5.0, 5.0),
    ]

    def objective(x: np.ndarray) -> float:
        value = -cpp_log_likelihood(h, float(np.exp(x[0])), float(x[1]))
        return value if np.isfinite(value) else 1e300

    # Typical depth pins log(alpha) near -r * median(h); seed starts there.
    lhs = LatinHypercube(d=1, seed=seed)
    log_r_starts = _LOG_R_BOUNDS[0] + lhs.random(n=_N_STARTS)[:, 0] * (
        _LOG_R_BOUNDS[1] - _LOG_R_BOUNDS[0]
    )
    median_h = float(np.median(h))
    best_cost, best_x = np.inf, None
    for log_r0 in log_r_starts:
        x0 = np.array([log_r0, -np.exp(log_r0) * median_h])
        x0[1] = np.clip(x0[1], bounds[1][0], bounds[1][1])
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", RuntimeWarning)
                res = minimize(
                    objective, x0, method="L-BFGS-B", bounds=bounds,
                    options={"maxiter": 500, "ftol": 1e-12},
                )
        except (ValueError, FloatingPointError) as exc:
            logger.debug("ML start %.3g failed: %s", log_r0, exc)
            continue
        if res.fun < best_cost:
            best_cost, best_x = res.fun, res.x

    if best_x is None:
        raise RuntimeError("All maximum-likelihood starts failed")

    hess = _numerical_hessian(objective, best_x)
    cov: np.ndarray | None
    try:
        cov = np.linalg.inv(hess)
        if np.any(np.diag(cov) <= 0) or not np.all(np.isfinite(cov)):
            cov = None
    except np.linalg.LinAlgError:
        cov = None
    return best_x, cov


def _numerical_hessian(f, x: np.ndarray, rel_step: float = 1e-4) -> np.ndarray:
    """Central-difference Hessian of scalar *f* at *x*."""
    x = np.asarray(x, dtype=np.float64)
    k = len(x)
    steps = rel_step * np.maximum(1.0, np.abs(x))
    hess = np.empty((k, k), dtype=np.float64)
    for i in range(k):
        ei = np.zeros(k)
        ei[i] = steps[i]
        for j in range(i, k):
            ej = np.zeros(k)
            ej[j] = steps[j]
            value = (
                f(x + ei + ej) - f(x + ei - ej) - f(x - ei + ej) + f(x - ei - ej)
            ) / (4.0 * steps[i] * steps[j])
            hess[i, j] = hess[j, i] = value
    return hess
