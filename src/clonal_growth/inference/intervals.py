"""Point estimates and credible intervals from posterior draws."""

from __future__ import annotations

import numpy as np
from scipy.stats import norm


def credible_interval(
    samples: np.ndarray,
    alpha: float = 0.05,
) -> tuple[float, float, float]:
    """Return ``(lower, median, upper)`` quantiles of *samples*.

    The point estimate is the posterior median, not the mean.  The median
    is invariant to monotone reparameterisation and robust to the skewed
    posteriors that bounded growth rates produce; note that the
    non-Bayesian estimators report their own point estimates instead.

    Parameters
    ----------
    samples:
        Posterior draws of one parameter (any shape; flattened).
    alpha:
        Significance level.  The interval covers the central ``1 - alpha``
        posterior mass, i.e. the ``alpha / 2`` and ``1 - alpha / 2``
        quantiles.

    Returns
    -------
    tuple[float, float, float]
        Lower bound, median, upper bound.
    """
    if not 0.0 < alpha < 1.0:
        raise ValueError(f"alpha must be in (0, 1), got {alpha}")
    draws = np.asarray(samples, dtype=np.float64).reshape(-1)
    draws = draws[np.isfinite(draws)]
    if draws.size == 0:
        raise ValueError("No finite posterior draws")
    lower, median, upper = np.quantile(draws, [alpha / 2.0, 0.5, 1.0 - alpha / 2.0])
    return float(lower), float(median), float(upper)


def normal_interval(
    estimate: float,
    standard_error: float,
    alpha: float = 0.05,
) -> tuple[float, float]:
    """Symmetric Wald interval ``estimate -/+ z * standard_error``."""
    if not 0.0 < alpha < 1.0:
        raise ValueError(f"alpha must be in (0, 1), got {alpha}")
    z = float(norm.ppf(1.0 - alpha / 2.0))
    return float(estimate - z * standard_error), float(estimate + z * standard_error)
