"""Growth-rate inference -- likelihoods, posterior sampling, estimators.

- **Logistic model**: the logistic-growth coalescent likelihood and its
  bounded posterior target.
- **Point process**: the birth-death coalescent point process likelihood
  backing the maximum-likelihood and birth-death MCMC estimators.
- **Sampler**: numpyro NUTS chains, optionally across processes.
- **Estimators**: batch estimators returning :class:`EstimateResult`.

Importing this package switches JAX to 64-bit floats; the likelihoods
rely on double precision.
"""

from __future__ import annotations

import numpyro

numpyro.enable_x64()

from clonal_growth.inference.estimators import (
    ESTIMATOR_OPTIONS,
    ESTIMATORS,
    SAMPLING_METHODS,
    birth_death_mcmc,
    describe_estimators,
    estimate_logistic_growth,
    fit_logistic_growth,
    get_estimator,
    internal_lengths,
    max_likelihood,
)
from clonal_growth.inference.intervals import credible_interval, normal_interval
from clonal_growth.inference.logistic_model import (
    LogisticCoalescentModel,
    log_expm1,
    logistic_log_likelihood,
)
from clonal_growth.inference.point_process import (
    CoalescentPointProcessModel,
    cpp_log_likelihood,
    fit_cpp_mle,
)
from clonal_growth.inference.sampler import (
    ChainResult,
    convergence_diagnostics,
    initial_point,
    run_chain,
    sample_posterior,
)

__all__ = [
    # Models
    "LogisticCoalescentModel",
    "logistic_log_likelihood",
    "log_expm1",
    "CoalescentPointProcessModel",
    "cpp_log_likelihood",
    "fit_cpp_mle",
    # Sampling
    "ChainResult",
    "initial_point",
    "run_chain",
    "sample_posterior",
    "convergence_diagnostics",
    # Intervals
    "credible_interval",
    "normal_interval",
    # Estimators
    "ESTIMATORS",
    "ESTIMATOR_OPTIONS",
    "SAMPLING_METHODS",
    "fit_logistic_growth",
    "estimate_logistic_growth",
    "internal_lengths",
    "max_likelihood",
    "birth_death_mcmc",
    "get_estimator",
    "describe_estimators",
]
