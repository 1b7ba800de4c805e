"""Protocol interfaces for the collaborators of the inference core.

Each protocol defines the contract that concrete implementations must satisfy.
Using :class:`typing.Protocol` enables structural subtyping -- simulators,
estimators and sampling targets do not need to inherit from these classes.
"""

from __future__ import annotations

from typing import Any, Protocol, Sequence, runtime_checkable

import numpy as np

from clonal_growth.domain.models import EstimateResult, Tree


@runtime_checkable
class TreeSimulator(Protocol):
    """Generate birth-death trees for given rates, age and sample size."""

    def __call__(
        self,
        birth_rate: float | Sequence[float],
        death_rate: float | Sequence[float],
        clone_age: float | Sequence[float],
        n: int,
        replicates: int = 1,
        seed: int | np.random.Generator | None = None,
    ) -> list[Tree]:
        """Return *replicates* ultrametric trees with *n* tips each.

        Rate and age arguments are either scalars or per-replicate arrays
        whose length equals *replicates*.
        """
        ...


@runtime_checkable
class GrowthRateEstimator(Protocol):
    """Estimate the growth rate of each tree in a batch."""

    def __call__(
        self, trees: Sequence[Tree], **options: Any,
    ) -> list[EstimateResult]:
        """Return one :class:`EstimateResult` per tree, in input order.

        Every result must carry ``ext_int_ratio``.  Sampling estimators
        accept ``n_chains``, ``n_cores`` and ``chain_length`` options.
        """
        ...


@runtime_checkable
class PosteriorTarget(Protocol):
    """A bounded posterior that the NUTS sampler can explore.

    ``log_posterior`` scores candidate starting points; ``numpyro_model``
    declares one ``numpyro.sample`` site per entry of ``param_names``.
    """

    param_names: tuple[str, ...]

    @property
    def lower(self) -> np.ndarray:
        """Lower bound of each parameter."""
        ...

    @property
    def upper(self) -> np.ndarray:
        """Upper bound of each parameter."""
        ...

    def log_posterior(self, x: np.ndarray) -> float:
        """Unnormalised log posterior density at parameter vector *x*."""
        ...

    def numpyro_model(self) -> None:
        """numpyro model whose sample sites are named by ``param_names``."""
        ...
