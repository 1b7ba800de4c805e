"""Exception and warning types for the clonal growth pipeline.

Every exception carries an optional ``context`` dict so that the sweep
harness can record what failed (tree id, method, parameter values) in its
failure manifest without parsing messages.
"""

from __future__ import annotations

from typing import Any


class ClonalGrowthError(Exception):
    """Base class for all errors raised by :mod:`clonal_growth`."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = dict(context or {})


class InvalidTreeError(ClonalGrowthError):
    """The input tree is not a rooted, binary, ultrametric phylogeny."""


class SamplingDivergenceError(ClonalGrowthError):
    """MCMC chains failed to mix (high R-hat or no accepted proposals)."""


class DegenerateBatchError(ClonalGrowthError):
    """A summary was requested over an empty or heterogeneous batch."""


class ConfigurationError(ClonalGrowthError):
    """Sweep or simulator settings are inconsistent."""


class InapplicableModelWarning(UserWarning):
    """The diagnostic ratio of a tree is below the applicability cutoff."""
