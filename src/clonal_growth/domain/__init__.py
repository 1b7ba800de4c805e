"""Domain layer -- models, errors, protocols, and events.

Re-exports all public domain types for convenient access::

    from clonal_growth.domain import Tree, EstimateResult, InvalidTreeError
"""

from __future__ import annotations

from clonal_growth.domain.errors import (
    ClonalGrowthError,
    ConfigurationError,
    DegenerateBatchError,
    InapplicableModelWarning,
    InvalidTreeError,
    SamplingDivergenceError,
)
from clonal_growth.domain.events import (
    ESTIMATE_COMPLETED,
    SWEEP_COMPLETED,
    SWEEP_STARTED,
    TREES_SIMULATED,
    UNIT_FAILED,
    Event,
    EventBus,
)
from clonal_growth.domain.models import (
    AppConfig,
    CoalescenceTimes,
    CoverageBin,
    CoverageCurve,
    EstimateResult,
    FailedUnit,
    ModelParameters,
    PosteriorSample,
    PriorBounds,
    SamplerConfig,
    SummaryStats,
    SweepCondition,
    SweepConfig,
    Tree,
)
from clonal_growth.domain.protocols import (
    GrowthRateEstimator,
    PosteriorTarget,
    TreeSimulator,
)

__all__ = [
    # Models
    "AppConfig",
    "CoalescenceTimes",
    "CoverageBin",
    "CoverageCurve",
    "EstimateResult",
    "FailedUnit",
    "ModelParameters",
    "PosteriorSample",
    "PriorBounds",
    "SamplerConfig",
    "SummaryStats",
    "SweepCondition",
    "SweepConfig",
    "Tree",
    # Errors
    "ClonalGrowthError",
    "ConfigurationError",
    "DegenerateBatchError",
    "InapplicableModelWarning",
    "InvalidTreeError",
    "SamplingDivergenceError",
    # Events
    "ESTIMATE_COMPLETED",
    "SWEEP_COMPLETED",
    "SWEEP_STARTED",
    "TREES_SIMULATED",
    "UNIT_FAILED",
    "Event",
    "EventBus",
    # Protocols
    "GrowthRateEstimator",
    "PosteriorTarget",
    "TreeSimulator",
]
