"""Tests for domain models, errors, events, and protocols."""

from __future__ import annotations

import math
from datetime import datetime

import numpy as np
import pytest

from clonal_growth.domain.errors import (
    ClonalGrowthError,
    ConfigurationError,
    DegenerateBatchError,
    InapplicableModelWarning,
    InvalidTreeError,
    SamplingDivergenceError,
)
from clonal_growth.domain.events import (
    SWEEP_COMPLETED,
    SWEEP_STARTED,
    UNIT_FAILED,
    Event,
    EventBus,
)
from clonal_growth.domain.models import (
    CoalescenceTimes,
    CoverageBin,
    CoverageCurve,
    EstimateResult,
    ModelParameters,
    PosteriorSample,
    PriorBounds,
    SamplerConfig,
    SweepCondition,
    Tree,
)
from clonal_growth.domain.protocols import (
    GrowthRateEstimator,
    PosteriorTarget,
    TreeSimulator,
)
from clonal_growth.inference.estimators import internal_lengths
from clonal_growth.inference.logistic_model import LogisticCoalescentModel
from clonal_growth.phylo.simulator import simulate_trees


# =====================================================================
# Frozen dataclasses
# =====================================================================


class TestFrozenDataclasses:
    """Defaults and immutability of the domain values."""

    def test_tree_defaults(self):
        t = Tree()
        assert t.n_tips == 0
        assert isinstance(t.tree_id, str) and len(t.tree_id) > 0

    def test_tree_ids_are_unique(self):
        assert Tree().tree_id != Tree().tree_id

    def test_estimate_result_optional_sampler_fields(self):
        r = EstimateResult(method="internal_lengths")
        assert r.n_chains is None
        assert r.n_cores is None
        assert r.chain_length is None
        assert math.isnan(r.estimate)

    def test_estimate_result_immutable(self):
        r = EstimateResult()
        with pytest.raises((AttributeError, TypeError)):
            r.estimate = 1.0

    def test_sampler_config_immutable(self):
        cfg = SamplerConfig()
        with pytest.raises((AttributeError, TypeError)):
            cfg.n_chains = 4

    def test_prior_bounds_immutable(self):
        b = PriorBounds()
        with pytest.raises((AttributeError, TypeError)):
            b.s_max = 10.0

    def test_sampler_config_warmup(self):
        assert SamplerConfig(chain_length=2000).warmup == 1000
        assert SamplerConfig(chain_length=100, warmup_fraction=0.2).warmup == 20

    def test_model_parameters_array_round_trip(self):
        p = ModelParameters(s=0.3, tm=12.0, ln=5.5)
        np.testing.assert_array_equal(p.as_array(), [0.3, 12.0, 5.5])
        assert ModelParameters.from_array(p.as_array()) == p

    def test_prior_bounds_contains(self):
        b = PriorBounds(tm_min=1.0, tm_max=20.0)
        assert b.contains(ModelParameters(s=1.0, tm=5.0, ln=5.0))
        assert not b.contains(ModelParameters(s=5.0, tm=5.0, ln=5.0))
        assert not b.contains(ModelParameters(s=1.0, tm=0.5, ln=5.0))

    def test_coalescence_times_bounds(self):
        c = CoalescenceTimes(times=np.array([8.0, 3.0, 0.0]), depth=10.0)
        assert c.n_tips == 3
        assert c.min_t == pytest.approx(2.0)
        assert c.max_t == pytest.approx(20.0)

    def test_sweep_condition_growth_rate(self):
        assert SweepCondition(birth_rate=1.0, death_rate=0.3).growth_rate == pytest.approx(0.7)


class TestEstimateResult:
    def test_with_ground_truth_returns_copy(self):
        r = EstimateResult(estimate=0.48, lower_bound=0.4, upper_bound=0.6)
        annotated = r.with_ground_truth(0.5, clone_age=40, tree_index=3)
        assert r.true_growth_rate is None
        assert annotated.true_growth_rate == 0.5
        assert annotated.clone_age == 40.0
        assert annotated.tree_index == 3
        assert annotated.estimate == r.estimate

    def test_covers_is_inclusive(self):
        r = EstimateResult(lower_bound=0.4, estimate=0.5, upper_bound=0.6)
        assert r.covers(0.4)
        assert r.covers(0.6)
        assert not r.covers(0.61)

    def test_covers_false_for_nan_bounds(self):
        assert not EstimateResult().covers(0.5)

    def test_to_record_joins_warnings(self):
        r = EstimateResult(method="logistic_growth", warnings=("a", "b"))
        record = r.to_record()
        assert record["warnings"] == "a; b"
        assert record["method"] == "logistic_growth"


class TestPosteriorSample:
    def test_pooled_flattens_chains(self):
        samples = np.arange(12, dtype=float).reshape(2, 3, 2)
        ps = PosteriorSample(samples=samples, param_names=("s", "tm"))
        np.testing.assert_array_equal(ps.pooled("tm"), [1, 3, 5, 7, 9, 11])
        assert ps.n_draws == 6

    def test_pooled_unknown_name(self):
        ps = PosteriorSample(samples=np.zeros((1, 2, 1)), param_names=("s",))
        with pytest.raises(ValueError):
            ps.pooled("r")


class TestCoverageCurve:
    def test_for_method_filters(self):
        curve = CoverageCurve(bins=(
            CoverageBin(0, 1, "a", 2, 0.5),
            CoverageBin(0, 1, "b", 0, None),
        ))
        assert curve.methods == ["a", "b"]
        assert len(curve.for_method("b").bins) == 1
        assert curve.to_records()[1]["coverage"] is None


# =====================================================================
# Errors
# =====================================================================


class TestErrors:
    @pytest.mark.parametrize("cls", [
        InvalidTreeError, SamplingDivergenceError,
        DegenerateBatchError, ConfigurationError,
    ])
    def test_hierarchy(self, cls):
        err = cls("boom")
        assert isinstance(err, ClonalGrowthError)
        assert isinstance(err, Exception)
        assert str(err) == "boom"

    def test_context_defaults_to_empty_dict(self):
        assert InvalidTreeError("bad").context == {}

    def test_context_is_copied(self):
        ctx = {"tree_id": "t1"}
        err = InvalidTreeError("bad", context=ctx)
        ctx["tree_id"] = "changed"
        assert err.context == {"tree_id": "t1"}

    def test_warning_category(self):
        assert issubclass(InapplicableModelWarning, UserWarning)


# =====================================================================
# EventBus
# =====================================================================


class TestEventBus:
    def test_subscribe_and_publish(self):
        bus = EventBus()
        received: list[Event] = []
        bus.subscribe(UNIT_FAILED, received.append)
        bus.publish(Event(type=UNIT_FAILED, payload={"method": "max_likelihood"}))
        assert len(received) == 1
        assert received[0].payload == {"method": "max_likelihood"}

    def test_publish_string_with_payload(self):
        bus = EventBus()
        received: list[Event] = []
        bus.subscribe("sweep.started", received.append)
        bus.publish("sweep.started", {"n_units": 4})
        assert received[0].type == "sweep.started"
        assert received[0].payload["n_units"] == 4

    def test_delivery_filtered_by_type(self):
        bus = EventBus()
        failures: list[Event] = []
        bus.subscribe(UNIT_FAILED, failures.append)
        bus.publish(SWEEP_COMPLETED, {"n_results": 0})
        bus.publish(UNIT_FAILED, {"method": "internal_lengths"})
        assert [e.type for e in failures] == [UNIT_FAILED]

    def test_clear_drops_every_subscription(self):
        bus = EventBus()
        for kind in (SWEEP_STARTED, SWEEP_COMPLETED):
            bus.subscribe(kind, print)
        assert bus.handler_count(SWEEP_STARTED) == 1
        bus.clear()
        assert bus.handler_count(SWEEP_STARTED) == bus.handler_count(SWEEP_COMPLETED) == 0

    def test_unsubscribe(self):
        bus = EventBus()
        received: list[Event] = []
        bus.subscribe("evt", received.append)
        bus.unsubscribe("evt", received.append)
        bus.unsubscribe("other", received.append)
        bus.publish("evt")
        assert received == []

    def test_handlers_run_in_registration_order(self):
        bus = EventBus()
        order: list[str] = []
        bus.subscribe("evt", lambda e: order.append("first"))
        bus.subscribe("evt", lambda e: order.append("second"))
        bus.publish("evt")
        assert order == ["first", "second"]

    def test_event_timestamp_is_utc(self):
        ts = Event(type="ts").timestamp
        assert isinstance(ts, datetime)
        assert ts.tzinfo is not None


# =====================================================================
# Protocols
# =====================================================================


class TestProtocols:
    def test_simulator_satisfies_protocol(self):
        assert isinstance(simulate_trees, TreeSimulator)

    def test_estimator_satisfies_protocol(self):
        assert isinstance(internal_lengths, GrowthRateEstimator)

    def test_logistic_model_is_posterior_target(self, star_tree):
        model = LogisticCoalescentModel.from_tree(star_tree)
        assert isinstance(model, PosteriorTarget)
