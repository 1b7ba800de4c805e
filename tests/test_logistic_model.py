"""Tests for the logistic-growth coalescent likelihood and posterior target."""

from __future__ import annotations

import numpy as np
import numpy.testing as npt
import pytest
from numpyro.infer.util import log_density

from clonal_growth.domain.models import ModelParameters
from clonal_growth.inference.logistic_model import (
    LogisticCoalescentModel,
    logistic_log_likelihood,
)
from clonal_growth.phylo.coalescence import extract_coalescence_times


@pytest.fixture()
def coalescence(simulated_batch):
    return extract_coalescence_times(simulated_batch[0])


# =====================================================================
# Likelihood
# =====================================================================


class TestLogisticLogLikelihood:
    def test_finite_for_typical_parameters(self, coalescence):
        ll = logistic_log_likelihood(coalescence.times, coalescence.depth, 0.5, 35.0, 5.0)
        assert np.isfinite(ll)

    def test_non_positive_rate_is_impossible(self, coalescence):
        assert logistic_log_likelihood(coalescence.times, coalescence.depth, 0.0, 30, 5) == -np.inf
        assert logistic_log_likelihood(coalescence.times, coalescence.depth, -1.0, 30, 5) == -np.inf

    @pytest.mark.parametrize("s,tm,ln", [
        (4.0, 80.0, 4.0),
        (4.0, 2.0, 7.0),
        (1e-4, 80.0, 7.0),
        (1e-4, 2.0, 4.0),
    ])
    def test_finite_at_prior_corners(self, coalescence, s, tm, ln):
        ll = logistic_log_likelihood(coalescence.times, coalescence.depth, s, tm, ln)
        assert np.isfinite(ll)

    def test_extreme_products_stay_finite(self):
        times = np.append(np.linspace(900.0, 1.0, 199), 0.0)
        ll = logistic_log_likelihood(times, 1000.0, 4.0, 2000.0, 4.0)
        assert np.isfinite(ll)
        assert ll < -1e100

    @pytest.mark.parametrize("params", [
        (0.5, 5.0, 5.0),
        (0.2, 10.0, 4.5),
        (1.5, 2.0, 6.5),
    ])
    def test_time_rescaling_shifts_by_jacobian(self, coalescence, params):
        """Scaling time by c, S by 1/c and N_cap by c shifts ll by -(n-1) log c."""
        s, offset, ln = params
        tm = coalescence.min_t + offset
        c = 2.5
        t, depth = coalescence.times, coalescence.depth
        base = logistic_log_likelihood(t, depth, s, tm, ln)
        scaled = logistic_log_likelihood(c * t, c * depth, s / c, c * tm, ln + np.log10(c))
        n_intervals = len(t) - 1
        npt.assert_allclose(scaled - base, -n_intervals * np.log(c), rtol=1e-8, atol=1e-6)

    def test_rescaling_shift_is_parameter_free(self, coalescence):
        c = 0.1
        t, depth = coalescence.times, coalescence.depth
        shifts = []
        for s, offset in [(0.3, 8.0), (0.8, 4.0), (2.0, 1.5)]:
            tm = coalescence.min_t + offset
            base = logistic_log_likelihood(t, depth, s, tm, 5.0)
            scaled = logistic_log_likelihood(c * t, c * depth, s / c, c * tm, 5.0 + np.log10(c))
            shifts.append(scaled - base)
        npt.assert_allclose(shifts, shifts[0], rtol=1e-8, atol=1e-6)

    def test_two_tip_tree_single_interval(self):
        ll = logistic_log_likelihood(np.array([2.0, 0.0]), 3.0, 1.0, 2.0, 4.0)
        assert np.isfinite(ll)


# =====================================================================
# Model
# =====================================================================


class TestLogisticCoalescentModel:
    def test_bounds_from_tree(self, star_tree):
        model = LogisticCoalescentModel.from_tree(star_tree, min_ln=4.5, max_ln=6.5)
        npt.assert_allclose(model.lower, [1e-4, 1.0, 4.5])
        npt.assert_allclose(model.upper, [4.0, 22.0, 6.5])

    def test_invalid_ln_range(self, star_tree):
        with pytest.raises(ValueError, match="min_ln"):
            LogisticCoalescentModel.from_tree(star_tree, min_ln=7.0, max_ln=4.0)

    def test_log_prior_uniform(self, star_tree):
        model = LogisticCoalescentModel.from_tree(star_tree)
        inside = np.array([1.0, 10.0, 5.0])
        expected = -np.sum(np.log(model.upper - model.lower))
        assert model.log_prior(inside) == pytest.approx(expected)
        assert model.log_prior(np.array([5.0, 10.0, 5.0])) == -np.inf
        assert model.log_prior(np.array([1.0, 0.5, 5.0])) == -np.inf

    def test_log_posterior_outside_support(self, star_tree):
        model = LogisticCoalescentModel.from_tree(star_tree)
        assert model.log_posterior(np.array([1.0, 10.0, 8.0])) == -np.inf

    def test_log_posterior_adds_prior(self, star_tree):
        model = LogisticCoalescentModel.from_tree(star_tree)
        x = np.array([0.8, 12.0, 5.0])
        assert model.log_posterior(x) == pytest.approx(model.log_prior(x) + model.log_likelihood(x))

    def test_log_likelihood_accepts_parameters(self, star_tree):
        model = LogisticCoalescentModel.from_tree(star_tree)
        params = ModelParameters(s=0.8, tm=12.0, ln=5.0)
        assert model.log_likelihood(params) == pytest.approx(model.log_likelihood(params.as_array()))

    def test_param_names(self):
        assert LogisticCoalescentModel.param_names == ("s", "tm", "ln")

    def test_numpyro_model_matches_log_posterior(self, star_tree):
        model = LogisticCoalescentModel.from_tree(star_tree)
        x = np.array([0.8, 12.0, 5.0])
        joint, _ = log_density(model.numpyro_model, (), {}, dict(zip(model.param_names, x)))
        assert float(joint) == pytest.approx(model.log_posterior(x), rel=1e-9)
