"""Tests for the coalescent point process likelihood and its MLE."""

from __future__ import annotations

import numpy as np
import pytest
from numpyro.infer.util import log_density
from scipy.integrate import quad

from clonal_growth.inference.point_process import (
    CoalescentPointProcessModel,
    cpp_log_likelihood,
    fit_cpp_mle,
)
from clonal_growth.phylo.simulator import simulate_trees
from clonal_growth.phylo.tree import branching_times


class TestCppLogLikelihood:
    def test_density_integrates_to_one(self):
        r, log_alpha = 0.7, np.log(0.05)
        total, _ = quad(
            lambda h: np.exp(cpp_log_likelihood(np.array([h]), r, log_alpha)), 0.0, np.inf,
        )
        assert total == pytest.approx(1.0, rel=1e-6)

    def test_non_positive_rate(self):
        assert cpp_log_likelihood(np.array([1.0]), 0.0, -1.0) == -np.inf

    def test_large_depths_finite(self):
        ll = cpp_log_likelihood(np.array([500.0, 800.0]), 2.0, -1500.0)
        assert np.isfinite(ll)


class TestFitCppMle:
    def test_recovers_rate_on_large_tree(self):
        tree = simulate_trees(1.0, 0.5, 40.0, n=400, seed=4)[0]
        x_hat, cov = fit_cpp_mle(branching_times(tree))
        assert np.exp(x_hat[0]) == pytest.approx(0.5, rel=0.3)
        assert cov is not None
        assert cov[0, 0] > 0.0

    def test_deterministic(self, simulated_batch):
        h = branching_times(simulated_batch[0])
        a, _ = fit_cpp_mle(h, seed=1)
        b, _ = fit_cpp_mle(h, seed=1)
        np.testing.assert_array_equal(a, b)


class TestCoalescentPointProcessModel:
    def test_from_tree_bounds(self, simulated_batch):
        model = CoalescentPointProcessModel.from_tree(simulated_batch[0])
        assert model.lower[0] == pytest.approx(1e-4)
        assert model.upper[0] == pytest.approx(4.0)
        assert model.lower[1] < -2.0
        assert len(model.depths) == 29

    def test_log_posterior_outside_support(self, simulated_batch):
        model = CoalescentPointProcessModel.from_tree(simulated_batch[0])
        assert model.log_posterior(np.array([5.0, -3.0])) == -np.inf
        assert model.log_posterior(np.array([0.5, 3.0])) == -np.inf

    def test_log_posterior_finite_inside(self, simulated_batch):
        model = CoalescentPointProcessModel.from_tree(simulated_batch[0])
        assert np.isfinite(model.log_posterior(np.array([0.5, -7.0])))

    def test_numpyro_model_adds_uniform_prior(self, simulated_batch):
        model = CoalescentPointProcessModel.from_tree(simulated_batch[0])
        x = np.array([0.5, -7.0])
        joint, _ = log_density(model.numpyro_model, (), {}, dict(zip(model.param_names, x)))
        expected = model.log_likelihood(x) - np.sum(np.log(model.upper - model.lower))
        assert float(joint) == pytest.approx(expected, rel=1e-9)
