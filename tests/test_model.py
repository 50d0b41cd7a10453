"""Tests for the change-point model definition.

Covers the pure mean function (continuity at the breakpoint), the
non-centered deviation construction, and the NumPyro model's sites and
log density.
"""

import jax.numpy as jnp
import numpy as np
import pytest
from jax.scipy.stats import norm
from numpyro import handlers

from brokenstick.models.changepoint.model import (
    ChangepointModel,
    ChangepointPriors,
    ChangepointSpec,
    broken_stick_mean,
    build_changepoint_model,
    correlation_matrix,
    covariance_matrix,
    individual_effects,
    observation_means,
    random_effects,
)
from brokenstick.utils.config import ConfigurationError

# =============================================================================
# Mean function
# =============================================================================


class TestBrokenStickMean:
    def test_flat_at_and_above_breakpoint(self):
        dose = jnp.array([1.0, 1.5, 3.0])
        mu = broken_stick_mean(dose, 10.0, -5.0, 1.0)
        np.testing.assert_allclose(mu, [10.0, 10.0, 10.0])

    def test_linear_below_breakpoint(self):
        dose = jnp.array([0.0, 0.5, 0.8])
        mu = broken_stick_mean(dose, 10.0, -5.0, 1.0)
        np.testing.assert_allclose(mu, [15.0, 12.5, 11.0], rtol=1e-6)

    @pytest.mark.parametrize("breakpoint", [0.3, 1.0, 1.77])
    def test_continuous_at_breakpoint(self, breakpoint):
        """Value at the breakpoint equals the intercept from both sides."""
        intercept, slope = 4.2, 3.1
        eps = 1e-4
        at = broken_stick_mean(jnp.asarray(breakpoint), intercept, slope, breakpoint)
        below = broken_stick_mean(jnp.asarray(breakpoint - eps), intercept, slope, breakpoint)
        above = broken_stick_mean(jnp.asarray(breakpoint + eps), intercept, slope, breakpoint)
        assert float(at) == pytest.approx(intercept)
        assert float(below) == pytest.approx(intercept, abs=1e-3)
        assert float(above) == pytest.approx(intercept)

    def test_broadcasts_per_observation_parameters(self):
        dose = jnp.array([0.5, 0.5])
        mu = broken_stick_mean(
            dose, jnp.array([1.0, 2.0]), jnp.array([2.0, 2.0]), jnp.array([1.0, 0.4])
        )
        np.testing.assert_allclose(mu, [0.0, 2.0], atol=1e-6)


# =============================================================================
# Deviations and derived matrices
# =============================================================================


class TestRandomEffects:
    def test_matches_per_individual_cholesky_product(self):
        rng = np.random.default_rng(0)
        z_u = rng.standard_normal((4, 3))
        u_sd = np.array([0.5, 2.0, 0.1])
        L = np.linalg.cholesky(np.array([[1.0, 0.3, 0.1], [0.3, 1.0, -0.2], [0.1, -0.2, 1.0]]))

        u = random_effects(jnp.asarray(z_u), jnp.asarray(u_sd), jnp.asarray(L))
        expected = np.stack([np.diag(u_sd) @ L @ z for z in z_u])
        np.testing.assert_allclose(u, expected, rtol=1e-5, atol=1e-6)

    def test_individual_effects_adds_population(self):
        u = jnp.array([[1.0, 0.0, 0.1], [-1.0, 0.5, -0.1]])
        alpha = individual_effects(jnp.array([10.0, -5.0]), jnp.asarray(1.0), u)
        np.testing.assert_allclose(alpha, [[11.0, -5.0, 1.1], [9.0, -4.5, 0.9]], rtol=1e-6)

    def test_covariance_with_identity_correlation_is_diagonal(self):
        u_sd = jnp.array([1.0, 2.0, 3.0])
        cov = covariance_matrix(u_sd, jnp.eye(3))
        np.testing.assert_allclose(cov, np.diag([1.0, 4.0, 9.0]))
        np.testing.assert_allclose(correlation_matrix(jnp.eye(3)), np.eye(3))

    def test_observation_means_uses_individual_breakpoint(self):
        """Individual 2's breakpoint is shifted; its mean must use the shifted value."""
        params = {
            "beta": jnp.array([10.0, -5.0]),
            "betakp": jnp.asarray(1.0),
            "u_sd": jnp.array([1.0, 1.0, 1.0]),
            "L_u_Corr": jnp.eye(3),
            "z_u": jnp.array([[0.0, 0.0, 0.0], [0.0, 0.0, -0.5]]),
        }
        mu = observation_means(params, jnp.array([0, 1]), jnp.array([0.6, 0.6]))
        # individual 1: breakpoint 1.0 -> 10 - 5 * (0.6 - 1.0) = 12
        # individual 2: breakpoint 0.5 -> dose above it -> 10
        np.testing.assert_allclose(mu, [12.0, 10.0], rtol=1e-6)


# =============================================================================
# NumPyro model
# =============================================================================


class TestChangepointModel:
    def test_spec_rejects_inverted_bounds(self):
        with pytest.raises(ConfigurationError, match="betakp_lower"):
            ChangepointModel(ChangepointSpec(n_individuals=2, betakp_lower=2.0, betakp_upper=0.5))

    def test_spec_rejects_empty_population(self):
        with pytest.raises(ConfigurationError, match="n_individuals"):
            ChangepointSpec(n_individuals=0, betakp_lower=0.5, betakp_upper=2.0).validate()

    def test_trace_has_expected_sites(self, population_data):
        data = population_data["data"]
        model = build_changepoint_model(data, 0.5, 2.0)
        with handlers.seed(rng_seed=0):
            trace = handlers.trace(model.model).get_trace(data.individual, data.dose, data.outcome)

        n = data.n_individuals
        assert trace["beta"]["value"].shape == (2,)
        assert trace["betakp"]["value"].shape == ()
        assert trace["u_sd"]["value"].shape == (3,)
        assert trace["L_u_Corr"]["value"].shape == (3, 3)
        assert trace["z_u"]["value"].shape == (n, 3)
        assert trace["u"]["value"].shape == (n, 3)
        assert trace["alpha"]["value"].shape == (n, 3)
        assert trace["y"]["is_observed"]
        assert 0.5 <= float(trace["betakp"]["value"]) <= 2.0

    def test_log_joint_splits_likelihood_and_prior(self, population_data):
        data = population_data["data"]
        model = build_changepoint_model(data, 0.5, 2.0)
        n = data.n_individuals
        params = {
            "beta": jnp.array([10.0, 5.0]),
            "betakp": jnp.asarray(1.0),
            "u_sd": jnp.array([0.5, 0.5, 0.1]),
            "y_sd": jnp.asarray(0.3),
            "L_u_Corr": jnp.eye(3),
            "z_u": jnp.zeros((n, 3)),
        }
        log_lik, log_prior = model.log_joint(params, data)

        mu = observation_means(params, data.individual, data.dose)
        expected_lik = jnp.sum(norm.logpdf(data.outcome, mu, 0.3))
        assert float(log_lik) == pytest.approx(float(expected_lik), rel=1e-4)
        assert np.isfinite(float(log_prior))

    def test_prior_scale_override(self, population_data):
        data = population_data["data"]
        priors = ChangepointPriors(y_sd={"sigma": 1000.0})
        model = build_changepoint_model(data, 0.5, 2.0, priors=priors)
        assert model.priors.y_sd["sigma"] == 1000.0
        assert model.spec.n_individuals == data.n_individuals
