"""NumPyro broken-stick change-point model.

Hierarchical Bayesian piecewise-linear dose-response model definition.
This module defines the probabilistic model only; inference is in inference.py.

Each individual i has an intercept, a pre-breakpoint slope and a breakpoint:

    alpha[i] = (beta[0] + u[i, 0], beta[1] + u[i, 1], betakp + u[i, 2])
    mu[j]    = alpha[i, 0] + alpha[i, 1] * min(dose[j] - alpha[i, 2], 0)
    y[j]     ~ Normal(mu[j], y_sd)

The deviations u[i] ~ MVN(0, diag(u_sd) L L' diag(u_sd)) are sampled with a
non-centered parameterization: standard-normal raw deviations z_u are scaled
by the shared Cholesky factor diag(u_sd) @ L_u_Corr.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import jax.numpy as jnp
import numpyro
import numpyro.distributions as dist
from numpyro import handlers

from brokenstick.models.changepoint.constants import N_EFFECTS
from brokenstick.utils.config import ConfigurationError

if TYPE_CHECKING:
    from brokenstick.utils.data import ObservationSet


@dataclass
class ChangepointSpec:
    """Specification for a change-point model.

    Bounds apply to the population breakpoint ``betakp``; individual
    breakpoints ``betakp + u[i, 2]`` are not bounded.
    """

    n_individuals: int
    betakp_lower: float
    betakp_upper: float

    # Names for the three random effects, used in summaries
    effect_names: tuple[str, str, str] = ("intercept", "slope", "breakpoint")

    def validate(self) -> None:
        if self.n_individuals < 1:
            raise ConfigurationError(f"n_individuals must be >= 1, got {self.n_individuals}")
        if not self.betakp_lower < self.betakp_upper:
            raise ConfigurationError(
                f"betakp_lower must be < betakp_upper, got "
                f"[{self.betakp_lower}, {self.betakp_upper}]"
            )


@dataclass
class ChangepointPriors:
    """Prior specifications for change-point model parameters.

    Each prior is specified as a dict with distribution parameters.
    """

    # Population intercept and pre-breakpoint slope
    beta: dict = field(default_factory=lambda: {"mu": 0.0, "sigma": 20.0})

    # Scales of the individual deviations (half-normal)
    u_sd: dict = field(default_factory=lambda: {"sigma": 20.0})

    # Residual scale (half-normal)
    y_sd: dict = field(default_factory=lambda: {"sigma": 20.0})

    # LKJ shape for the deviation correlation matrix (1 = uniform)
    lkj_concentration: float = 1.0


def _make_prior_dist(prior: dict) -> dist.Distribution:
    """Build the appropriate numpyro distribution from a prior dict.

    Normal if ``mu`` is present, HalfNormal if only ``sigma``.
    """
    if "mu" in prior:
        return dist.Normal(jnp.asarray(prior["mu"]), jnp.asarray(prior["sigma"]))
    return dist.HalfNormal(jnp.asarray(prior["sigma"]))


def _make_prior_batch(prior: dict, n: int) -> dist.Distribution:
    """Build a batched prior distribution with shape (n,)."""
    d = _make_prior_dist(prior)
    if d.batch_shape == (n,):
        return d
    if d.batch_shape == ():
        return d.expand([n])
    raise ValueError(f"Prior batch shape {d.batch_shape} does not match expected ({n},)")


# ---------------------------------------------------------------------------
# Pure model functions
# ---------------------------------------------------------------------------


def broken_stick_mean(
    dose: jnp.ndarray,
    intercept: jnp.ndarray,
    slope: jnp.ndarray,
    breakpoint: jnp.ndarray,
) -> jnp.ndarray:
    """Piecewise-linear mean: flat at or above the breakpoint, linear below it.

    Evaluated branchlessly, so the value at ``dose == breakpoint`` is exactly
    ``intercept``. All arguments broadcast.
    """
    return intercept + slope * jnp.minimum(dose - breakpoint, 0.0)


def random_effects(z_u: jnp.ndarray, u_sd: jnp.ndarray, L_u_Corr: jnp.ndarray) -> jnp.ndarray:
    """Scale raw deviations (n_individuals, 3) to u = z_u @ (diag(u_sd) @ L)'."""
    scale_tril = u_sd[:, None] * L_u_Corr
    return z_u @ scale_tril.T


def individual_effects(beta: jnp.ndarray, betakp: jnp.ndarray, u: jnp.ndarray) -> jnp.ndarray:
    """Per-individual (intercept, slope, breakpoint), shape (n_individuals, 3)."""
    population = jnp.concatenate([beta, jnp.atleast_1d(betakp)])
    return population + u


def correlation_matrix(L_u_Corr: jnp.ndarray) -> jnp.ndarray:
    """Correlation matrix L L' from its Cholesky factor."""
    return L_u_Corr @ L_u_Corr.T


def covariance_matrix(u_sd: jnp.ndarray, L_u_Corr: jnp.ndarray) -> jnp.ndarray:
    """Covariance diag(u_sd) L L' diag(u_sd) of the individual deviations."""
    return u_sd[:, None] * correlation_matrix(L_u_Corr) * u_sd[None, :]


def observation_means(
    params: dict[str, jnp.ndarray], individual: jnp.ndarray, dose: jnp.ndarray
) -> jnp.ndarray:
    """Mean outcome for each (0-based individual, dose) pair from constrained params."""
    u = random_effects(params["z_u"], params["u_sd"], params["L_u_Corr"])
    alpha = individual_effects(params["beta"], params["betakp"], u)
    a = alpha[individual]
    return broken_stick_mean(dose, a[:, 0], a[:, 1], a[:, 2])


# ---------------------------------------------------------------------------
# NumPyro model
# ---------------------------------------------------------------------------


class ChangepointModel:
    """NumPyro change-point model definition.

    Defines the probabilistic model for the hierarchical broken-stick
    regression. Inference is handled externally by changepoint.inference.fit().
    """

    def __init__(self, spec: ChangepointSpec, priors: ChangepointPriors | None = None):
        spec.validate()
        self.spec = spec
        self.priors = priors or ChangepointPriors()

    def _sample_population(self) -> tuple[jnp.ndarray, jnp.ndarray]:
        """Sample population intercept/slope and breakpoint."""
        beta = numpyro.sample("beta", _make_prior_batch(self.priors.beta, 2))
        betakp = numpyro.sample(
            "betakp", dist.Uniform(self.spec.betakp_lower, self.spec.betakp_upper)
        )
        return beta, betakp

    def _sample_deviations(self) -> jnp.ndarray:
        """Sample correlated individual deviations (non-centered)."""
        u_sd = numpyro.sample("u_sd", _make_prior_batch(self.priors.u_sd, N_EFFECTS))
        L_u_Corr = numpyro.sample(
            "L_u_Corr",
            dist.LKJCholesky(N_EFFECTS, concentration=self.priors.lkj_concentration),
        )
        with numpyro.plate("individuals", self.spec.n_individuals):
            z_u = numpyro.sample("z_u", dist.Normal(0.0, 1.0).expand([N_EFFECTS]).to_event(1))
        return numpyro.deterministic("u", random_effects(z_u, u_sd, L_u_Corr))

    def model(
        self,
        individual: jnp.ndarray,
        dose: jnp.ndarray,
        outcome: jnp.ndarray | None = None,
    ) -> None:
        """NumPyro model function.

        Args:
            individual: (N,) 0-based individual index per observation
            dose: (N,) dose per observation
            outcome: (N,) observed outcomes, or None to simulate
        """
        beta, betakp = self._sample_population()
        u = self._sample_deviations()
        y_sd = numpyro.sample("y_sd", _make_prior_dist(self.priors.y_sd))

        alpha = numpyro.deterministic("alpha", individual_effects(beta, betakp, u))
        a = alpha[individual]
        mu = broken_stick_mean(dose, a[:, 0], a[:, 1], a[:, 2])

        with numpyro.plate("observations", dose.shape[0]):
            numpyro.sample("y", dist.Normal(mu, y_sd), obs=outcome)

    def log_joint(
        self, params: dict[str, jnp.ndarray], data: ObservationSet
    ) -> tuple[jnp.ndarray, jnp.ndarray]:
        """Evaluate the model with substituted constrained params.

        Uses numpyro.handlers to substitute parameter values and trace the
        model, computing log_prior and log_likelihood without duplicating the
        model code.

        Returns:
            Tuple of (log_likelihood, log_prior)
        """
        with handlers.seed(rng_seed=0), handlers.substitute(data=params):
            trace = handlers.trace(self.model).get_trace(
                data.individual, data.dose, data.outcome
            )

        log_lik = 0.0
        log_prior = 0.0
        for site in trace.values():
            if site["type"] != "sample":
                continue
            lp = jnp.sum(site["fn"].log_prob(site["value"]))
            if site.get("is_observed", False):
                log_lik = log_lik + lp
            else:
                log_prior = log_prior + lp
        return log_lik, log_prior


def build_changepoint_model(
    data: ObservationSet,
    betakp_lower: float,
    betakp_upper: float,
    priors: ChangepointPriors | None = None,
) -> ChangepointModel:
    """Build a model sized to an observation set."""
    spec = ChangepointSpec(
        n_individuals=data.n_individuals,
        betakp_lower=betakp_lower,
        betakp_upper=betakp_upper,
    )
    return ChangepointModel(spec, priors)
