"""Posterior predictive simulation for fitted change-point models.

For each posterior draw, evaluates the broken-stick mean at caller-specified
(individual, dose) points and simulates one outcome y ~ Normal(mu, y_sd)
with that draw's own random key. Also reconstructs per-draw correlation and
covariance matrices of the individual deviations, and checks calibration of
the predictive intervals against the observed data.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import jax
import jax.numpy as jnp
import numpy as np
from jax import vmap

from brokenstick.models.changepoint.model import (
    broken_stick_mean,
    correlation_matrix,
    covariance_matrix,
    individual_effects,
)

if TYPE_CHECKING:
    from brokenstick.models.changepoint.inference import InferenceResult
    from brokenstick.utils.data import ObservationSet, PredictionGrid

# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class PosteriorPredictiveResult:
    """Predictive draws and summaries at every prediction-grid point."""

    individual_id: np.ndarray  # (M,) 1-based
    dose: np.ndarray  # (M,)
    draws: jnp.ndarray  # (n_draws, M) simulated outcomes
    mu: jnp.ndarray  # (n_draws, M) mean function
    mean: jnp.ndarray  # (M,) posterior predictive mean
    mu_mean: jnp.ndarray  # (M,)
    lower: jnp.ndarray  # (M,) 2.5% quantile of draws
    upper: jnp.ndarray  # (M,) 97.5% quantile of draws
    u_corr: jnp.ndarray  # (n_draws, 3, 3)
    u_cov: jnp.ndarray  # (n_draws, 3, 3)
    alpha: jnp.ndarray  # (n_draws, k, 3)
    alpha_individuals: tuple[int, ...] = ()

    def to_dict(self) -> dict:
        """Per-point summaries as plain Python lists."""
        return {
            "individual_id": [int(i) for i in self.individual_id],
            "dose": [float(d) for d in self.dose],
            "mean": [float(v) for v in self.mean],
            "mu_mean": [float(v) for v in self.mu_mean],
            "lower": [float(v) for v in self.lower],
            "upper": [float(v) for v in self.upper],
        }


@dataclass
class PPCWarning:
    """A single calibration warning for one individual."""

    individual_id: int
    check: str  # "calibration"
    message: str
    value: float

    def to_dict(self) -> dict:
        return {
            "individual_id": self.individual_id,
            "check": self.check,
            "message": self.message,
            "value": self.value,
        }


@dataclass
class PPCResult:
    """Aggregate posterior predictive check result."""

    warnings: list[PPCWarning] = field(default_factory=list)
    coverage: float = float("nan")  # fraction of all observations inside the 95% interval
    checked: bool = False

    def to_dict(self) -> dict:
        return {
            "warnings": [w.to_dict() for w in self.warnings],
            "coverage": self.coverage,
            "checked": self.checked,
        }


# ---------------------------------------------------------------------------
# Derived quantities
# ---------------------------------------------------------------------------


def _n_individuals(samples: dict[str, jnp.ndarray]) -> int:
    return int(samples["u"].shape[1])


def _to_index(individual_ids: Sequence[int] | np.ndarray, n_individuals: int) -> jnp.ndarray:
    """1-based labels -> 0-based index, rejecting labels outside [1, n_individuals]."""
    ids = np.asarray(individual_ids, dtype=int).reshape(-1)
    bad = ids[(ids < 1) | (ids > n_individuals)]
    if bad.size:
        raise ValueError(
            f"individual_id outside [1, {n_individuals}]: {sorted(set(bad.tolist()))[:10]}"
        )
    return jnp.asarray(ids - 1, dtype=jnp.int32)


def reconstruct_covariance(samples: dict[str, jnp.ndarray]) -> dict[str, jnp.ndarray]:
    """Per-draw correlation L L' and covariance diag(u_sd) L L' diag(u_sd)."""
    L = samples["L_u_Corr"]
    return {
        "u_corr": vmap(correlation_matrix)(L),
        "u_cov": vmap(covariance_matrix)(samples["u_sd"], L),
    }


def individual_alpha(
    samples: dict[str, jnp.ndarray], individuals: Sequence[int]
) -> jnp.ndarray:
    """Per-draw (intercept, slope, breakpoint) for 1-based ``individuals``.

    Returns:
        (n_draws, len(individuals), 3)
    """
    index = _to_index(individuals, _n_individuals(samples))
    alpha = vmap(individual_effects)(samples["beta"], samples["betakp"], samples["u"])
    return alpha[:, index]


def population_curve(samples: dict[str, jnp.ndarray], doses: Sequence[float]) -> jnp.ndarray:
    """Population mean curve (zero deviations) per draw, shape (n_draws, n_doses)."""
    dose = jnp.asarray(doses, dtype=float)
    beta = samples["beta"]
    return broken_stick_mean(
        dose[None, :],
        beta[:, 0:1],
        beta[:, 1:2],
        jnp.reshape(samples["betakp"], (-1, 1)),
    )


# ---------------------------------------------------------------------------
# Forward simulation
# ---------------------------------------------------------------------------


def _simulate_one_draw(
    beta: jnp.ndarray,
    betakp: jnp.ndarray,
    u: jnp.ndarray,
    y_sd: jnp.ndarray,
    individual: jnp.ndarray,
    dose: jnp.ndarray,
    rng_key: jax.Array,
) -> tuple[jnp.ndarray, jnp.ndarray]:
    """Mean and one simulated outcome per query point for a single draw."""
    a = individual_effects(beta, betakp, u)[individual]
    mu = broken_stick_mean(dose, a[:, 0], a[:, 1], a[:, 2])
    y = mu + y_sd * jax.random.normal(rng_key, mu.shape)
    return mu, y


def _simulate(
    samples: dict[str, jnp.ndarray],
    individual: jnp.ndarray,
    dose: jnp.ndarray,
    rng_seed: int,
) -> tuple[jnp.ndarray, jnp.ndarray]:
    n_draws = samples["beta"].shape[0]
    keys = jax.random.split(jax.random.PRNGKey(rng_seed), n_draws)
    return vmap(_simulate_one_draw, in_axes=(0, 0, 0, 0, None, None, 0))(
        samples["beta"],
        samples["betakp"],
        samples["u"],
        samples["y_sd"],
        individual,
        dose,
        keys,
    )


def simulate_posterior_predictive(
    samples: dict[str, jnp.ndarray],
    individual_ids: Sequence[int] | np.ndarray,
    doses: Sequence[float] | np.ndarray,
    rng_seed: int = 0,
) -> jnp.ndarray:
    """Simulate one outcome per posterior draw at each query point.

    Args:
        samples: flat posterior samples from InferenceResult.get_samples()
        individual_ids: (M,) 1-based individual per query point
        doses: (M,) dose per query point
        rng_seed: random seed; draw d uses the d-th split of this key

    Returns:
        (n_draws, M) simulated outcomes
    """
    dose = jnp.asarray(doses, dtype=float).reshape(-1)
    individual = _to_index(individual_ids, _n_individuals(samples))
    if individual.shape != dose.shape:
        raise ValueError(
            f"individual_ids and doses must have equal length, got "
            f"{individual.shape[0]} and {dose.shape[0]}"
        )
    _, y = _simulate(samples, individual, dose, rng_seed)
    return y


def summarize_predictions(draws: jnp.ndarray, mu: jnp.ndarray) -> dict[str, jnp.ndarray]:
    """Predictive mean, mean of mu, and 95% interval per query point."""
    return {
        "mean": jnp.mean(draws, axis=0),
        "mu_mean": jnp.mean(mu, axis=0),
        "lower": jnp.percentile(draws, 2.5, axis=0),
        "upper": jnp.percentile(draws, 97.5, axis=0),
    }


# ---------------------------------------------------------------------------
# Main entry points
# ---------------------------------------------------------------------------


def posterior_predictive(
    result: InferenceResult,
    grid: PredictionGrid,
    individuals: Sequence[int] | None = None,
    rng_seed: int = 0,
) -> PosteriorPredictiveResult:
    """Posterior predictive draws, summaries and derived matrices on a grid.

    Args:
        result: fitted InferenceResult
        grid: prediction points; may extend beyond the observed dose range
        individuals: 1-based individuals whose per-draw alpha is returned;
            defaults to the individuals that appear in ``grid``
        rng_seed: random seed

    Returns:
        PosteriorPredictiveResult
    """
    samples = result.get_samples()
    n = _n_individuals(samples)
    individual = _to_index(grid.individual_id, n)
    if individuals is None:
        individuals = sorted(set(grid.individual_id.tolist()))

    mu, draws = _simulate(samples, individual, grid.dose, rng_seed)
    summary = summarize_predictions(draws, mu)
    matrices = reconstruct_covariance(samples)

    return PosteriorPredictiveResult(
        individual_id=grid.individual_id,
        dose=np.asarray(grid.dose),
        draws=draws,
        mu=mu,
        mean=summary["mean"],
        mu_mean=summary["mu_mean"],
        lower=summary["lower"],
        upper=summary["upper"],
        u_corr=matrices["u_corr"],
        u_cov=matrices["u_cov"],
        alpha=individual_alpha(samples, individuals),
        alpha_individuals=tuple(int(i) for i in individuals),
    )


def check_calibration(
    result: InferenceResult,
    observations: ObservationSet,
    rng_seed: int = 42,
    low_threshold: float = 0.70,
    high_threshold: float = 0.999,
    min_observations: int = 3,
) -> PPCResult:
    """Check how many observations fall inside their 95% predictive interval.

    Individuals with fewer than ``min_observations`` points are not checked
    on their own but still count towards the overall coverage.
    """
    samples = result.get_samples()
    index = _to_index(np.asarray(observations.individual) + 1, _n_individuals(samples))
    _, draws = _simulate(samples, index, observations.dose, rng_seed)
    q025 = jnp.percentile(draws, 2.5, axis=0)
    q975 = jnp.percentile(draws, 97.5, axis=0)
    inside = np.asarray((observations.outcome >= q025) & (observations.outcome <= q975))
    individual = np.asarray(observations.individual)

    warnings = []
    for i in range(observations.n_individuals):
        mask = individual == i
        n_obs = int(mask.sum())
        if n_obs < min_observations:
            continue
        coverage = float(inside[mask].mean())
        if coverage < low_threshold:
            warnings.append(
                PPCWarning(
                    individual_id=i + 1,
                    check="calibration",
                    message=(
                        f"Undercoverage: {coverage:.0%} of {n_obs} observations fall in "
                        "95% PPC interval (expected ~95%)"
                    ),
                    value=coverage,
                )
            )
        elif coverage > high_threshold and n_obs >= 20:
            warnings.append(
                PPCWarning(
                    individual_id=i + 1,
                    check="calibration",
                    message=(
                        f"Overcoverage: {coverage:.0%} of {n_obs} observations fall in "
                        "95% PPC interval (model may be too diffuse)"
                    ),
                    value=coverage,
                )
            )

    return PPCResult(warnings=warnings, coverage=float(inside.mean()), checked=True)
