"""Prior predictive sampling and validation for change-point models.

Samples parameters and outcomes from the prior with numpyro's Predictive and
checks the draws for domain violations (NaN/Inf, non-positive scales,
breakpoints outside their bounds, correlations outside [-1, 1]).
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

import jax.numpy as jnp
import jax.random as random
import numpy as np
from numpyro.infer import Predictive
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from brokenstick.models.changepoint.model import ChangepointModel


class PriorValidationResult(BaseModel):
    """Result of validating one parameter's prior predictive draws."""

    parameter: str = Field(description="Name of the parameter that was validated")
    is_valid: bool = Field(description="Whether the prior passed validation")
    issue: str | None = Field(
        default=None, description="Description of the issue if validation failed"
    )


def sample_prior_predictive(
    model: ChangepointModel,
    individual_ids: Sequence[int],
    doses: Sequence[float],
    num_samples: int = 500,
    seed: int = 0,
) -> dict[str, jnp.ndarray]:
    """Sample parameters and outcomes from the prior predictive distribution.

    Args:
        model: ChangepointModel instance
        individual_ids: (M,) 1-based individual per query point
        doses: (M,) dose per query point
        num_samples: Number of prior samples
        seed: Random seed

    Returns:
        Dict of site name -> (num_samples, *shape), including simulated ``y``
    """
    ids = np.asarray(individual_ids, dtype=int)
    n = model.spec.n_individuals
    if ids.size and (ids.min() < 1 or ids.max() > n):
        raise ValueError(f"individual_id outside [1, {n}]")
    dose = jnp.asarray(doses, dtype=float)
    if dose.shape != ids.shape:
        raise ValueError(
            f"individual_ids and doses must have equal length, got {ids.shape} and {dose.shape}"
        )

    predictive = Predictive(model.model, num_samples=num_samples)
    return predictive(random.PRNGKey(seed), jnp.asarray(ids - 1, dtype=jnp.int32), dose)


def validate_prior_predictive(
    model: ChangepointModel,
    individual_ids: Sequence[int],
    doses: Sequence[float],
    num_samples: int = 500,
    seed: int = 0,
) -> tuple[bool, list[PriorValidationResult]]:
    """Validate the model's priors via prior predictive sampling.

    Returns:
        Tuple of (is_valid, list of validation results)
    """
    samples = sample_prior_predictive(model, individual_ids, doses, num_samples, seed)
    bounds = (model.spec.betakp_lower, model.spec.betakp_upper)
    results = [
        _validate_parameter_samples(name, values, bounds)
        for name, values in samples.items()
    ]
    return all(r.is_valid for r in results), results


def _validate_parameter_samples(
    param_name: str,
    samples: jnp.ndarray,
    betakp_bounds: tuple[float, float],
) -> PriorValidationResult:
    """Validate samples from prior predictive."""
    values = np.asarray(samples).reshape(-1)

    n_invalid = np.sum(~np.isfinite(values))
    if n_invalid > 0:
        pct = 100 * n_invalid / len(values)
        return PriorValidationResult(
            parameter=param_name,
            is_valid=False,
            issue=f"{pct:.1f}% of samples are NaN/Inf",
        )

    if param_name in ("u_sd", "y_sd"):
        n_bad = np.sum(values <= 0)
        if n_bad > 0:
            pct = 100 * n_bad / len(values)
            return PriorValidationResult(
                parameter=param_name,
                is_valid=False,
                issue=f"{pct:.1f}% of samples are non-positive (should be positive)",
            )

    elif param_name == "betakp":
        lo, hi = betakp_bounds
        n_outside = np.sum((values < lo) | (values > hi))
        if n_outside > 0:
            pct = 100 * n_outside / len(values)
            return PriorValidationResult(
                parameter=param_name,
                is_valid=False,
                issue=f"{pct:.1f}% of samples outside [{lo}, {hi}]",
            )

    elif param_name == "L_u_Corr":
        n_outside = np.sum(np.abs(values) > 1.0 + 1e-5)
        if n_outside > 0:
            pct = 100 * n_outside / len(values)
            return PriorValidationResult(
                parameter=param_name,
                is_valid=False,
                issue=f"{pct:.1f}% of Cholesky entries outside [-1, 1]",
            )

    return PriorValidationResult(parameter=param_name, is_valid=True)


def format_validation_report(
    is_valid: bool,
    results: list[PriorValidationResult],
) -> str:
    """Format validation results as a human-readable report."""
    lines = [f"Prior predictive validation {'PASSED' if is_valid else 'FAILED'}"]

    failed = [r for r in results if not r.is_valid]
    if failed:
        lines.append("")
        for r in failed:
            lines.append(f"- {r.parameter}: {r.issue}")

    return "\n".join(lines)
