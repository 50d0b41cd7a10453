"""Unconstrained parameterization of the change-point model.

The sampler works on a flat real vector z. Each sample site is mapped to its
support with numpyro's ``biject_to`` registry:

- positive (u_sd, y_sd): exp, log|J| = z
- interval (betakp): sigmoid + affine, log|J| = log(hi - lo) + log s + log(1 - s)
- correlation Cholesky (L_u_Corr): stick-breaking over tanh of the
  strictly-lower entries (CorrCholeskyTransform)
- real (beta, z_u): identity

The potential energy is U(z) = -[log p(T(z), y) + log|J_T(z)|].
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, NamedTuple

import jax
import jax.numpy as jnp
import numpy as np
import numpyro.distributions as dist
from jax.flatten_util import ravel_pytree
from numpyro import handlers

from brokenstick.models.changepoint.constants import INIT_RADIUS, MAX_INIT_ATTEMPTS

if TYPE_CHECKING:
    from brokenstick.models.changepoint.model import ChangepointModel
    from brokenstick.utils.data import ObservationSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SiteInfo:
    """Shape and bijection of one latent sample site."""

    name: str
    shape: tuple[int, ...]
    transform: dist.transforms.Transform
    value: jnp.ndarray


def discover_sites(
    model: ChangepointModel, data: ObservationSet, seed: int = 0
) -> dict[str, SiteInfo]:
    """Trace model once to discover latent sample sites (names, shapes, transforms)."""
    with handlers.seed(rng_seed=seed):
        trace = handlers.trace(model.model).get_trace(data.individual, data.dose, data.outcome)

    site_info = {}
    for name, site in trace.items():
        if site["type"] == "sample" and not site.get("is_observed", False):
            site_info[name] = SiteInfo(
                name=name,
                shape=tuple(site["value"].shape),
                transform=dist.transforms.biject_to(site["fn"].support),
                value=site["value"],
            )
    return site_info


class ParameterTransform:
    """Bijection between the flat unconstrained vector and constrained sites."""

    def __init__(self, site_info: dict[str, SiteInfo]):
        self.site_info = site_info
        self.transforms = {name: info.transform for name, info in site_info.items()}
        self._example_unc = {
            name: t.inv(site_info[name].value) for name, t in self.transforms.items()
        }
        flat, self._unravel = ravel_pytree(self._example_unc)
        self.dim = int(flat.shape[0])

    def site_mask(self, names: tuple[str, ...]) -> np.ndarray:
        """Boolean mask over the flat vector selecting the coordinates of ``names``."""
        mask = {
            name: jnp.full(jnp.shape(unc), name in names)
            for name, unc in self._example_unc.items()
        }
        flat, _ = ravel_pytree(mask)
        return np.asarray(flat, dtype=bool)

    def constrain(self, z: jnp.ndarray) -> dict[str, jnp.ndarray]:
        unc = self._unravel(z)
        return {name: self.transforms[name](unc[name]) for name in unc}

    def unconstrain(self, params: dict[str, jnp.ndarray]) -> jnp.ndarray:
        unc = {name: t.inv(jnp.asarray(params[name])) for name, t in self.transforms.items()}
        flat, _ = ravel_pytree(unc)
        return flat

    def log_abs_det_jacobian(self, z: jnp.ndarray) -> jnp.ndarray:
        unc = self._unravel(z)
        total = 0.0
        for name, x in unc.items():
            t = self.transforms[name]
            total = total + jnp.sum(t.log_abs_det_jacobian(x, t(x)))
        return total


class PotentialEval(NamedTuple):
    """Potential energy and its gradient at one position.

    ``finite`` is False when either is NaN/Inf; the value is then +inf so the
    sampler treats the step as divergent.
    """

    value: float
    grad: np.ndarray
    finite: bool


class PotentialFn:
    """Jitted potential energy U(z) and gradient for a model and data set."""

    def __init__(
        self,
        model: ChangepointModel,
        data: ObservationSet,
        transform: ParameterTransform,
    ):
        self.model = model
        self.data = data
        self.transform = transform
        self.dim = transform.dim

        def _potential(z):
            params = transform.constrain(z)
            log_lik, log_prior = model.log_joint(params, data)
            return -(log_lik + log_prior + transform.log_abs_det_jacobian(z))

        self._value_and_grad = jax.jit(jax.value_and_grad(_potential))

    def __call__(self, z: np.ndarray) -> PotentialEval:
        val, grad = self._value_and_grad(jnp.asarray(z))
        val = float(val)
        grad = np.asarray(grad, dtype=np.float64)
        if not (np.isfinite(val) and np.all(np.isfinite(grad))):
            return PotentialEval(np.inf, np.zeros_like(grad), False)
        return PotentialEval(val, grad, True)


def find_initial_position(
    potential_fn: PotentialFn,
    rng: np.random.Generator,
    radius: float = INIT_RADIUS,
    max_attempts: int = MAX_INIT_ATTEMPTS,
    fixed_mask: np.ndarray | None = None,
) -> tuple[np.ndarray, PotentialEval]:
    """Draw z ~ Uniform(-radius, radius)^D until the potential is finite.

    Coordinates selected by ``fixed_mask`` start at 0, the median of a
    standard-normal raw deviation, so every individual starts on the
    population curve.
    """
    for attempt in range(max_attempts):
        z = rng.uniform(-radius, radius, size=potential_fn.dim)
        if fixed_mask is not None:
            z[fixed_mask] = 0.0
        pe = potential_fn(z)
        if pe.finite:
            if attempt > 0:
                logger.debug("Found finite initial position after %d attempts", attempt + 1)
            return z, pe
    raise RuntimeError(
        f"Cannot find valid initial parameters after {max_attempts} attempts "
        f"in (-{radius}, {radius})^{potential_fn.dim}"
    )
