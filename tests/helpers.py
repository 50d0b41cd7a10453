"""Shared test helpers (non-fixtures).

These are utilities that can be imported directly into test modules.
For fixtures, see conftest.py.
"""

import jax.numpy as jnp
import numpy as np

from brokenstick.models.changepoint.transforms import PotentialEval


def assert_recovery_ci(
    samples: jnp.ndarray,
    true_value: float,
    param_name: str,
    transform=None,
    q_low: float = 5.0,
    q_high: float = 95.0,
):
    """Assert that true_value falls within the [q_low, q_high] percentile CI.

    Args:
        samples: 1D array of posterior samples.
        true_value: Ground truth value.
        param_name: Name for error message.
        transform: Optional transform to apply to samples.
        q_low: Lower percentile (default 5 for 90% CI).
        q_high: Upper percentile (default 95 for 90% CI).
    """
    if transform is not None:
        samples = transform(samples)
    lo = float(jnp.percentile(samples, q_low))
    hi = float(jnp.percentile(samples, q_high))
    assert lo <= true_value <= hi, (
        f"{param_name} {true_value:.2f} outside {q_high - q_low:.0f}% CI [{lo:.3f}, {hi:.3f}]"
    )


class GaussianPotential:
    """U(z) = 0.5 (z - mean)' diag(1 / scale^2) (z - mean), in plain numpy.

    Stands in for PotentialFn when testing the sampler kernel in isolation.
    """

    def __init__(self, mean, scale):
        self.mean = np.asarray(mean, dtype=float)
        self.scale = np.asarray(scale, dtype=float)
        self.dim = self.mean.shape[0]
        self.calls = 0

    def __call__(self, z) -> PotentialEval:
        self.calls += 1
        d = (np.asarray(z, dtype=float) - self.mean) / self.scale
        value = 0.5 * float(d @ d)
        grad = d / self.scale
        if not (np.isfinite(value) and np.all(np.isfinite(grad))):
            return PotentialEval(np.inf, np.zeros(self.dim), False)
        return PotentialEval(value, grad, True)


class CliffPotential(GaussianPotential):
    """Standard Gaussian with a wall at z[0] > threshold where U is non-finite."""

    def __init__(self, dim: int, threshold: float = 1.0):
        super().__init__(np.zeros(dim), np.ones(dim))
        self.threshold = threshold

    def __call__(self, z) -> PotentialEval:
        if np.asarray(z)[0] > self.threshold:
            self.calls += 1
            return PotentialEval(np.inf, np.zeros(self.dim), False)
        return super().__call__(z)
