"""Warmup adaptation for the NUTS sampler.

Provides:
  - DualAveraging: step size adaptation toward a target acceptance statistic
    (Nesterov 2009; Hoffman & Gelman 2014, Algorithm 5).
  - WelfordCovariance: running diagonal or dense covariance of warmup draws.
  - build_adaptation_windows: Stan-style slow windows for mass matrix updates.
  - find_reasonable_step_size: doubling/halving heuristic for an initial step.
  - WarmupAdapter: drives the above during the WARMUP phase of a chain.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from brokenstick.models.changepoint.constants import (
    DA_GAMMA,
    DA_KAPPA,
    DA_T0,
    WARMUP_BASE_WINDOW,
    WARMUP_INIT_BUFFER,
    WARMUP_MIN_ADAPT,
    WARMUP_TERM_BUFFER,
)
from brokenstick.models.changepoint.nuts import (
    IntegratorState,
    Metric,
    leapfrog,
    sample_momentum,
)

if TYPE_CHECKING:
    from brokenstick.models.changepoint.transforms import PotentialEval, PotentialFn

logger = logging.getLogger(__name__)


@dataclass
class DualAveraging:
    """Dual-averaging state on log step size."""

    target_accept: float
    mu: float = 0.0
    log_step_size: float = 0.0
    log_step_size_avg: float = 0.0
    h_bar: float = 0.0
    t: int = 0
    gamma: float = DA_GAMMA
    t0: float = DA_T0
    kappa: float = DA_KAPPA

    def restart(self, step_size: float) -> None:
        """Reset the averaging around a new initial step size."""
        self.mu = math.log(10.0 * step_size)
        self.log_step_size = math.log(step_size)
        self.log_step_size_avg = 0.0
        self.h_bar = 0.0
        self.t = 0

    def update(self, accept_prob: float) -> float:
        """Update with one transition's acceptance statistic; return the new step size."""
        self.t += 1
        eta = 1.0 / (self.t + self.t0)
        self.h_bar = (1.0 - eta) * self.h_bar + eta * (self.target_accept - accept_prob)
        self.log_step_size = self.mu - (math.sqrt(self.t) / self.gamma) * self.h_bar
        w = self.t ** (-self.kappa)
        self.log_step_size_avg = w * self.log_step_size + (1.0 - w) * self.log_step_size_avg
        return math.exp(self.log_step_size)

    @property
    def step_size(self) -> float:
        return math.exp(self.log_step_size)

    @property
    def final_step_size(self) -> float:
        """Averaged iterate, used once warmup ends."""
        return math.exp(self.log_step_size_avg)


class WelfordCovariance:
    """Welford running (co)variance with Stan's shrinkage toward 1e-3 * I."""

    def __init__(self, dim: int, dense: bool = False):
        self.dim = dim
        self.dense = dense
        self.reset()

    def reset(self) -> None:
        self.n = 0
        self.mean = np.zeros(self.dim)
        self.m2 = np.zeros((self.dim, self.dim)) if self.dense else np.zeros(self.dim)

    def update(self, x: np.ndarray) -> None:
        self.n += 1
        delta = x - self.mean
        self.mean = self.mean + delta / self.n
        delta2 = x - self.mean
        if self.dense:
            self.m2 = self.m2 + np.outer(delta, delta2)
        else:
            self.m2 = self.m2 + delta * delta2

    def covariance(self) -> np.ndarray:
        """Regularized sample covariance (diagonal vector or dense matrix)."""
        if self.n < 2:
            return np.eye(self.dim) if self.dense else np.ones(self.dim)
        n = self.n
        cov = self.m2 / (n - 1)
        shrink = 1e-3 * (5.0 / (n + 5.0))
        if self.dense:
            return (n / (n + 5.0)) * cov + shrink * np.eye(self.dim)
        return (n / (n + 5.0)) * cov + shrink


def build_adaptation_windows(num_warmup: int) -> list[tuple[int, int]]:
    """Stan-style slow windows [start, end) for mass matrix adaptation.

    An initial fast buffer, doubling slow windows, and a terminal fast
    buffer. The mass matrix is re-estimated at the end of each window.
    """
    if num_warmup < WARMUP_MIN_ADAPT:
        return []

    init_buffer, term_buffer, base_window = (
        WARMUP_INIT_BUFFER,
        WARMUP_TERM_BUFFER,
        WARMUP_BASE_WINDOW,
    )
    if init_buffer + base_window + term_buffer > num_warmup:
        init_buffer = int(0.15 * num_warmup)
        term_buffer = int(0.1 * num_warmup)
        base_window = num_warmup - (init_buffer + term_buffer)

    end_slow = num_warmup - term_buffer
    windows = []
    start, size = init_buffer, base_window
    while start < end_slow:
        end = start + size
        # Stretch the last window when the next one would not fit
        if end + 2 * size > end_slow:
            end = end_slow
        windows.append((start, end))
        start, size = end, 2 * size
    return windows


def find_reasonable_step_size(
    potential_fn: PotentialFn,
    z: np.ndarray,
    pe: PotentialEval,
    metric: Metric,
    step_size: float,
    rng: np.random.Generator,
    max_iters: int = 100,
) -> float:
    """Double or halve the step size until one leapfrog step's acceptance crosses 1/2."""
    log_half = math.log(0.5)
    direction = 0
    for _ in range(max_iters):
        r = sample_momentum(metric, rng)
        state = IntegratorState(z, r, pe.value, pe.grad)
        energy0 = pe.value + metric.kinetic_energy(r)
        new = leapfrog(state, step_size, metric, potential_fn)
        energy1 = new.potential + metric.kinetic_energy(new.r)
        delta = energy0 - energy1
        if not np.isfinite(delta):
            delta = -np.inf
        step_direction = 1 if delta > log_half else -1
        if direction == 0:
            direction = step_direction
        elif step_direction != direction:
            break
        step_size = step_size * (2.0 if direction == 1 else 0.5)
        if step_size < 1e-8 or step_size > 1e7:
            break
    return float(np.clip(step_size, 1e-8, 1e7))


@dataclass
class WarmupAdapter:
    """Step size and mass matrix adaptation during warmup."""

    num_warmup: int
    dim: int
    target_accept: float
    dense_mass: bool = False
    adapt_mass: bool = True
    windows: list[tuple[int, int]] = field(init=False)
    dual_averaging: DualAveraging = field(init=False)
    welford: WelfordCovariance = field(init=False)

    def __post_init__(self):
        self.windows = build_adaptation_windows(self.num_warmup) if self.adapt_mass else []
        self.dual_averaging = DualAveraging(target_accept=self.target_accept)
        self.welford = WelfordCovariance(self.dim, dense=self.dense_mass)
        self._window_ends = {end for _, end in self.windows}
        self._slow = [False] * self.num_warmup
        for start, end in self.windows:
            for i in range(start, end):
                self._slow[i] = True

    def restart(self, step_size: float) -> None:
        self.dual_averaging.restart(step_size)

    def update(
        self, iteration: int, z: np.ndarray, accept_prob: float
    ) -> tuple[float, np.ndarray | None]:
        """Update after warmup transition ``iteration`` (0-based).

        Returns:
            (step_size, new_inv_mass) where new_inv_mass is None unless a
            slow window closed at this iteration.
        """
        step_size = self.dual_averaging.update(accept_prob)
        new_inv_mass = None
        if self._slow[iteration]:
            self.welford.update(z)
            if iteration + 1 in self._window_ends:
                new_inv_mass = self.welford.covariance()
                logger.debug(
                    "Mass matrix updated at warmup iteration %d from %d draws",
                    iteration + 1,
                    self.welford.n,
                )
                self.welford.reset()
        return step_size, new_inv_mass

    def final_step_size(self) -> float:
        return self.dual_averaging.final_step_size
