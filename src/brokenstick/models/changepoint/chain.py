"""Single Markov chain: WARMUP -> SAMPLING -> DONE.

A chain owns its position, RNG, metric, adaptation state and draw buffer.
Nothing here is shared with other chains except the read-only potential.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from brokenstick.models.changepoint.adaptation import WarmupAdapter, find_reasonable_step_size
from brokenstick.models.changepoint.nuts import Metric, TransitionInfo, nuts_transition
from brokenstick.models.changepoint.transforms import PotentialEval

if TYPE_CHECKING:
    from brokenstick.models.changepoint.transforms import PotentialFn
    from brokenstick.utils.config import SamplerConfig

logger = logging.getLogger(__name__)


class RunCancelledError(RuntimeError):
    """A run was cancelled between iterations."""


class ChainPhase(StrEnum):
    WARMUP = "warmup"
    SAMPLING = "sampling"
    DONE = "done"


@dataclass
class ChainResult:
    """Draws and per-transition statistics of one finished chain.

    All arrays cover the sampling phase only; ``draws`` are unconstrained.
    """

    chain_id: int
    draws: np.ndarray  # (num_samples, dim)
    potential_energy: np.ndarray  # (num_samples,)
    energy: np.ndarray
    accept_prob: np.ndarray
    diverging: np.ndarray
    tree_depth: np.ndarray
    num_steps: np.ndarray
    step_size: float
    inv_mass: np.ndarray
    num_warmup_divergent: int
    num_max_depth: int

    @property
    def num_divergent(self) -> int:
        return int(self.diverging.sum())

    @property
    def mean_accept_prob(self) -> float:
        return float(self.accept_prob.mean())

    @property
    def e_bfmi(self) -> float:
        """Energy Bayesian fraction of missing information."""
        if self.energy.shape[0] < 2:
            return float("nan")
        denom = np.sum((self.energy - self.energy.mean()) ** 2)
        return float(np.sum(np.diff(self.energy) ** 2) / denom) if denom > 0 else float("nan")


class MarkovChain:
    """Sequential NUTS chain with Stan-style warmup adaptation."""

    def __init__(
        self,
        chain_id: int,
        potential_fn: PotentialFn,
        z: np.ndarray,
        pe: PotentialEval,
        config: SamplerConfig,
        rng: np.random.Generator,
    ):
        self.chain_id = chain_id
        self.potential_fn = potential_fn
        self.config = config
        self.rng = rng
        self.z = np.asarray(z, dtype=np.float64)
        self.pe = pe
        self.metric = Metric.identity(potential_fn.dim, dense=config.dense_mass)
        self.step_size = config.init_step_size
        self.adapter = WarmupAdapter(
            num_warmup=config.num_warmup,
            dim=potential_fn.dim,
            target_accept=config.target_accept,
            dense_mass=config.dense_mass,
        )
        self.phase = ChainPhase.WARMUP if config.num_warmup > 0 else ChainPhase.SAMPLING
        self.iteration = 0
        self.num_warmup_divergent = 0
        self.num_max_depth = 0
        self._draws: list[np.ndarray] = []
        self._stats: list[TransitionInfo] = []

        if self.phase is ChainPhase.WARMUP:
            self._reset_step_size()

    def _reset_step_size(self) -> None:
        self.step_size = find_reasonable_step_size(
            self.potential_fn, self.z, self.pe, self.metric, self.step_size, self.rng
        )
        self.adapter.restart(self.step_size)

    def _transition(self) -> TransitionInfo:
        info = nuts_transition(
            self.z,
            self.pe,
            self.step_size,
            self.metric,
            self.potential_fn,
            self.rng,
            max_tree_depth=self.config.max_tree_depth,
        )
        self.z = info.z
        self.pe = PotentialEval(info.potential, info.grad, True)
        if info.hit_max_depth:
            self.num_max_depth += 1
        return info

    def step(self) -> TransitionInfo:
        """Advance the chain by one iteration."""
        if self.phase is ChainPhase.DONE:
            raise RuntimeError(f"Chain {self.chain_id} is already done")

        info = self._transition()

        if self.phase is ChainPhase.WARMUP:
            if info.diverging:
                self.num_warmup_divergent += 1
            self.step_size, new_inv_mass = self.adapter.update(
                self.iteration, self.z, info.accept_prob
            )
            if new_inv_mass is not None:
                self.metric = Metric(new_inv_mass)
                self._reset_step_size()
            self.iteration += 1
            if self.iteration == self.config.num_warmup:
                self.step_size = self.adapter.final_step_size()
                self.phase = ChainPhase.SAMPLING
                logger.debug(
                    "Chain %d warmup done: step size %.4g, %d divergences",
                    self.chain_id,
                    self.step_size,
                    self.num_warmup_divergent,
                )
        else:
            self._draws.append(self.z.copy())
            self._stats.append(info)
            self.iteration += 1
            if len(self._draws) == self.config.num_samples:
                self.phase = ChainPhase.DONE
        return info

    def run(self, should_stop: Callable[[], bool] | None = None) -> ChainResult:
        """Run to completion, checking ``should_stop`` before every iteration."""
        logger.debug("Chain %d started", self.chain_id)
        while self.phase is not ChainPhase.DONE:
            if should_stop is not None and should_stop():
                raise RunCancelledError(
                    f"Chain {self.chain_id} cancelled at iteration {self.iteration}"
                )
            self.step()
        result = self.result()
        logger.info(
            "Chain %d finished: %d divergences, mean accept %.3f, step size %.4g",
            self.chain_id,
            result.num_divergent,
            result.mean_accept_prob,
            result.step_size,
        )
        return result

    def result(self) -> ChainResult:
        if self.phase is not ChainPhase.DONE:
            raise RuntimeError(f"Chain {self.chain_id} has not finished sampling")
        stats = self._stats
        return ChainResult(
            chain_id=self.chain_id,
            draws=np.stack(self._draws),
            potential_energy=np.array([s.potential for s in stats]),
            energy=np.array([s.energy for s in stats]),
            accept_prob=np.array([s.accept_prob for s in stats]),
            diverging=np.array([s.diverging for s in stats], dtype=bool),
            tree_depth=np.array([s.tree_depth for s in stats], dtype=np.int32),
            num_steps=np.array([s.num_steps for s in stats], dtype=np.int32),
            step_size=self.step_size,
            inv_mass=self.metric.inv_mass.copy(),
            num_warmup_divergent=self.num_warmup_divergent,
            num_max_depth=self.num_max_depth,
        )
