"""No-U-Turn Sampler transition kernel.

Euclidean-metric NUTS with multinomial sampling over the trajectory
(Hoffman & Gelman 2014; Betancourt 2017):

- Momentum r ~ N(0, M); kinetic energy K(r) = 0.5 r' M^{-1} r.
- Leapfrog: r <- r - (eps/2) grad U(z); z <- z + eps M^{-1} r; r <- r - (eps/2) grad U(z).
- The trajectory doubles forward or backward at random until the no-U-turn
  criterion fails on the whole tree or on any sub-tree, or until
  ``max_tree_depth`` doublings.
- Within a sub-tree, states are selected by uniform progressive sampling
  (weight exp(-H)); a new sub-tree replaces the current proposal with
  probability min(1, w_new / w_old) (biased progressive sampling).
- A leapfrog step whose energy error H - H0 exceeds MAX_DELTA_ENERGY, or is
  not finite, is divergent: the sub-tree is discarded and the trajectory
  stops. If nothing was selected the chain stays where it was.

The kernel works on numpy arrays; the potential (see transforms.PotentialFn)
is a jitted JAX function.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, NamedTuple

import numpy as np

from brokenstick.models.changepoint.constants import MAX_DELTA_ENERGY

if TYPE_CHECKING:
    from brokenstick.models.changepoint.transforms import PotentialEval, PotentialFn


class Metric:
    """Euclidean metric given by a diagonal or dense inverse mass matrix."""

    def __init__(self, inv_mass: np.ndarray):
        self.inv_mass = np.asarray(inv_mass, dtype=np.float64)
        self.dense = self.inv_mass.ndim == 2
        if self.dense:
            self._mass_chol = np.linalg.cholesky(np.linalg.inv(self.inv_mass))
        else:
            self._mass_sqrt = 1.0 / np.sqrt(self.inv_mass)

    @classmethod
    def identity(cls, dim: int, dense: bool = False) -> Metric:
        return cls(np.eye(dim) if dense else np.ones(dim))

    @property
    def dim(self) -> int:
        return self.inv_mass.shape[0]

    def velocity(self, r: np.ndarray) -> np.ndarray:
        if self.dense:
            return self.inv_mass @ r
        return self.inv_mass * r

    def kinetic_energy(self, r: np.ndarray) -> float:
        return 0.5 * float(r @ self.velocity(r))


def sample_momentum(metric: Metric, rng: np.random.Generator) -> np.ndarray:
    """Draw r ~ N(0, M)."""
    noise = rng.standard_normal(metric.dim)
    if metric.dense:
        return metric._mass_chol @ noise
    return metric._mass_sqrt * noise


class IntegratorState(NamedTuple):
    z: np.ndarray
    r: np.ndarray
    potential: float
    grad: np.ndarray


def leapfrog(
    state: IntegratorState,
    step_size: float,
    metric: Metric,
    potential_fn: PotentialFn,
) -> IntegratorState:
    """One leapfrog step; a negative step size integrates backward in time."""
    r = state.r - 0.5 * step_size * state.grad
    z = state.z + step_size * metric.velocity(r)
    pe = potential_fn(z)
    r = r - 0.5 * step_size * pe.grad
    return IntegratorState(z, r, pe.value, pe.grad)


class TransitionInfo(NamedTuple):
    """Result and statistics of one NUTS transition."""

    z: np.ndarray
    potential: float
    grad: np.ndarray
    accept_prob: float  # mean Metropolis acceptance over the trajectory
    diverging: bool
    tree_depth: int
    num_steps: int
    energy: float  # Hamiltonian at the selected state
    hit_max_depth: bool
    moved: bool  # False for a self-transition


@dataclass
class _Tree:
    left: IntegratorState
    right: IntegratorState
    proposal: IntegratorState
    proposal_energy: float
    log_weight: float  # log sum exp(-(H - H0)) over the tree
    r_sum: np.ndarray
    turning: bool
    diverging: bool
    sum_accept_probs: float
    num_steps: int


def _is_turning(
    metric: Metric, r_left: np.ndarray, r_right: np.ndarray, r_sum: np.ndarray
) -> bool:
    """Generalized no-U-turn criterion on momentum sums."""
    rho = r_sum - 0.5 * (r_left + r_right)
    return bool(
        metric.velocity(r_left) @ rho <= 0.0 or metric.velocity(r_right) @ rho <= 0.0
    )


def _build_leaf(
    state: IntegratorState,
    direction: int,
    step_size: float,
    metric: Metric,
    potential_fn: PotentialFn,
    energy0: float,
) -> _Tree:
    new = leapfrog(state, direction * step_size, metric, potential_fn)
    energy = new.potential + metric.kinetic_energy(new.r)
    if not np.isfinite(energy):
        energy = np.inf
    delta = energy - energy0
    diverging = delta > MAX_DELTA_ENERGY
    accept_prob = 1.0 if delta <= 0.0 else float(np.exp(-delta))
    return _Tree(
        left=new,
        right=new,
        proposal=new,
        proposal_energy=energy,
        log_weight=-delta,
        r_sum=new.r.copy(),
        turning=False,
        diverging=bool(diverging),
        sum_accept_probs=accept_prob,
        num_steps=1,
    )


def _merge(
    old: _Tree,
    new: _Tree,
    direction: int,
    metric: Metric,
    rng: np.random.Generator,
    biased: bool,
) -> _Tree:
    """Join a sub-tree ``new`` onto ``old`` in ``direction`` and resample the proposal."""
    log_weight = float(np.logaddexp(old.log_weight, new.log_weight))
    if not np.isfinite(new.log_weight):
        take_new = False
    elif biased:
        take_new = rng.uniform() < float(np.exp(min(0.0, new.log_weight - old.log_weight)))
    else:
        take_new = rng.uniform() < float(np.exp(new.log_weight - log_weight))

    if direction == 1:
        left, right = old.left, new.right
    else:
        left, right = new.left, old.right
    r_sum = old.r_sum + new.r_sum

    return _Tree(
        left=left,
        right=right,
        proposal=new.proposal if take_new else old.proposal,
        proposal_energy=new.proposal_energy if take_new else old.proposal_energy,
        log_weight=log_weight,
        r_sum=r_sum,
        turning=new.turning or _is_turning(metric, left.r, right.r, r_sum),
        diverging=new.diverging,
        sum_accept_probs=old.sum_accept_probs + new.sum_accept_probs,
        num_steps=old.num_steps + new.num_steps,
    )


def _build_tree(
    state: IntegratorState,
    direction: int,
    depth: int,
    step_size: float,
    metric: Metric,
    potential_fn: PotentialFn,
    energy0: float,
    rng: np.random.Generator,
) -> _Tree:
    """Build a sub-tree of 2**depth leapfrog steps starting from ``state``."""
    if depth == 0:
        return _build_leaf(state, direction, step_size, metric, potential_fn, energy0)

    first = _build_tree(state, direction, depth - 1, step_size, metric, potential_fn, energy0, rng)
    if first.turning or first.diverging:
        return first

    edge = first.right if direction == 1 else first.left
    second = _build_tree(edge, direction, depth - 1, step_size, metric, potential_fn, energy0, rng)
    return _merge(first, second, direction, metric, rng, biased=False)


def nuts_transition(
    z: np.ndarray,
    pe: PotentialEval,
    step_size: float,
    metric: Metric,
    potential_fn: PotentialFn,
    rng: np.random.Generator,
    max_tree_depth: int = 10,
) -> TransitionInfo:
    """One NUTS transition from position ``z`` with potential evaluation ``pe``."""
    r0 = sample_momentum(metric, rng)
    init = IntegratorState(z, r0, pe.value, pe.grad)
    energy0 = pe.value + metric.kinetic_energy(r0)

    tree = _Tree(
        left=init,
        right=init,
        proposal=init,
        proposal_energy=energy0,
        log_weight=0.0,
        r_sum=r0.copy(),
        turning=False,
        diverging=False,
        sum_accept_probs=0.0,
        num_steps=0,
    )

    depth = 0
    diverging = False
    terminated = False
    while depth < max_tree_depth:
        direction = 1 if rng.uniform() < 0.5 else -1
        edge = tree.right if direction == 1 else tree.left
        subtree = _build_tree(
            edge, direction, depth, step_size, metric, potential_fn, energy0, rng
        )
        depth += 1

        if subtree.diverging or subtree.turning:
            # Invalid sub-tree: keep its statistics, discard its states
            tree.sum_accept_probs += subtree.sum_accept_probs
            tree.num_steps += subtree.num_steps
            diverging = subtree.diverging
            terminated = True
            break

        tree = _merge(tree, subtree, direction, metric, rng, biased=True)
        if tree.turning:
            terminated = True
            break

    proposal = tree.proposal
    return TransitionInfo(
        z=proposal.z,
        potential=proposal.potential,
        grad=proposal.grad,
        accept_prob=tree.sum_accept_probs / max(tree.num_steps, 1),
        diverging=diverging,
        tree_depth=depth,
        num_steps=tree.num_steps,
        energy=tree.proposal_energy,
        hit_max_depth=not terminated,
        moved=proposal is not init,
    )
