"""Observation sets, prediction grids and synthetic data.

Records at the interface use 1-based ``individual_id`` labels; arrays held
by ``ObservationSet`` and ``PredictionGrid`` use 0-based indices.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

import jax.numpy as jnp
import numpy as np
from pydantic import BaseModel, Field


class ObservationRecord(BaseModel):
    """A single (individual, dose, outcome) measurement."""

    individual_id: int = Field(ge=1, description="1-based individual label")
    dose: float = Field(ge=0.0, description="Protein intake dose")
    outcome: float = Field(ge=0.0, description="Measured outcome")


class PredictionPoint(BaseModel):
    """A covariate point at which to generate posterior-predictive draws."""

    individual_id: int = Field(ge=1, description="1-based individual label")
    dose: float = Field(ge=0.0, description="Protein intake dose")


def _check_contiguous(individual_id: np.ndarray) -> int:
    """Check labels cover 1..Npat with no gaps. Returns Npat."""
    labels = np.unique(individual_id)
    n = int(labels.max())
    if labels[0] != 1 or labels.shape[0] != n:
        missing = sorted(set(range(1, n + 1)) - set(labels.tolist()))
        raise ValueError(
            f"individual_id must be contiguous 1..{n}; missing labels: {missing[:10]}"
        )
    return n


@dataclass(frozen=True)
class ObservationSet:
    """Validated repeated-measures data."""

    individual: jnp.ndarray  # (N,) int, 0-based
    dose: jnp.ndarray  # (N,)
    outcome: jnp.ndarray  # (N,)
    n_individuals: int

    @property
    def n_observations(self) -> int:
        return int(self.dose.shape[0])

    @classmethod
    def from_arrays(
        cls,
        individual_id: Sequence[int] | np.ndarray,
        dose: Sequence[float] | np.ndarray,
        outcome: Sequence[float] | np.ndarray,
    ) -> ObservationSet:
        """Build from parallel arrays of 1-based ids, doses and outcomes."""
        ids = np.asarray(individual_id)
        dose_arr = np.asarray(dose, dtype=float)
        outcome_arr = np.asarray(outcome, dtype=float)

        if ids.ndim != 1 or dose_arr.shape != ids.shape or outcome_arr.shape != ids.shape:
            raise ValueError(
                "individual_id, dose and outcome must be 1-D arrays of equal length, got "
                f"{ids.shape}, {dose_arr.shape}, {outcome_arr.shape}"
            )
        if ids.shape[0] == 0:
            raise ValueError("Observation set is empty")
        if not np.issubdtype(ids.dtype, np.integer):
            if not np.all(np.mod(ids, 1) == 0):
                raise ValueError("individual_id must be integer-valued")
            ids = ids.astype(int)
        if np.any(ids < 1):
            raise ValueError("individual_id must be >= 1")
        if not np.all(np.isfinite(dose_arr)) or np.any(dose_arr < 0):
            raise ValueError("dose must be finite and >= 0")
        if not np.all(np.isfinite(outcome_arr)) or np.any(outcome_arr < 0):
            raise ValueError("outcome must be finite and >= 0")

        n = _check_contiguous(ids)
        return cls(
            individual=jnp.asarray(ids - 1, dtype=jnp.int32),
            dose=jnp.asarray(dose_arr),
            outcome=jnp.asarray(outcome_arr),
            n_individuals=n,
        )

    @classmethod
    def from_records(
        cls, records: Iterable[ObservationRecord | Mapping[str, float]]
    ) -> ObservationSet:
        """Build from records (dicts are validated as ObservationRecord)."""
        parsed = [
            r if isinstance(r, ObservationRecord) else ObservationRecord.model_validate(r)
            for r in records
        ]
        return cls.from_arrays(
            [r.individual_id for r in parsed],
            [r.dose for r in parsed],
            [r.outcome for r in parsed],
        )


@dataclass(frozen=True)
class PredictionGrid:
    """Query points for posterior-predictive simulation."""

    individual: jnp.ndarray  # (M,) int, 0-based
    dose: jnp.ndarray  # (M,)

    @property
    def individual_id(self) -> np.ndarray:
        """1-based labels."""
        return np.asarray(self.individual) + 1

    @classmethod
    def from_records(
        cls, points: Iterable[PredictionPoint | Mapping[str, float]]
    ) -> PredictionGrid:
        parsed = [
            p if isinstance(p, PredictionPoint) else PredictionPoint.model_validate(p)
            for p in points
        ]
        if not parsed:
            raise ValueError("Prediction grid is empty")
        return cls(
            individual=jnp.asarray([p.individual_id - 1 for p in parsed], dtype=jnp.int32),
            dose=jnp.asarray([p.dose for p in parsed], dtype=float),
        )

    @classmethod
    def product(cls, individual_ids: Sequence[int], doses: Sequence[float]) -> PredictionGrid:
        """Every dose for every listed individual."""
        return cls.from_records(
            PredictionPoint(individual_id=i, dose=d) for i in individual_ids for d in doses
        )


# ---------------------------------------------------------------------------
# Synthetic data
# ---------------------------------------------------------------------------


def simulate_dataset(
    doses: Sequence[float],
    n_individuals: int,
    beta: Sequence[float],
    betakp: float,
    u_sd: Sequence[float],
    y_sd: float,
    corr: np.ndarray | None = None,
    seed: int = 0,
) -> tuple[ObservationSet, dict[str, np.ndarray]]:
    """Generate repeated-measures data from known parameters.

    Every individual is measured at every dose. Simulated outcomes are
    clipped at zero to respect the outcome >= 0 invariant.

    Returns:
        (observations, truth) where truth holds beta, betakp, u_sd, y_sd and u.
    """
    rng = np.random.default_rng(seed)
    doses = np.asarray(doses, dtype=float)
    beta = np.asarray(beta, dtype=float)
    u_sd = np.asarray(u_sd, dtype=float)
    corr = np.eye(u_sd.shape[0]) if corr is None else np.asarray(corr, dtype=float)

    cov = u_sd[:, None] * corr * u_sd[None, :]
    u = rng.multivariate_normal(np.zeros(u_sd.shape[0]), cov, size=n_individuals)
    alpha = np.concatenate([beta, [betakp]]) + u

    ids = np.repeat(np.arange(1, n_individuals + 1), doses.shape[0])
    dose_col = np.tile(doses, n_individuals)
    a = alpha[ids - 1]
    mu = a[:, 0] + a[:, 1] * np.minimum(dose_col - a[:, 2], 0.0)
    outcome = np.clip(mu + y_sd * rng.standard_normal(mu.shape[0]), 0.0, None)

    truth = {
        "beta": beta,
        "betakp": np.asarray(betakp),
        "u_sd": u_sd,
        "y_sd": np.asarray(y_sd),
        "u": u,
    }
    return ObservationSet.from_arrays(ids, dose_col, outcome), truth
