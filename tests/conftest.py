"""Shared fixtures for change-point model tests.

This module provides reusable fixtures to reduce duplication across test files:
- Scenario datasets (single individual, two identical individuals, population)
- Small sampler configurations for fast smoke runs

For non-fixture helpers (assert_recovery_ci, GaussianPotential), see helpers.py.
"""

import numpy as np
import pytest

from brokenstick.models.changepoint import build_changepoint_model
from brokenstick.utils.config import SamplerConfig
from brokenstick.utils.data import ObservationSet, simulate_dataset

SCENARIO_DOSES = [0.2, 0.6, 1.0, 1.4, 1.8]

# ══════════════════════════════════════════════════════════════════════════════
# DATA FIXTURES
# ══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def single_individual_data():
    """One individual, 5 doses, outcome = 10 - 5 * min(dose - 1, 0) + small noise."""
    rng = np.random.default_rng(7)
    dose = np.array(SCENARIO_DOSES)
    outcome = 10.0 - 5.0 * np.minimum(dose - 1.0, 0.0) + 0.05 * rng.standard_normal(5)
    return ObservationSet.from_arrays(np.ones(5, dtype=int), dose, outcome)


@pytest.fixture
def two_identical_individuals_data():
    """Two individuals sharing the same true curve, independent noise."""
    rng = np.random.default_rng(11)
    doses = np.linspace(0.1, 1.9, 10)
    mu = 10.0 - 5.0 * np.minimum(doses - 1.0, 0.0)
    ids = np.repeat([1, 2], doses.shape[0])
    dose = np.tile(doses, 2)
    outcome = np.tile(mu, 2) + 0.2 * rng.standard_normal(ids.shape[0])
    return ObservationSet.from_arrays(ids, dose, outcome)


@pytest.fixture
def population_data():
    """Six individuals with correlated deviations, plus the generating parameters."""
    data, truth = simulate_dataset(
        doses=np.linspace(0.2, 1.8, 8),
        n_individuals=6,
        beta=[10.0, 5.0],
        betakp=1.0,
        u_sd=[0.5, 0.5, 0.05],
        y_sd=0.3,
        seed=3,
    )
    return {"data": data, "truth": truth}


@pytest.fixture
def population_model(population_data):
    return build_changepoint_model(population_data["data"], 0.5, 2.0)


# ══════════════════════════════════════════════════════════════════════════════
# SAMPLER FIXTURES
# ══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def smoke_config():
    """Tiny run: enough iterations to exercise warmup windows and merging."""
    return SamplerConfig(
        num_chains=2,
        num_warmup=30,
        num_samples=20,
        max_tree_depth=5,
        seed=0,
    )
