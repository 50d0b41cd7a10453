"""Tests for the multi-chain run orchestrator.

Validation and cancellation tests never reach the sampler. The smoke run
fits a small simulated population once per module and checks the merged
output structure, the invariants of accepted draws and the diagnostics.
"""

import threading

import jax.numpy as jnp
import numpy as np
import pytest

from brokenstick.models.changepoint import (
    InferenceResult,
    RunCancelledError,
    broken_stick_mean,
    build_changepoint_model,
    fit,
)
from brokenstick.utils.config import ConfigurationError, SamplerConfig
from brokenstick.utils.data import simulate_dataset

SMOKE_CONFIG = SamplerConfig(
    num_chains=2, num_warmup=40, num_samples=24, max_tree_depth=5, seed=1
)


def _small_population():
    data, _ = simulate_dataset(
        doses=np.linspace(0.2, 1.8, 6),
        n_individuals=4,
        beta=[10.0, 5.0],
        betakp=1.0,
        u_sd=[0.5, 0.5, 0.05],
        y_sd=0.3,
        seed=0,
    )
    return data


@pytest.fixture(scope="module")
def smoke_fit():
    data = _small_population()
    model = build_changepoint_model(data, 0.5, 2.0)
    result = fit(model, data, SMOKE_CONFIG, alpha_individuals=[1, 3])
    return {"data": data, "model": model, "result": result}


# =============================================================================
# Validation (before sampling)
# =============================================================================


class TestValidation:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"num_samples": 0},
            {"num_chains": 0},
            {"num_warmup": -1},
            {"target_accept": 1.0},
            {"max_tree_depth": 0},
        ],
    )
    def test_bad_sampler_config_rejected(self, population_data, population_model, kwargs):
        with pytest.raises(ConfigurationError):
            fit(population_model, population_data["data"], SamplerConfig(**kwargs))

    def test_model_sized_for_other_data_rejected(self, population_data):
        data = population_data["data"]
        other, _ = simulate_dataset(
            doses=[0.5, 1.5],
            n_individuals=2,
            beta=[1.0, 1.0],
            betakp=1.0,
            u_sd=[0.1, 0.1, 0.1],
            y_sd=0.1,
        )
        model = build_changepoint_model(other, 0.5, 2.0)
        with pytest.raises(ConfigurationError, match="individuals"):
            fit(model, data, SMOKE_CONFIG)

    def test_alpha_subset_out_of_range_rejected(self, population_data, population_model):
        n = population_data["data"].n_individuals
        with pytest.raises(ValueError, match="alpha_individuals"):
            fit(
                population_model,
                population_data["data"],
                SMOKE_CONFIG,
                alpha_individuals=[n + 1],
            )

    def test_cancelled_run_raises(self, population_data, population_model):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(RunCancelledError):
            fit(population_model, population_data["data"], SMOKE_CONFIG, cancel_event=cancel)


# =============================================================================
# Smoke run
# =============================================================================


@pytest.mark.timeout(600)
class TestSmokeFit:
    def test_output_structure(self, smoke_fit):
        result = smoke_fit["result"]
        n = smoke_fit["data"].n_individuals
        n_draws = SMOKE_CONFIG.num_chains * SMOKE_CONFIG.num_samples

        assert isinstance(result, InferenceResult)
        assert result.method == "nuts"
        samples = result.get_samples()
        assert samples["beta"].shape == (n_draws, 2)
        assert samples["betakp"].shape == (n_draws,)
        assert samples["u_sd"].shape == (n_draws, 3)
        assert samples["y_sd"].shape == (n_draws,)
        assert samples["u"].shape == (n_draws, n, 3)
        assert samples["u_corr"].shape == (n_draws, 3, 3)
        assert samples["u_cov"].shape == (n_draws, 3, 3)
        assert samples["alpha"].shape == (n_draws, 2, 3)
        assert "z_u" not in samples
        assert result.alpha_individuals == (1, 3)

        grouped = result.get_samples(group_by_chain=True)
        assert grouped["betakp"].shape == (SMOKE_CONFIG.num_chains, SMOKE_CONFIG.num_samples)
        np.testing.assert_array_equal(
            np.asarray(grouped["betakp"]).reshape(-1), np.asarray(samples["betakp"])
        )

    def test_accepted_draws_respect_supports(self, smoke_fit):
        samples = smoke_fit["result"].get_samples()
        betakp = np.asarray(samples["betakp"])
        assert np.all((betakp >= 0.5) & (betakp <= 2.0))
        assert np.all(np.asarray(samples["u_sd"]) > 0)
        assert np.all(np.asarray(samples["y_sd"]) > 0)

        corr = np.asarray(samples["u_corr"], dtype=np.float64)
        np.testing.assert_allclose(np.diagonal(corr, axis1=1, axis2=2), 1.0, atol=1e-4)
        np.testing.assert_allclose(corr, np.transpose(corr, (0, 2, 1)), atol=1e-5)
        assert np.linalg.eigvalsh(corr).min() >= -1e-4

    def test_mean_continuous_at_individual_breakpoints(self, smoke_fit):
        alpha = smoke_fit["result"].get_samples()["alpha"]
        at_bp = broken_stick_mean(alpha[..., 2], alpha[..., 0], alpha[..., 1], alpha[..., 2])
        np.testing.assert_allclose(at_bp, alpha[..., 0], rtol=1e-6)

    def test_alpha_matches_population_plus_deviation(self, smoke_fit):
        samples = smoke_fit["result"].get_samples()
        expected = samples["beta"][:, None, 0] + samples["u"][:, jnp.array([0, 2]), 0]
        np.testing.assert_allclose(samples["alpha"][..., 0], expected, rtol=1e-5, atol=1e-5)

    def test_diagnostics(self, smoke_fit):
        result = smoke_fit["result"]
        diag = result.diagnostics
        assert len(diag["chains"]) == SMOKE_CONFIG.num_chains
        for chain in diag["chains"]:
            assert chain["num_divergent"] >= 0
            assert 0.0 <= chain["mean_accept_prob"] <= 1.0
            assert chain["step_size"] > 0
            assert chain["num_max_depth"] >= 0
        assert diag["num_divergent"] == sum(c["num_divergent"] for c in diag["chains"])
        for name in ("beta", "betakp", "u_sd", "y_sd", "u_corr"):
            assert name in diag["r_hat"]
            assert name in diag["n_eff"]
        assert diag["r_hat"]["beta"].shape == (2,)
        assert diag["sample_stats"]["diverging"].shape == (
            SMOKE_CONFIG.num_chains,
            SMOKE_CONFIG.num_samples,
        )
        assert isinstance(result.converged, bool)

    def test_summary_and_print(self, smoke_fit, capsys):
        result = smoke_fit["result"]
        summary = result.summary()
        assert {"mean", "std", "n_eff", "r_hat"} <= set(summary["betakp"])

        result.print_summary()
        out = capsys.readouterr().out
        assert "betakp" in out
        assert "chain 0" in out

    def test_to_arviz(self, smoke_fit):
        idata = smoke_fit["result"].to_arviz()
        assert "betakp" in idata.posterior
        assert idata.posterior["betakp"].shape == (
            SMOKE_CONFIG.num_chains,
            SMOKE_CONFIG.num_samples,
        )
        assert idata.sample_stats["diverging"].shape == (
            SMOKE_CONFIG.num_chains,
            SMOKE_CONFIG.num_samples,
        )

    def test_same_seed_reproduces_run(self, smoke_fit):
        data, model = smoke_fit["data"], smoke_fit["model"]
        again = fit(model, data, SMOKE_CONFIG, alpha_individuals=[1, 3])
        np.testing.assert_array_equal(
            np.asarray(again.get_samples()["betakp"]),
            np.asarray(smoke_fit["result"].get_samples()["betakp"]),
        )
