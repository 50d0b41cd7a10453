"""Run orchestration for change-point models.

Separates inference from model definition. ChangepointModel defines the
probabilistic model; fit() runs independent NUTS chains over it in parallel,
merges their draws and checks convergence:

1. Validate configuration (ConfigurationError before any sampling).
2. Discover latent sites and build the jitted potential.
3. Draw one initial position per chain (sequentially, which also compiles
   the potential once before the worker threads start).
4. Run chains on a thread pool; each owns its RNG, adaptation state and
   draw buffer. A cancel event is polled between iterations.
5. Merge draws, constrain them and reconstruct derived quantities.
6. Split-R-hat / ESS per parameter; non-convergence is a warning, not an error.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

import jax
import jax.numpy as jnp
import numpy as np
from numpyro.diagnostics import effective_sample_size, split_gelman_rubin
from numpyro.diagnostics import summary as numpyro_summary

from brokenstick.models.changepoint.chain import ChainResult, MarkovChain, RunCancelledError
from brokenstick.models.changepoint.model import (
    correlation_matrix,
    covariance_matrix,
    individual_effects,
    random_effects,
)
from brokenstick.models.changepoint.transforms import (
    ParameterTransform,
    PotentialFn,
    discover_sites,
    find_initial_position,
)
from brokenstick.utils.config import ConfigurationError, SamplerConfig

if TYPE_CHECKING:
    import arviz as az

    from brokenstick.models.changepoint.model import ChangepointModel
    from brokenstick.utils.data import ObservationSet

logger = logging.getLogger(__name__)

# Parameters checked for convergence
DIAGNOSTIC_SITES = ("beta", "betakp", "u_sd", "y_sd", "u_corr")

__all__ = ["InferenceResult", "RunCancelledError", "fit"]


@dataclass
class InferenceResult:
    """Posterior draws, per-chain statistics and convergence diagnostics."""

    _samples: dict[str, jnp.ndarray]  # name -> (n_draws, *shape)
    _chain_samples: dict[str, jnp.ndarray]  # name -> (n_chains, n_samples, *shape)
    method: Literal["nuts"] = "nuts"
    diagnostics: dict = field(default_factory=dict)
    converged: bool = True
    alpha_individuals: tuple[int, ...] = ()  # 1-based ids stored in "alpha"
    effect_names: tuple[str, ...] = ("intercept", "slope", "breakpoint")

    def get_samples(self, group_by_chain: bool = False) -> dict[str, jnp.ndarray]:
        """Return posterior samples, flattened over chains unless ``group_by_chain``."""
        return self._chain_samples if group_by_chain else self._samples

    def summary(self, prob: float = 0.9) -> dict[str, dict[str, np.ndarray]]:
        """Per-parameter mean, std, median, HPD interval, n_eff and r_hat.

        Needs at least 4 draws per chain.
        """
        return numpyro_summary(
            {k: np.asarray(v) for k, v in self._chain_samples.items()},
            prob=prob,
            group_by_chain=True,
        )

    def print_summary(self) -> None:
        """Print summary statistics for the top-level parameters."""
        r_hat = self.diagnostics.get("r_hat", {})
        n_eff = self.diagnostics.get("n_eff", {})
        print(f"\nInference method: {self.method}")
        print(
            f"{'Parameter':<20} {'Mean':>10} {'Std':>10} {'2.5%':>10} {'97.5%':>10} "
            f"{'R-hat':>8} {'ESS':>8}"
        )
        print("-" * 82)
        for name in DIAGNOSTIC_SITES:
            values = self._samples.get(name)
            if values is None:
                continue
            flat = np.asarray(values).reshape(values.shape[0], -1)
            rhat_flat = np.ravel(r_hat.get(name, np.full(flat.shape[1], np.nan)))
            ess_flat = np.ravel(n_eff.get(name, np.full(flat.shape[1], np.nan)))
            for i in range(flat.shape[1]):
                label = name if flat.shape[1] == 1 else f"{name}[{i}]"
                col = flat[:, i]
                lo, hi = np.percentile(col, [2.5, 97.5])
                print(
                    f"{label:<20} {col.mean():>10.4f} {col.std():>10.4f} {lo:>10.4f} "
                    f"{hi:>10.4f} {rhat_flat[i]:>8.3f} {ess_flat[i]:>8.1f}"
                )
        per_chain = self.diagnostics.get("chains", [])
        for chain in per_chain:
            print(
                f"chain {chain['chain_id']}: divergences={chain['num_divergent']} "
                f"accept={chain['mean_accept_prob']:.3f} step_size={chain['step_size']:.4g} "
                f"max_depth_hits={chain['num_max_depth']}"
            )
        if not self.converged:
            print("WARNING: chains have not converged; results are unreliable")

    def to_arviz(self) -> az.InferenceData:
        """Convert to ArviZ InferenceData (posterior + sample_stats groups)."""
        import arviz as az

        posterior = {k: np.asarray(v) for k, v in self._chain_samples.items()}
        stats = self.diagnostics["sample_stats"]
        sample_stats = {
            "lp": -stats["potential_energy"],
            "energy": stats["energy"],
            "acceptance_rate": stats["accept_prob"],
            "diverging": stats["diverging"],
            "tree_depth": stats["tree_depth"],
            "n_steps": stats["num_steps"],
        }
        dims = {
            "beta": ["beta_dim"],
            "u_sd": ["effect"],
            "u": ["individual", "effect"],
            "alpha": ["alpha_individual", "effect"],
            "L_u_Corr": ["effect", "effect_bis"],
            "u_corr": ["effect", "effect_bis"],
            "u_cov": ["effect", "effect_bis"],
        }
        coords = {
            "beta_dim": ["intercept", "slope"],
            "effect": list(self.effect_names),
            "effect_bis": list(self.effect_names),
            "alpha_individual": list(self.alpha_individuals),
        }
        if "u" in posterior:
            coords["individual"] = list(range(1, posterior["u"].shape[2] + 1))
        dims = {k: v for k, v in dims.items() if k in posterior}
        return az.from_dict(
            posterior=posterior, sample_stats=sample_stats, coords=coords, dims=dims
        )


def _check_alpha_individuals(
    alpha_individuals: Sequence[int] | None, n_individuals: int
) -> tuple[int, ...]:
    if alpha_individuals is None:
        return tuple(range(1, n_individuals + 1))
    ids = tuple(int(i) for i in alpha_individuals)
    bad = [i for i in ids if not 1 <= i <= n_individuals]
    if bad:
        raise ValueError(f"alpha_individuals outside [1, {n_individuals}]: {bad}")
    return ids


def _derived_quantities(
    params: dict[str, jnp.ndarray], alpha_index: jnp.ndarray
) -> dict[str, jnp.ndarray]:
    """Stored quantities for one constrained draw."""
    u = random_effects(params["z_u"], params["u_sd"], params["L_u_Corr"])
    alpha = individual_effects(params["beta"], params["betakp"], u)
    return {
        "beta": params["beta"],
        "betakp": params["betakp"],
        "u_sd": params["u_sd"],
        "y_sd": params["y_sd"],
        "L_u_Corr": params["L_u_Corr"],
        "u_corr": correlation_matrix(params["L_u_Corr"]),
        "u_cov": covariance_matrix(params["u_sd"], params["L_u_Corr"]),
        "u": u,
        "alpha": alpha[alpha_index],
    }


def _convergence_stats(
    chain_samples: dict[str, np.ndarray],
) -> tuple[dict[str, np.ndarray], dict[str, np.ndarray]]:
    """Split R-hat and ESS for the diagnostic sites.

    Entries that are constant across all draws (e.g. the unit diagonal of a
    correlation matrix) come out as NaN.
    """
    r_hat, n_eff = {}, {}
    for name in DIAGNOSTIC_SITES:
        x = np.asarray(chain_samples[name], dtype=np.float64)
        with np.errstate(divide="ignore", invalid="ignore"):
            n_eff[name] = (
                effective_sample_size(x) if x.shape[1] >= 2 else np.full(x.shape[2:], np.nan)
            )
            r_hat[name] = (
                split_gelman_rubin(x) if x.shape[1] >= 4 else np.full(x.shape[2:], np.nan)
            )
    return r_hat, n_eff


def _max_finite(values: dict[str, np.ndarray]) -> float:
    finite = [np.asarray(v)[np.isfinite(v)] for v in values.values()]
    finite = [v for v in finite if v.size]
    return float(max(v.max() for v in finite)) if finite else float("nan")


def _run_chains(
    chains: list[MarkovChain], cancel_event: threading.Event | None
) -> list[ChainResult]:
    abort = threading.Event()

    def should_stop() -> bool:
        return abort.is_set() or (cancel_event is not None and cancel_event.is_set())

    with ThreadPoolExecutor(max_workers=len(chains), thread_name_prefix="chain") as pool:
        futures = [pool.submit(chain.run, should_stop) for chain in chains]
        try:
            return [f.result() for f in futures]
        except BaseException:
            # Stop the remaining chains at their next iteration boundary
            abort.set()
            raise


def fit(
    model: ChangepointModel,
    observations: ObservationSet,
    config: SamplerConfig | None = None,
    *,
    alpha_individuals: Sequence[int] | None = None,
    cancel_event: threading.Event | None = None,
) -> InferenceResult:
    """Fit a change-point model with multi-chain NUTS.

    Args:
        model: ChangepointModel sized to ``observations``
        observations: validated ObservationSet
        config: sampler settings (defaults to SamplerConfig())
        alpha_individuals: 1-based individuals whose per-draw ``alpha`` is
            kept; None keeps all, an empty sequence keeps none
        cancel_event: set from another thread to cancel the run; chains stop
            at their next iteration and RunCancelledError is raised

    Returns:
        InferenceResult with constrained draws and diagnostics

    Raises:
        ConfigurationError: invalid settings, before any sampling
        RunCancelledError: the run was cancelled
    """
    config = config or SamplerConfig()
    config.validate()
    model.spec.validate()
    if model.spec.n_individuals != observations.n_individuals:
        raise ConfigurationError(
            f"Model is sized for {model.spec.n_individuals} individuals but the "
            f"observations have {observations.n_individuals}"
        )
    alpha_ids = _check_alpha_individuals(alpha_individuals, observations.n_individuals)

    site_info = discover_sites(model, observations, seed=config.seed)
    transform = ParameterTransform(site_info)
    potential_fn = PotentialFn(model, observations, transform)
    logger.info(
        "Fitting change-point model: %d observations, %d individuals, %d parameters, %d chains",
        observations.n_observations,
        observations.n_individuals,
        transform.dim,
        config.num_chains,
    )

    seeds = np.random.SeedSequence(config.seed).spawn(config.num_chains)
    rngs = [np.random.default_rng(s) for s in seeds]
    # Raw deviations start at zero: a random z_u can push an individual
    # breakpoint below every dose, where its gradient vanishes.
    raw_deviations = transform.site_mask(("z_u",))
    chains = []
    for chain_id, rng in enumerate(rngs):
        z0, pe0 = find_initial_position(potential_fn, rng, fixed_mask=raw_deviations)
        chains.append(MarkovChain(chain_id, potential_fn, z0, pe0, config, rng))

    results = _run_chains(chains, cancel_event)

    # Merge: (C, S, D) unconstrained -> constrained + derived, (C, S, ...)
    draws = np.stack([r.draws for r in results])
    n_chains, n_samples, dim = draws.shape
    alpha_index = jnp.asarray([i - 1 for i in alpha_ids], dtype=jnp.int32)

    @jax.jit
    @jax.vmap
    def _postprocess(z):
        return _derived_quantities(transform.constrain(z), alpha_index)

    flat = _postprocess(jnp.asarray(draws.reshape(n_chains * n_samples, dim)))
    samples = dict(flat)
    chain_samples = {k: v.reshape((n_chains, n_samples) + v.shape[1:]) for k, v in flat.items()}

    r_hat, n_eff = _convergence_stats(chain_samples)
    max_rhat = _max_finite(r_hat)
    converged = bool(np.isfinite(max_rhat) and max_rhat <= config.rhat_threshold)

    chain_diagnostics = [
        {
            "chain_id": r.chain_id,
            "num_divergent": r.num_divergent,
            "num_warmup_divergent": r.num_warmup_divergent,
            "mean_accept_prob": r.mean_accept_prob,
            "step_size": r.step_size,
            "num_max_depth": r.num_max_depth,
            "mean_tree_depth": float(r.tree_depth.mean()),
            "e_bfmi": r.e_bfmi,
        }
        for r in results
    ]
    sample_stats = {
        key: np.stack([getattr(r, key) for r in results])
        for key in (
            "potential_energy",
            "energy",
            "accept_prob",
            "diverging",
            "tree_depth",
            "num_steps",
        )
    }
    num_divergent = sum(c["num_divergent"] for c in chain_diagnostics)

    if num_divergent:
        logger.warning(
            "%d divergent transitions after warmup across %d chains", num_divergent, n_chains
        )
    if not converged:
        logger.warning(
            "Chains have not converged: max split R-hat %.3f exceeds %.3f; "
            "results are unreliable",
            max_rhat,
            config.rhat_threshold,
        )

    return InferenceResult(
        _samples=samples,
        _chain_samples=chain_samples,
        method="nuts",
        diagnostics={
            "chains": chain_diagnostics,
            "num_divergent": num_divergent,
            "r_hat": r_hat,
            "n_eff": n_eff,
            "max_r_hat": max_rhat,
            "sample_stats": sample_stats,
            "inv_mass": [r.inv_mass for r in results],
        },
        converged=converged,
        alpha_individuals=alpha_ids,
        effect_names=tuple(model.spec.effect_names),
    )
