"""Parameter recovery for the broken-stick change-point model.

Ground truth: a population of individuals with a kink at betakp, correlated
random deviations in (intercept, slope, breakpoint), and Gaussian noise.
Simulates repeated datasets, fits each with NUTS, prints recovery tables and
the empirical coverage of the 90% credible intervals.

Usage:
    python tools/recovery.py                  # quick local run
    python tools/recovery.py --full           # longer chains, more replicates
    python tools/recovery.py --replicates 20 --individuals 30
"""

from __future__ import annotations

import argparse
import logging

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def header(title: str):
    w = 70
    print("=" * w)
    print(f" {title}")
    print("=" * w)


def print_recovery(name: str, true_val, samples_arr) -> bool:
    """Print one row of recovery stats. Returns True if 90% CI covers truth."""
    import jax.numpy as jnp

    mean = float(jnp.mean(samples_arr))
    std = float(jnp.std(samples_arr))
    q5 = float(jnp.percentile(samples_arr, 5))
    q95 = float(jnp.percentile(samples_arr, 95))
    true = float(true_val)
    covered = q5 <= true <= q95
    tag = "OK" if covered else "MISS"
    print(
        f"  {name:<20s}  true={true:+.3f}  post={mean:+.3f}+-{std:.3f}"
        f"  90%CI=[{q5:+.3f},{q95:+.3f}]  {tag}  bias={mean - true:+.3f}"
    )
    return covered


def print_matrix(m, labels):
    """Print a square matrix with row/col labels."""
    import numpy as np

    a = np.array(m)
    w = 12
    print(f"{'':>{w}s}", "".join(f"{c:>{w}s}" for c in labels))
    for i, rl in enumerate(labels):
        vals = "".join(f"{a[i, j]:>{w}.3f}" for j in range(a.shape[1]))
        print(f"{rl:>{w}s}{vals}")


# ---------------------------------------------------------------------------
# Recovery report for one replicate
# ---------------------------------------------------------------------------


def report_recovery(samples, truth, effect_names) -> dict[str, bool]:
    """Print the recovery table for one fit. Returns coverage per parameter."""
    rows = [
        ("beta[0] intercept", truth["beta"][0], samples["beta"][:, 0]),
        ("beta[1] slope", truth["beta"][1], samples["beta"][:, 1]),
        ("betakp", truth["betakp"], samples["betakp"]),
        ("y_sd", truth["y_sd"], samples["y_sd"]),
    ]
    rows += [
        (f"u_sd[{k}] {name}", truth["u_sd"][k], samples["u_sd"][:, k])
        for k, name in enumerate(effect_names)
    ]
    return {label.split()[0]: print_recovery(label, t, s) for label, t, s in rows}


# ---------------------------------------------------------------------------
# Core logic
# ---------------------------------------------------------------------------


def run(
    full: bool = False,
    replicates: int | None = None,
    n_individuals: int | None = None,
    seed: int = 0,
):
    import time

    import jax
    import jax.numpy as jnp
    import numpy as np

    from brokenstick.models.changepoint import build_changepoint_model, fit
    from brokenstick.utils.config import SamplerConfig
    from brokenstick.utils.data import simulate_dataset

    # -- Tuning knobs --
    if full:
        REPLICATES = 20
        N_INDIVIDUALS = 30
        WARMUP, SAMPLES, CHAINS = 1000, 1000, 4
    else:
        REPLICATES = 3
        N_INDIVIDUALS = 10
        WARMUP, SAMPLES, CHAINS = 300, 300, 2
    REPLICATES = replicates or REPLICATES
    N_INDIVIDUALS = n_individuals or N_INDIVIDUALS

    header("ENVIRONMENT")
    print(f"JAX {jax.__version__}  backend={jax.default_backend()}  devices={jax.devices()}")
    print(f"replicates={REPLICATES}  individuals={N_INDIVIDUALS}")
    print(f"NUTS: {CHAINS} chains x ({WARMUP} warmup + {SAMPLES} samples)")
    print()

    # ==================================================================
    # 1. Ground truth
    # ==================================================================
    header("GROUND TRUTH")

    effect_names = ("intercept", "slope", "breakpoint")
    doses = np.linspace(0.2, 2.0, 10)
    beta = np.array([10.0, 5.0])
    betakp = 1.2
    u_sd = np.array([0.8, 0.6, 0.1])
    y_sd = 0.4
    corr = np.array([
        [1.0, 0.3, 0.0],
        [0.3, 1.0, -0.2],
        [0.0, -0.2, 1.0],
    ])
    assert np.all(np.linalg.eigvalsh(corr) > 0), "Correlation is not positive definite!"

    print(f"beta={beta.tolist()}  betakp={betakp}  y_sd={y_sd}")
    print(f"u_sd={u_sd.tolist()}  doses in [{doses[0]:.1f}, {doses[-1]:.1f}]")
    print("Deviation correlation:")
    print_matrix(corr, effect_names)
    print()

    config = SamplerConfig(
        num_chains=CHAINS, num_warmup=WARMUP, num_samples=SAMPLES, seed=seed
    )

    # ==================================================================
    # 2. Simulate + fit each replicate
    # ==================================================================
    coverage: dict[str, int] = {}
    timings = []
    divergences = 0
    for r in range(REPLICATES):
        header(f"REPLICATE {r + 1}/{REPLICATES}")
        data, truth = simulate_dataset(
            doses=doses,
            n_individuals=N_INDIVIDUALS,
            beta=beta,
            betakp=betakp,
            u_sd=u_sd,
            y_sd=y_sd,
            corr=corr,
            seed=seed + r,
        )
        model = build_changepoint_model(data, 0.5, 2.0)

        t0 = time.perf_counter()
        result = fit(model, data, config, alpha_individuals=[1])
        elapsed = time.perf_counter() - t0
        timings.append(elapsed)
        divergences += result.diagnostics["num_divergent"]
        print(
            f"Done in {elapsed:.1f}s  divergences={result.diagnostics['num_divergent']}"
            f"  max R-hat={result.diagnostics['max_r_hat']:.3f}"
        )

        samples = result.get_samples()
        for name, ok in report_recovery(samples, truth, effect_names).items():
            coverage[name] = coverage.get(name, 0) + int(ok)

        print("  Posterior mean correlation:")
        print_matrix(jnp.mean(samples["u_corr"], axis=0), effect_names)
        print()

    # ==================================================================
    # 3. Coverage
    # ==================================================================
    header("COVERAGE (90% CI, nominal 0.90)")
    print(f"{'Parameter':<12s}  {'Covered':>8s}  {'Rate':>6s}")
    print("-" * 30)
    for name, hits in coverage.items():
        print(f"{name:<12s}  {hits:>8d}  {hits / REPLICATES:>6.2f}")
    print()
    print(f"Total divergences: {divergences}  mean fit time: {np.mean(timings):.1f}s")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--full", action="store_true", help="longer chains, more replicates")
    parser.add_argument("--replicates", type=int, default=None)
    parser.add_argument("--individuals", type=int, default=None)
    parser.add_argument("--seed", type=int, default=0)
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    run(
        full=args.full,
        replicates=args.replicates,
        n_individuals=args.individuals,
        seed=args.seed,
    )


if __name__ == "__main__":
    main()
