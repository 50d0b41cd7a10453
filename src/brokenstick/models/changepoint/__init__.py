"""Hierarchical broken-stick change-point model in NumPyro.

This module implements a Bayesian piecewise-linear dose-response model with:
- Correlated per-individual intercept, slope and breakpoint (non-centered)
- A multinomial No-U-Turn sampler over a jitted JAX potential
- Stan-style warmup (dual averaging + windowed mass matrix adaptation)
- Multi-chain runs with split R-hat / ESS diagnostics
"""

from brokenstick.models.changepoint.chain import ChainPhase, ChainResult, MarkovChain
from brokenstick.models.changepoint.inference import InferenceResult, RunCancelledError, fit
from brokenstick.models.changepoint.model import (
    ChangepointModel,
    ChangepointPriors,
    ChangepointSpec,
    broken_stick_mean,
    build_changepoint_model,
)
from brokenstick.models.changepoint.transforms import ParameterTransform, PotentialFn

__all__ = [
    # Model
    "ChangepointModel",
    "ChangepointPriors",
    "ChangepointSpec",
    "broken_stick_mean",
    "build_changepoint_model",
    # Transforms
    "ParameterTransform",
    "PotentialFn",
    # Chains
    "ChainPhase",
    "ChainResult",
    "MarkovChain",
    # Inference
    "InferenceResult",
    "RunCancelledError",
    "fit",
]
