"""Configuration and data utilities."""

from .config import ConfigurationError, RunConfig, load_config
from .data import ObservationSet, PredictionGrid, simulate_dataset

__all__ = [
    "ConfigurationError",
    "RunConfig",
    "load_config",
    "ObservationSet",
    "PredictionGrid",
    "simulate_dataset",
]
