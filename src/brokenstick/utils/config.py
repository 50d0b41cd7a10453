"""Configuration loader for change-point model runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING

import yaml

if TYPE_CHECKING:
    from brokenstick.models.changepoint.model import ChangepointPriors


class ConfigurationError(ValueError):
    """Invalid run configuration, raised before any sampling starts."""


@dataclass(frozen=True)
class ModelConfig:
    """Breakpoint bounds and prior scales."""

    betakp_lower: float
    betakp_upper: float
    beta_prior_sd: float = 20.0
    u_sd_prior_sd: float = 20.0
    y_sd_prior_sd: float = 20.0
    lkj_concentration: float = 1.0

    def validate(self) -> None:
        if not self.betakp_lower < self.betakp_upper:
            raise ConfigurationError(
                f"betakp_lower must be < betakp_upper, got "
                f"[{self.betakp_lower}, {self.betakp_upper}]"
            )
        for name in ("beta_prior_sd", "u_sd_prior_sd", "y_sd_prior_sd", "lkj_concentration"):
            if not getattr(self, name) > 0:
                raise ConfigurationError(f"{name} must be > 0, got {getattr(self, name)}")

    def to_priors(self) -> ChangepointPriors:
        from brokenstick.models.changepoint.model import ChangepointPriors

        return ChangepointPriors(
            beta={"mu": 0.0, "sigma": self.beta_prior_sd},
            u_sd={"sigma": self.u_sd_prior_sd},
            y_sd={"sigma": self.y_sd_prior_sd},
            lkj_concentration=self.lkj_concentration,
        )


@dataclass(frozen=True)
class SamplerConfig:
    """NUTS run settings."""

    num_chains: int = 4
    num_warmup: int = 1000
    num_samples: int = 1000
    target_accept: float = 0.8
    max_tree_depth: int = 10
    seed: int = 0
    dense_mass: bool = False
    init_step_size: float = 1.0
    rhat_threshold: float = 1.05

    def validate(self) -> None:
        if self.num_chains < 1:
            raise ConfigurationError(f"num_chains must be >= 1, got {self.num_chains}")
        if self.num_samples < 1:
            raise ConfigurationError(f"num_samples must be >= 1, got {self.num_samples}")
        if self.num_warmup < 0:
            raise ConfigurationError(f"num_warmup must be >= 0, got {self.num_warmup}")
        if not 0.0 < self.target_accept < 1.0:
            raise ConfigurationError(
                f"target_accept must be in (0, 1), got {self.target_accept}"
            )
        if self.max_tree_depth < 1:
            raise ConfigurationError(f"max_tree_depth must be >= 1, got {self.max_tree_depth}")
        if not self.init_step_size > 0:
            raise ConfigurationError(f"init_step_size must be > 0, got {self.init_step_size}")
        if not self.rhat_threshold > 1.0:
            raise ConfigurationError(f"rhat_threshold must be > 1, got {self.rhat_threshold}")


@dataclass(frozen=True)
class RunConfig:
    """Full run configuration."""

    model: ModelConfig
    sampler: SamplerConfig = field(default_factory=SamplerConfig)

    def validate(self) -> None:
        self.model.validate()
        self.sampler.validate()


def _find_config_path() -> Path:
    """Find config.yaml by walking up from this file to the project root."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        config_path = parent / "config.yaml"
        if config_path.exists():
            return config_path
    raise FileNotFoundError("config.yaml not found in any parent directory")


def parse_config(raw: dict) -> RunConfig:
    """Build and validate a RunConfig from a parsed YAML mapping."""
    if "model" not in raw:
        raise ConfigurationError("config is missing the 'model' section")
    try:
        config = RunConfig(
            model=ModelConfig(**raw["model"]),
            sampler=SamplerConfig(**(raw.get("sampler") or {})),
        )
    except TypeError as e:
        raise ConfigurationError(f"Unknown or missing config key: {e}") from e
    config.validate()
    return config


@lru_cache(maxsize=8)
def load_config(path: str | Path | None = None) -> RunConfig:
    """Load and parse a run configuration.

    With no path, walks up from the package to the nearest config.yaml.
    Returns cached config on subsequent calls with the same path.
    """
    config_path = Path(path) if path is not None else _find_config_path()

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    return parse_config(raw)
