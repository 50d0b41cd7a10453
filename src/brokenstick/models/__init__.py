"""Change-point models, posterior and prior predictive simulation."""

from .posterior_predictive import (
    check_calibration,
    posterior_predictive,
    reconstruct_covariance,
    simulate_posterior_predictive,
)
from .prior_predictive import (
    format_validation_report,
    sample_prior_predictive,
    validate_prior_predictive,
)

__all__ = [
    "check_calibration",
    "posterior_predictive",
    "reconstruct_covariance",
    "simulate_posterior_predictive",
    "sample_prior_predictive",
    "validate_prior_predictive",
    "format_validation_report",
]
