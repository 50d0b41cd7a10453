"""Hierarchical Bayesian broken-stick (change-point) models with a NUTS sampler."""

__version__ = "0.1.0"
