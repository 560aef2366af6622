"""Ratio, linear-regression and sidecar power models, with a factory to build them from settings."""

__version__ = "0.1.0"