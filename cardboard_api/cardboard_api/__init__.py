"""Cardboard API control plane."""

__version__ = "0.4.0"
