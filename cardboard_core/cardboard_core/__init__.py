"""Cardboard core: state store and usage-quota engine."""

__version__ = "0.4.0"
