"""Propflow HTTP API and domain services."""

__version__ = "0.4.0"
