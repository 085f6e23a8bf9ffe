"""Propflow engine: service workflow state machine, money types and persistence."""

__version__ = "0.4.0"
