"""Consistent publication of immutable segments to a column-store cluster."""

__version__ = "0.1.0"
