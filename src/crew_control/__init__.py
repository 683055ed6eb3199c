"""Supervisor for a fleet of external worker processes."""

__version__ = "0.1.0"
