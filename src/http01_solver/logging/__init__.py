"""Logging configuration for http01-solver."""

from http01_solver.logging.config import configure_logging

__all__ = ["configure_logging"]
