"""Configuration management with Pydantic validation."""

from http01_solver.core.config.models import DEFAULT_SOLVER_IMAGE, SolverSettings

__all__ = ["DEFAULT_SOLVER_IMAGE", "SolverSettings"]
