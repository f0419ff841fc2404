"""Solver services."""
