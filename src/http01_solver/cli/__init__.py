"""Command line interface for the HTTP-01 solver."""
