"""Core settings for the HTTP-01 solver."""
