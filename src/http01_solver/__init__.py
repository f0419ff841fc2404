"""HTTP-01 ACME challenge solver for Kubernetes."""

__version__ = "0.1.0"
