"""Serve command: the process that runs inside the solver pod."""

from __future__ import annotations

import typer

from http01_solver.server import run_server


def serve(
    domain: str = typer.Option(..., "--domain", help="DNS name being validated"),
    token: str = typer.Option(..., "--token", help="Challenge token"),
    key: str = typer.Option(..., "--key", help="Key authorization to serve"),
    listen_port: int = typer.Option(
        8089, "--listen-port", min=1, max=65535, help="Port to listen on"
    ),
) -> None:
    """Answer the HTTP-01 challenge for one token until interrupted.

    Examples:
        http01-solver serve --domain example.com --token tok1 --key tok1.thumbprint
    """
    run_server(domain, token, key, listen_port=listen_port)
