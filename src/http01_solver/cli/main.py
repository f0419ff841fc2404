"""Main CLI entry point using Typer."""

from __future__ import annotations

import typer
from rich.console import Console

from http01_solver import __version__
from http01_solver.cli.commands import serve
from http01_solver.cli.commands.solver import register_solver_commands
from http01_solver.core.config import SolverSettings
from http01_solver.integrations.kubernetes.client import KubernetesClient
from http01_solver.integrations.kubernetes.config import KubernetesConnectionConfig
from http01_solver.logging.config import configure_logging
from http01_solver.services.solver.solver import HTTP01Solver

app = typer.Typer(
    name="http01-solver",
    help="Provision and clean up ACME HTTP-01 challenge solvers in Kubernetes.",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"http01-solver version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose output.",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug mode.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Write logs as JSON lines.",
    ),
) -> None:
    """HTTP-01 solver - serve ACME challenges from inside the cluster."""
    configure_logging(verbose=verbose, debug=debug, json_output=json_logs)


@app.command("version")
def show_version() -> None:
    """Show version information."""
    console.print(f"http01-solver version {__version__}")


def get_solver() -> HTTP01Solver:
    """Build a solver from HTTP01_SOLVER_* environment configuration."""
    client = KubernetesClient(KubernetesConnectionConfig.from_env())
    return HTTP01Solver(client, SolverSettings.from_env())


# Register subcommands
# Late-bound so tests can patch get_solver.
register_solver_commands(app, lambda: get_solver())
app.command("serve")(serve.serve)


if __name__ == "__main__":
    app()
