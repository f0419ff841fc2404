"""Shared options and error handling for solver CLI commands."""

from __future__ import annotations

from typing import Annotated, NoReturn

import typer
from rich.console import Console

from http01_solver.integrations.kubernetes.exceptions import (
    KubernetesAuthError,
    KubernetesConnectionError,
    KubernetesError,
    KubernetesNotFoundError,
    KubernetesTimeoutError,
)
from http01_solver.services.solver.exceptions import (
    SolverConfigurationError,
    SolverError,
    SolverTransientError,
)

console = Console()

# Exit code telling a wrapping loop to try again later.
EXIT_RETRY = 3


# =============================================================================
# Common Typer Option Annotations
# =============================================================================

NamespaceArgument = Annotated[str, typer.Argument(help="Namespace of the Challenge")]
ChallengeArgument = Annotated[str, typer.Argument(help="Challenge name")]

NamespaceOption = Annotated[
    str | None,
    typer.Option(
        "--namespace",
        "-n",
        help="Namespace to sweep (defaults to config or 'default')",
    ),
]

AllNamespacesOption = Annotated[
    bool,
    typer.Option(
        "--all-namespaces",
        "-A",
        help="Sweep every namespace",
    ),
]


# =============================================================================
# Error Handling
# =============================================================================


def handle_k8s_error(error: KubernetesError) -> NoReturn:
    """Print a Kubernetes error and exit.

    Raises:
        typer.Exit: 1 for permanent failures, ``EXIT_RETRY`` for transient ones.
    """
    if isinstance(error, KubernetesConnectionError):
        console.print("[red]Error:[/red] Cannot connect to Kubernetes cluster")
        console.print(f"  {error.message}")
        console.print(
            "\n[dim]Hint: Check that your kubeconfig is valid and the cluster is reachable.[/dim]"
        )
    elif isinstance(error, KubernetesAuthError):
        console.print("[red]Error:[/red] Authentication/authorization failed")
        console.print(f"  {error.message}")
        console.print(
            "\n[dim]Hint: The solver needs RBAC for pods, services, ingresses, "
            "httproutes and challenges.[/dim]"
        )
    elif isinstance(error, KubernetesNotFoundError):
        console.print("[red]Error:[/red] Resource not found")
        console.print(f"  {error.message}")
    elif isinstance(error, KubernetesTimeoutError):
        console.print("[red]Error:[/red] Operation timed out")
        console.print(f"  {error.message}")
        console.print("\n[dim]Hint: Try increasing HTTP01_SOLVER_K8S_TIMEOUT.[/dim]")
    else:
        console.print(f"[red]Error:[/red] {error.message}")
        if error.status_code:
            console.print(f"  HTTP Status: {error.status_code}")

    raise typer.Exit(EXIT_RETRY if error.is_transient else 1)


def handle_solver_error(error: SolverError) -> NoReturn:
    """Print a solver error and exit.

    Raises:
        typer.Exit: 1 for configuration errors, ``EXIT_RETRY`` for transient ones.
    """
    if isinstance(error, SolverConfigurationError):
        console.print(f"[red]Configuration error:[/red] {error}")
        raise typer.Exit(1)
    if isinstance(error, SolverTransientError):
        console.print(f"[yellow]Temporary failure:[/yellow] {error}")
        raise typer.Exit(EXIT_RETRY)
    console.print(f"[red]Error:[/red] {error}")
    raise typer.Exit(1)
