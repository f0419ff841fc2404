"""CLI commands that drive the HTTP-01 solver against a cluster.

Every command builds its solver through ``get_solver`` so tests can swap in a
solver backed by a fake client.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog
import typer
from rich.table import Table

from http01_solver.cli.commands.base import (
    EXIT_RETRY,
    AllNamespacesOption,
    ChallengeArgument,
    NamespaceArgument,
    NamespaceOption,
    console,
    handle_k8s_error,
    handle_solver_error,
)
from http01_solver.integrations.kubernetes.exceptions import (
    KubernetesError,
    KubernetesNotFoundError,
)
from http01_solver.integrations.kubernetes.models.solver import (
    CleanupResult,
    SolveResult,
    SweepResult,
)
from http01_solver.services.solver.exceptions import SolverError, SolverTransientError
from http01_solver.services.solver.naming import challenge_path

if TYPE_CHECKING:
    from http01_solver.services.solver.solver import HTTP01Solver

logger = structlog.get_logger()


# =============================================================================
# Output
# =============================================================================


def print_solve_result(result: SolveResult) -> None:
    """Render a present/reconcile result."""
    table = Table(title="HTTP-01 Solver")
    table.add_column("Component", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Status")

    if result.pod:
        if result.pod.ready:
            status = "[green]Ready[/green]"
        else:
            status = f"[yellow]{result.pod.phase}[/yellow]"
        table.add_row("Pod", result.pod.name, status)
    if result.service:
        table.add_row("Service", result.service.name, result.service.type)
    if result.routing:
        mode = f"{result.routing.mode}{' (updated)' if result.routing.changed else ''}"
        status = "[green]Present[/green]" if result.routing.present else "[yellow]Pending[/yellow]"
        table.add_row(result.routing.kind, result.routing.name, f"{status} {mode}")

    console.print(table)
    if result.ready:
        console.print(f"[green]Ready:[/green] {result.message}")
    else:
        console.print(f"[yellow]Not ready ({result.stage}):[/yellow] {result.message}")


def print_cleanup_result(result: CleanupResult) -> None:
    """Render what a cleanup removed."""
    if not result.changed:
        console.print(f"[dim]Nothing to clean up for key {result.challenge_key}[/dim]")
        return
    table = Table(title=f"Cleaned up {result.challenge_key}")
    table.add_column("Action", style="cyan", no_wrap=True)
    table.add_column("Object")
    for ref in result.deleted:
        table.add_row("deleted", ref)
    for ref in result.patched:
        table.add_row("patched", ref)
    console.print(table)


def print_sweep_result(result: SweepResult) -> None:
    """Render an orphan sweep summary."""
    console.print(
        f"Live challenges: {result.live_keys}, orphaned keys: {len(result.orphaned_keys)}"
    )
    for cleanup in result.cleanups:
        print_cleanup_result(cleanup)


# =============================================================================
# Command Registration
# =============================================================================


def register_solver_commands(
    app: typer.Typer,
    get_solver: Callable[[], HTTP01Solver],
) -> None:
    """Register the cluster-facing solver commands."""

    @app.command("reconcile")
    def reconcile(namespace: NamespaceArgument, name: ChallengeArgument) -> None:
        """Present or clean up one Challenge, depending on its state.

        Exits 0 when the challenge is ready or cleaned up, and 3 when it should
        be retried later.

        Examples:
            http01-solver reconcile default example-com-1234
        """
        try:
            solver = get_solver()
            challenge = solver.load_challenge(namespace, name)
            result = solver.reconcile(challenge)
        except SolverError as e:
            handle_solver_error(e)
        except KubernetesError as e:
            handle_k8s_error(e)

        if isinstance(result, CleanupResult):
            print_cleanup_result(result)
            return
        print_solve_result(result)
        if not result.ready:
            raise typer.Exit(EXIT_RETRY)

    @app.command("cleanup")
    def cleanup(
        namespace: NamespaceArgument,
        name: ChallengeArgument,
        key: str | None = typer.Option(
            None,
            "--key",
            help="Identity key to clean up when the Challenge is already gone",
        ),
    ) -> None:
        """Remove the solver resources of one Challenge.

        Examples:
            http01-solver cleanup default example-com-1234
            http01-solver cleanup default gone --key 3f2a9c1b0d4e5f67
        """
        try:
            solver = get_solver()
            if key:
                result = solver.cleanup_key(namespace, key)
            else:
                result = solver.cleanup(solver.load_challenge(namespace, name))
        except KubernetesNotFoundError as e:
            console.print(f"[red]Error:[/red] {e.message}")
            console.print("\n[dim]Hint: pass --key to clean up a deleted Challenge.[/dim]")
            raise typer.Exit(1) from None
        except SolverError as e:
            handle_solver_error(e)
        except KubernetesError as e:
            handle_k8s_error(e)
        print_cleanup_result(result)

    @app.command("check")
    def check(namespace: NamespaceArgument, name: ChallengeArgument) -> None:
        """Fetch the challenge URL and compare the response with the key.

        Examples:
            http01-solver check default example-com-1234
        """
        try:
            solver = get_solver()
            challenge = solver.load_challenge(namespace, name)
        except KubernetesError as e:
            handle_k8s_error(e)

        url = f"http://{challenge.dns_name}{challenge_path(challenge.token)}"
        if solver.check(challenge):
            console.print(f"[green]OK:[/green] {url} serves the key authorization")
            return
        console.print(f"[red]Failed:[/red] {url} does not serve the key authorization")
        raise typer.Exit(1)

    @app.command("sweep")
    def sweep(
        namespace: NamespaceOption = None,
        all_namespaces: AllNamespacesOption = False,
        watch: bool = typer.Option(
            False,
            "--watch",
            "-w",
            help="Keep sweeping until interrupted",
        ),
        interval: int | None = typer.Option(
            None,
            "--interval",
            "-i",
            min=1,
            help="Seconds between passes with --watch (default HTTP01_SOLVER_SWEEP_INTERVAL)",
        ),
    ) -> None:
        """Remove solver resources whose Challenge no longer needs them.

        Examples:
            http01-solver sweep -n default
            http01-solver sweep -A --watch --interval 300
        """
        try:
            solver = get_solver()
        except KubernetesError as e:
            handle_k8s_error(e)
        target = None if all_namespaces else namespace or solver.default_namespace
        delay = interval or solver.settings.sweep_interval

        while True:
            try:
                print_sweep_result(solver.sweep(target))
            except SolverTransientError as e:
                if not watch:
                    handle_solver_error(e)
                logger.warning("sweep_failed", error=str(e), retry_in=delay)
            except SolverError as e:
                handle_solver_error(e)
            if not watch:
                return
            time.sleep(delay)
