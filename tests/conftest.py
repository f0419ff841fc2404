"""Shared pytest fixtures for http01_solver tests."""

from __future__ import annotations

import os
from collections.abc import Generator
from unittest.mock import patch

import pytest
import typer
from typer.testing import CliRunner

from http01_solver.cli.main import app


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Typer CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def reset_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset environment variables for each test."""
    for key in list(os.environ.keys()):
        if key.startswith("HTTP01_SOLVER_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def quiet_cli_logging() -> Generator[None]:
    """Keep CLI invocations from reconfiguring logging or writing log files."""
    with patch("http01_solver.cli.main.configure_logging"):
        yield


@pytest.fixture
def cli_app() -> typer.Typer:
    """Return the CLI app for testing."""
    return app
