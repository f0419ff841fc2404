"""Solver settings with Pydantic validation."""

from __future__ import annotations

import os
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_SOLVER_IMAGE = "quay.io/jetstack/cert-manager-acmesolver:v1.15.3"

# Environment variable -> settings field
_ENV_OVERRIDES: dict[str, str] = {
    "HTTP01_SOLVER_IMAGE": "image",
    "HTTP01_SOLVER_IMAGE_PULL_POLICY": "image_pull_policy",
    "HTTP01_SOLVER_LISTEN_PORT": "listen_port",
    "HTTP01_SOLVER_HEALTH_PATH": "health_path",
    "HTTP01_SOLVER_CPU_REQUEST": "cpu_request",
    "HTTP01_SOLVER_CPU_LIMIT": "cpu_limit",
    "HTTP01_SOLVER_MEMORY_REQUEST": "memory_request",
    "HTTP01_SOLVER_MEMORY_LIMIT": "memory_limit",
    "HTTP01_SOLVER_RUN_AS_NON_ROOT": "run_as_non_root",
    "HTTP01_SOLVER_DEFAULT_SERVICE_TYPE": "default_service_type",
    "HTTP01_SOLVER_CONFLICT_RETRY_ATTEMPTS": "conflict_retry_attempts",
    "HTTP01_SOLVER_CONFLICT_RETRY_WAIT": "conflict_retry_wait",
    "HTTP01_SOLVER_SELF_CHECK_TIMEOUT": "self_check_timeout",
    "HTTP01_SOLVER_SWEEP_INTERVAL": "sweep_interval",
}


class SolverSettings(BaseModel):
    """Settings shared by every challenge the solver handles.

    Per-challenge configuration (ingress class, merge target, pod template)
    comes from the Challenge itself; these are the operator-wide defaults.
    """

    model_config = ConfigDict(extra="forbid")

    image: str = DEFAULT_SOLVER_IMAGE
    image_pull_policy: Literal["Always", "IfNotPresent", "Never"] = "IfNotPresent"
    listen_port: int = 8089
    health_path: str | None = Field(default=None, description="Liveness path; TCP probe if unset")
    cpu_request: str = "10m"
    cpu_limit: str = "100m"
    memory_request: str = "64Mi"
    memory_limit: str = "64Mi"
    run_as_non_root: bool = True
    default_service_type: Literal["ClusterIP", "NodePort"] = "ClusterIP"
    conflict_retry_attempts: int = Field(default=5, description="Patch attempts per call")
    conflict_retry_wait: float = Field(default=0.1, description="Base backoff in seconds")
    self_check_timeout: float = 10.0
    sweep_interval: int = 300

    @field_validator("listen_port")
    @classmethod
    def validate_listen_port(cls, v: int) -> int:
        """Validate listen_port is a usable TCP port."""
        if not 0 < v < 65536:
            raise ValueError("listen_port must be between 1 and 65535")
        return v

    @field_validator("conflict_retry_attempts", "sweep_interval")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate counters and intervals are positive."""
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @field_validator("conflict_retry_wait", "self_check_timeout")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        """Validate durations are non-negative."""
        if v < 0:
            raise ValueError("value must be non-negative")
        return v

    @classmethod
    def from_env(cls, base_config: dict[str, Any] | None = None) -> SolverSettings:
        """Create settings with ``HTTP01_SOLVER_*`` environment overrides.

        Environment variables take precedence over base_config values.
        """
        config_dict = base_config.copy() if base_config else {}
        for env_var, field in _ENV_OVERRIDES.items():
            if (value := os.environ.get(env_var)) is not None:
                config_dict[field] = value
        return cls.model_validate(config_dict)
