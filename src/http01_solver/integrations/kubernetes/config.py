"""Kubernetes connection configuration models."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator


class ClusterConfig(BaseModel):
    """Configuration for a single Kubernetes cluster."""

    model_config = ConfigDict(extra="forbid")

    context: str = ""
    kubeconfig: str | None = None
    namespace: str = "default"
    timeout: int = 30

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        """Validate timeout is positive."""
        if v <= 0:
            raise ValueError("timeout must be positive")
        return v

    @field_validator("kubeconfig")
    @classmethod
    def validate_kubeconfig(cls, v: str | None) -> str | None:
        """Expand ~ in kubeconfig path."""
        return str(Path(v).expanduser()) if v else None


class KubernetesConnectionConfig(BaseModel):
    """How the solver connects to the API server.

    With no clusters configured the client auto-detects: the default kubeconfig
    first, then the in-cluster service account.
    """

    model_config = ConfigDict(extra="forbid")

    clusters: dict[str, ClusterConfig] = {}
    active_cluster: str | None = None
    retry_attempts: int = 3

    @field_validator("retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        """Validate retry_attempts is at least one."""
        if v < 1:
            raise ValueError("retry_attempts must be at least 1")
        return v

    @classmethod
    def from_env(cls, base_config: dict[str, Any] | None = None) -> KubernetesConnectionConfig:
        """Create configuration with environment variable overrides.

        Supported environment variables:
            HTTP01_SOLVER_K8S_CONTEXT: Kubeconfig context to use
            HTTP01_SOLVER_K8S_KUBECONFIG: Kubeconfig path
            HTTP01_SOLVER_K8S_NAMESPACE: Default namespace for lookups
            HTTP01_SOLVER_K8S_TIMEOUT: API request timeout in seconds
            HTTP01_SOLVER_K8S_RETRIES: Attempts for requests that fail to connect
        """
        config_dict = base_config.copy() if base_config else {}
        clusters: dict[str, Any] = dict(config_dict.get("clusters", {}))

        context = os.environ.get("HTTP01_SOLVER_K8S_CONTEXT")
        kubeconfig = os.environ.get("HTTP01_SOLVER_K8S_KUBECONFIG")
        namespace = os.environ.get("HTTP01_SOLVER_K8S_NAMESPACE")
        timeout = os.environ.get("HTTP01_SOLVER_K8S_TIMEOUT")

        if context or kubeconfig or namespace or timeout:
            name = config_dict.get("active_cluster") or context or "env"
            cluster = dict(clusters.get(name, {}))
            if context:
                cluster["context"] = context
            if kubeconfig:
                cluster["kubeconfig"] = kubeconfig
            if namespace:
                cluster["namespace"] = namespace
            if timeout:
                cluster["timeout"] = int(timeout)
            clusters[name] = cluster
            config_dict["active_cluster"] = name

        retries = os.environ.get("HTTP01_SOLVER_K8S_RETRIES")
        if retries:
            config_dict["retry_attempts"] = int(retries)

        config_dict["clusters"] = clusters
        return cls.model_validate(config_dict)

    def get_active_cluster(self) -> ClusterConfig | None:
        """Return the active cluster config, or the first configured one."""
        if self.active_cluster and self.active_cluster in self.clusters:
            return self.clusters[self.active_cluster]
        if self.clusters:
            return next(iter(self.clusters.values()))
        return None

    def get_active_context(self) -> str | None:
        """Get the kubeconfig context name to load, if any."""
        cluster = self.get_active_cluster()
        if cluster and cluster.context:
            return cluster.context
        if self.active_cluster and self.active_cluster not in self.clusters:
            return self.active_cluster
        return None

    def get_active_namespace(self) -> str:
        """Get the default namespace, or 'default' if no cluster is configured."""
        cluster = self.get_active_cluster()
        return cluster.namespace if cluster else "default"

    def get_active_timeout(self) -> int:
        """Get the request timeout for the active cluster."""
        cluster = self.get_active_cluster()
        return cluster.timeout if cluster else 30
