"""Kubernetes API client wrapper.

Wraps the official kubernetes Python client with lazy API group
initialization, kubeconfig/in-cluster loading and consistent error
translation for the solver managers.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from http01_solver.integrations.kubernetes.exceptions import (
    KubernetesAuthError,
    KubernetesConflictError,
    KubernetesConnectionError,
    KubernetesError,
    KubernetesNotFoundError,
    KubernetesTimeoutError,
    KubernetesValidationError,
)

if TYPE_CHECKING:
    from kubernetes.client import (
        ApiClient,
        CoreV1Api,
        CustomObjectsApi,
        NetworkingV1Api,
    )

    from http01_solver.integrations.kubernetes.config import KubernetesConnectionConfig

logger = structlog.get_logger()


class KubernetesClient:
    """Kubernetes API client used by the HTTP-01 solver.

    Example:
        ```python
        from http01_solver.integrations.kubernetes import KubernetesClient
        from http01_solver.integrations.kubernetes.config import (
            KubernetesConnectionConfig,
        )

        with KubernetesClient(KubernetesConnectionConfig.from_env()) as client:
            pods = client.call(client.core_v1.list_namespaced_pod, "cert-manager")
        ```
    """

    def __init__(self, connection_config: KubernetesConnectionConfig) -> None:
        """Initialize the client and load cluster credentials.

        Args:
            connection_config: Connection settings.
        """
        self._config = connection_config
        self._retries = connection_config.retry_attempts
        self._current_context: str | None = None

        self._api_client: ApiClient | None = None
        self._core_v1: CoreV1Api | None = None
        self._networking_v1: NetworkingV1Api | None = None
        self._custom_objects: CustomObjectsApi | None = None

        self._load_config()

        logger.info(
            "kubernetes_client_initialized",
            context=self._current_context,
            default_namespace=connection_config.get_active_namespace(),
        )

    def _load_config(self) -> None:
        """Load configuration from kubeconfig, falling back to in-cluster."""
        from kubernetes import config
        from kubernetes.config import ConfigException

        active_context = self._config.get_active_context()
        cluster = self._config.get_active_cluster()
        kubeconfig_path = cluster.kubeconfig if cluster else None

        try:
            config.load_kube_config(config_file=kubeconfig_path, context=active_context)
            self._current_context = active_context
            logger.debug("loaded_kubeconfig", context=active_context, kubeconfig=kubeconfig_path)
        except ConfigException:
            try:
                config.load_incluster_config()
                self._current_context = "in-cluster"
                logger.debug("loaded_incluster_config")
            except ConfigException as e:
                raise KubernetesConnectionError(
                    message="Cannot load Kubernetes configuration. "
                    "Ensure kubeconfig exists or running inside a cluster.",
                    original_error=e,
                ) from e

        self._invalidate_api_cache()

    def _invalidate_api_cache(self) -> None:
        """Clear cached API group instances."""
        self._api_client = None
        self._core_v1 = None
        self._networking_v1 = None
        self._custom_objects = None

    # =========================================================================
    # Lazy API Group Accessors
    # =========================================================================

    @property
    def api_client(self) -> ApiClient:
        """Shared ApiClient, also used to (de)serialize typed models."""
        if self._api_client is None:
            from kubernetes.client import ApiClient

            self._api_client = ApiClient()
        return self._api_client

    @property
    def core_v1(self) -> CoreV1Api:
        """Get CoreV1Api instance (pods, services)."""
        if self._core_v1 is None:
            from kubernetes.client import CoreV1Api

            self._core_v1 = CoreV1Api(self.api_client)
        return self._core_v1

    @property
    def networking_v1(self) -> NetworkingV1Api:
        """Get NetworkingV1Api instance (ingresses, ingressclasses)."""
        if self._networking_v1 is None:
            from kubernetes.client import NetworkingV1Api

            self._networking_v1 = NetworkingV1Api(self.api_client)
        return self._networking_v1

    @property
    def custom_objects(self) -> CustomObjectsApi:
        """Get CustomObjectsApi instance (challenges, httproutes)."""
        if self._custom_objects is None:
            from kubernetes.client import CustomObjectsApi

            self._custom_objects = CustomObjectsApi(self.api_client)
        return self._custom_objects

    def to_dict(self, obj: Any) -> dict[str, Any]:
        """Serialize a typed API object to its wire (camelCase) dict form."""
        if isinstance(obj, dict):
            return obj
        result: dict[str, Any] = self.api_client.sanitize_for_serialization(obj)
        return result

    # =========================================================================
    # Error Translation
    # =========================================================================

    @staticmethod
    def translate_api_exception(
        e: Exception,
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
    ) -> KubernetesError:
        """Translate a kubernetes ApiException to a KubernetesError subclass.

        Args:
            e: The original exception.
            resource_type: Kind of resource being operated on.
            resource_name: Name of the resource.
            namespace: Namespace of the resource.

        Returns:
            An appropriate KubernetesError subclass.
        """
        from kubernetes.client import ApiException
        from urllib3.exceptions import HTTPError, ReadTimeoutError

        if isinstance(e, KubernetesError):
            return e

        if isinstance(e, ReadTimeoutError):
            target = f"Request for {resource_type}" if resource_type else "Request"
            return KubernetesTimeoutError(message=f"{target} timed out")

        if isinstance(e, HTTPError):
            return KubernetesConnectionError(
                message=f"Connection to the API server failed: {e}",
                original_error=e,
            )

        if not isinstance(e, ApiException):
            return KubernetesError(
                message=str(e),
                resource_type=resource_type,
                resource_name=resource_name,
                namespace=namespace,
            )

        status = e.status

        if status in (401, 403):
            return KubernetesAuthError(
                message=e.reason or "Authentication/authorization failed",
                status_code=status,
                reason=e.reason,
            )

        if status == 404:
            return KubernetesNotFoundError(
                resource_type=resource_type,
                resource_name=resource_name,
                namespace=namespace,
            )

        if status == 409:
            return KubernetesConflictError(
                resource_type=resource_type,
                resource_name=resource_name,
                namespace=namespace,
                already_exists=_status_reason(e) == "AlreadyExists",
            )

        if status in (400, 422):
            return KubernetesValidationError(
                message=_status_message(e) or e.reason or "Validation failed",
                status_code=status,
            )

        return KubernetesError(
            message=e.reason or f"Kubernetes API error: {status}",
            status_code=status,
            resource_type=resource_type,
            resource_name=resource_name,
            namespace=namespace,
        )

    # =========================================================================
    # Retry Decorator
    # =========================================================================

    def make_retry_decorator(self) -> Any:
        """Create a retry decorator for transient connection errors.

        Returns:
            A tenacity retry decorator configured with exponential backoff.
        """
        return retry(
            retry=retry_if_exception_type((KubernetesConnectionError, KubernetesTimeoutError)),
            stop=stop_after_attempt(self._retries),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            reraise=True,
        )

    def _send(self, method: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        from urllib3.exceptions import HTTPError

        try:
            return method(*args, _request_timeout=self.timeout, **kwargs)
        except HTTPError as e:
            error = self.translate_api_exception(e)
            logger.warning("kubernetes_request_failed", error=str(error))
            raise error from e

    def call(self, method: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Invoke an API method with the configured request timeout.

        Connection failures and timeouts are retried up to ``retry_attempts``
        times and then raised as ``KubernetesConnectionError`` or
        ``KubernetesTimeoutError``. API errors (``ApiException``) are raised
        unchanged for the caller to translate with its resource context.

        Args:
            method: Bound API method, e.g. ``client.core_v1.read_namespaced_pod``.
            *args: Positional arguments for the method.
            **kwargs: Keyword arguments for the method.
        """
        retry_decorator = self.make_retry_decorator()
        return retry_decorator(self._send)(method, *args, **kwargs)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def default_namespace(self) -> str:
        """Get the default namespace from config."""
        return self._config.get_active_namespace()

    @property
    def timeout(self) -> int:
        """Get the configured request timeout."""
        return self._config.get_active_timeout()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        """Close the client and release pooled connections."""
        if self._api_client is not None:
            self._api_client.close()
        self._invalidate_api_cache()
        logger.debug("kubernetes_client_closed")

    def __enter__(self) -> KubernetesClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def _status_body(e: Any) -> dict[str, Any]:
    """Decode the ``Status`` object carried in an ApiException body."""
    body = getattr(e, "body", None)
    if not body:
        return {}
    try:
        decoded = json.loads(body)
    except (TypeError, ValueError):
        return {}
    return decoded if isinstance(decoded, dict) else {}


def _status_reason(e: Any) -> str | None:
    reason = _status_body(e).get("reason")
    return str(reason) if reason else None


def _status_message(e: Any) -> str | None:
    message = _status_body(e).get("message")
    return str(message) if message else None
