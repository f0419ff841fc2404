"""Gateway API HTTPRoute merger for the HTTP-01 solver.

Mirrors the Ingress merger for ``gateway.networking.k8s.io/v1`` HTTPRoutes,
which are reached through the custom objects API. The solver's fragment is a
single rule: an exact match on the challenge path with one backendRef to the
solver service.
"""

from __future__ import annotations

from functools import partial
from typing import TYPE_CHECKING, Any

from http01_solver.integrations.kubernetes.exceptions import (
    KubernetesConflictError,
    KubernetesNotFoundError,
)
from http01_solver.integrations.kubernetes.models.challenge import (
    HTTP01GatewayHTTPRouteSolver,
)
from http01_solver.integrations.kubernetes.models.solver import (
    RoutingSummary,
    SolverServiceSummary,
)
from http01_solver.services.solver.base import (
    KeyPredicate,
    ReleasedObject,
    SolverBaseManager,
    resource_version_guard,
)
from http01_solver.services.solver.exceptions import (
    SolverConfigurationError,
    SolverTransientError,
)
from http01_solver.services.solver.naming import (
    KEY_LABEL,
    SOLVER_LABEL,
    challenge_path,
    identity_key,
    key_from_name,
    key_selector,
    resource_name,
    solver_labels,
)

if TYPE_CHECKING:
    from http01_solver.integrations.kubernetes.models.challenge import Challenge

GATEWAY_GROUP = "gateway.networking.k8s.io"
GATEWAY_VERSION = "v1"
HTTPROUTE_PLURAL = "httproutes"


class SolverHTTPRouteManager(SolverBaseManager):
    """Ensures and removes the challenge's HTTPRoute rule."""

    _entity_name = "solver_httproute"

    def ensure_route(
        self, challenge: Challenge, service: SolverServiceSummary
    ) -> RoutingSummary:
        """Route the challenge path to the solver service through an HTTPRoute.

        Raises:
            SolverConfigurationError: Merge target missing, or its hostnames
                exclude the challenge's DNS name.
            SolverTransientError: Conflicts persisted past the retry bound.
        """
        solver = challenge.solver
        if not isinstance(solver, HTTP01GatewayHTTPRouteSolver):
            raise SolverConfigurationError(
                "challenge is not configured for the HTTP-01 gatewayHTTPRoute solver",
                challenge=f"{challenge.namespace}/{challenge.name}",
            )
        if solver.name:
            merge = self._conflict_retry()(self._merge_once)
            try:
                result: RoutingSummary = merge(challenge, solver.name, service)
            except KubernetesConflictError as e:
                raise SolverTransientError(
                    f"HTTPRoute '{solver.name}' kept changing; gave up after "
                    f"{self._settings.conflict_retry_attempts} attempts",
                    challenge=f"{challenge.namespace}/{challenge.name}",
                    cause=e,
                ) from e
            return result
        return self._ensure_owned(challenge, solver, service)

    def desired_rule(self, challenge: Challenge, service: SolverServiceSummary) -> dict[str, Any]:
        """The solver's HTTPRouteRule."""
        return {
            "matches": [{"path": {"type": "Exact", "value": challenge_path(challenge.token)}}],
            "backendRefs": [{"name": service.name, "port": self._settings.listen_port}],
        }

    def build_route(
        self,
        challenge: Challenge,
        solver: HTTP01GatewayHTTPRouteSolver,
        service: SolverServiceSummary,
    ) -> dict[str, Any]:
        """Build the solver-owned HTTPRoute for a challenge."""
        labels = dict(solver.labels)
        labels.update(solver_labels(challenge.identity))
        return {
            "apiVersion": f"{GATEWAY_GROUP}/{GATEWAY_VERSION}",
            "kind": "HTTPRoute",
            "metadata": {
                "name": resource_name(challenge.identity, "HTTPRoute"),
                "namespace": challenge.namespace,
                "labels": labels,
            },
            "spec": {
                "parentRefs": [ref.to_k8s() for ref in solver.parent_refs],
                "hostnames": [challenge.dns_name],
                "rules": [self.desired_rule(challenge, service)],
            },
        }

    def _ensure_owned(
        self,
        challenge: Challenge,
        solver: HTTP01GatewayHTTPRouteSolver,
        service: SolverServiceSummary,
    ) -> RoutingSummary:
        ns = challenge.namespace
        if not solver.parent_refs:
            raise SolverConfigurationError(
                "gatewayHTTPRoute solver needs parentRefs to attach its HTTPRoute to a Gateway",
                challenge=f"{ns}/{challenge.name}",
            )
        selector = key_selector(identity_key(challenge.identity))
        routes = [
            r
            for r in self.list_routes(ns, label_selector=selector)
            if not (r.get("metadata") or {}).get("deletionTimestamp")
        ]
        desired = self.build_route(challenge, solver, service)
        rule = desired["spec"]["rules"][0]

        if not routes:
            created = self._create(desired, ns)
            return RoutingSummary(
                kind="HTTPRoute",
                name=created["metadata"]["name"],
                namespace=ns,
                mode="exclusive",
                changed=True,
                present=route_has_rule(created, rule),
            )

        routes.sort(
            key=lambda r: (r["metadata"].get("creationTimestamp", ""), r["metadata"]["name"]),
            reverse=True,
        )
        current, *extras = routes
        for extra in extras:
            self._log.warning(
                "deleting_duplicate_httproute", name=extra["metadata"]["name"], namespace=ns
            )
            self.delete_route(extra["metadata"]["name"], ns)

        name = current["metadata"]["name"]
        changed = False
        if route_drifted(current, desired):
            self._log.info("patching_drifted_httproute", name=name, namespace=ns)
            current = self._patch(
                name,
                ns,
                [
                    resource_version_guard(current),
                    {"op": "add", "path": "/spec", "value": desired["spec"]},
                ],
            )
            changed = True

        return RoutingSummary(
            kind="HTTPRoute",
            name=name,
            namespace=ns,
            mode="exclusive",
            changed=changed,
            present=route_has_rule(current, rule),
        )

    def _merge_once(
        self, challenge: Challenge, name: str, service: SolverServiceSummary
    ) -> RoutingSummary:
        ns = challenge.namespace
        ref = f"{ns}/{challenge.name}"
        try:
            current = self._read(name, ns)
        except KubernetesNotFoundError as e:
            raise SolverConfigurationError(
                f"HTTPRoute '{name}' named by the HTTP-01 solver does not exist "
                f"in namespace '{ns}'",
                challenge=ref,
            ) from e

        hostnames = (current.get("spec") or {}).get("hostnames") or []
        if not hostnames_cover(hostnames, challenge.dns_name):
            raise SolverConfigurationError(
                f"HTTPRoute '{name}' does not serve {challenge.dns_name} "
                f"(hostnames: {', '.join(hostnames)})",
                challenge=ref,
            )

        rule = self.desired_rule(challenge, service)
        ops = plan_rule_insert(current, rule)
        if not ops:
            self._log.debug("httproute_rule_present", name=name, namespace=ns)
            return RoutingSummary(
                kind="HTTPRoute", name=name, namespace=ns, mode="merge", present=True
            )

        patched = self._patch(name, ns, [resource_version_guard(current), *ops])
        self._log.info("merged_httproute_rule", name=name, namespace=ns, host=challenge.dns_name)
        return RoutingSummary(
            kind="HTTPRoute",
            name=name,
            namespace=ns,
            mode="merge",
            changed=True,
            present=route_has_rule(patched, rule),
        )

    def release(self, namespace: str | None, matches: KeyPredicate) -> list[ReleasedObject]:
        """Remove every solver rule whose identity key ``matches``.

        Solver-owned routes left with no rules are deleted; any other route
        only loses the matching backendRefs.
        """
        released: list[ReleasedObject] = []
        for route in self.list_routes(namespace):
            owned_key = _owned_key(route)
            if not any(map(matches, fragment_keys(route))) and not (
                owned_key and matches(owned_key)
            ):
                continue

            name = route["metadata"]["name"]
            ns = route["metadata"]["namespace"]
            release = self._conflict_retry()(self._release_once)
            try:
                outcome = release(name, ns, matches)
            except KubernetesConflictError as e:
                raise SolverTransientError(
                    f"HTTPRoute '{ns}/{name}' kept changing during cleanup", cause=e
                ) from e
            if outcome:
                released.append(outcome)
        return released

    def _release_once(
        self, name: str, namespace: str, matches: KeyPredicate
    ) -> ReleasedObject | None:
        try:
            current = self._read(name, namespace)
        except KubernetesNotFoundError:
            return None

        ref = f"HTTPRoute/{namespace}/{name}"
        keys = frozenset(k for k in fragment_keys(current) if matches(k))
        ops, remaining = plan_rule_removal(current, matches)
        owned_key = _owned_key(current)
        if owned_key and remaining == 0 and (ops or matches(owned_key)):
            if matches(owned_key):
                keys |= {owned_key}
            if not self.delete_route(name, namespace):
                return None
            return ReleasedObject(ref=ref, deleted=True, keys=keys)
        if not ops:
            return None

        self._patch(name, namespace, [resource_version_guard(current), *ops])
        self._log.info("removed_httproute_rules", name=name, namespace=namespace, ops=len(ops))
        return ReleasedObject(ref=ref, deleted=False, keys=keys)

    # =========================================================================
    # API Helpers
    # =========================================================================

    def list_routes(
        self, namespace: str | None, *, label_selector: str | None = None
    ) -> list[dict[str, Any]]:
        """List HTTPRoutes as dicts.

        Args:
            namespace: Target namespace, or None for all namespaces.
            label_selector: Optional label selector.
        """
        kwargs: dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        try:
            if namespace is None:
                result = self._client.call(
                    self._client.custom_objects.list_cluster_custom_object,
                    group=GATEWAY_GROUP,
                    version=GATEWAY_VERSION,
                    plural=HTTPROUTE_PLURAL,
                    **kwargs,
                )
            else:
                result = self._client.call(
                    self._client.custom_objects.list_namespaced_custom_object,
                    group=GATEWAY_GROUP,
                    version=GATEWAY_VERSION,
                    namespace=namespace,
                    plural=HTTPROUTE_PLURAL,
                    **kwargs,
                )
        except Exception as e:
            error = self._client.translate_api_exception(e, "HTTPRoute", None, namespace)
            if isinstance(error, KubernetesNotFoundError):
                # Gateway API CRDs not installed.
                self._log.debug("httproute_api_unavailable", namespace=namespace)
                return []
            raise error from e
        return list(result.get("items", []))

    def delete_route(self, name: str, namespace: str) -> bool:
        """Delete an HTTPRoute; returns False if it was already gone."""

        delete = partial(
            self._client.custom_objects.delete_namespaced_custom_object,
            group=GATEWAY_GROUP,
            version=GATEWAY_VERSION,
            plural=HTTPROUTE_PLURAL,
        )
        return self._delete(delete, "HTTPRoute", name, namespace)

    def _read(self, name: str, namespace: str) -> dict[str, Any]:
        try:
            result: dict[str, Any] = self._client.call(
                self._client.custom_objects.get_namespaced_custom_object,
                group=GATEWAY_GROUP,
                version=GATEWAY_VERSION,
                namespace=namespace,
                plural=HTTPROUTE_PLURAL,
                name=name,
            )
        except Exception as e:
            self._handle_api_error(e, "HTTPRoute", name, namespace)
        return result

    def _create(self, body: dict[str, Any], namespace: str) -> dict[str, Any]:
        name = body["metadata"]["name"]
        self._log.info("creating_httproute", name=name, namespace=namespace)
        try:
            result: dict[str, Any] = self._client.call(
                self._client.custom_objects.create_namespaced_custom_object,
                group=GATEWAY_GROUP,
                version=GATEWAY_VERSION,
                namespace=namespace,
                plural=HTTPROUTE_PLURAL,
                body=body,
            )
        except Exception as e:
            error = self._client.translate_api_exception(e, "HTTPRoute", name, namespace)
            if not (isinstance(error, KubernetesConflictError) and error.already_exists):
                raise error from e
            self._log.debug("httproute_already_exists", name=name, namespace=namespace)
            return self._read(name, namespace)
        self._log.info("created_httproute", name=name, namespace=namespace)
        return result

    def _patch(self, name: str, namespace: str, ops: list[dict[str, Any]]) -> dict[str, Any]:
        try:
            result: dict[str, Any] = self._client.call(
                self._client.custom_objects.patch_namespaced_custom_object,
                group=GATEWAY_GROUP,
                version=GATEWAY_VERSION,
                namespace=namespace,
                plural=HTTPROUTE_PLURAL,
                name=name,
                body=ops,
            )
        except Exception as e:
            self._handle_api_error(e, "HTTPRoute", name, namespace)
        return result


# =============================================================================
# Route Comparison and Patch Planning
# =============================================================================


def _owned_key(route: dict[str, Any]) -> str | None:
    labels = (route.get("metadata") or {}).get("labels") or {}
    if labels.get(SOLVER_LABEL) != "true":
        return None
    return labels.get(KEY_LABEL)


def _exact_paths(rule: dict[str, Any]) -> set[str]:
    paths = set()
    for match in rule.get("matches") or []:
        path = match.get("path") or {}
        if path.get("type", "PathPrefix") == "Exact" and path.get("value"):
            paths.add(path["value"])
    return paths


def _backends(rule: dict[str, Any]) -> set[tuple[str, int | None]]:
    return {(ref.get("name", ""), ref.get("port")) for ref in rule.get("backendRefs") or []}


def hostnames_cover(hostnames: list[str], dns_name: str) -> bool:
    """Whether an HTTPRoute with ``hostnames`` answers for ``dns_name``.

    An empty list matches every host; ``*.example.com`` matches any name
    with at least one more label in front.
    """
    if not hostnames:
        return True
    for hostname in hostnames:
        if hostname == dns_name:
            return True
        if hostname.startswith("*.") and dns_name.endswith(hostname[1:]):
            return True
    return False


def route_has_rule(route: dict[str, Any], rule: dict[str, Any]) -> bool:
    """Whether some rule routes the same exact path to the same backend."""
    want_paths = _exact_paths(rule)
    want_backends = _backends(rule)
    return any(
        want_paths <= _exact_paths(existing) and want_backends <= _backends(existing)
        for existing in (route.get("spec") or {}).get("rules") or []
    )


def _parent_identity(ref: dict[str, Any]) -> tuple[Any, ...]:
    return (
        ref.get("group", GATEWAY_GROUP),
        ref.get("kind", "Gateway"),
        ref.get("namespace"),
        ref.get("name"),
        ref.get("sectionName"),
        ref.get("port"),
    )


def route_drifted(current: dict[str, Any], desired: dict[str, Any]) -> bool:
    """Compare the fields the solver sets, ignoring API server defaults."""
    spec = current.get("spec") or {}
    want = desired["spec"]
    if sorted(spec.get("hostnames") or []) != sorted(want["hostnames"]):
        return True
    current_parents = sorted(map(_parent_identity, spec.get("parentRefs") or []), key=repr)
    desired_parents = sorted(map(_parent_identity, want["parentRefs"]), key=repr)
    if current_parents != desired_parents:
        return True
    rules = spec.get("rules") or []
    return len(rules) != 1 or not route_has_rule(current, want["rules"][0])


def plan_rule_insert(route: dict[str, Any], rule: dict[str, Any]) -> list[dict[str, Any]]:
    """JSON patch ops appending ``rule``, or ``[]`` if an equivalent rule exists."""
    if route_has_rule(route, rule):
        return []
    spec = route.get("spec")
    if spec is None:
        return [{"op": "add", "path": "/spec", "value": {"rules": [rule]}}]
    if spec.get("rules") is None:
        return [{"op": "add", "path": "/spec/rules", "value": [rule]}]
    return [{"op": "add", "path": "/spec/rules/-", "value": rule}]


def plan_rule_removal(
    route: dict[str, Any], matches: KeyPredicate
) -> tuple[list[dict[str, Any]], int]:
    """JSON patch ops removing solver backendRefs whose identity key ``matches``.

    Rules left without backends are removed whole. Ops run from the highest
    index down.

    Returns:
        ``(ops, rules remaining afterwards)``.
    """
    rules = (route.get("spec") or {}).get("rules") or []
    ops: list[dict[str, Any]] = []
    remaining = len(rules)
    for i in reversed(range(len(rules))):
        refs = rules[i].get("backendRefs") or []
        ours = [
            j
            for j, ref in enumerate(refs)
            if (key := key_from_name(ref.get("name", ""))) is not None and matches(key)
        ]
        if not ours:
            continue
        if len(ours) == len(refs):
            ops.append({"op": "remove", "path": f"/spec/rules/{i}"})
            remaining -= 1
            continue
        ops.extend(
            {"op": "remove", "path": f"/spec/rules/{i}/backendRefs/{j}"} for j in reversed(ours)
        )
    return ops, remaining


def fragment_keys(route: dict[str, Any]) -> set[str]:
    """Identity keys of every solver backend referenced by the route."""
    keys = set()
    for rule in (route.get("spec") or {}).get("rules") or []:
        for ref in rule.get("backendRefs") or []:
            if (key := key_from_name(ref.get("name", ""))) is not None:
                keys.add(key)
    return keys
