"""Ingress merger for the HTTP-01 solver.

Two modes, chosen by the challenge's solver config:

- exclusive: the solver creates and owns an Ingress with a single rule for
  the challenge path;
- merge: the challenge path is patched into a user-owned Ingress named in
  the config, leaving every other rule and path where it was.

Writes to shared Ingresses are JSON patches pinned to the resourceVersion
that was read, so concurrent solvers editing the same object each retry from a
fresh read until their own path is present. Nothing is ever replaced
wholesale on an object the solver does not own.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from http01_solver.integrations.kubernetes.exceptions import (
    KubernetesConflictError,
    KubernetesNotFoundError,
)
from http01_solver.integrations.kubernetes.models.base import (
    _safe_get,
    newest_first,
)
from http01_solver.integrations.kubernetes.models.challenge import HTTP01IngressSolver
from http01_solver.integrations.kubernetes.models.solver import (
    RoutingSummary,
    SolverIngressSummary,
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
    from kubernetes.client import V1Ingress

    from http01_solver.integrations.kubernetes.models.challenge import Challenge

INGRESS_CLASS_ANNOTATION = "kubernetes.io/ingress.class"
DEFAULT_CLASS_ANNOTATION = "ingressclass.kubernetes.io/is-default-class"
WHITELIST_ANNOTATION = "nginx.ingress.kubernetes.io/whitelist-source-range"
PATH_TYPE = "ImplementationSpecific"


class SolverIngressManager(SolverBaseManager):
    """Ensures and removes the challenge's Ingress path."""

    _entity_name = "solver_ingress"

    def ensure_ingress_rule(
        self, challenge: Challenge, service: SolverServiceSummary
    ) -> RoutingSummary:
        """Route ``http://<dns>/.well-known/acme-challenge/<token>`` to the service.

        Args:
            challenge: Challenge being solved; its solver must be the ingress variant.
            service: The ensured solver service.

        Returns:
            Which Ingress carries the path and whether this call wrote to it.

        Raises:
            SolverConfigurationError: Merge target missing or class ambiguous.
            SolverTransientError: Conflicts persisted past the retry bound.
        """
        solver = challenge.solver
        if not isinstance(solver, HTTP01IngressSolver):
            raise SolverConfigurationError(
                "challenge is not configured for the HTTP-01 ingress solver",
                challenge=f"{challenge.namespace}/{challenge.name}",
            )
        if solver.name:
            merge = self._conflict_retry()(self._merge_once)
            try:
                result: RoutingSummary = merge(challenge, solver.name, service)
            except KubernetesConflictError as e:
                raise SolverTransientError(
                    f"Ingress '{solver.name}' kept changing; gave up after "
                    f"{self._settings.conflict_retry_attempts} attempts",
                    challenge=f"{challenge.namespace}/{challenge.name}",
                    cause=e,
                ) from e
            return result
        return self._ensure_owned(challenge, solver, service)

    # =========================================================================
    # Exclusive Mode
    # =========================================================================

    def _ensure_owned(
        self,
        challenge: Challenge,
        solver: HTTP01IngressSolver,
        service: SolverServiceSummary,
    ) -> RoutingSummary:
        ns = challenge.namespace
        selector = key_selector(identity_key(challenge.identity))
        owned = [
            i
            for i in self.list_ingresses(ns, label_selector=selector)
            if _safe_get(i, "metadata", "deletion_timestamp") is None
        ]

        if not owned:
            class_name, annotations = self.resolve_ingress_class(challenge, solver)
            body = self.build_ingress(challenge, service, class_name, annotations)
            created = self._create(body, ns)
            return RoutingSummary(
                kind="Ingress",
                name=created["metadata"]["name"],
                namespace=ns,
                mode="exclusive",
                changed=True,
                present=ingress_has_path(
                    created, challenge.dns_name, self.desired_path(challenge, service)
                ),
            )

        by_age = newest_first([SolverIngressSummary.from_k8s_object(i) for i in owned])
        for extra in by_age[1:]:
            self._log.warning("deleting_duplicate_ingress", name=extra.name, namespace=ns)
            self.delete_ingress(extra.name, ns)
        newest = next(i for i in owned if i.metadata.name == by_age[0].name)

        current = self._client.to_dict(newest)
        desired_rules = [self._client.to_dict(self._desired_rule(challenge, service))]
        ops: list[dict[str, Any]] = []
        if (current.get("spec") or {}).get("rules") != desired_rules:
            ops.append({"op": "add", "path": "/spec/rules", "value": desired_rules})
        if (
            solver.ingress_class_name
            and (current.get("spec") or {}).get("ingressClassName") != solver.ingress_class_name
        ):
            ops.append(
                {"op": "add", "path": "/spec/ingressClassName", "value": solver.ingress_class_name}
            )

        name = current["metadata"]["name"]
        if ops:
            self._log.info("patching_drifted_ingress", name=name, namespace=ns)
            current = self._patch(name, ns, [resource_version_guard(current), *ops])

        return RoutingSummary(
            kind="Ingress",
            name=name,
            namespace=ns,
            mode="exclusive",
            changed=bool(ops),
            present=ingress_has_path(
                current, challenge.dns_name, self.desired_path(challenge, service)
            ),
        )

    def resolve_ingress_class(
        self, challenge: Challenge, solver: HTTP01IngressSolver
    ) -> tuple[str | None, dict[str, str]]:
        """Pick the ingress class for a solver-owned Ingress.

        Returns:
            ``(ingressClassName, extra annotations)``; at most one is set.

        Raises:
            SolverConfigurationError: Several classes exist and none is the
                cluster default.
        """
        if solver.ingress_class_name:
            return solver.ingress_class_name, {}
        if solver.class_:
            return None, {INGRESS_CLASS_ANNOTATION: solver.class_}

        try:
            classes = self._client.call(self._client.networking_v1.list_ingress_class).items
        except Exception as e:
            self._handle_api_error(e, "IngressClass")

        names = sorted(c.metadata.name for c in classes)
        if not names:
            self._log.debug("no_ingress_classes", namespace=challenge.namespace)
            return None, {}
        if len(names) == 1:
            return names[0], {}

        defaults = sorted(
            c.metadata.name
            for c in classes
            if (c.metadata.annotations or {}).get(DEFAULT_CLASS_ANNOTATION) == "true"
        )
        if not defaults:
            raise SolverConfigurationError(
                f"cannot choose an ingress class: {len(names)} IngressClasses exist "
                f"({', '.join(names)}) and none is annotated {DEFAULT_CLASS_ANNOTATION}=true; "
                "set ingressClassName on the HTTP-01 solver",
                challenge=f"{challenge.namespace}/{challenge.name}",
            )
        if len(defaults) > 1:
            self._log.warning(
                "multiple_default_ingress_classes", classes=defaults, chosen=defaults[0]
            )
        return defaults[0], {}

    def build_ingress(
        self,
        challenge: Challenge,
        service: SolverServiceSummary,
        class_name: str | None,
        annotations: dict[str, str] | None = None,
    ) -> V1Ingress:
        """Build the solver-owned Ingress for a challenge."""
        from kubernetes.client import V1Ingress, V1IngressSpec, V1ObjectMeta

        template = (
            challenge.solver.ingress_template
            if isinstance(challenge.solver, HTTP01IngressSolver)
            else None
        )
        labels = dict(template.metadata.labels) if template else {}
        labels.update(solver_labels(challenge.identity))
        all_annotations = {WHITELIST_ANNOTATION: "0.0.0.0/0,::/0"}
        all_annotations.update(annotations or {})
        if template:
            all_annotations.update(template.metadata.annotations)

        return V1Ingress(
            metadata=V1ObjectMeta(
                name=resource_name(challenge.identity, "Ingress"),
                namespace=challenge.namespace,
                labels=labels,
                annotations=all_annotations,
            ),
            spec=V1IngressSpec(
                ingress_class_name=class_name,
                rules=[self._desired_rule(challenge, service)],
            ),
        )

    def _desired_rule(self, challenge: Challenge, service: SolverServiceSummary) -> Any:
        from kubernetes.client import V1HTTPIngressRuleValue, V1IngressRule

        return V1IngressRule(
            host=challenge.dns_name,
            http=V1HTTPIngressRuleValue(paths=[self._desired_path_model(challenge, service)]),
        )

    def _desired_path_model(self, challenge: Challenge, service: SolverServiceSummary) -> Any:
        from kubernetes.client import (
            V1HTTPIngressPath,
            V1IngressBackend,
            V1IngressServiceBackend,
            V1ServiceBackendPort,
        )

        return V1HTTPIngressPath(
            path=challenge_path(challenge.token),
            path_type=PATH_TYPE,
            backend=V1IngressBackend(
                service=V1IngressServiceBackend(
                    name=service.name,
                    port=V1ServiceBackendPort(number=self._settings.listen_port),
                )
            ),
        )

    def desired_path(self, challenge: Challenge, service: SolverServiceSummary) -> dict[str, Any]:
        """The challenge's HTTPIngressPath in wire form."""
        return self._client.to_dict(self._desired_path_model(challenge, service))

    # =========================================================================
    # Merge Mode
    # =========================================================================

    def _merge_once(
        self, challenge: Challenge, name: str, service: SolverServiceSummary
    ) -> RoutingSummary:
        """One read-diff-patch pass against a user-owned Ingress."""
        ns = challenge.namespace
        try:
            current = self._read(name, ns)
        except KubernetesNotFoundError as e:
            raise SolverConfigurationError(
                f"Ingress '{name}' named by the HTTP-01 solver does not exist "
                f"in namespace '{ns}'",
                challenge=f"{ns}/{challenge.name}",
            ) from e

        path = self.desired_path(challenge, service)
        ops = plan_path_insert(current, challenge.dns_name, path)
        if not ops:
            self._log.debug("ingress_path_present", name=name, namespace=ns)
            return RoutingSummary(
                kind="Ingress", name=name, namespace=ns, mode="merge", present=True
            )

        patched = self._patch(name, ns, [resource_version_guard(current), *ops])
        self._log.info(
            "merged_ingress_path",
            name=name,
            namespace=ns,
            host=challenge.dns_name,
            path=path["path"],
        )
        return RoutingSummary(
            kind="Ingress",
            name=name,
            namespace=ns,
            mode="merge",
            changed=True,
            present=ingress_has_path(patched, challenge.dns_name, path),
        )

    # =========================================================================
    # Cleanup
    # =========================================================================

    def release(self, namespace: str | None, matches: KeyPredicate) -> list[ReleasedObject]:
        """Remove every solver path whose identity key ``matches``.

        Solver-owned Ingresses left with no rules are deleted; any other
        Ingress only loses the matching paths.

        Args:
            namespace: Namespace to scan, or None for all namespaces.
            matches: Predicate over identity keys.
        """
        released: list[ReleasedObject] = []
        for ingress in self.list_ingresses(namespace):
            wire = self._client.to_dict(ingress)
            owned_key = _owned_key(wire)
            if not any(map(matches, fragment_keys(wire))) and not (
                owned_key and matches(owned_key)
            ):
                continue

            name = wire["metadata"]["name"]
            ns = wire["metadata"]["namespace"]
            release = self._conflict_retry()(self._release_once)
            try:
                outcome = release(name, ns, matches)
            except KubernetesConflictError as e:
                raise SolverTransientError(
                    f"Ingress '{ns}/{name}' kept changing during cleanup", cause=e
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

        ref = f"Ingress/{namespace}/{name}"
        keys = frozenset(k for k in fragment_keys(current) if matches(k))
        ops, remaining = plan_path_removal(current, matches)
        owned_key = _owned_key(current)
        if owned_key and remaining == 0 and (ops or matches(owned_key)):
            if matches(owned_key):
                keys |= {owned_key}
            if not self.delete_ingress(name, namespace):
                return None
            return ReleasedObject(ref=ref, deleted=True, keys=keys)
        if not ops:
            return None

        self._patch(name, namespace, [resource_version_guard(current), *ops])
        self._log.info("removed_ingress_paths", name=name, namespace=namespace, ops=len(ops))
        return ReleasedObject(ref=ref, deleted=False, keys=keys)

    # =========================================================================
    # API Helpers
    # =========================================================================

    def list_ingresses(
        self, namespace: str | None, *, label_selector: str | None = None
    ) -> list[Any]:
        """List Ingresses as typed objects.

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
                    self._client.networking_v1.list_ingress_for_all_namespaces,
                    **kwargs,
                )
            else:
                result = self._client.call(
                    self._client.networking_v1.list_namespaced_ingress,
                    namespace=namespace,
                    **kwargs,
                )
        except Exception as e:
            self._handle_api_error(e, "Ingress", None, namespace)
        return list(result.items)

    def delete_ingress(self, name: str, namespace: str) -> bool:
        """Delete an Ingress; returns False if it was already gone."""
        return self._delete(
            self._client.networking_v1.delete_namespaced_ingress, "Ingress", name, namespace
        )

    def _read(self, name: str, namespace: str) -> dict[str, Any]:
        try:
            result = self._client.call(
                self._client.networking_v1.read_namespaced_ingress,
                name=name,
                namespace=namespace,
            )
        except Exception as e:
            self._handle_api_error(e, "Ingress", name, namespace)
        return self._client.to_dict(result)

    def _create(self, body: V1Ingress, namespace: str) -> dict[str, Any]:
        name = body.metadata.name
        self._log.info("creating_ingress", name=name, namespace=namespace)
        try:
            result = self._client.call(
                self._client.networking_v1.create_namespaced_ingress,
                namespace=namespace,
                body=body,
            )
        except Exception as e:
            error = self._client.translate_api_exception(e, "Ingress", name, namespace)
            if not (isinstance(error, KubernetesConflictError) and error.already_exists):
                raise error from e
            self._log.debug("ingress_already_exists", name=name, namespace=namespace)
            return self._read(name, namespace)
        self._log.info("created_ingress", name=name, namespace=namespace)
        return self._client.to_dict(result)

    def _patch(self, name: str, namespace: str, ops: list[dict[str, Any]]) -> dict[str, Any]:
        try:
            result = self._client.call(
                self._client.networking_v1.patch_namespaced_ingress,
                name=name,
                namespace=namespace,
                body=ops,
            )
        except Exception as e:
            self._handle_api_error(e, "Ingress", name, namespace)
        return self._client.to_dict(result)


# =============================================================================
# Patch Planning
# =============================================================================


def _paths(rule: dict[str, Any]) -> list[dict[str, Any]]:
    return list((rule.get("http") or {}).get("paths") or [])


def _backend_name(path: dict[str, Any]) -> str:
    return str(((path.get("backend") or {}).get("service") or {}).get("name", ""))


def _owned_key(ingress: dict[str, Any]) -> str | None:
    labels = (ingress.get("metadata") or {}).get("labels") or {}
    if labels.get(SOLVER_LABEL) != "true":
        return None
    return labels.get(KEY_LABEL)


def ingress_has_path(ingress: dict[str, Any], host: str, path: dict[str, Any]) -> bool:
    """Whether ``host`` routes ``path['path']`` to the same backend service."""
    for rule in (ingress.get("spec") or {}).get("rules") or []:
        if rule.get("host") != host:
            continue
        for existing in _paths(rule):
            if existing.get("path") == path["path"] and _backend_name(existing) == _backend_name(
                path
            ):
                return True
    return False


def plan_path_insert(
    ingress: dict[str, Any], host: str, path: dict[str, Any]
) -> list[dict[str, Any]]:
    """JSON patch ops adding ``path`` for ``host``, or ``[]`` if already there.

    The path is appended to the first rule for ``host`` that already routes
    paths. When no such rule exists (none for the host, or only rules without
    paths) a new rule is added after all existing ones, so a rule emptied by
    cleanup is always one the solver added. Existing rules and paths keep
    their positions.
    """
    if ingress_has_path(ingress, host, path):
        return []

    spec = ingress.get("spec")
    rules = (spec or {}).get("rules")
    for index, rule in enumerate(rules or []):
        if rule.get("host") == host and _paths(rule):
            return [{"op": "add", "path": f"/spec/rules/{index}/http/paths/-", "value": path}]

    new_rule = {"host": host, "http": {"paths": [path]}}
    if rules is not None:
        return [{"op": "add", "path": "/spec/rules/-", "value": new_rule}]
    if spec is not None:
        return [{"op": "add", "path": "/spec/rules", "value": [new_rule]}]
    return [{"op": "add", "path": "/spec", "value": {"rules": [new_rule]}}]


def plan_path_removal(
    ingress: dict[str, Any], matches: KeyPredicate
) -> tuple[list[dict[str, Any]], int]:
    """JSON patch ops removing solver paths whose identity key ``matches``.

    A rule whose paths would all be removed is removed entirely. Ops are
    ordered from the highest index down so earlier removals do not shift
    later ones.

    Returns:
        ``(ops, rules remaining afterwards)``.
    """
    rules = (ingress.get("spec") or {}).get("rules") or []
    ops: list[dict[str, Any]] = []
    remaining = len(rules)
    for i in reversed(range(len(rules))):
        paths = _paths(rules[i])
        ours = [
            j
            for j, p in enumerate(paths)
            if (key := key_from_name(_backend_name(p))) is not None and matches(key)
        ]
        if not ours:
            continue
        if len(ours) == len(paths):
            ops.append({"op": "remove", "path": f"/spec/rules/{i}"})
            remaining -= 1
            continue
        ops.extend(
            {"op": "remove", "path": f"/spec/rules/{i}/http/paths/{j}"} for j in reversed(ours)
        )
    return ops, remaining


def fragment_keys(ingress: dict[str, Any]) -> set[str]:
    """Identity keys of every solver backend referenced by the Ingress."""
    keys = set()
    for rule in (ingress.get("spec") or {}).get("rules") or []:
        for path in _paths(rule):
            if (key := key_from_name(_backend_name(path))) is not None:
                keys.add(key)
    return keys
