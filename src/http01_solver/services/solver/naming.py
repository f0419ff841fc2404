"""Deterministic names and ownership labels for solver resources.

Everything here is a pure function of a :class:`ChallengeIdentity`. Two calls
for the same identity always agree, which is what makes create-if-absent safe
without locking, and lets cleanup find resources after the Challenge is gone.
"""

from __future__ import annotations

import hashlib
import re
from typing import Literal

from http01_solver.integrations.kubernetes.models.challenge import ChallengeIdentity

SOLVER_LABEL = "acme.cert-manager.io/http01-solver"
DOMAIN_LABEL = "acme.cert-manager.io/http-domain"
TOKEN_LABEL = "acme.cert-manager.io/http-token"
OWNER_LABEL = "acme.cert-manager.io/http-owner"
KEY_LABEL = "acme.cert-manager.io/challenge-key"

NAME_PREFIX = "cm-acme-http-solver"
ACME_CHALLENGE_PATH = "/.well-known/acme-challenge"

KEY_LENGTH = 16
_LABEL_HASH_LENGTH = 10

ResourceKind = Literal["Pod", "Service", "Ingress", "HTTPRoute"]

# Pod names double as hostnames and Service names are DNS-1035 labels.
MAX_NAME_LENGTH: dict[ResourceKind, int] = {
    "Pod": 63,
    "Service": 63,
    "Ingress": 253,
    "HTTPRoute": 253,
}

_KEY_PATTERN = re.compile(rf"^[0-9a-f]{{{KEY_LENGTH}}}$")
_UNSAFE_CHARS = re.compile(r"[^a-z0-9]+")


def _digest(*parts: str, length: int) -> str:
    data = "\x00".join(parts).encode()
    return hashlib.sha256(data).hexdigest()[:length]


def identity_key(identity: ChallengeIdentity) -> str:
    """Hash of the full identity tuple.

    The domain alone is not enough: several certificates may be validating the
    same domain at the same time.
    """
    return _digest(
        identity.namespace,
        identity.owner,
        identity.dns_name,
        identity.token,
        length=KEY_LENGTH,
    )


def challenge_path(token: str) -> str:
    """HTTP path the CA requests for ``token``."""
    return f"{ACME_CHALLENGE_PATH}/{token}"


def resource_name(identity: ChallengeIdentity, kind: ResourceKind) -> str:
    """Name for the solver's ``kind`` resource, within that kind's length limit.

    The readable domain part is shortened first; the key suffix is always kept
    whole so names stay unique.
    """
    key = identity_key(identity)
    room = MAX_NAME_LENGTH[kind] - len(NAME_PREFIX) - len(key) - 2
    domain = _UNSAFE_CHARS.sub("-", identity.dns_name.lower()).strip("-")
    domain = domain[: max(room, 0)].rstrip("-")
    if not domain:
        return f"{NAME_PREFIX}-{key}"
    return f"{NAME_PREFIX}-{domain}-{key}"


def key_from_name(name: str) -> str | None:
    """Recover the identity key from a solver resource name, if it is one."""
    if not name.startswith(f"{NAME_PREFIX}-"):
        return None
    candidate = name.rsplit("-", 1)[-1]
    return candidate if _KEY_PATTERN.match(candidate) else None


def solver_labels(identity: ChallengeIdentity) -> dict[str, str]:
    """Ownership labels binding a resource to its challenge."""
    return {
        SOLVER_LABEL: "true",
        DOMAIN_LABEL: _digest(identity.dns_name, length=_LABEL_HASH_LENGTH),
        TOKEN_LABEL: _digest(identity.token, length=_LABEL_HASH_LENGTH),
        OWNER_LABEL: _digest(identity.owner, length=_LABEL_HASH_LENGTH),
        KEY_LABEL: identity_key(identity),
    }


def format_selector(labels: dict[str, str]) -> str:
    """Render an equality-based label selector."""
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def key_selector(key: str | None = None) -> str:
    """Selector for all solver resources, or those of one identity key."""
    labels = {SOLVER_LABEL: "true"}
    if key:
        labels[KEY_LABEL] = key
    return format_selector(labels)
