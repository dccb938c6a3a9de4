from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from strata.core.errors import ConfigurationError
from strata.resources.models import ResourceKind

IDEMPOTENCY_TAG = "strata:idempotency-token"
NAME_TAG = "strata:name"


def idempotency_token(name: str, generation: int = 0) -> str:
    """Deterministic token for a logical name, stable across runs and retries.

    ``generation`` counts replacements so a recreated resource gets a fresh token.
    """
    key = name if generation == 0 else f"{name}#{generation}"
    return hashlib.sha256(f"strata/{key}".encode()).hexdigest()[:32]


# Fields whose change cannot be applied in place. Real providers may
# publish their own sets through ``replace_fields``.
DEFAULT_REPLACE_FIELDS: dict[ResourceKind, frozenset[str]] = {
    ResourceKind.NETWORK: frozenset({"cidr_block"}),
    ResourceKind.SUBNET: frozenset({"network_id", "cidr_block", "availability_zone"}),
    ResourceKind.GATEWAY: frozenset({"network_id"}),
    ResourceKind.ROUTE_TABLE: frozenset({"network_id"}),
    ResourceKind.ASSOCIATION: frozenset({"subnet_id", "route_table_id"}),
    ResourceKind.LOAD_BALANCER: frozenset({"internal", "type"}),
    ResourceKind.TARGET_GROUP: frozenset({"network_id", "port", "protocol", "target_type"}),
    ResourceKind.LISTENER: frozenset({"load_balancer_arn"}),
    ResourceKind.CLUSTER: frozenset(),
    ResourceKind.TASK_DEFINITION: frozenset(
        {
            "family",
            "cpu",
            "memory",
            "container_definitions",
            "execution_role_arn",
            "task_role_arn",
            "network_mode",
            "requires_compatibilities",
        }
    ),
    ResourceKind.SERVICE: frozenset({"cluster", "launch_type"}),
    ResourceKind.SECURITY_GROUP: frozenset({"network_id", "description"}),
    ResourceKind.ROLE: frozenset({"assume_role_policy"}),
    ResourceKind.POLICY_ATTACHMENT: frozenset({"role", "policy_arn"}),
}


@dataclass(frozen=True)
class CreateResult:
    """Identity and produced attributes returned by a create call."""

    identity: str
    outputs: dict[str, Any] = field(default_factory=dict)


class ResourceProvider(Protocol):
    """CRUD contract for one resource kind.

    Implementations raise ``TransientProviderError`` for retryable failures,
    ``TerminalProviderError`` otherwise, and ``ResourceNotFoundError`` when
    deleting or updating an identity that does not exist. ``create`` must
    not produce a duplicate when retried with the same idempotency token.
    """

    kind: ResourceKind
    replace_fields: frozenset[str]

    async def create(self, attributes: dict[str, Any], *, idempotency_token: str) -> CreateResult:
        ...

    async def read(self, identity: str) -> dict[str, Any] | None:
        ...

    async def update(self, identity: str, attributes: dict[str, Any]) -> dict[str, Any]:
        ...

    async def delete(self, identity: str) -> None:
        ...


class ProviderSet:
    """Providers for every resource kind, dispatched by kind."""

    def __init__(self, providers: Mapping[ResourceKind, ResourceProvider], *, name: str = "custom") -> None:
        self.name = name
        self._providers = dict(providers)

    def for_kind(self, kind: ResourceKind) -> ResourceProvider:
        provider = self._providers.get(ResourceKind(kind))
        if provider is None:
            raise ConfigurationError(
                f"No provider registered for resource kind '{ResourceKind(kind).value}'",
                {"provider": self.name},
            )
        return provider

    async def aclose(self) -> None:
        return None
