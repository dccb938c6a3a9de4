"""
In-memory simulated cloud.

Backs every resource kind with a dictionary, honours idempotency tokens,
records every call, and can inject transient or terminal faults per
operation. Used by the test-suite and by ``strata`` when
``STRATA_PROVIDER=memory``; the simulation can be persisted to a JSON
file so successive CLI runs see the same "remote" resources.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Type

import structlog

from strata.core.errors import ApplyError, ResourceNotFoundError, TransientProviderError
from strata.providers.base import (
    DEFAULT_REPLACE_FIELDS,
    IDEMPOTENCY_TAG,
    NAME_TAG,
    CreateResult,
    ProviderSet,
)
from strata.providers.registry import register_provider
from strata.resources.models import ResourceKind

logger = structlog.get_logger()

_PREFIXES: dict[ResourceKind, str] = {
    ResourceKind.NETWORK: "vpc",
    ResourceKind.SUBNET: "subnet",
    ResourceKind.GATEWAY: "igw",
    ResourceKind.ROUTE_TABLE: "rtb",
    ResourceKind.ASSOCIATION: "rtbassoc",
    ResourceKind.LOAD_BALANCER: "lb",
    ResourceKind.TARGET_GROUP: "tg",
    ResourceKind.LISTENER: "listener",
    ResourceKind.CLUSTER: "cluster",
    ResourceKind.TASK_DEFINITION: "taskdef",
    ResourceKind.SERVICE: "svc",
    ResourceKind.SECURITY_GROUP: "sg",
    ResourceKind.ROLE: "role",
    ResourceKind.POLICY_ATTACHMENT: "attach",
}

_ARN_KINDS = frozenset(
    {
        ResourceKind.LOAD_BALANCER,
        ResourceKind.TARGET_GROUP,
        ResourceKind.LISTENER,
        ResourceKind.CLUSTER,
        ResourceKind.TASK_DEFINITION,
        ResourceKind.SERVICE,
        ResourceKind.ROLE,
    }
)


@dataclass(frozen=True)
class ProviderCall:
    """One recorded provider invocation."""

    kind: ResourceKind
    operation: str
    name: str | None
    identity: str | None
    error: str | None = None


@dataclass
class Fault:
    operation: str
    error_type: Type[ApplyError]
    remaining: int
    name: str | None = None
    kind: ResourceKind | None = None
    message: str | None = None
    ambiguous: bool = False

    def matches(self, operation: str, kind: ResourceKind, name: str | None) -> bool:
        if self.remaining <= 0 or self.operation != operation:
            return False
        if self.kind is not None and self.kind != kind:
            return False
        return self.name is None or self.name == name


@dataclass
class SimulatedResource:
    kind: ResourceKind
    identity: str
    attributes: dict[str, Any]
    outputs: dict[str, Any]
    token: str | None = None

    @property
    def name(self) -> str | None:
        return (self.attributes.get("tags") or {}).get(NAME_TAG)


class InMemoryCloud:
    """Dictionary-backed stand-in for a remote cloud API."""

    def __init__(self, *, latency: float = 0.0) -> None:
        self.latency = latency
        self.resources: dict[str, SimulatedResource] = {}
        self.tokens: dict[str, str] = {}
        self.calls: list[ProviderCall] = []
        self._faults: list[Fault] = []
        self._counter = itertools.count(1)

    # ------------------------------------------------------------------
    # Test and demo helpers
    # ------------------------------------------------------------------

    def fail(
        self,
        operation: str,
        *,
        name: str | None = None,
        kind: ResourceKind | str | None = None,
        error: Type[ApplyError] = TransientProviderError,
        times: int = 1,
        message: str | None = None,
        ambiguous: bool = False,
    ) -> None:
        """Make the next ``times`` matching calls raise ``error``.

        With ``ambiguous=True`` the operation takes effect before the error
        is raised, like a timeout after the request reached the API.
        """
        self._faults.append(
            Fault(
                operation=operation,
                error_type=error,
                remaining=times,
                name=name,
                kind=ResourceKind(kind) if kind is not None else None,
                message=message,
                ambiguous=ambiguous,
            )
        )

    def calls_for(
        self,
        *,
        name: str | None = None,
        operation: str | None = None,
        kind: ResourceKind | str | None = None,
    ) -> list[ProviderCall]:
        wanted_kind = ResourceKind(kind) if kind is not None else None
        return [
            call
            for call in self.calls
            if (name is None or call.name == name)
            and (operation is None or call.operation == operation)
            and (wanted_kind is None or call.kind == wanted_kind)
        ]

    def find(self, name: str) -> SimulatedResource | None:
        for resource in self.resources.values():
            if resource.name == name:
                return resource
        return None

    def drift(self, identity: str, **attributes: Any) -> None:
        """Change attributes out-of-band."""
        self.resources[identity].attributes.update(copy.deepcopy(attributes))

    def remove(self, identity: str) -> None:
        """Delete a resource out-of-band."""
        resource = self.resources.pop(identity)
        if resource.token:
            self.tokens.pop(resource.token, None)

    def provider_set(self) -> ProviderSet:
        return ProviderSet(
            {kind: InMemoryProvider(self, kind) for kind in ResourceKind},
            name="memory",
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "resources": [
                {
                    "kind": r.kind.value,
                    "identity": r.identity,
                    "attributes": r.attributes,
                    "outputs": r.outputs,
                    "token": r.token,
                }
                for r in self.resources.values()
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InMemoryCloud":
        cloud = cls()
        highest = 0
        for item in data.get("resources", []):
            resource = SimulatedResource(
                kind=ResourceKind(item["kind"]),
                identity=item["identity"],
                attributes=item.get("attributes", {}),
                outputs=item.get("outputs", {}),
                token=item.get("token"),
            )
            cloud.resources[resource.identity] = resource
            if resource.token:
                cloud.tokens[resource.token] = resource.identity
            highest = max(highest, _serial_of(resource.identity))
        cloud._counter = itertools.count(highest + 1)
        return cloud

    @classmethod
    def load(cls, path: Path) -> "InMemoryCloud":
        if not path.exists():
            return cls()
        return cls.from_dict(json.loads(path.read_text()))

    def save(self, path: Path) -> None:
        path.write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def _enter(self, operation: str, kind: ResourceKind, name: str | None, identity: str | None) -> Fault | None:
        if self.latency:
            await asyncio.sleep(self.latency)
        for fault in self._faults:
            if fault.matches(operation, kind, name):
                fault.remaining -= 1
                if not fault.ambiguous:
                    self._raise(fault, operation, kind, name, identity)
                return fault
        self.calls.append(ProviderCall(kind, operation, name, identity))
        return None

    def _raise(
        self,
        fault: Fault,
        operation: str,
        kind: ResourceKind,
        name: str | None,
        identity: str | None,
    ) -> None:
        message = fault.message or f"simulated {fault.error_type.__name__} on {operation}"
        self.calls.append(ProviderCall(kind, operation, name, identity, error=message))
        raise fault.error_type(message, {"kind": kind.value, "operation": operation})

    def _outputs(self, kind: ResourceKind, identity: str, attributes: dict[str, Any]) -> dict[str, Any]:
        outputs: dict[str, Any] = {"id": identity}
        if kind in _ARN_KINDS:
            outputs["arn"] = f"arn:sim:{kind.value}:{identity}"
        if kind is ResourceKind.LOAD_BALANCER:
            outputs["dns_name"] = f"{identity}.elb.sim.internal"
        if kind is ResourceKind.TASK_DEFINITION:
            outputs["revision"] = 1
        if kind is ResourceKind.SECURITY_GROUP:
            outputs["owner_id"] = "000000000000"
        return outputs

    async def create(self, kind: ResourceKind, attributes: dict[str, Any], token: str) -> CreateResult:
        name = (attributes.get("tags") or {}).get(NAME_TAG)
        fault = await self._enter("create", kind, name, None)
        existing = self.tokens.get(token)
        if existing is not None and existing in self.resources:
            resource = self.resources[existing]
            logger.debug("simulated_create_deduplicated", kind=kind.value, identity=existing)
        else:
            identity = f"{_PREFIXES[kind]}-{next(self._counter):08x}"
            stored = copy.deepcopy(attributes)
            stored.setdefault("tags", {})[IDEMPOTENCY_TAG] = token
            resource = SimulatedResource(
                kind=kind,
                identity=identity,
                attributes=stored,
                outputs=self._outputs(kind, identity, stored),
                token=token,
            )
            self.resources[identity] = resource
            self.tokens[token] = identity
        if fault is not None:
            self._raise(fault, "create", kind, name, resource.identity)
        return CreateResult(identity=resource.identity, outputs=dict(resource.outputs))

    async def read(self, kind: ResourceKind, identity: str) -> dict[str, Any] | None:
        resource = self.resources.get(identity)
        fault = await self._enter("read", kind, resource.name if resource else None, identity)
        if fault is not None:
            self._raise(fault, "read", kind, resource.name if resource else None, identity)
        if resource is None or resource.kind != kind:
            return None
        current = copy.deepcopy(resource.attributes)
        current.update(resource.outputs)
        return current

    async def update(self, kind: ResourceKind, identity: str, attributes: dict[str, Any]) -> dict[str, Any]:
        resource = self.resources.get(identity)
        fault = await self._enter("update", kind, resource.name if resource else None, identity)
        if resource is None or resource.kind != kind:
            raise ResourceNotFoundError(f"{kind.value} {identity} does not exist", {"identity": identity})
        stored = copy.deepcopy(attributes)
        stored.setdefault("tags", {})[IDEMPOTENCY_TAG] = resource.token
        resource.attributes = stored
        if fault is not None:
            self._raise(fault, "update", kind, resource.name, identity)
        return dict(resource.outputs)

    async def delete(self, kind: ResourceKind, identity: str) -> None:
        resource = self.resources.get(identity)
        fault = await self._enter("delete", kind, resource.name if resource else None, identity)
        if resource is None or resource.kind != kind:
            raise ResourceNotFoundError(f"{kind.value} {identity} does not exist", {"identity": identity})
        self.remove(identity)
        if fault is not None:
            self._raise(fault, "delete", kind, resource.name, identity)


def _serial_of(identity: str) -> int:
    try:
        return int(identity.rsplit("-", 1)[-1], 16)
    except ValueError:
        return 0


class InMemoryProvider:
    """Simulated provider for a single resource kind."""

    def __init__(
        self,
        cloud: InMemoryCloud,
        kind: ResourceKind,
        *,
        replace_fields: frozenset[str] | None = None,
    ) -> None:
        self.cloud = cloud
        self.kind = kind
        self.replace_fields = (
            replace_fields if replace_fields is not None else DEFAULT_REPLACE_FIELDS[kind]
        )

    async def create(self, attributes: dict[str, Any], *, idempotency_token: str) -> CreateResult:
        return await self.cloud.create(self.kind, attributes, idempotency_token)

    async def read(self, identity: str) -> dict[str, Any] | None:
        return await self.cloud.read(self.kind, identity)

    async def update(self, identity: str, attributes: dict[str, Any]) -> dict[str, Any]:
        return await self.cloud.update(self.kind, identity, attributes)

    async def delete(self, identity: str) -> None:
        await self.cloud.delete(self.kind, identity)


def _factory(*, cloud: InMemoryCloud | None = None, **_: Any) -> ProviderSet:
    return (cloud or InMemoryCloud()).provider_set()


register_provider(
    "memory",
    _factory,
    version="1",
    description="In-memory simulated cloud",
)

__all__ = ["InMemoryCloud", "InMemoryProvider", "ProviderCall"]
