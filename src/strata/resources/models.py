"""
Data models for declared and applied resources.

Declared attributes hold either literal values or :class:`Reference`
placeholders. References stay unresolved until the referenced resource has
reached a terminal state in the current run, at which point
:func:`resolve_value` swaps them for the produced attribute.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterator, Mapping

from pydantic import BaseModel, Field


class ResourceKind(str, Enum):
    """Supported resource kinds."""

    NETWORK = "network"
    SUBNET = "subnet"
    GATEWAY = "gateway"
    ROUTE_TABLE = "route_table"
    ASSOCIATION = "association"
    LOAD_BALANCER = "load_balancer"
    TARGET_GROUP = "target_group"
    LISTENER = "listener"
    CLUSTER = "cluster"
    TASK_DEFINITION = "task_definition"
    SERVICE = "service"
    SECURITY_GROUP = "security_group"
    ROLE = "role"
    POLICY_ATTACHMENT = "policy_attachment"


class ResourceStatus(str, Enum):
    """Per-node status within a single run."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"  # No-op
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self not in (ResourceStatus.PENDING, ResourceStatus.IN_PROGRESS)

    @property
    def is_success(self) -> bool:
        return self in SUCCESS_STATUSES


SUCCESS_STATUSES = frozenset(
    {
        ResourceStatus.CREATED,
        ResourceStatus.UPDATED,
        ResourceStatus.DELETED,
        ResourceStatus.UNCHANGED,
    }
)

_TRANSITIONS: dict[ResourceStatus, frozenset[ResourceStatus]] = {
    ResourceStatus.PENDING: frozenset({ResourceStatus.IN_PROGRESS, ResourceStatus.SKIPPED}),
    ResourceStatus.IN_PROGRESS: SUCCESS_STATUSES | {ResourceStatus.FAILED},
}


def check_transition(current: ResourceStatus, new: ResourceStatus) -> None:
    """Raise ValueError if moving from ``current`` to ``new`` is not allowed."""
    if new not in _TRANSITIONS.get(current, frozenset()):
        raise ValueError(f"Illegal status transition: {current.value} -> {new.value}")


@dataclass(frozen=True)
class Reference:
    """Pointer to an attribute another resource produces once created."""

    target: str
    attribute: str = "id"

    @classmethod
    def parse(cls, expr: str) -> "Reference":
        target, sep, attribute = expr.partition(".")
        if not target or not sep or not attribute:
            raise ValueError(f"Reference must look like '<resource>.<attribute>': {expr!r}")
        return cls(target=target, attribute=attribute)

    def __str__(self) -> str:
        return f"{self.target}.{self.attribute}"


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every reference nested anywhere inside ``value``."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Return ``value`` with each reference replaced by ``lookup(ref)``."""
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Mapping):
        return {key: resolve_value(item, lookup) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(item, lookup) for item in value]
    return value


@dataclass(frozen=True)
class ResourceSpec:
    """A declared resource instance.

    Immutable for the duration of a run. ``depends_on`` adds ordering edges
    for resources that must exist first without an attribute reference.
    """

    kind: ResourceKind
    name: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    tags: Mapping[str, str] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.kind, ResourceKind):
            object.__setattr__(self, "kind", ResourceKind(self.kind))
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))
        object.__setattr__(self, "tags", MappingProxyType(dict(self.tags)))
        object.__setattr__(self, "depends_on", tuple(self.depends_on))

    @property
    def address(self) -> str:
        return f"{self.kind.value}.{self.name}"

    def references(self) -> Iterator[tuple[str, Reference]]:
        """Yield ``(attribute_name, reference)`` pairs in declaration order."""
        for key, value in self.attributes.items():
            for ref in iter_references(value):
                yield key, ref

    def dependencies(self) -> list[str]:
        names = {ref.target for _, ref in self.references()}
        names.update(self.depends_on)
        return sorted(names)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceState(BaseModel):
    """Last applied record of a resource, owned by the state store."""

    name: str
    kind: ResourceKind
    identity: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    generation: int = 0
    status: ResourceStatus = ResourceStatus.PENDING
    updated_at: datetime = Field(default_factory=_utcnow)

    def produced(self, attribute: str) -> Any:
        """Look up an attribute this resource produced or was applied with."""
        if attribute == "id":
            return self.outputs.get("id", self.identity)
        if attribute in self.outputs:
            return self.outputs[attribute]
        if attribute in self.attributes:
            return self.attributes[attribute]
        raise KeyError(attribute)
