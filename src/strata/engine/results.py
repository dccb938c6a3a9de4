"""Result types for plan runs."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from strata.resources.models import ResourceKind, ResourceStatus, check_transition


class Action(str, Enum):
    """What the engine decided to do with one resource."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "noop"


@dataclass
class Change:
    """Planned action for one resource, produced by a dry run."""

    name: str
    kind: ResourceKind
    action: Action
    fields: Dict[str, Any] = field(default_factory=dict)  # field -> {"before", "after"}
    replace_fields: List[str] = field(default_factory=list)
    identity: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "action": self.action.value,
            "fields": self.fields,
            "replace_fields": self.replace_fields,
            "identity": self.identity,
        }


@dataclass
class NodeResult:
    """Outcome of one resource within a run."""

    name: str
    kind: ResourceKind
    status: ResourceStatus = ResourceStatus.PENDING
    action: Optional[Action] = None
    attempts: int = 0
    identity: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    blocked_by: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def transition(self, status: ResourceStatus) -> None:
        check_transition(self.status, status)
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
            "status": self.status.value,
            "attempts": self.attempts,
        }
        if self.action is not None:
            data["action"] = self.action.value
        if self.identity:
            data["identity"] = self.identity
        if self.error:
            data["error"] = self.error
            data["error_type"] = self.error_type
        if self.blocked_by:
            data["blocked_by"] = self.blocked_by
        if self.duration_seconds:
            data["duration_seconds"] = round(self.duration_seconds, 3)
        return data


@dataclass
class RunReport:
    """Report of an apply or destroy run.

    Per-node failures never raise; they are enumerated here.
    """

    run_id: str
    intent: str
    nodes: Dict[str, NodeResult] = field(default_factory=dict)
    levels: List[List[str]] = field(default_factory=list)
    pruned: List[str] = field(default_factory=list)
    cancelled: bool = False
    duration_seconds: float = 0.0

    def _with_status(self, *statuses: ResourceStatus) -> List[str]:
        return sorted(name for name, node in self.nodes.items() if node.status in statuses)

    @property
    def succeeded(self) -> List[str]:
        return self._with_status(ResourceStatus.CREATED, ResourceStatus.UPDATED, ResourceStatus.DELETED)

    @property
    def unchanged(self) -> List[str]:
        return self._with_status(ResourceStatus.UNCHANGED)

    @property
    def failed(self) -> List[str]:
        return self._with_status(ResourceStatus.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self._with_status(ResourceStatus.SKIPPED)

    @property
    def not_started(self) -> List[str]:
        return self._with_status(ResourceStatus.PENDING, ResourceStatus.IN_PROGRESS)

    @property
    def success(self) -> bool:
        """Whether every node reached a successful terminal state."""
        return not (self.failed or self.skipped or self.not_started)

    def status_of(self, name: str) -> ResourceStatus:
        return self.nodes[name].status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "intent": self.intent,
            "success": self.success,
            "cancelled": self.cancelled,
            "duration_seconds": round(self.duration_seconds, 3),
            "levels": self.levels,
            "pruned": self.pruned,
            "succeeded": self.succeeded,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "skipped": self.skipped,
            "not_started": self.not_started,
            "nodes": {name: self.nodes[name].to_dict() for name in sorted(self.nodes)},
        }


@dataclass
class DriftRecord:
    """Difference between recorded state and the remote resource."""

    name: str
    kind: ResourceKind
    identity: str
    status: str  # in_sync, changed, missing
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def drifted(self) -> bool:
        return self.status != "in_sync"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "identity": self.identity,
            "status": self.status,
            "fields": self.fields,
        }
