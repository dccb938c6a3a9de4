"""
Dependency graph construction.

Every attribute reference becomes a directed edge from the referencing
resource to the referenced one. The graph is rebuilt from the declaration
on every run and never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

import structlog

from strata.core.errors import CycleError, DanglingReferenceError, DuplicateResourceError
from strata.resources.models import ResourceSpec

logger = structlog.get_logger()


@dataclass
class DependencyGraph:
    """Directed acyclic graph of declared resources.

    ``edges[a]`` holds the names ``a`` depends on.
    """

    nodes: dict[str, ResourceSpec] = field(default_factory=dict)
    edges: dict[str, set[str]] = field(default_factory=dict)

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def names(self) -> list[str]:
        return sorted(self.nodes)

    def get(self, name: str) -> ResourceSpec:
        return self.nodes[name]

    def dependencies(self, name: str) -> list[str]:
        """Resources ``name`` depends on."""
        return sorted(self.edges.get(name, ()))

    def dependents(self, name: str) -> list[str]:
        """Resources that depend on ``name``."""
        return sorted(source for source, targets in self.edges.items() if name in targets)

    def edge_count(self) -> int:
        return sum(len(targets) for targets in self.edges.values())

    def reversed(self) -> "DependencyGraph":
        """Copy of this graph with every edge flipped."""
        flipped: dict[str, set[str]] = {name: set() for name in self.nodes}
        for source, targets in self.edges.items():
            for target in targets:
                flipped[target].add(source)
        return DependencyGraph(nodes=dict(self.nodes), edges=flipped)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "nodes": [
                {"name": name, "kind": self.nodes[name].kind.value, "depends_on": self.dependencies(name)}
                for name in self.names()
            ],
            "stats": {"node_count": len(self.nodes), "edge_count": self.edge_count()},
        }


class _Mark(Enum):
    UNVISITED = 0
    IN_PROGRESS = 1
    DONE = 2


def find_cycle(nodes: Iterable[str], edges: dict[str, set[str]]) -> list[str] | None:
    """
    Return a cycle path such as ``["a", "b", "a"]``, or None if acyclic.

    Depth-first search with three-colour marking. Nodes and neighbours are
    visited in sorted order so the reported path is deterministic.
    """
    marks = {name: _Mark.UNVISITED for name in nodes}
    stack: list[str] = []

    def visit(name: str) -> list[str] | None:
        marks[name] = _Mark.IN_PROGRESS
        stack.append(name)
        for target in sorted(edges.get(name, ())):
            mark = marks.get(target, _Mark.DONE)
            if mark is _Mark.IN_PROGRESS:
                return stack[stack.index(target):] + [target]
            if mark is _Mark.UNVISITED:
                cycle = visit(target)
                if cycle:
                    return cycle
        stack.pop()
        marks[name] = _Mark.DONE
        return None

    for name in sorted(marks):
        if marks[name] is _Mark.UNVISITED:
            cycle = visit(name)
            if cycle:
                return cycle
    return None


def build(specs: Iterable[ResourceSpec]) -> DependencyGraph:
    """
    Build and check the dependency graph for a set of declared resources.

    Raises:
        DuplicateResourceError: two resources share a logical name
        DanglingReferenceError: a reference names an undeclared resource
        CycleError: the references form a cycle (path included)
    """
    graph = DependencyGraph()
    for spec in specs:
        if spec.name in graph.nodes:
            raise DuplicateResourceError(spec.name)
        graph.nodes[spec.name] = spec

    for name in graph.names():
        spec = graph.nodes[name]
        targets: set[str] = set()
        for attribute, ref in spec.references():
            if ref.target not in graph.nodes:
                raise DanglingReferenceError(name, ref.target, attribute)
            targets.add(ref.target)
        for target in spec.depends_on:
            if target not in graph.nodes:
                raise DanglingReferenceError(name, target, "depends_on")
            targets.add(target)
        graph.edges[name] = targets

    cycle = find_cycle(graph.nodes, graph.edges)
    if cycle:
        raise CycleError(cycle)

    logger.debug("dependency_graph_built", nodes=len(graph), edges=graph.edge_count())
    return graph
