"""
Topological scheduling of a dependency graph into level batches.

Levels come from Kahn's algorithm: every node whose dependencies have all
been emitted joins the next level. Nodes inside a level have no edges
between them and may run concurrently; names are sorted inside each level
so plans and logs are reproducible.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping

from strata.core.errors import CycleError
from strata.graph.builder import DependencyGraph, find_cycle


class Intent(str, Enum):
    APPLY = "apply"
    DESTROY = "destroy"


@dataclass(frozen=True)
class Plan:
    """Ordered batches of resource names for one intent."""

    intent: Intent
    levels: tuple[tuple[str, ...], ...]

    @property
    def order(self) -> list[str]:
        return [name for level in self.levels for name in level]

    def level_of(self, name: str) -> int:
        for index, level in enumerate(self.levels):
            if name in level:
                return index
        raise KeyError(name)

    def __len__(self) -> int:
        return sum(len(level) for level in self.levels)

    def to_dict(self) -> dict[str, Any]:
        return {"intent": self.intent.value, "levels": [list(level) for level in self.levels]}


def topological_levels(
    names: Iterable[str],
    edges: Mapping[str, Iterable[str]],
) -> list[tuple[str, ...]]:
    """
    Group ``names`` into dependency levels.

    ``edges[a]`` lists what ``a`` depends on; edges to names outside
    ``names`` are ignored.

    Raises:
        CycleError: if the edges contain a cycle
    """
    nodes = set(names)
    remaining = {name: {dep for dep in edges.get(name, ()) if dep in nodes} for name in nodes}
    dependents: dict[str, set[str]] = {name: set() for name in nodes}
    for name, deps in remaining.items():
        for dep in deps:
            dependents[dep].add(name)

    in_degree = {name: len(deps) for name, deps in remaining.items()}
    ready = sorted(name for name, degree in in_degree.items() if degree == 0)
    levels: list[tuple[str, ...]] = []
    emitted = 0

    while ready:
        levels.append(tuple(ready))
        emitted += len(ready)
        upcoming: list[str] = []
        for name in ready:
            for child in dependents[name]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    upcoming.append(child)
        ready = sorted(upcoming)

    if emitted != len(nodes):
        stuck = {name for name, degree in in_degree.items() if degree > 0}
        cycle = find_cycle(stuck, {name: remaining[name] & stuck for name in stuck})
        raise CycleError(cycle or sorted(stuck))
    return levels


def plan(graph: DependencyGraph, intent: Intent = Intent.APPLY) -> Plan:
    """
    Order a graph for apply or destroy.

    Destroy runs the apply levels back to front, so every dependent is
    torn down in an earlier batch than anything it depends on.
    """
    intent = Intent(intent)
    levels = topological_levels(graph.nodes, graph.edges)
    if intent is Intent.DESTROY:
        levels = list(reversed(levels))
    return Plan(intent=intent, levels=tuple(levels))
