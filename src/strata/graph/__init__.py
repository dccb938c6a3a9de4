"""Dependency graph building and topological scheduling."""

from strata.graph.builder import DependencyGraph, build, find_cycle
from strata.graph.scheduler import Intent, Plan, plan, topological_levels

__all__ = [
    "DependencyGraph",
    "Intent",
    "Plan",
    "build",
    "find_cycle",
    "plan",
    "topological_levels",
]
