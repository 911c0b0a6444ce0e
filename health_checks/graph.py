"""
Dependency graph over the endpoint registry.

Edges come from two declarations that mean the same thing:
  - A.dependsOn = [B]  ->  A depends on B, B is required by A
  - B.impacts   = [A]  ->  same edge, declared from the other end

The graph may contain cycles; every traversal keeps a visited set.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable

from health_checks.registry import EndpointSpec


@dataclass
class DependencyNode:
    depends_on: list[str] = field(default_factory=list)
    required_by: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {"dependsOn": list(self.depends_on), "requiredBy": list(self.required_by)}


@dataclass(frozen=True)
class CascadeLevel:
    level: int
    ids: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {"level": self.level, "ids": list(self.ids)}


DependencyGraph = dict[str, DependencyNode]


def _add_edge(graph: DependencyGraph, dependent: str, dependency: str) -> None:
    """dependent depends on dependency; both directions, no duplicates."""
    a = graph.setdefault(dependent, DependencyNode())
    b = graph.setdefault(dependency, DependencyNode())
    if dependency not in a.depends_on:
        a.depends_on.append(dependency)
    if dependent not in b.required_by:
        b.required_by.append(dependent)


def build_dependency_graph(endpoints: Iterable[EndpointSpec]) -> DependencyGraph:
    eps = list(endpoints)
    graph: DependencyGraph = {}
    for ep in eps:
        graph.setdefault(ep.id, DependencyNode())

    for ep in eps:
        for dep_id in ep.depends_on:
            _add_edge(graph, ep.id, dep_id)

    for ep in eps:
        for impacted_id in ep.impacts:
            _add_edge(graph, impacted_id, ep.id)

    return graph


def get_cascade_levels(endpoint_id: str, graph: DependencyGraph) -> list[CascadeLevel]:
    """
    Breadth-first walk of requiredBy from endpoint_id, grouped by distance.
    Level 1 holds direct dependents; each id appears at its first (shortest) level only.
    The start node is never part of the result.
    """
    visited = {endpoint_id}
    frontier = [endpoint_id]
    levels: list[CascadeLevel] = []
    depth = 0
    while frontier:
        depth += 1
        next_frontier: list[str] = []
        for current in frontier:
            node = graph.get(current)
            if node is None:
                continue
            for dependent in node.required_by:
                if dependent in visited:
                    continue
                visited.add(dependent)
                next_frontier.append(dependent)
        if next_frontier:
            levels.append(CascadeLevel(level=depth, ids=next_frontier))
        frontier = next_frontier
    return levels


def get_impacted_services(endpoint_id: str, graph: DependencyGraph) -> list[str]:
    """Every endpoint transitively requiring endpoint_id, in BFS order."""
    visited = {endpoint_id}
    queue = deque([endpoint_id])
    impacted: list[str] = []
    while queue:
        current = queue.popleft()
        node = graph.get(current)
        if node is None:
            continue
        for dependent in node.required_by:
            if dependent in visited:
                continue
            visited.add(dependent)
            impacted.append(dependent)
            queue.append(dependent)
    return impacted


def get_blast_radius(endpoint_id: str, graph: DependencyGraph) -> int:
    return len(get_impacted_services(endpoint_id, graph))


def graph_to_dict(graph: DependencyGraph) -> dict[str, dict[str, list[str]]]:
    return {node_id: node.to_dict() for node_id, node in graph.items()}
