"""Dependency ordering and admissibility over a project's feature graph."""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from ..errors import CycleError
from ..features.models import ADMISSIBLE_STATUSES, SUCCESS_STATUSES, Feature

DependencyGraph = dict[str, tuple[str, ...]]


@dataclass(slots=True)
class ResolutionResult:
    """Outcome of analysing one snapshot of the feature graph."""

    order: list[str] = field(default_factory=list)
    admissible: list[str] = field(default_factory=list)
    cycles: list[tuple[str, ...]] = field(default_factory=list)
    missing: dict[str, tuple[str, ...]] = field(default_factory=dict)
    blocked: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles)

    @property
    def cyclic_ids(self) -> set[str]:
        return {feature_id for cycle in self.cycles for feature_id in cycle}


def build_graph(features: Iterable[Feature]) -> DependencyGraph:
    """Map each feature id to its dependency ids, preserving input order."""

    return {feature.id: tuple(feature.dependencies) for feature in features}


def find_cycles(graph: Mapping[str, tuple[str, ...]]) -> list[tuple[str, ...]]:
    """Return the strongly connected components that form cycles.

    Components of more than one node and single nodes depending on themselves
    are reported; members are listed in graph order. Edges to ids absent from
    the graph are ignored.
    """

    position = {node: i for i, node in enumerate(graph)}
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    stack: list[str] = []
    on_stack: set[str] = set()
    counter = 0
    components: list[tuple[str, ...]] = []

    for root in graph:
        if root in index_of:
            continue
        index_of[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        work = [(root, iter(graph[root]))]

        while work:
            node, children = work[-1]
            descended = False
            for child in children:
                if child not in graph:
                    continue
                if child not in index_of:
                    index_of[child] = lowlink[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter(graph[child])))
                    descended = True
                    break
                if child in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[child])
            if descended:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] != index_of[node]:
                continue

            component: list[str] = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node:
                    break
            if len(component) > 1 or node in graph[node]:
                components.append(tuple(sorted(component, key=position.__getitem__)))

    components.sort(key=lambda cycle: position[cycle[0]])
    return components


def analyze(features: Iterable[Feature]) -> ResolutionResult:
    """Order features topologically and compute which may start now.

    Ties between features whose dependencies are placed are broken by
    ``(priority, creation order)``; the input is expected in creation order.
    Features caught in a cycle, or only reachable through one, are appended
    after the acyclic part in creation order and are never admissible.
    """

    feature_list = list(features)
    by_id: dict[str, Feature] = {}
    for feature in feature_list:
        by_id.setdefault(feature.id, feature)
    position = {feature_id: i for i, feature_id in enumerate(by_id)}
    graph = build_graph(by_id.values())

    result = ResolutionResult()
    result.cycles = find_cycles(graph)
    cyclic = result.cyclic_ids

    indegree: dict[str, int] = {}
    dependents: dict[str, list[str]] = {feature_id: [] for feature_id in by_id}
    for feature_id, dependencies in graph.items():
        present = [dep for dep in dependencies if dep in by_id]
        missing = tuple(dep for dep in dependencies if dep not in by_id)
        if missing:
            result.missing[feature_id] = missing
        indegree[feature_id] = len(present)
        for dep in present:
            dependents[dep].append(feature_id)

    def sort_key(feature_id: str) -> tuple[int, int, str]:
        return (by_id[feature_id].effective_priority, position[feature_id], feature_id)

    ready = [sort_key(feature_id) for feature_id, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    placed: set[str] = set()
    while ready:
        _, _, feature_id = heapq.heappop(ready)
        result.order.append(feature_id)
        placed.add(feature_id)
        for dependent in dependents[feature_id]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, sort_key(dependent))

    result.order.extend(feature_id for feature_id in by_id if feature_id not in placed)

    for feature_id in result.order:
        feature = by_id[feature_id]
        if feature.status not in SUCCESS_STATUSES:
            pending = tuple(
                dep
                for dep in feature.dependencies
                if dep in by_id and by_id[dep].status not in SUCCESS_STATUSES
            )
            if pending:
                result.blocked[feature_id] = pending

        if feature.status not in ADMISSIBLE_STATUSES or feature_id in cyclic:
            continue
        if feature_id in result.missing or feature_id in result.blocked:
            continue
        result.admissible.append(feature_id)

    return result


def resolve(features: Iterable[Feature]) -> list[str]:
    """Return a topological order of all features, raising on cycles."""

    result = analyze(features)
    if result.cycles:
        raise CycleError(result.cycles)
    return result.order


def _index(features: Iterable[Feature] | Mapping[str, Feature]) -> Mapping[str, Feature]:
    if isinstance(features, Mapping):
        return features
    return {feature.id: feature for feature in features}


def are_dependencies_satisfied(
    feature: Feature, features: Iterable[Feature] | Mapping[str, Feature]
) -> bool:
    """True when every dependency exists and has completed or been verified."""

    index = _index(features)
    return all(
        dep in index and index[dep].status in SUCCESS_STATUSES for dep in feature.dependencies
    )


def get_blocking_dependencies(
    feature: Feature, features: Iterable[Feature] | Mapping[str, Feature]
) -> list[str]:
    """Existing dependencies of ``feature`` that have not yet succeeded."""

    index = _index(features)
    return [
        dep
        for dep in feature.dependencies
        if dep in index and index[dep].status not in SUCCESS_STATUSES
    ]


__all__ = [
    "DependencyGraph",
    "ResolutionResult",
    "analyze",
    "are_dependencies_satisfied",
    "build_graph",
    "find_cycles",
    "get_blocking_dependencies",
    "resolve",
]
