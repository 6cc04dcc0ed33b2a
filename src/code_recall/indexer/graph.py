"""Traversals over the (possibly cyclic) file dependency graph."""

from collections import deque
from collections.abc import Iterable

from code_recall.protocols import DependencyGraph


def reverse_edges(graph: DependencyGraph) -> dict[str, set[str]]:
    """Map each file to the files that directly depend on it."""
    dependents: dict[str, set[str]] = {}
    for file, deps in graph.items():
        for dep in deps:
            dependents.setdefault(dep, set()).add(file)
    return dependents


def calculate_affected_files(changed_files: Iterable[str], graph: DependencyGraph) -> list[str]:
    """Find every file that directly or transitively depends on a changed file.

    Breadth-first over reverse edges with a visited set, so cycles terminate.

    Args:
        changed_files: Files known to have changed.
        graph: file -> files it depends on.

    Returns:
        Newly discovered dependents in discovery order, excluding the
        changed files themselves.
    """
    changed = list(dict.fromkeys(changed_files))
    dependents = reverse_edges(graph)

    visited = set(changed)
    queue = deque(changed)
    affected: list[str] = []

    while queue:
        current = queue.popleft()
        # Sorted for a reproducible discovery order
        for dependent in sorted(dependents.get(current, ())):
            if dependent in visited:
                continue
            visited.add(dependent)
            affected.append(dependent)
            queue.append(dependent)

    return affected


def neighbors_within(graph: DependencyGraph, start: str, max_hops: int) -> dict[str, int]:
    """Files reachable from start within max_hops, following edges both ways.

    Args:
        graph: file -> files it depends on.
        start: The file to measure from (excluded from the result).
        max_hops: Largest hop distance to include.

    Returns:
        Mapping of file path to its shortest hop distance (>= 1).
    """
    if max_hops < 1:
        return {}

    dependents = reverse_edges(graph)
    distances: dict[str, int] = {start: 0}
    queue = deque([start])

    while queue:
        current = queue.popleft()
        hops = distances[current]
        if hops == max_hops:
            continue
        for neighbor in sorted(set(graph.get(current, ())) | dependents.get(current, set())):
            if neighbor not in distances:
                distances[neighbor] = hops + 1
                queue.append(neighbor)

    del distances[start]
    return distances
