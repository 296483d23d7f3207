"""Dependency graph utilities.

Provides the graph operations the publish pipeline is built on:

- build_graph: forward ("depends on") and reverse ("depended by") adjacency
- expand_dependents: everything transitively affected by a set of changes
- schedule_batches: publish order as parallel batches (level-order topo sort)

Packages must be published in dependency order so that when package A
depends on package B, B's new version exists on the registry before A
references it.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable

from pydantic import BaseModel, Field

from .errors import CircularDependencyError
from .models import Package


class DependencyGraph(BaseModel):
    """Internal dependency edges between a set of packages.

    Attributes:
        depends_on: package → packages it depends on.
        depended_by: package → packages that depend on it.
    """

    depends_on: dict[str, set[str]] = Field(default_factory=dict)
    depended_by: dict[str, set[str]] = Field(default_factory=dict)


def build_graph(packages: Iterable[Package]) -> DependencyGraph:
    """Build the internal dependency graph of a package set.

    Only workspace dependencies whose target is part of the same set become
    edges. Anything else is resolved through the registry and doesn't
    constrain ordering. A package that lists itself keeps that edge, so
    scheduling reports it as a cycle.
    """
    packages = list(packages)
    names = {p.name for p in packages}
    graph = DependencyGraph(
        depends_on={n: set() for n in names},
        depended_by={n: set() for n in names},
    )
    for pkg in packages:
        for dep in pkg.internal_deps:
            if dep in names:
                graph.depends_on[pkg.name].add(dep)
                graph.depended_by[dep].add(pkg.name)
    return graph


def expand_dependents(
    all_packages: Iterable[Package], changed: Iterable[Package]
) -> list[Package]:
    """Add every package that transitively depends on a changed package.

    The reverse graph is built from all packages, not just the changed
    ones, so indirect dependents are found even when the packages in
    between didn't change themselves.

    Args:
        all_packages: Every package in the workspace.
        changed: Packages with direct changes.

    Returns:
        Changed packages followed by their dependents in discovery order.
    """
    all_packages = list(all_packages)
    by_name = {p.name: p for p in all_packages}
    graph = build_graph(all_packages)

    expanded: dict[str, Package] = {}
    queue: deque[str] = deque()
    for pkg in changed:
        if pkg.name not in expanded:
            expanded[pkg.name] = pkg
            queue.append(pkg.name)

    # Breadth-first walk up the reverse edges
    while queue:
        node = queue.popleft()
        for dependent in sorted(graph.depended_by.get(node, ())):
            if dependent not in expanded:
                print(f"  {dependent}: depends on changed {node}")
                expanded[dependent] = by_name[dependent]
                queue.append(dependent)

    return list(expanded.values())


def schedule_batches(packages: Iterable[Package]) -> list[list[Package]]:
    """Group packages into batches that can be published in parallel.

    Uses Kahn's algorithm level by level: each batch holds every package
    whose dependencies (within this set) are all in earlier batches.
    Dependencies on packages outside the set don't count, they are
    already published. Packages keep their input order inside a batch.

    Args:
        packages: The packages to publish.

    Returns:
        Batches in publish order.

    Raises:
        CircularDependencyError: If the packages contain a cycle. No
            partial plan is returned.

    Example:
        If A depends on B and C, and B depends on C:
        schedule_batches([A, B, C]) → [[C], [B], [A]]
    """
    packages = list(packages)
    graph = build_graph(packages)
    # Count unresolved dependencies for each package
    in_degree = {name: len(deps) for name, deps in graph.depends_on.items()}

    batches: list[list[Package]] = []
    remaining = list(packages)

    while remaining:
        batch = [p for p in remaining if in_degree[p.name] == 0]
        if not batch:
            raise CircularDependencyError(p.name for p in remaining)

        batches.append(batch)
        scheduled = {p.name for p in batch}
        remaining = [p for p in remaining if p.name not in scheduled]
        # Release everything that was waiting on this batch
        for pkg in batch:
            for dependent in graph.depended_by[pkg.name]:
                in_degree[dependent] -= 1

    return batches
