"""Dependency graph utilities.

The release graph is a reverse adjacency map: an edge A → B means "B
depends on A", so a change to A cascades to B. The map is built once per
run from the packages' declared workspace dependencies and never mutated
afterwards.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable

from .models import Package

DependencyGraph = dict[str, list[str]]


def build_dependency_graph(packages: Iterable[Package]) -> DependencyGraph:
    """Build the reverse dependency graph, keyed by package scope.

    Dependencies on names outside the workspace, and self-dependencies, are
    ignored. Dependents are listed in scope order for deterministic output.

    Example:
        If B depends on A and C depends on B:
        build_dependency_graph([A, B, C]) → {A: [B], B: [C], C: []}
    """
    packages = list(packages)
    scope_by_name = {p.name: p.scope for p in packages}
    graph: DependencyGraph = {p.scope: [] for p in packages}

    for pkg in packages:
        for dep_name in pkg.dependencies:
            dep_scope = scope_by_name.get(dep_name)
            if dep_scope is None or dep_scope == pkg.scope:
                continue
            if pkg.scope not in graph[dep_scope]:
                graph[dep_scope].append(pkg.scope)

    for dependents in graph.values():
        dependents.sort()
    return graph


def propagate_cascades(
    graph: DependencyGraph,
    seeds: Iterable[str],
    blocked: Iterable[str] = (),
) -> list[str]:
    """Find every package that transitively depends on a seed package.

    Breadth-first walk over the reverse graph. The visited set starts as
    seeds ∪ blocked, so each package is queued at most once, which also
    guarantees termination when the graph has cycles. Blocked packages are
    neither returned nor walked through.

    Args:
        graph: Reverse dependency graph from build_dependency_graph().
        seeds: Scopes that are released directly.
        blocked: Scopes that must never be cascaded (e.g. excluded).

    Returns:
        Cascaded scopes in discovery order. Never contains a seed.
    """
    seeds = sorted(set(seeds))
    visited = set(seeds) | set(blocked)
    queue = deque(seeds)
    cascaded: list[str] = []

    while queue:
        node = queue.popleft()
        for dependent in graph.get(node, []):
            if dependent in visited:
                continue
            visited.add(dependent)
            cascaded.append(dependent)
            queue.append(dependent)

    return cascaded


def triggers_for(
    package: Package,
    scope_by_name: dict[str, str],
    releasing: set[str],
) -> list[str]:
    """Scopes of the package's dependencies that are being released."""
    triggers = {
        scope_by_name[dep]
        for dep in package.dependencies
        if dep in scope_by_name and scope_by_name[dep] in releasing
    }
    triggers.discard(package.scope)
    return sorted(triggers)


def compute_layers(dependencies: dict[str, list[str]]) -> list[list[str]]:
    """Group DAG nodes into layers by depth.

    Layer 0 holds nodes without dependencies; layer n holds nodes whose
    deepest dependency sits in layer n - 1. Nodes within a layer are sorted.

    Args:
        dependencies: Map of node → nodes it runs after.

    Raises:
        RuntimeError: If a dependency cycle is detected.
    """
    depth: dict[str, int] = {}
    visiting: set[str] = set()

    def visit(node: str) -> int:
        if node in depth:
            return depth[node]
        if node in visiting:
            raise RuntimeError(f"Dependency cycle detected involving: {node}")
        visiting.add(node)
        deps = [d for d in dependencies.get(node, []) if d in dependencies]
        depth[node] = 1 + max((visit(d) for d in deps), default=-1)
        visiting.discard(node)
        return depth[node]

    for node in dependencies:
        visit(node)

    layers: list[list[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
    for node, d in depth.items():
        layers[d].append(node)
    return [sorted(layer) for layer in layers]
