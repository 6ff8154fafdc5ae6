"""Dependency ordering shared by session commits and migration plans."""

from collections.abc import Hashable, Iterable, Mapping

from db_mapper.errors import CyclicDependency


def topological_sort(
    dependencies: Mapping[Hashable, Iterable[Hashable]],
    nodes: list,
    strict: bool = False,
) -> list:
    """Order *nodes* so that every node comes after the nodes it depends on.

    Nodes keep their relative input order wherever dependencies allow it.
    Dependencies on nodes outside *nodes* are ignored.

    Args:
        dependencies: node -> nodes it depends on (referenced first).
        nodes: Nodes to sort.
        strict: Raise ``CyclicDependency`` on a cycle instead of breaking it
            at the node where it was found.

    Returns:
        Nodes sorted dependencies-first.

    Example:
        >>> topological_sort({"hero": {"team"}}, ["hero", "team"])
        ['team', 'hero']
    """
    members = set(nodes)
    relevant = {n: [d for d in dependencies.get(n, ()) if d in members and d != n] for n in nodes}

    ordered: list = []
    visited: set = set()
    visiting: list = []  # current path, for cycle reporting

    def visit(node) -> None:
        if node in visited:
            return
        if node in visiting:
            if strict:
                cycle = visiting[visiting.index(node):] + [node]
                raise CyclicDependency(
                    "Cyclic dependency: " + " -> ".join(str(n) for n in cycle)
                )
            return
        visiting.append(node)
        for dep in relevant[node]:
            visit(dep)
        visiting.pop()
        visited.add(node)
        ordered.append(node)

    for node in nodes:
        visit(node)

    return ordered
