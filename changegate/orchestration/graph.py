"""Orchestration layer — Build graph.

Builds a NetworkX DiGraph from the declared BuildNodes once, at startup.
Edges point from an upstream node to the node that depends on it.

The executor does not rescan the graph to find ready nodes; it takes
``unresolved_counts()`` (the in-degree of every node) and decrements a
node's counter each time one of its predecessors resolves.
"""

from __future__ import annotations

from typing import Iterable

import networkx as nx

from changegate.exceptions import DAGCycleError, UnknownDependencyError
from changegate.models import BuildNode


class BuildGraph:
    """Immutable dependency graph of build nodes.

    Usage::

        graph = BuildGraph(settings.pipeline.build_nodes())
        counts = graph.unresolved_counts()
        roots = graph.roots()
    """

    def __init__(self, nodes: Iterable[BuildNode]) -> None:
        self._nodes: dict[str, BuildNode] = {}
        for node in nodes:
            if node.name in self._nodes:
                raise ValueError(f"Duplicate build node '{node.name}'")
            self._nodes[node.name] = node
        self._graph = self._build_graph(self._nodes)
        self._order = list(nx.topological_sort(self._graph))

    @staticmethod
    def _build_graph(nodes: dict[str, BuildNode]) -> nx.DiGraph:
        graph: nx.DiGraph = nx.DiGraph()
        for name in nodes:
            graph.add_node(name)
        for node in nodes.values():
            for dep in node.depends_on:
                if dep not in nodes:
                    raise UnknownDependencyError(node.name, dep)
                graph.add_edge(dep, node.name)

        if not nx.is_directed_acyclic_graph(graph):
            try:
                cycle = nx.find_cycle(graph)
                cycle_ids = [edge[0] for edge in cycle] + [cycle[-1][1]]
            except nx.NetworkXNoCycle:
                cycle_ids = []
            raise DAGCycleError(cycle_ids)

        return graph

    def __len__(self) -> int:
        return len(self._nodes)

    def node(self, name: str) -> BuildNode:
        return self._nodes[name]

    def repositories(self) -> list[str]:
        """Distinct repositories in topological order of first appearance."""
        seen: dict[str, None] = {}
        for name in self._order:
            seen.setdefault(self._nodes[name].repository, None)
        return list(seen)

    def topological_order(self) -> list[str]:
        return list(self._order)

    def roots(self) -> list[str]:
        """Nodes with no upstream dependency, in topological order."""
        return [n for n in self._order if self._graph.in_degree(n) == 0]

    def unresolved_counts(self) -> dict[str, int]:
        """Fresh per-node counter of upstream dependencies still to resolve."""
        return {n: self._graph.in_degree(n) for n in self._order}

    def successors(self, name: str) -> list[str]:
        """Return nodes that depend directly on *name*."""
        return sorted(self._graph.successors(name))

    def predecessors(self, name: str) -> list[str]:
        """Return nodes that *name* directly depends on."""
        return sorted(self._graph.predecessors(name))

    def waves(self) -> list[list[str]]:
        """Group nodes by dependency depth (for display only)."""
        return [sorted(generation) for generation in nx.topological_generations(self._graph)]
