"""
Upgrader Ordering

Directed graph of "try before" constraints between the members of a group,
sorted topologically with ties broken by group order and registration order.
"""

from __future__ import annotations

import heapq
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Set, Tuple

import structlog

from relive.core.errors import UpgraderOrderingError
from relive.upgraders.base import InstanceUpgrader

logger = structlog.get_logger(__name__)


class OrderingGraph:
    """
    Directed graph where an edge ``a -> b`` means "try ``a`` before ``b``".

    Nodes are registration indices.
    """

    def __init__(self, size: int):
        self._size = size
        self._edges: Dict[int, Set[int]] = defaultdict(set)  # from -> to
        self._reverse_edges: Dict[int, Set[int]] = defaultdict(set)  # to -> from

    def add_edge(self, from_node: int, to_node: int) -> None:
        """Add an edge (from_node must be tried before to_node)."""
        if from_node == to_node:
            return
        self._edges[from_node].add(to_node)
        self._reverse_edges[to_node].add(from_node)

    def has_edge(self, from_node: int, to_node: int) -> bool:
        return to_node in self._edges.get(from_node, set())

    @property
    def edge_count(self) -> int:
        return sum(len(targets) for targets in self._edges.values())

    def topological_sort(self, priority: Sequence[Tuple[int, int]]) -> Tuple[List[int], Optional[List[int]]]:
        """
        Kahn's algorithm, always emitting the ready node with the lowest priority.

        Returns:
            The sorted nodes, and a cycle if the graph has one (in which case
            the sorted list is incomplete)
        """
        in_degree = [0] * self._size
        for targets in self._edges.values():
            for target in targets:
                in_degree[target] += 1

        ready = [(priority[node], node) for node in range(self._size) if in_degree[node] == 0]
        heapq.heapify(ready)
        result: List[int] = []

        while ready:
            _, node = heapq.heappop(ready)
            result.append(node)

            for target in self._edges.get(node, set()):
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    heapq.heappush(ready, (priority[target], target))

        if len(result) != self._size:
            remaining = {node for node in range(self._size) if in_degree[node] > 0}
            return result, self._find_cycle(remaining)

        return result, None

    def _find_cycle(self, nodes: Set[int]) -> List[int]:
        visited: Set[int] = set()
        on_stack: Set[int] = set()
        path: List[int] = []

        def dfs(node: int) -> Optional[List[int]]:
            visited.add(node)
            on_stack.add(node)
            path.append(node)

            for neighbor in sorted(self._edges.get(node, set()) & nodes):
                if neighbor not in visited:
                    found = dfs(neighbor)
                    if found is not None:
                        return found
                elif neighbor in on_stack:
                    return path[path.index(neighbor):] + [neighbor]

            path.pop()
            on_stack.remove(node)
            return None

        for node in sorted(nodes):
            if node not in visited:
                cycle = dfs(node)
                if cycle is not None:
                    return cycle
        return sorted(nodes)


def order_upgraders(members: Sequence[InstanceUpgrader]) -> List[InstanceUpgrader]:
    """
    Order the members of one group.

    Raises:
        UpgraderOrderingError: If ``attempt_before``/``attempt_after``
            constraints contradict each other
    """
    graph = OrderingGraph(len(members))

    for i, member in enumerate(members):
        for target_cls in member.attempt_before:
            for j, other in enumerate(members):
                if isinstance(other, target_cls):
                    graph.add_edge(i, j)
        for target_cls in member.attempt_after:
            for j, other in enumerate(members):
                if isinstance(other, target_cls):
                    graph.add_edge(j, i)

    priority = [(int(member.group_order), i) for i, member in enumerate(members)]
    order, cycle = graph.topological_sort(priority)

    if cycle is not None:
        second = cycle[1] if len(cycle) > 1 else cycle[0]
        raise UpgraderOrderingError(type(members[cycle[0]]), type(members[second]))

    return [members[i] for i in order]
