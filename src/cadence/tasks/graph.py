"""Pure dependency-graph algorithms over task records."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Iterable

from ..storage.models import DependencyType, Task


@dataclass(slots=True)
class GraphEdge:
    """``source`` must satisfy ``type`` before ``target`` may proceed."""

    source: str
    target: str
    type: DependencyType


@dataclass(slots=True)
class InvalidDependency:
    task_id: str
    missing_task_id: str

    def __str__(self) -> str:
        return f"{self.task_id} -> {self.missing_task_id}"


class DependencyGraph:
    """Directed graph of task dependencies with deterministic traversal order.

    Nodes keep their discovery order, which is also the tie-breaker for every
    traversal. Edges that point at unknown tasks are kept aside in
    ``invalid_dependencies`` and never enter the graph.
    """

    def __init__(self, nodes: Iterable[str] = ()) -> None:
        self._nodes: list[str] = []
        self._index: dict[str, int] = {}
        self._depends_on: dict[str, list[str]] = {}
        self._dependents: dict[str, list[str]] = {}
        self._edges: dict[tuple[str, str], GraphEdge] = {}
        self.invalid_dependencies: list[InvalidDependency] = []
        for node in nodes:
            self.add_node(node)

    @classmethod
    def from_tasks(cls, tasks: Iterable[Task]) -> "DependencyGraph":
        ordered = sorted(tasks, key=lambda task: (task.created_at, task.id))
        graph = cls(task.id for task in ordered)
        for task in ordered:
            for dependency in task.dependencies:
                if dependency.task_id in graph:
                    graph.add_edge(dependency.task_id, task.id, dependency.type)
                else:
                    graph.invalid_dependencies.append(InvalidDependency(task.id, dependency.task_id))
        return graph

    def __contains__(self, node: object) -> bool:
        return node in self._index

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> list[str]:
        return list(self._nodes)

    @property
    def edges(self) -> list[GraphEdge]:
        return list(self._edges.values())

    def add_node(self, node: str) -> None:
        if node in self._index:
            return
        self._index[node] = len(self._nodes)
        self._nodes.append(node)
        self._depends_on[node] = []
        self._dependents[node] = []

    def add_edge(
        self,
        source: str,
        target: str,
        type: DependencyType = DependencyType.FINISH_TO_START,
    ) -> None:
        """Record that ``target`` depends on ``source``. Duplicate edges are ignored."""

        self.add_node(source)
        self.add_node(target)
        if (source, target) in self._edges:
            return
        self._edges[(source, target)] = GraphEdge(source, target, type)
        self._depends_on[target].append(source)
        self._dependents[source].append(target)

    def dependencies_of(self, node: str) -> list[str]:
        return list(self._depends_on.get(node, ()))

    def dependents_of(self, node: str) -> list[str]:
        return list(self._dependents.get(node, ()))

    def find_cycles(self) -> list[list[str]]:
        """Return every cycle closed by a back edge of a depth-first search.

        Each cycle runs from the first repeated node along dependency edges
        and ends with that node again, e.g. ``[a, b, a]`` when ``a`` depends
        on ``b`` and ``b`` on ``a``.
        """

        cycles: list[list[str]] = []
        visited: set[str] = set()
        on_stack: set[str] = set()
        path: list[str] = []

        for root in self._nodes:
            if root in visited:
                continue
            visited.add(root)
            on_stack.add(root)
            path.append(root)
            stack = [(root, iter(self._depends_on[root]))]
            while stack:
                node, pending = stack[-1]
                advanced = False
                for neighbour in pending:
                    if neighbour in on_stack:
                        start = path.index(neighbour)
                        cycles.append(path[start:] + [neighbour])
                    elif neighbour not in visited:
                        visited.add(neighbour)
                        on_stack.add(neighbour)
                        path.append(neighbour)
                        stack.append((neighbour, iter(self._depends_on[neighbour])))
                        advanced = True
                        break
                if not advanced:
                    stack.pop()
                    on_stack.discard(node)
                    path.pop()
        return cycles

    def has_cycle(self) -> bool:
        return bool(self.find_cycles())

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; nodes on or behind a cycle are left out."""

        in_degree = {node: len(self._depends_on[node]) for node in self._nodes}
        queue = deque(node for node in self._nodes if in_degree[node] == 0)
        order: list[str] = []
        while queue:
            node = queue.popleft()
            order.append(node)
            for dependent in self._dependents[node]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)
        return order

    def levels(self) -> dict[str, int]:
        """Level 0 for nodes without dependencies, else one past the deepest dependency.

        Nodes excluded from the topological order because of a cycle are
        levelled afterwards from whatever dependencies already have a level.
        """

        levels: dict[str, int] = {}
        for node in self.topological_order():
            levels[node] = 1 + max((levels[dep] for dep in self._depends_on[node]), default=-1)
        for node in self._nodes:
            if node not in levels:
                known = [levels[dep] for dep in self._depends_on[node] if dep in levels]
                levels[node] = 1 + max(known, default=-1)
        return levels


__all__ = ["DependencyGraph", "GraphEdge", "InvalidDependency"]
