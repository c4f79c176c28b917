from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

from cadence.storage.models import Task
from cadence.tasks.graph import DependencyGraph


def random_dag(seed: int, size: int = 30, density: float = 0.15) -> DependencyGraph:
    rng = random.Random(seed)
    nodes = [f"n{index}" for index in range(size)]
    graph = DependencyGraph(nodes)
    for target_index in range(size):
        for source_index in range(target_index):
            if rng.random() < density:
                graph.add_edge(nodes[source_index], nodes[target_index])
    return graph


def test_random_dags_have_no_cycles_and_a_valid_order() -> None:
    for seed in range(20):
        graph = random_dag(seed)

        assert graph.find_cycles() == []
        order = graph.topological_order()
        assert sorted(order) == sorted(graph.nodes)
        position = {node: index for index, node in enumerate(order)}
        for edge in graph.edges:
            assert position[edge.source] < position[edge.target]

        levels = graph.levels()
        for edge in graph.edges:
            assert levels[edge.target] > levels[edge.source]


def test_injected_back_edge_is_reported_as_cycle() -> None:
    for seed in range(20):
        graph = random_dag(seed)
        if not graph.edges:
            continue
        edge = random.Random(seed).choice(graph.edges)
        graph.add_edge(edge.target, edge.source)

        cycles = graph.find_cycles()
        assert cycles
        assert any(edge.source in cycle and edge.target in cycle for cycle in cycles)
        assert all(cycle[0] == cycle[-1] for cycle in cycles)
        order = graph.topological_order()
        assert edge.source not in order
        assert edge.target not in order


def test_two_node_cycle_is_reported_from_first_node() -> None:
    graph = DependencyGraph(["a", "b"])
    graph.add_edge("b", "a")
    graph.add_edge("a", "b")

    assert graph.find_cycles() == [["a", "b", "a"]]
    assert graph.has_cycle()
    assert graph.topological_order() == []


def test_independent_nodes_keep_discovery_order() -> None:
    graph = DependencyGraph(["c", "a", "b"])

    assert graph.topological_order() == ["c", "a", "b"]
    assert graph.levels() == {"c": 0, "a": 0, "b": 0}


def test_duplicate_edges_are_ignored() -> None:
    graph = DependencyGraph()
    graph.add_edge("a", "b")
    graph.add_edge("a", "b")

    assert len(graph.edges) == 1
    assert graph.dependencies_of("b") == ["a"]
    assert graph.dependents_of("a") == ["b"]


def test_cycle_members_still_receive_levels() -> None:
    graph = DependencyGraph(["root", "leaf", "x", "y"])
    graph.add_edge("root", "leaf")
    graph.add_edge("root", "x")
    graph.add_edge("y", "x")
    graph.add_edge("x", "y")

    levels = graph.levels()

    assert levels["root"] == 0
    assert levels["leaf"] == 1
    assert set(levels) == {"root", "leaf", "x", "y"}


def test_from_tasks_orders_by_creation_and_records_missing_targets() -> None:
    start = datetime(2025, 1, 1, tzinfo=timezone.utc)
    tasks = [
        Task(id="late", orchestration_id="o", name="Late", created_at=start + timedelta(hours=2),
             dependencies=[{"task_id": "early"}, {"task_id": "ghost"}]),
        Task(id="early", orchestration_id="o", name="Early", created_at=start),
    ]

    graph = DependencyGraph.from_tasks(tasks)

    assert graph.nodes == ["early", "late"]
    assert graph.topological_order() == ["early", "late"]
    assert [str(item) for item in graph.invalid_dependencies] == ["late -> ghost"]
