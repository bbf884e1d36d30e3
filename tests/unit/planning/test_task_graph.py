"""Unit tests for planning.task_graph."""

from __future__ import annotations

import random

import pytest

from nucleus_orchestrator.domain.models import Plan, PlanEdge, TaskSpec
from nucleus_orchestrator.planning.task_graph import CycleError, TaskGraph


def test_ties_break_by_declaration_order() -> None:
    graph = TaskGraph(nodes=("zeta", "alpha", "mid"), edges=(("zeta", "tail"), ("alpha", "tail")))
    assert graph.topological_sort() == ("zeta", "alpha", "mid", "tail")
    assert graph.nodes == ("zeta", "alpha", "mid", "tail")


def test_from_plan_keeps_task_order() -> None:
    plan = Plan(
        id="plan-1",
        context_ref="ctx-1",
        capability_map_version="1",
        tasks=(
            TaskSpec(id="report", capability_ref="x"),
            TaskSpec(id="fetch", capability_ref="x"),
            TaskSpec(id="score", capability_ref="x"),
        ),
        edges=(PlanEdge(source="fetch", target="report"),),
    )
    graph = TaskGraph.from_plan(plan)
    assert graph.topological_sort() == ("fetch", "report", "score")
    assert len(graph) == 3
    assert "fetch" in graph


def test_cycle_detection_returns_cycle() -> None:
    graph = TaskGraph(edges=(("A", "B"), ("B", "C"), ("C", "A"), ("C", "D")))

    assert graph.detect_cycles() == (("A", "B", "C", "A"),)

    with pytest.raises(CycleError) as error:
        graph.topological_sort()
    assert error.value.cycles == (("A", "B", "C", "A"),)
    assert str(error.value) == "Plan graph contains cycle(s): A -> B -> C -> A"


def test_self_loop_is_reported() -> None:
    graph = TaskGraph(edges=(("A", "A"),))
    assert graph.detect_cycles() == (("A", "A"),)


def test_edges_are_deduplicated_and_listed_by_rank() -> None:
    graph = TaskGraph(
        nodes=("node-b", "node-a"),
        edges=(
            ("node-a", "node-c"),
            ("node-a", "node-b"),
            ("node-a", "node-c"),
            ("node-b", "node-d"),
            ("node-c", "node-d"),
        ),
    )

    assert graph.nodes == ("node-b", "node-a", "node-c", "node-d")
    assert graph.edges == (
        ("node-b", "node-d"),
        ("node-a", "node-b"),
        ("node-a", "node-c"),
        ("node-c", "node-d"),
    )
    assert graph.topological_sort() == ("node-a", "node-b", "node-c", "node-d")


def test_every_cycle_is_reported_once() -> None:
    graph = TaskGraph(edges=(("A", "B"), ("B", "A"), ("C", "D"), ("D", "C"), ("D", "E")))

    with pytest.raises(CycleError) as error:
        graph.topological_sort()
    assert error.value.cycles == (("A", "B", "A"), ("C", "D", "C"))
    assert "A -> B -> A; C -> D -> C" in str(error.value)


def test_invalid_node_ids_are_rejected() -> None:
    graph = TaskGraph()
    with pytest.raises(ValueError, match="non-empty string"):
        graph.add_node("")
    with pytest.raises(ValueError, match="non-empty string"):
        graph.add_edge("a", "")


def test_seeded_random_dag_topological_sort_stress() -> None:
    rng = random.Random(20261019)
    nodes = [f"task-{index:04d}" for index in range(500)]
    edges = {
        (nodes[parent], nodes[child])
        for child in range(1, len(nodes))
        for parent in rng.sample(range(child), k=min(child, 3))
    }
    graph = TaskGraph(nodes=nodes, edges=sorted(edges))

    order = graph.topological_sort()
    position = {node: index for index, node in enumerate(order)}

    assert len(order) == len(nodes)
    assert all(position[parent] < position[child] for parent, child in edges)
    assert graph.detect_cycles() == ()
