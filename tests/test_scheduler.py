import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import compgraph  # noqa: E402
from compgraph import scheduler  # noqa: E402


def _diamond() -> compgraph.ComputationGraph:
    config = (
        compgraph.GraphConfig.builder()
        .add_inputs(inp=compgraph.InputType.feed_forward(4))
        .add_layer("a", compgraph.DenseLayer(3), "inp")
        .add_layer("b", compgraph.DenseLayer(2), "inp")
        .add_vertex("merge", compgraph.MergeVertex(), "a", "b")
        .add_layer("out", compgraph.OutputLayer(2, loss="mse", activation="identity"), "merge")
        .set_outputs("out")
        .build()
    )
    return compgraph.ComputationGraph(config)


def test_order_respects_every_edge():
    edges = [("x", "h1"), ("x", "h2"), ("h1", "h3"), ("h2", "h3"), ("h3", "y")]
    order = scheduler.topological_order(["y", "h3", "h2", "h1", "x"], edges)
    assert scheduler.is_valid_order(order, edges)
    assert order[0] == "x" and order[-1] == "y"


def test_ties_break_by_declaration_index():
    names = ["in", "c", "b", "a"]
    edges = [("in", "a"), ("in", "b"), ("in", "c")]
    assert scheduler.topological_order(names, edges) == ("in", "c", "b", "a")
    assert scheduler.topological_order(names, edges) == scheduler.topological_order(names, edges)


def test_cycle_raises_and_lists_unscheduled_nodes():
    edges = [("in", "a"), ("a", "b"), ("b", "a"), ("b", "out")]
    with pytest.raises(compgraph.CyclicGraphError) as info:
        scheduler.topological_order(["in", "a", "b", "out"], edges)
    assert set(info.value.unvisited) == {"a", "b", "out"}
    assert "a" in str(info.value)


def test_cyclic_declarations_rejected_by_builder():
    builder = (
        compgraph.GraphConfig.builder()
        .add_inputs(inp=compgraph.InputType.feed_forward(2))
        .add_vertex("m1", compgraph.MergeVertex(), "inp", "m2")
        .add_vertex("m2", compgraph.MergeVertex(), "m1")
        .set_outputs("m2")
    )
    with pytest.raises(compgraph.CyclicGraphError):
        builder.build()


def test_reverse_order_and_validity_helper():
    order = ("in", "a", "b", "out")
    assert scheduler.reverse_order(order) == ("out", "b", "a", "in")
    assert not scheduler.is_valid_order(("a", "in"), [("in", "a")])
    assert not scheduler.is_valid_order(("in",), [("in", "a")])


def test_diamond_scenario_order_and_merge_fan_in():
    graph = _diamond()
    order = graph.topological_order()
    pos = {name: i for i, name in enumerate(order)}
    assert pos["inp"] < pos["a"] < pos["merge"]
    assert pos["inp"] < pos["b"] < pos["merge"]
    assert pos["merge"] < pos["out"]
    assert len(graph.edges_into("merge")) == 2
    assert graph.node("merge").kind is compgraph.NodeKind.MERGE
    assert scheduler.order(graph.structure) == order


def test_dependency_graph_keeps_parallel_edges_and_rejects_unknown_nodes():
    graph = scheduler.dependency_graph(["x", "h"], [("x", "h"), ("x", "h")])
    assert graph.number_of_edges("x", "h") == 2
    assert graph.nodes["h"]["index"] == 1
    with pytest.raises(compgraph.UnknownNodeError, match="'z'"):
        scheduler.dependency_graph(["x", "h"], [("x", "z")])


def test_structure_ancestors_follow_edges_backward():
    structure = _diamond().structure
    assert structure.ancestors(["a"]) == {"inp", "a"}
    assert structure.ancestors(["out"]) == {"inp", "a", "b", "merge", "out"}
    with pytest.raises(compgraph.UnknownNodeError):
        structure.ancestors(["nope"])
