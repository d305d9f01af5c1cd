import os
import sys

import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import compgraph  # noqa: E402


def _build_branching_graph() -> compgraph.ComputationGraph:
    config = (
        compgraph.GraphConfig.builder()
        .add_inputs(x=compgraph.InputType.feed_forward(4))
        .add_layer("left", compgraph.DenseLayer(3, activation="tanh"), "x")
        .add_layer("right", compgraph.DenseLayer(3, activation="relu"), "x")
        .add_vertex("sum", compgraph.ElementWiseVertex("add"), "left", "right")
        .add_layer("head", compgraph.OutputLayer(2, activation="softmax", loss="mcxent"), "sum")
        .set_outputs("head")
        .seed(5)
        .build()
    )
    return compgraph.ComputationGraph(config).init()


def test_record_trace_follows_forward_and_reverse_order():
    graph = _build_branching_graph()
    x = torch.randn(3, 4)
    y = torch.nn.functional.one_hot(torch.tensor([0, 1, 1]), 2).float()

    with compgraph.record(graph) as trace:
        graph.compute_gradient_and_score({"x": x}, {"head": y})
        graph.output({"x": x})

    summary = trace.summary()
    assert summary["forward_passes"] == 2
    assert summary["backward_passes"] == 1
    assert summary["events"] == len(trace.events)
    assert summary["nodes"]["head"] == 3

    assert trace.order("forward", pass_index=0) == graph.order
    assert trace.order("backward") == tuple(reversed(graph.order))
    assert trace.order("forward", pass_index=2) == graph.order

    head_event = next(e for e in trace.events if e.node == "head" and e.phase == "forward")
    assert head_event.shape == (3, 2)
    assert head_event.dtype == "torch.float32"
    assert head_event.device == "cpu"


def test_trace_stops_listening_after_block():
    graph = _build_branching_graph()
    with compgraph.record(graph) as trace:
        graph.output({"x": torch.randn(1, 4)})
    count = len(trace.events)
    graph.output({"x": torch.randn(1, 4)})
    assert len(trace.events) == count
