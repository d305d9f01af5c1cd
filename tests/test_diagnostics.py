import os
import sys

import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import compgraph  # noqa: E402
from compgraph.diagnostics import GradientWatcher, gradient_summary  # noqa: E402


def _graph() -> compgraph.ComputationGraph:
    config = (
        compgraph.GraphConfig.builder()
        .add_inputs(x=compgraph.InputType.feed_forward(5))
        .add_layer("enc", compgraph.DenseLayer(4, activation="tanh"), "x")
        .add_vertex("drop", compgraph.SubsetVertex(0, 2), "enc")
        .add_layer("head", compgraph.OutputLayer(2, activation="identity", loss="mse"), "drop")
        .set_outputs("head")
        .seed(3)
        .build()
    )
    return compgraph.ComputationGraph(config).init()


def _step(graph: compgraph.ComputationGraph) -> float:
    gen = torch.Generator().manual_seed(1)
    return graph.compute_gradient_and_score(
        {"x": torch.randn(6, 5, generator=gen)},
        {"head": torch.randn(6, 2, generator=gen)},
    )


def test_gradient_summary_reports_learnable_nodes():
    graph = _graph()
    graph.set_frozen("enc")
    _step(graph)
    summary = gradient_summary(graph)

    names = [rec.name for rec in summary.nodes]
    assert sorted(names) == ["enc", "head"]
    assert names[0] == "head"
    enc = next(rec for rec in summary.nodes if rec.name == "enc")
    assert enc.l2 == 0.0 and enc.zero_frac == 1.0
    assert summary.frozen == ["enc"]

    text = summary.to_text(top_k=1)
    assert "head" in text and "Frozen nodes: enc" in text
    assert "|l2|=" in text


def test_watcher_accumulates_between_pops():
    graph = _graph()
    watcher = GradientWatcher(graph)
    assert watcher.pop_summary() is None

    _step(graph)
    _step(graph)
    summary = watcher.pop_summary(top_k=1)
    assert summary is not None
    assert len(summary.nodes) == 1
    assert summary.nodes[0].l2 > 0
    assert watcher.pop_summary() is None

    watcher.close()
    _step(graph)
    assert watcher.pop_summary() is None
