import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import compgraph  # noqa: E402
from compgraph import adapters  # noqa: E402
from compgraph.config import EdgeDecl, GraphConfig, NodeDecl  # noqa: E402

FF = compgraph.InputType.feed_forward


def _config(nodes, edges, outputs):
    return GraphConfig(nodes=list(nodes), edges=list(edges), outputs=list(outputs))


def test_duplicate_names_rejected():
    with pytest.raises(compgraph.ConfigurationError, match="Duplicate"):
        (
            GraphConfig.builder()
            .add_inputs(x=FF(2))
            .add_layer("x", compgraph.DenseLayer(2), "x")
            .set_outputs("x")
            .build()
        )


def test_edge_to_undeclared_node_rejected():
    config = _config(
        [NodeDecl("x", FF(2)), NodeDecl("d", compgraph.DenseLayer(2))],
        [EdgeDecl("x", "d"), EdgeDecl("ghost", "d", 1)],
        ["d"],
    )
    with pytest.raises(compgraph.ConfigurationError, match="ghost"):
        config.build_structure()


def test_outputs_must_be_declared_and_non_empty():
    nodes = [NodeDecl("x", FF(2)), NodeDecl("d", compgraph.DenseLayer(2))]
    edges = [EdgeDecl("x", "d")]
    with pytest.raises(compgraph.ConfigurationError):
        _config(nodes, edges, []).build_structure()
    with pytest.raises(compgraph.ConfigurationError, match="nope"):
        _config(nodes, edges, ["nope"]).build_structure()


def test_input_count_rules():
    nodes = [NodeDecl("x", FF(2)), NodeDecl("d", compgraph.DenseLayer(2))]
    with pytest.raises(compgraph.ConfigurationError, match="no inputs"):
        _config(nodes, [], ["d"]).build_structure()
    with pytest.raises(compgraph.ConfigurationError, match="cannot declare inputs"):
        _config(nodes, [EdgeDecl("x", "d"), EdgeDecl("d", "x")], ["d"]).build_structure()


def test_slot_gaps_rejected():
    nodes = [NodeDecl("x", FF(2)), NodeDecl("y", FF(2)), NodeDecl("m", compgraph.MergeVertex())]
    edges = [EdgeDecl("x", "m", 0), EdgeDecl("y", "m", 2)]
    with pytest.raises(compgraph.ConfigurationError, match="slots"):
        _config(nodes, edges, ["m"]).build_structure()


def test_subset_accepts_a_single_input():
    with pytest.raises(compgraph.ConfigurationError, match="SubsetVertex"):
        (
            GraphConfig.builder()
            .add_inputs(x=FF(4), y=FF(4))
            .add_vertex("s", compgraph.SubsetVertex(0, 1), "x", "y")
            .set_outputs("s")
            .build()
        )


def test_auto_sizes_are_inferred_and_declared_sizes_checked():
    graph = (
        GraphConfig.builder()
        .add_inputs(x=FF(5))
        .add_layer("d", compgraph.DenseLayer(3), "x")
        .set_outputs("d")
        .build()
        .to_graph()
    )
    assert graph.node("d").op.n_in == 5
    assert graph.num_params() == 5 * 3 + 3

    with pytest.raises(compgraph.IncompatibleShapeError, match="'d'"):
        (
            GraphConfig.builder()
            .add_inputs(x=FF(5))
            .add_layer("d", compgraph.DenseLayer(3, n_in=4), "x")
            .set_outputs("d")
            .build()
        )


def test_prototypes_are_copied_per_build():
    layer = compgraph.DenseLayer(3)
    config = (
        GraphConfig.builder()
        .add_inputs(x=FF(5))
        .add_layer("d", layer, "x")
        .set_outputs("d")
        .build()
    )
    first = config.build_structure()
    second = config.build_structure()
    assert layer.n_in is compgraph.Auto
    assert first.nodes["d"].op is not second.nodes["d"].op


def test_recurrent_to_dense_gets_adapter():
    graph = (
        GraphConfig.builder()
        .add_inputs(seq=compgraph.InputType.recurrent(3))
        .add_layer("rnn", compgraph.SimpleRnn(4), "seq")
        .add_layer("dense", compgraph.DenseLayer(2), "rnn")
        .set_outputs("dense")
        .build()
        .to_graph()
    )
    (edge,) = graph.edges_into("dense")
    assert isinstance(edge.adapter, adapters.RnnToFeedForward)
    assert edge.input_type == FF(4)
    (first,) = graph.edges_into("rnn")
    assert first.adapter is None


def test_dense_to_recurrent_gets_adapter():
    graph = (
        GraphConfig.builder()
        .add_inputs(x=FF(3))
        .add_layer("d", compgraph.DenseLayer(4), "x")
        .add_layer("rnn", compgraph.SimpleRnn(2), "d")
        .set_outputs("rnn")
        .build()
        .to_graph()
    )
    (edge,) = graph.edges_into("rnn")
    assert isinstance(edge.adapter, adapters.FeedForwardToRnn)
    assert graph.node("rnn").output_type.kind is compgraph.ShapeKind.RECURRENT


def test_convolution_needs_geometry_for_flat_input():
    with pytest.raises(compgraph.IncompatibleShapeError, match="'x' -> 'conv'"):
        (
            GraphConfig.builder()
            .add_inputs(x=FF(16))
            .add_layer("conv", compgraph.ConvolutionLayer(2, kernel_size=(2, 2)), "x")
            .set_outputs("conv")
            .build()
        )

    graph = (
        GraphConfig.builder()
        .add_inputs(x=compgraph.InputType.convolutional_flat(4, 4, 1))
        .add_layer("conv", compgraph.ConvolutionLayer(2, kernel_size=(2, 2)), "x")
        .add_layer("dense", compgraph.DenseLayer(3), "conv")
        .set_outputs("dense")
        .build()
        .to_graph()
    )
    assert isinstance(graph.edges_into("conv")[0].adapter, adapters.FeedForwardToCnn)
    assert isinstance(graph.edges_into("dense")[0].adapter, adapters.CnnToFeedForward)
    assert graph.node("dense").op.n_in == 2 * 3 * 3


def test_vertex_inputs_must_share_a_kind():
    with pytest.raises(compgraph.IncompatibleShapeError, match="share one shape kind"):
        (
            GraphConfig.builder()
            .add_inputs(x=FF(3), seq=compgraph.InputType.recurrent(3))
            .add_vertex("m", compgraph.MergeVertex(), "x", "seq")
            .set_outputs("m")
            .build()
        )


def test_adapter_forward_and_backward_restore_layout():
    adapter = adapters.RnnToFeedForward()
    x = torch.arange(24.0).reshape(2, 3, 4)
    mask = torch.tensor([[1.0, 1.0, 0.0], [1.0, 0.0, 0.0]])
    flat, flat_mask = adapter.forward(x, mask, batch_size=2)
    assert flat.shape == (6, 4)
    assert torch.equal(flat_mask, torch.tensor([1.0, 1.0, 0.0, 1.0, 0.0, 0.0]))
    assert adapter.backward(torch.ones(6, 4)).shape == (2, 3, 4)

    back = adapters.FeedForwardToRnn()
    seq, seq_mask = back.forward(flat, flat_mask, batch_size=2)
    assert torch.equal(seq, x)
    assert torch.equal(seq_mask, mask)


def test_summary_lists_nodes_and_adapters():
    graph = (
        GraphConfig.builder()
        .add_inputs(seq=compgraph.InputType.recurrent(3))
        .add_layer("rnn", compgraph.SimpleRnn(4), "seq")
        .add_layer("dense", compgraph.DenseLayer(2), "rnn")
        .set_outputs("dense")
        .build()
        .to_graph()
    )
    text = graph.summary()
    assert "rnn[RnnToFeedForward]" in text
    assert f"Total parameters: {graph.num_params()}" in text
