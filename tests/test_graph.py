import os
import sys
from collections import OrderedDict

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import compgraph  # noqa: E402

FF = compgraph.InputType.feed_forward


class RecordingIdentity(compgraph.Layer):
    """Pass-through layer that remembers every gradient it receives."""

    def __init__(self) -> None:
        super().__init__("identity")
        self.received = []

    def forward(self, inputs, mask):
        return self._single(inputs), mask

    def backward(self, grad):
        self.received.append(grad.clone())
        return [grad], OrderedDict()


class Exploding(compgraph.Layer):
    def __init__(self) -> None:
        super().__init__("identity")
        self.armed = False

    def forward(self, inputs, mask):
        if self.armed:
            raise RuntimeError("boom")
        return self._single(inputs), mask

    def backward(self, grad):
        return [grad], OrderedDict()


def _dense_chain() -> compgraph.ComputationGraph:
    config = (
        compgraph.GraphConfig.builder()
        .add_inputs(inp=FF(4))
        .add_layer("out", compgraph.DenseLayer(3, n_in=4), "inp")
        .set_outputs("out")
        .build()
    )
    return compgraph.ComputationGraph(config).init()


def test_dense_chain_with_sequential_parameters():
    graph = _dense_chain()
    assert graph.num_params() == 15
    graph.set_params(torch.arange(1.0, 16.0))

    out = graph.output({"inp": torch.ones(1, 4)})["out"]
    torch.testing.assert_close(out, torch.tensor([[35.0, 40.0, 45.0]]))

    table = graph.param_table()
    assert list(table) == ["out_W", "out_b"]
    torch.testing.assert_close(table["out_W"][0], torch.tensor([1.0, 2.0, 3.0]))
    torch.testing.assert_close(table["out_b"], torch.tensor([13.0, 14.0, 15.0]))


def test_flat_parameters_round_trip_and_alias_views():
    graph = _dense_chain()
    values = torch.randn(graph.num_params())
    graph.set_params(values)
    torch.testing.assert_close(graph.params(), values)

    weight, grad = graph.view_for("out", "W")
    weight.fill_(0.5)
    assert torch.all(graph.params()[:12] == 0.5)
    assert grad.shape == weight.shape


def test_wrong_length_is_rejected_without_mutation():
    graph = _dense_chain()
    before = graph.params().clone()
    with pytest.raises(compgraph.ParameterCountMismatchError) as info:
        graph.set_params(torch.zeros(14))
    assert info.value.expected == 15 and info.value.actual == 14
    assert torch.equal(graph.params(), before)


def test_seeded_init_is_reproducible():
    config = (
        compgraph.GraphConfig.builder()
        .add_inputs(inp=FF(6))
        .add_layer("h", compgraph.DenseLayer(5, activation="tanh"), "inp")
        .add_layer("out", compgraph.OutputLayer(2), "h")
        .set_outputs("out")
        .seed(42)
        .build()
    )
    first = compgraph.ComputationGraph(config).init()
    second = compgraph.ComputationGraph(config).init()
    assert torch.equal(first.params(), second.params())
    assert torch.all(first.view_for("h", "b")[0] == 0)


def test_fan_out_gradient_is_exact_sum():
    config = (
        compgraph.GraphConfig.builder()
        .add_inputs(inp=FF(3))
        .add_layer("src", RecordingIdentity(), "inp")
        .add_layer("left", compgraph.ActivationLayer("identity"), "src")
        .add_layer("right", compgraph.ActivationLayer("identity"), "src")
        .set_outputs("left", "right")
        .build()
    )
    graph = compgraph.ComputationGraph(config).init()
    graph.feed_forward({"inp": torch.randn(2, 3)}, train=True)
    g1 = torch.randn(2, 3)
    g2 = torch.randn(2, 3)
    input_grads = graph.backward({"left": g1, "right": g2})

    received = graph.node("src").op.received
    assert len(received) == 1
    assert torch.equal(received[0], g1 + g2)
    assert torch.equal(input_grads["inp"], g1 + g2)


def test_input_gradients_are_returned_by_name():
    graph = _dense_chain()
    graph.set_params(torch.arange(1.0, 16.0))
    graph.feed_forward({"inp": torch.ones(2, 4)}, train=True)
    eps = torch.tensor([[1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    grads = graph.backward({"out": eps})
    weight, weight_grad = graph.view_for("out", "W")
    torch.testing.assert_close(grads["inp"], eps @ weight.t())
    torch.testing.assert_close(weight_grad, torch.ones(2, 4).t() @ eps)
    torch.testing.assert_close(graph.view_for("out", "b")[1], eps.sum(dim=0))


def test_backward_requires_training_forward():
    graph = _dense_chain()
    with pytest.raises(compgraph.PassStateError):
        graph.backward({"out": torch.ones(1, 3)})
    graph.output({"inp": torch.ones(1, 4)})
    with pytest.raises(compgraph.PassStateError):
        graph.backward({"out": torch.ones(1, 3)})
    graph.feed_forward({"inp": torch.ones(1, 4)}, train=True)
    graph.backward({"out": torch.ones(1, 3)})
    assert graph.state is compgraph.PassState.BACKWARD_COMPLETE
    with pytest.raises(compgraph.PassStateError):
        graph.backward({"out": torch.ones(1, 3)})


def test_backward_validates_error_targets():
    config = (
        compgraph.GraphConfig.builder()
        .add_inputs(inp=FF(2))
        .add_layer("h", compgraph.DenseLayer(2), "inp")
        .add_layer("out", compgraph.DenseLayer(2), "h")
        .set_outputs("out")
        .build()
    )
    graph = compgraph.ComputationGraph(config).init()
    graph.feed_forward({"inp": torch.ones(1, 2)}, train=True)
    with pytest.raises(compgraph.UnknownNodeError):
        graph.backward({"missing": torch.ones(1, 2)})
    with pytest.raises(ValueError, match="not a designated output"):
        graph.backward({"h": torch.ones(1, 2)})
    with pytest.raises(ValueError, match="shape"):
        graph.backward({"out": torch.ones(3, 2)})


def test_failed_pass_resets_transient_state():
    config = (
        compgraph.GraphConfig.builder()
        .add_inputs(inp=FF(3))
        .add_layer("d", compgraph.DenseLayer(3), "inp")
        .add_layer("boom", Exploding(), "d")
        .set_outputs("boom")
        .build()
    )
    graph = compgraph.ComputationGraph(config).init()
    graph.feed_forward({"inp": torch.ones(2, 3)}, train=True)
    graph.node("boom").op.armed = True

    with pytest.raises(RuntimeError, match="boom"):
        graph.feed_forward({"inp": torch.ones(2, 3)}, train=True)
    assert graph.state is compgraph.PassState.IDLE
    assert graph.node("d").op._x is None
    with pytest.raises(compgraph.PassStateError):
        graph.backward({"boom": torch.ones(2, 3)})

    graph.node("boom").op.armed = False
    out = graph.output({"inp": torch.ones(2, 3)})["boom"]
    assert out.shape == (2, 3)


def test_unknown_inputs_and_missing_inputs():
    graph = _dense_chain()
    with pytest.raises(compgraph.UnknownNodeError):
        graph.output({"inp": torch.ones(1, 4), "other": torch.ones(1, 4)})
    with pytest.raises(ValueError):
        graph.output([])


def test_retain_all_and_positional_inputs():
    config = (
        compgraph.GraphConfig.builder()
        .add_inputs(a=FF(2), b=FF(3))
        .add_layer("h", compgraph.DenseLayer(4, activation="relu"), "a", "b")
        .add_layer("out", compgraph.OutputLayer(2), "h")
        .set_outputs("out")
        .seed(0)
        .build()
    )
    graph = compgraph.ComputationGraph(config).init()
    assert graph.node("h").op.n_in == 5
    acts = graph.feed_forward([torch.randn(4, 2), torch.randn(4, 3)], retain_all=True)
    assert set(acts) == {"a", "b", "h", "out"}
    torch.testing.assert_close(acts["out"].sum(dim=1), torch.ones(4))


def test_inputs_are_cast_to_graph_dtype():
    config = (
        compgraph.GraphConfig.builder()
        .add_inputs(inp=FF(2))
        .add_layer("out", compgraph.DenseLayer(2), "inp")
        .set_outputs("out")
        .dtype(torch.float64)
        .build()
    )
    graph = compgraph.ComputationGraph(config).init()
    assert graph.params().dtype == torch.float64
    out = graph.output_single(torch.ones(3, 2, dtype=torch.float32))
    assert out.dtype == torch.float64


def test_output_without_loss_cannot_be_scored():
    graph = _dense_chain()
    with pytest.raises(compgraph.ConfigurationError, match="no loss"):
        graph.compute_gradient_and_score({"inp": torch.ones(1, 4)}, {"out": torch.ones(1, 3)})


class BrokenBackward(compgraph.Layer):
    def __init__(self) -> None:
        super().__init__("identity")

    def forward(self, inputs, mask):
        return self._single(inputs), mask

    def backward(self, grad):
        raise RuntimeError("backward failed")


def test_failed_backward_leaves_no_partial_gradients():
    config = (
        compgraph.GraphConfig.builder()
        .add_inputs(inp=FF(3))
        .add_layer("d", compgraph.DenseLayer(3), "inp")
        .add_layer("broken", BrokenBackward(), "d")
        .add_layer("out", compgraph.DenseLayer(2), "broken")
        .set_outputs("out")
        .seed(1)
        .build()
    )
    graph = compgraph.ComputationGraph(config).init()
    graph.feed_forward({"inp": torch.randn(4, 3)}, train=True)
    with pytest.raises(RuntimeError, match="backward failed"):
        graph.backward({"out": torch.ones(4, 2)})

    assert graph.state is compgraph.PassState.IDLE
    assert float(graph.gradient().abs().sum()) == 0.0


def test_input_width_is_checked_against_declared_type():
    graph = _dense_chain()
    with pytest.raises(ValueError, match="'inp'"):
        graph.output({"inp": torch.zeros(2, 5)})
    with pytest.raises(ValueError, match="rank-2"):
        graph.output({"inp": torch.zeros(2, 1, 4)})
    assert graph.state is compgraph.PassState.IDLE
    assert graph.output({"inp": torch.zeros(2, 4)})["out"].shape == (2, 3)


def test_convolutional_input_geometry_is_checked():
    config = (
        compgraph.GraphConfig.builder()
        .add_inputs(img=compgraph.InputType.convolutional(5, 5, 2))
        .add_layer("conv", compgraph.ConvolutionLayer(3, kernel_size=(3, 3)), "img")
        .set_outputs("conv")
        .build()
    )
    graph = compgraph.ComputationGraph(config).init()
    assert graph.output({"img": torch.zeros(1, 2, 5, 5)})["conv"].shape == (1, 3, 3, 3)
    with pytest.raises(ValueError, match="'img'"):
        graph.output({"img": torch.zeros(1, 5, 5, 2)})


def test_inputs_must_share_batch_size():
    config = (
        compgraph.GraphConfig.builder()
        .add_inputs(a=FF(2), b=FF(3))
        .add_layer("out", compgraph.DenseLayer(2), "a", "b")
        .set_outputs("out")
        .build()
    )
    graph = compgraph.ComputationGraph(config).init()
    with pytest.raises(ValueError, match="batch size"):
        graph.output({"a": torch.zeros(4, 2), "b": torch.zeros(3, 3)})


def test_parameter_lookup_errors_name_the_problem():
    graph = _dense_chain()
    with pytest.raises(compgraph.UnknownNodeError):
        graph.view_for("missing", "W")
    with pytest.raises(compgraph.UnknownParameterError, match="no learnable parameters"):
        graph.view_for("inp", "W")
    with pytest.raises(compgraph.UnknownParameterError, match="known: \\['W', 'b'\\]"):
        graph.view_for("out", "RW")


def test_score_examples_sum_to_minibatch_score():
    config = (
        compgraph.GraphConfig.builder()
        .add_inputs(inp=FF(3))
        .add_layer("h", compgraph.DenseLayer(4, activation="tanh"), "inp")
        .add_layer("out", compgraph.OutputLayer(2, activation="identity", loss="mse"), "h")
        .set_outputs("out")
        .dtype(torch.float64)
        .seed(3)
        .build()
    )
    graph = compgraph.ComputationGraph(config).init()
    gen = torch.Generator().manual_seed(4)
    x = torch.randn(5, 3, generator=gen, dtype=torch.float64)
    y = torch.randn(5, 2, generator=gen, dtype=torch.float64)

    per_example = graph.score_examples({"inp": x}, {"out": y})
    assert per_example.shape == (5,)
    torch.testing.assert_close(float(per_example.sum()) / 5, graph.score({"inp": x}, {"out": y}))
    torch.testing.assert_close(float(per_example[2]), graph.score({"inp": x[2:3]}, {"out": y[2:3]}))
