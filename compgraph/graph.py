# compgraph/graph.py

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import torch

from . import params as param_ops
from .builder import Edge, GraphStructure, Node
from .config import GraphConfig
from .errors import ConfigurationError, ParameterCountMismatchError, UnknownNodeError
from .executor import Executor, PassState
from .layers import OutputLayer, SimpleRnn
from .types import ShapeKind

__all__ = ["ComputationGraph", "Node", "Edge"]

_logger = logging.getLogger(__name__)

TensorOrMap = Union[torch.Tensor, Sequence[torch.Tensor], Mapping[str, torch.Tensor]]
MaskMap = Optional[Mapping[str, Optional[torch.Tensor]]]
Listener = Callable[[Dict[str, Any]], None]


class ComputationGraph:
    """
    Arbitrarily connected network of named layers and vertices.

    Responsibilities:
      - Build and validate the structure described by a GraphConfig.
      - Own the flat parameter/gradient buffers and hand views to every node.
      - Run forward passes, score outputs and propagate gradients backward.
      - Track frozen nodes and expose the trainable views to torch.optim.

    Usage:
        graph = ComputationGraph(config)
        graph.init()
        score = graph.compute_gradient_and_score({"x": x}, {"out": y})
        optimizer = torch.optim.SGD(graph.trainable_parameters(), lr=0.1)
        optimizer.step()
    """

    def __init__(self, config: GraphConfig) -> None:
        self.config = config
        self.structure: GraphStructure = config.build_structure()
        self.dtype = config.dtype
        self.device = torch.device(config.device)
        self._views: Optional[param_ops.ParameterViews] = None
        self._executor: Optional[Executor] = None
        self._listeners: List[Listener] = []

    def __repr__(self) -> str:
        return (
            f"ComputationGraph(nodes={len(self.structure.nodes)}, outputs={list(self.outputs)}, "
            f"params={self.num_params()})"
        )

    # --- Initialisation ---------------------------------------------------------

    def init(self, params: Optional[torch.Tensor] = None, clone_params: bool = True) -> "ComputationGraph":
        """
        Allocate the flat buffers and fill them.

        Args:
          params: Optional flat parameter vector. When omitted, weights are drawn
            from a generator seeded with ``config.seed`` (fresh entropy if None).
          clone_params: When False and ``params`` has the right dtype/device and is
            contiguous, the graph adopts ``params`` as its arena instead of copying.
        """
        if params is not None:
            flat = params.reshape(-1)
            expected = sum(node.num_params() for node in self.structure.nodes.values())
            if flat.numel() != expected:
                raise ParameterCountMismatchError(expected, flat.numel())
            adopt = (
                not clone_params
                and flat.dtype == self.dtype
                and flat.device == self.device
                and flat.is_contiguous()
            )
            if adopt:
                views = param_ops.ParameterViews(param_ops.layout(self.structure), flat, torch.zeros_like(flat))
                param_ops.bind_views(self.structure, views)
            else:
                views = param_ops.allocate(self.structure, self.dtype, self.device)
                views.set_flat_parameters(flat)
        else:
            views = param_ops.allocate(self.structure, self.dtype, self.device)
            generator = torch.Generator()
            if self.config.seed is not None:
                generator.manual_seed(int(self.config.seed))
            else:
                generator.seed()
            for name in self.structure.order:
                op = self.structure.nodes[name].op
                if op is not None and op.is_learnable():
                    op.init_params(generator)
        self._attach(views)
        return self

    def _attach(self, views: param_ops.ParameterViews) -> None:
        self._views = views
        self._executor = Executor(self.structure, views, emit=self._emit)

    @property
    def initialized(self) -> bool:
        return self._views is not None

    def _require_views(self) -> param_ops.ParameterViews:
        if self._views is None:
            raise RuntimeError("Graph has not been initialised; call init() first.")
        return self._views

    def _require_executor(self) -> Executor:
        if self._executor is None:
            raise RuntimeError("Graph has not been initialised; call init() first.")
        return self._executor

    # --- Structure --------------------------------------------------------------

    @property
    def order(self) -> Tuple[str, ...]:
        return self.structure.order

    def topological_order(self) -> Tuple[str, ...]:
        return self.structure.order

    @property
    def outputs(self) -> Tuple[str, ...]:
        return self.structure.outputs

    @property
    def input_names(self) -> Tuple[str, ...]:
        return self.structure.input_names

    @property
    def nodes(self) -> Dict[str, Node]:
        return dict(self.structure.nodes)

    def node(self, name: str) -> Node:
        return self.structure.node(name)

    def edges_into(self, name: str) -> Tuple[Edge, ...]:
        """Resolved input edges of ``name`` in slot order, with any synthesized adapters."""
        return tuple(self.structure.node(name).inputs)

    def edges_from(self, name: str) -> Tuple[Edge, ...]:
        return tuple(self.structure.node(name).outputs)

    @property
    def state(self) -> PassState:
        return self._executor.state if self._executor is not None else PassState.IDLE

    # --- Flat buffers -------------------------------------------------------------

    def num_params(self) -> int:
        if self._views is not None:
            return self._views.num_params()
        return sum(node.num_params() for node in self.structure.nodes.values())

    def params(self) -> torch.Tensor:
        return self._require_views().flat_parameters()

    def set_params(self, values: torch.Tensor) -> None:
        self._require_views().set_flat_parameters(values)

    def gradient(self) -> torch.Tensor:
        return self._require_views().flat_gradients()

    get_flat_parameters = params
    set_flat_parameters = set_params
    get_flat_gradients = gradient

    def param_table(self) -> Dict[str, torch.Tensor]:
        return self._require_views().param_table()

    def view_for(self, node: str, param: str) -> Tuple[torch.Tensor, torch.Tensor]:
        self.structure.node(node)
        return self._require_views().view_for(node, param)

    # --- Frozen nodes -------------------------------------------------------------

    def set_frozen(self, name: str, frozen: bool = True) -> None:
        self.structure.node(name).frozen = bool(frozen)

    def is_frozen(self, name: str) -> bool:
        return self.structure.node(name).frozen

    @property
    def frozen_nodes(self) -> Tuple[str, ...]:
        return tuple(name for name in self.structure.order if self.structure.nodes[name].frozen)

    def trainable_parameters(self) -> List[torch.Tensor]:
        """
        Parameter views of non-frozen nodes with their gradient views attached as ``.grad``.

        The gradient views are zeroed by every backward pass. Do not call
        ``optimizer.zero_grad()``: its default replaces ``.grad`` with None and
        detaches the optimizer from the gradient buffer.
        """
        self.bind_gradients()
        views = self._require_views()
        result: List[torch.Tensor] = []
        for name in self.structure.order:
            if not self.structure.nodes[name].frozen:
                result.extend(views.node_parameters(name).values())
        return result

    def bind_gradients(self) -> None:
        """
        Point every parameter view's ``.grad`` at its gradient view, or at None
        for frozen nodes.

        torch.optim skips parameters whose ``.grad`` is None, so a node frozen
        after the optimizer was built receives no momentum, weight decay or
        Adam update while it stays frozen.
        """
        views = self._require_views()
        for name in self.structure.order:
            frozen = self.structure.nodes[name].frozen
            for param, view in views.node_parameters(name).items():
                view.grad = None if frozen else views.view_for(name, param)[1]

    # --- Forward ----------------------------------------------------------------

    def feed_forward(
        self,
        inputs: TensorOrMap,
        masks: MaskMap = None,
        *,
        train: bool = False,
        retain_all: bool = False,
    ) -> Dict[str, torch.Tensor]:
        """
        Run a forward pass.

        Returns the designated outputs by name, or every node's activation when
        ``retain_all`` is set. ``train=True`` keeps node caches for ``backward``.
        """
        executor = self._require_executor()
        activations = executor.forward(self._input_map(inputs), self._mask_map(masks), train=train)
        if retain_all:
            return activations
        return {name: activations[name] for name in self.outputs}

    def output(self, inputs: TensorOrMap, masks: MaskMap = None) -> Dict[str, torch.Tensor]:
        """Inference forward pass returning the designated outputs by name."""
        return self.feed_forward(inputs, masks, train=False)

    def output_single(self, inputs: TensorOrMap, masks: MaskMap = None) -> torch.Tensor:
        if len(self.outputs) != 1:
            raise ValueError(f"output_single() requires exactly one output, graph has {list(self.outputs)}")
        return self.output(inputs, masks)[self.outputs[0]]

    def output_masks(self) -> Dict[str, Optional[torch.Tensor]]:
        """Masks attached to the designated outputs by the last training forward pass."""
        masks = self._require_executor().masks
        return {name: masks.get(name) for name in self.outputs}

    # --- Backward and scoring -----------------------------------------------------

    def backward(self, epsilons: Mapping[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
        """
        Backpropagate externally supplied errors for output nodes.

        Must follow ``feed_forward(..., train=True)``. Returns the gradients
        reaching input nodes, keyed by input name.
        """
        executor = self._require_executor()
        activations = executor.activations
        seeded: Dict[str, torch.Tensor] = {}
        for name, eps in epsilons.items():
            self.structure.node(name)
            if name not in self.outputs:
                raise ValueError(f"Node {name!r} is not a designated output; outputs are {list(self.outputs)}")
            eps = eps.to(dtype=self.dtype, device=self.device)
            if name in activations and tuple(eps.shape) != tuple(activations[name].shape):
                raise ValueError(
                    f"Error for {name!r} has shape {tuple(eps.shape)}, activation is {tuple(activations[name].shape)}"
                )
            seeded[name] = eps
        return executor.backward(seeded)

    def compute_gradient_and_score(
        self,
        inputs: TensorOrMap,
        labels: TensorOrMap,
        masks: MaskMap = None,
        label_masks: MaskMap = None,
    ) -> float:
        """
        Forward, score every output layer against its labels and backpropagate.

        Label masks default to the masks the forward pass attached to each output.
        Returns the summed score of all outputs.
        """
        self.feed_forward(inputs, masks, train=True)
        executor = self._require_executor()
        epsilons: Dict[str, torch.Tensor] = {}
        total = 0.0
        for name, output, loss_fn, label, mask in self._scored_outputs(executor, labels, label_masks):
            total += float(loss_fn.score(label, output, mask).item())
            epsilons[name] = loss_fn.gradient(label, output, mask)
        self.backward(epsilons)
        return total

    def score(
        self,
        inputs: TensorOrMap,
        labels: TensorOrMap,
        masks: MaskMap = None,
        label_masks: MaskMap = None,
    ) -> float:
        """Summed output score without touching gradients."""
        self.feed_forward(inputs, masks, train=False)
        executor = self._require_executor()
        total = 0.0
        for _, output, loss_fn, label, mask in self._scored_outputs(executor, labels, label_masks):
            total += float(loss_fn.score(label, output, mask).item())
        return total

    def score_examples(
        self,
        inputs: TensorOrMap,
        labels: TensorOrMap,
        masks: MaskMap = None,
        label_masks: MaskMap = None,
    ) -> torch.Tensor:
        """
        Loss of each example, summed over all outputs, as a ``[N]`` tensor.

        Unlike :meth:`score` the values are not divided by the minibatch size, so
        ``score_examples(...).sum() / N`` equals ``score(...)``.
        """
        self.feed_forward(inputs, masks, train=False)
        executor = self._require_executor()
        total: Optional[torch.Tensor] = None
        for _, output, loss_fn, label, mask in self._scored_outputs(executor, labels, label_masks):
            per_example = loss_fn.score_examples(label, output, mask)
            total = per_example if total is None else total + per_example
        if total is None:
            raise ConfigurationError("Graph has no scored outputs")
        return total

    def _scored_outputs(self, executor: Executor, labels: TensorOrMap, label_masks: MaskMap):
        label_map = self._named(labels, self.outputs, "labels")
        label_mask_map = dict(label_masks or {})
        activations = executor.activations
        forward_masks = executor.masks
        for name in self.outputs:
            op = self.structure.nodes[name].op
            if not isinstance(op, OutputLayer):
                raise ConfigurationError(
                    f"Output {name!r} has no loss function; use backward() with explicit errors"
                )
            if name not in label_map:
                raise ValueError(f"Missing labels for output {name!r}")
            label = label_map[name].to(dtype=self.dtype, device=self.device)
            mask = label_mask_map.get(name, forward_masks.get(name))
            if mask is not None:
                mask = mask.to(dtype=self.dtype, device=self.device)
            yield name, activations[name], op.loss, label, mask

    # --- Stateful recurrent inference ------------------------------------------------

    def _recurrent_layers(self) -> List[SimpleRnn]:
        return [node.op for node in self.structure.nodes.values() if isinstance(node.op, SimpleRnn)]

    def rnn_time_step(self, inputs: TensorOrMap, masks: MaskMap = None) -> Dict[str, torch.Tensor]:
        """
        Inference over the next step(s) of a sequence, carrying hidden state across calls.

        Recurrent inputs may be ``[B, D]`` for a single step or ``[B, T, D]`` for a
        chunk. Each recurrent layer starts from the last hidden state of the
        previous call (zeros after :meth:`rnn_clear_previous_state`). When every
        recurrent input is a single step, recurrent outputs come back as ``[B, D]``.
        """
        named = self._input_map(inputs)
        mask_map = self._mask_map(masks)
        single_step = False
        for name, value in named.items():
            input_type = self.structure.node(name).output_type
            if input_type is not None and input_type.kind is ShapeKind.RECURRENT and value.dim() == 2:
                named[name] = value.unsqueeze(1)
                single_step = True
                mask = mask_map.get(name)
                if mask is not None and mask.dim() == 1:
                    mask_map[name] = mask.unsqueeze(1)

        layers = self._recurrent_layers()
        for layer in layers:
            layer.stateful = True
        try:
            outputs = self._require_executor().forward(named, mask_map, train=False)
        finally:
            for layer in layers:
                layer.stateful = False

        result = {name: outputs[name] for name in self.outputs}
        if single_step:
            for name, value in result.items():
                if value.dim() == 3 and value.shape[1] == 1:
                    result[name] = value.squeeze(1)
        return result

    def rnn_clear_previous_state(self) -> None:
        """Forget the hidden state stored by :meth:`rnn_time_step`."""
        for layer in self._recurrent_layers():
            layer.clear_state()

    def rnn_previous_state(self, name: str) -> Optional[torch.Tensor]:
        """Hidden state stored for recurrent layer ``name``, or None."""
        op = self.structure.node(name).op
        if not isinstance(op, SimpleRnn):
            raise ValueError(f"Node {name!r} is not a recurrent layer")
        return op.previous_state

    # --- Input normalisation ------------------------------------------------------

    def _named(self, values: TensorOrMap, names: Sequence[str], what: str) -> Dict[str, torch.Tensor]:
        if isinstance(values, Mapping):
            for name in values:
                if name not in self.structure.nodes:
                    raise UnknownNodeError(name, what)
            return dict(values)
        if isinstance(values, torch.Tensor):
            values = [values]
        values = list(values)
        if len(values) != len(names):
            raise ValueError(f"Expected {len(names)} {what} for {list(names)}, got {len(values)}")
        return dict(zip(names, values))

    def _input_map(self, inputs: TensorOrMap) -> Dict[str, torch.Tensor]:
        named = self._named(inputs, self.input_names, "inputs")
        return {name: value.to(dtype=self.dtype, device=self.device) for name, value in named.items()}

    def _mask_map(self, masks: MaskMap) -> Dict[str, Optional[torch.Tensor]]:
        if not masks:
            return {}
        return {
            name: (mask.to(dtype=self.dtype, device=self.device) if mask is not None else None)
            for name, mask in masks.items()
        }

    # --- Copies and reporting -----------------------------------------------------

    def clone(self) -> "ComputationGraph":
        """Independent copy: same configuration, copied parameters and frozen flags."""
        other = ComputationGraph(copy.deepcopy(self.config))
        if self._views is not None:
            other.init(params=self.params().detach().clone())
        for name in self.frozen_nodes:
            other.set_frozen(name, True)
        return other

    def summary(self) -> str:
        """Text table: one row per node in evaluation order."""
        header = f"{'name':<16} {'kind':<15} {'inputs':<24} {'output':<40} {'params':>8}  frozen"
        lines = [header, "-" * len(header)]
        for name in self.structure.order:
            node = self.structure.nodes[name]
            inputs = ", ".join(
                edge.producer + (f"[{type(edge.adapter).__name__}]" if edge.adapter is not None else "")
                for edge in node.inputs
            )
            lines.append(
                f"{name:<16} {node.kind.value:<15} {inputs or '-':<24} {str(node.output_type):<40} "
                f"{node.num_params():>8}  {'yes' if node.frozen else 'no'}"
            )
        lines.append("-" * len(header))
        lines.append(f"Total parameters: {self.num_params()}  (trainable: {self._trainable_count()})")
        return "\n".join(lines)

    def _trainable_count(self) -> int:
        return sum(node.num_params() for node in self.structure.nodes.values() if not node.frozen)

    # --- Events -------------------------------------------------------------------

    def register_event_listener(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unregister_event_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            listener(payload)
