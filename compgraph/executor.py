# compgraph/executor.py

from __future__ import annotations

import enum
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import torch

from . import masks as mask_ops
from .builder import GraphStructure, Node
from .errors import PassStateError, UnknownNodeError
from .params import ParameterViews
from .scheduler import reverse_order
from .types import InputType, NodeKind, ShapeKind

_logger = logging.getLogger(__name__)

Mask = Optional[torch.Tensor]
EventSink = Callable[[Dict[str, Any]], None]


class PassState(enum.Enum):
    IDLE = "idle"
    FORWARD = "forward"
    FORWARD_COMPLETE = "forward_complete"
    BACKWARD = "backward"
    BACKWARD_COMPLETE = "backward_complete"


class Executor:
    """
    Drives forward activations and backward gradients through a built structure.

    Responsibilities:
      - Walk the evaluation order, routing activations and masks through edge adapters.
      - Concatenate fan-in for layers and split the gradient back on the way down.
      - Sum gradients from fan-out exactly and accumulate parameter gradients into
        the gradient views of non-frozen nodes.
      - Reset every piece of transient state when a pass fails.

    One pass at a time; an executor is not safe to share across threads.
    """

    def __init__(
        self,
        structure: GraphStructure,
        views: ParameterViews,
        emit: Optional[EventSink] = None,
    ) -> None:
        self.structure = structure
        self.views = views
        self._emit = emit
        self.state = PassState.IDLE
        self._activations: Dict[str, torch.Tensor] = {}
        self._masks: Dict[str, Mask] = {}
        self._splits: Dict[str, Tuple[int, List[int]]] = {}
        self._batch_size: Optional[int] = None

    # --- Introspection --------------------------------------------------------

    @property
    def activations(self) -> Dict[str, torch.Tensor]:
        return dict(self._activations)

    @property
    def masks(self) -> Dict[str, Mask]:
        return dict(self._masks)

    @property
    def batch_size(self) -> Optional[int]:
        return self._batch_size

    # --- Forward --------------------------------------------------------------

    @torch.no_grad()
    def forward(
        self,
        inputs: Mapping[str, torch.Tensor],
        masks: Optional[Mapping[str, Mask]] = None,
        *,
        train: bool = False,
    ) -> Dict[str, torch.Tensor]:
        """
        Run every node in evaluation order and return all activations by name.

        With ``train=True`` node caches are kept and the executor waits in
        FORWARD_COMPLETE for a backward pass. Otherwise caches are dropped and the
        executor returns to IDLE.
        """
        if self.state in (PassState.FORWARD, PassState.BACKWARD):
            raise PassStateError(f"Cannot start a forward pass while in state {self.state.value}")
        input_names = self.structure.input_names
        for name in inputs:
            if name not in input_names:
                raise UnknownNodeError(name, "not an input node")
        missing = [name for name in input_names if name not in inputs]
        if missing:
            raise ValueError(f"Missing values for input node(s): {', '.join(missing)}")
        masks = masks or {}
        for name in masks:
            if name not in input_names:
                raise UnknownNodeError(name, "masks are supplied per input node")
        for name in input_names:
            _check_input(name, self.structure.nodes[name].output_type, inputs[name])
        sizes = {int(value.shape[0]) for value in inputs.values()}
        if len(sizes) > 1:
            described = ", ".join(f"{name}: {int(value.shape[0])}" for name, value in inputs.items())
            raise ValueError(f"Inputs disagree on batch size ({described})")

        self._reset()
        self.state = PassState.FORWARD
        try:
            self._batch_size = int(next(iter(inputs.values())).shape[0]) if inputs else None
            self._notify({"event": "pass_start", "phase": "forward", "train": train})
            for name in self.structure.order:
                node = self.structure.nodes[name]
                if node.is_input:
                    self._activations[name] = inputs[name]
                    self._masks[name] = masks.get(name)
                else:
                    self._forward_node(node)
                self._notify(
                    {
                        "event": "node_forward",
                        "node": name,
                        "kind": node.kind.value,
                        "shape": tuple(self._activations[name].shape),
                        "dtype": str(self._activations[name].dtype),
                        "device": str(self._activations[name].device),
                    }
                )
        except Exception:
            self._abort()
            raise

        activations = dict(self._activations)
        if train:
            self.state = PassState.FORWARD_COMPLETE
        else:
            self._clear_nodes()
            self.state = PassState.IDLE
        self._notify({"event": "pass_end", "phase": "forward", "train": train})
        return activations

    def _forward_node(self, node: Node) -> None:
        batch_size = self._batch_size or 0
        xs: List[torch.Tensor] = []
        ms: List[Mask] = []
        for edge in node.inputs:
            x = self._activations[edge.producer]
            m = self._masks[edge.producer]
            if edge.adapter is not None:
                x, m = edge.adapter.forward(x, m, batch_size)
            xs.append(x)
            ms.append(m)
        mask = mask_ops.combine(ms, node.kind)
        if node.kind is NodeKind.LAYER and len(xs) > 1:
            axis = _feature_axis(xs[0])
            self._splits[node.name] = (axis, [int(x.shape[axis]) for x in xs])
            xs = [torch.cat(xs, dim=axis)]
        out, out_mask = node.compute.forward(xs, mask)
        self._activations[node.name] = out
        self._masks[node.name] = out_mask

    # --- Backward -------------------------------------------------------------

    @torch.no_grad()
    def backward(self, epsilons: Mapping[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
        """
        Propagate output errors back through the graph.

        ``epsilons`` maps output node names to dLoss/dActivation. Parameter gradients
        land in the gradient views (zeroed first); the gradients reaching input
        nodes are returned by input name.
        """
        if self.state is not PassState.FORWARD_COMPLETE:
            raise PassStateError(
                f"backward() requires a completed training forward pass; executor is {self.state.value}"
            )
        self.state = PassState.BACKWARD
        try:
            self.views.zero_gradients()
            self._notify({"event": "pass_start", "phase": "backward"})
            pending: Dict[str, torch.Tensor] = {}
            for name, eps in epsilons.items():
                _accumulate(pending, name, eps)
            input_grads: Dict[str, torch.Tensor] = {}
            for name in reverse_order(self.structure.order):
                grad = pending.pop(name, None)
                if grad is None:
                    continue
                node = self.structure.nodes[name]
                if node.is_input:
                    input_grads[name] = grad
                else:
                    self._backward_node(node, grad, pending)
                self._notify({"event": "node_backward", "node": name, "shape": tuple(grad.shape)})
        except Exception:
            self._abort()
            raise

        self.state = PassState.BACKWARD_COMPLETE
        self._notify({"event": "pass_end", "phase": "backward"})
        return input_grads

    def _backward_node(self, node: Node, grad: torch.Tensor, pending: Dict[str, torch.Tensor]) -> None:
        input_grads, param_grads = node.compute.backward(grad)
        if param_grads and not node.frozen:
            targets = self.views.node_gradients(node.name)
            for param, value in param_grads.items():
                targets[param].add_(value)
        if node.name in self._splits:
            axis, sizes = self._splits[node.name]
            input_grads = list(torch.split(input_grads[0], sizes, dim=axis))
        if len(input_grads) != len(node.inputs):
            raise RuntimeError(
                f"{node.name!r} returned {len(input_grads)} input gradients for {len(node.inputs)} inputs"
            )
        for edge, edge_grad in zip(node.inputs, input_grads):
            if edge.adapter is not None:
                edge_grad = edge.adapter.backward(edge_grad)
            _accumulate(pending, edge.producer, edge_grad)

    # --- State ----------------------------------------------------------------

    def clear(self) -> None:
        """Drop all transient pass state and return to IDLE."""
        self._reset()
        self.state = PassState.IDLE

    def _reset(self) -> None:
        self._activations.clear()
        self._masks.clear()
        self._splits.clear()
        self._batch_size = None
        self._clear_nodes()

    def _clear_nodes(self) -> None:
        for node in self.structure.nodes.values():
            if node.op is not None:
                node.op.clear()
            for edge in node.inputs:
                if edge.adapter is not None:
                    edge.adapter.clear()

    def _abort(self) -> None:
        _logger.debug("Pass aborted in state %s; clearing transient state", self.state.value)
        if self.state is PassState.BACKWARD:
            self.views.zero_gradients()
        self.clear()

    def _notify(self, payload: Dict[str, Any]) -> None:
        if self._emit is not None:
            self._emit(payload)


def _accumulate(pending: Dict[str, torch.Tensor], name: str, grad: torch.Tensor) -> None:
    current = pending.get(name)
    pending[name] = grad if current is None else current + grad


def _feature_axis(x: torch.Tensor) -> int:
    return 2 if x.dim() == 3 else 1


_RANKS = {ShapeKind.FEED_FORWARD: 2, ShapeKind.RECURRENT: 3, ShapeKind.CONVOLUTIONAL: 4}


def _check_input(name: str, expected: Optional[InputType], value: torch.Tensor) -> None:
    """Reject an input tensor whose layout disagrees with its declared type."""
    if expected is None:
        return
    shape = tuple(value.shape)
    rank = _RANKS[expected.kind]
    if value.dim() != rank:
        raise ValueError(f"Input {name!r} expects a rank-{rank} tensor for {expected}, got shape {shape}")
    if expected.kind is ShapeKind.CONVOLUTIONAL:
        if shape[1:] != expected.geometry:
            raise ValueError(
                f"Input {name!r} expects [N, C, H, W] = [N, {', '.join(map(str, expected.geometry))}], "
                f"got shape {shape}"
            )
        return
    if shape[-1] != expected.size:
        raise ValueError(f"Input {name!r} expects {expected.size} features, got shape {shape}")
    if expected.kind is ShapeKind.RECURRENT and expected.timesteps is not None and shape[1] != expected.timesteps:
        raise ValueError(f"Input {name!r} expects {expected.timesteps} time steps, got shape {shape}")
