# compgraph/vertices.py

from __future__ import annotations

from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Tuple

import torch

from . import masks as mask_ops
from .errors import ConfigurationError, IncompatibleShapeError
from .types import InputType, NodeKind, ShapeKind

Mask = Optional[torch.Tensor]


class Vertex:
    """
    Parameter-free graph node that combines, slices or reduces activations.

    Shares the forward/backward contract of layers but receives one tensor per
    input edge and returns one gradient per input edge.
    """

    kind: NodeKind = NodeKind.MERGE
    input_kind: Optional[ShapeKind] = None
    min_inputs = 1
    max_inputs: Optional[int] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    def check_input_count(self, count: int, name: str) -> None:
        if count < self.min_inputs or (self.max_inputs is not None and count > self.max_inputs):
            bounds = f"{self.min_inputs}..{self.max_inputs if self.max_inputs is not None else 'n'}"
            raise ConfigurationError(f"{type(self).__name__} {name!r} accepts {bounds} inputs, got {count}")

    def bind(self, input_types: Sequence[InputType]) -> None:
        """Validate resolved input types."""

    def output_type(self, input_types: Sequence[InputType]) -> InputType:
        return input_types[0]

    def param_shapes(self) -> "OrderedDict[str, Tuple[int, ...]]":
        return OrderedDict()

    def set_param_views(self, views: Dict[str, torch.Tensor]) -> None:
        if views:
            raise ValueError(f"{type(self).__name__} has no parameters")

    def parameters(self) -> Dict[str, torch.Tensor]:
        return OrderedDict()

    def num_params(self) -> int:
        return 0

    def is_learnable(self) -> bool:
        return False

    def init_params(self, generator: torch.Generator) -> None:
        return None

    def forward(self, inputs: List[torch.Tensor], mask: Mask) -> Tuple[torch.Tensor, Mask]:
        raise NotImplementedError

    def backward(self, grad: torch.Tensor) -> Tuple[List[torch.Tensor], Dict[str, torch.Tensor]]:
        raise NotImplementedError

    def clear(self) -> None:
        """Drop state cached by the last forward pass."""


def _feature_axis(tensor: torch.Tensor) -> int:
    if tensor.dim() == 3:
        return ShapeKind.RECURRENT.feature_axis
    return 1


class MergeVertex(Vertex):
    """Concatenates inputs along the feature axis (channels for convolutional inputs)."""

    kind = NodeKind.MERGE

    def __init__(self) -> None:
        self._sizes: Optional[List[int]] = None
        self._axis = 1

    def bind(self, input_types: Sequence[InputType]) -> None:
        first = input_types[0]
        if first.kind is ShapeKind.CONVOLUTIONAL:
            for other in input_types[1:]:
                if (other.height, other.width) != (first.height, first.width):
                    raise IncompatibleShapeError(
                        f"MergeVertex inputs differ in spatial size: {first} vs {other}"
                    )

    def output_type(self, input_types: Sequence[InputType]) -> InputType:
        first = input_types[0]
        if first.kind is ShapeKind.CONVOLUTIONAL:
            channels = sum(int(t.channels or 0) for t in input_types)
            _, height, w = first.geometry
            return InputType.convolutional(height, w, channels)
        total = sum(t.size for t in input_types)
        if first.kind is ShapeKind.RECURRENT:
            return InputType.recurrent(total, timesteps=first.timesteps)
        return InputType.feed_forward(total)

    def forward(self, inputs: List[torch.Tensor], mask: Mask) -> Tuple[torch.Tensor, Mask]:
        self._axis = _feature_axis(inputs[0])
        self._sizes = [int(x.shape[self._axis]) for x in inputs]
        if len(inputs) == 1:
            return inputs[0], mask
        return torch.cat(inputs, dim=self._axis), mask

    def backward(self, grad: torch.Tensor) -> Tuple[List[torch.Tensor], Dict[str, torch.Tensor]]:
        if self._sizes is None:
            raise RuntimeError("backward() called before forward()")
        return list(torch.split(grad, self._sizes, dim=self._axis)), OrderedDict()

    def clear(self) -> None:
        self._sizes = None


class SubsetVertex(Vertex):
    """Selects features ``[start, end]`` (inclusive) along the feature axis."""

    kind = NodeKind.SUBSET
    max_inputs = 1

    def __init__(self, start: int, end: int) -> None:
        if start < 0 or end < start:
            raise ValueError(f"Invalid subset range [{start}, {end}]")
        self.start = int(start)
        self.end = int(end)
        self._input_shape: Optional[torch.Size] = None
        self._axis = 1

    def __repr__(self) -> str:
        return f"SubsetVertex(start={self.start}, end={self.end})"

    def bind(self, input_types: Sequence[InputType]) -> None:
        source = input_types[0]
        width = source.channels if source.kind is ShapeKind.CONVOLUTIONAL else source.size
        if width is not None and self.end >= int(width):
            raise IncompatibleShapeError(
                f"SubsetVertex range [{self.start}, {self.end}] exceeds input width {width}"
            )

    def output_type(self, input_types: Sequence[InputType]) -> InputType:
        source = input_types[0]
        width = self.end - self.start + 1
        if source.kind is ShapeKind.CONVOLUTIONAL:
            _, height, w = source.geometry
            return InputType.convolutional(height, w, width)
        if source.kind is ShapeKind.RECURRENT:
            return InputType.recurrent(width, timesteps=source.timesteps)
        return InputType.feed_forward(width)

    def forward(self, inputs: List[torch.Tensor], mask: Mask) -> Tuple[torch.Tensor, Mask]:
        x = inputs[0]
        self._axis = _feature_axis(x)
        self._input_shape = x.shape
        return x.narrow(self._axis, self.start, self.end - self.start + 1), mask

    def backward(self, grad: torch.Tensor) -> Tuple[List[torch.Tensor], Dict[str, torch.Tensor]]:
        if self._input_shape is None:
            raise RuntimeError("backward() called before forward()")
        full = grad.new_zeros(self._input_shape)
        full.narrow(self._axis, self.start, self.end - self.start + 1).copy_(grad)
        return [full], OrderedDict()

    def clear(self) -> None:
        self._input_shape = None


class ElementWiseVertex(Vertex):
    """Combines equally shaped inputs with add, subtract, product, average or max."""

    kind = NodeKind.ELEMENTWISE
    OPS = ("add", "subtract", "product", "average", "max")

    def __init__(self, op: str = "add") -> None:
        if op not in self.OPS:
            raise ValueError(f"Unsupported element-wise op {op!r}; expected one of {self.OPS}")
        self.op = op
        self._inputs: Optional[List[torch.Tensor]] = None
        self.max_inputs = 2 if op == "subtract" else None
        self.min_inputs = 2 if op == "subtract" else 1

    def __repr__(self) -> str:
        return f"ElementWiseVertex(op={self.op!r})"

    def bind(self, input_types: Sequence[InputType]) -> None:
        first = input_types[0]
        for other in input_types[1:]:
            if other.size != first.size:
                raise IncompatibleShapeError(f"ElementWiseVertex inputs differ in size: {first} vs {other}")

    def forward(self, inputs: List[torch.Tensor], mask: Mask) -> Tuple[torch.Tensor, Mask]:
        self._inputs = list(inputs)
        if self.op == "add":
            out = inputs[0].clone()
            for x in inputs[1:]:
                out = out + x
        elif self.op == "subtract":
            out = inputs[0] - inputs[1]
        elif self.op == "product":
            out = inputs[0].clone()
            for x in inputs[1:]:
                out = out * x
        elif self.op == "average":
            out = torch.stack(inputs, dim=0).mean(dim=0)
        else:
            out = torch.stack(inputs, dim=0).max(dim=0).values
        return out, mask

    def backward(self, grad: torch.Tensor) -> Tuple[List[torch.Tensor], Dict[str, torch.Tensor]]:
        if self._inputs is None:
            raise RuntimeError("backward() called before forward()")
        inputs = self._inputs
        n = len(inputs)
        if self.op == "add":
            grads = [grad.clone() for _ in inputs]
        elif self.op == "subtract":
            grads = [grad.clone(), -grad]
        elif self.op == "product":
            grads = []
            for i in range(n):
                g = grad.clone()
                for j, x in enumerate(inputs):
                    if j != i:
                        g = g * x
                grads.append(g)
        elif self.op == "average":
            grads = [grad / n for _ in inputs]
        else:
            # Ties route the gradient to the first maximal input.
            winners = torch.stack(inputs, dim=0).argmax(dim=0)
            grads = [grad * (winners == i).to(grad.dtype) for i in range(n)]
        return grads, OrderedDict()

    def clear(self) -> None:
        self._inputs = None


class LastTimeStepVertex(Vertex):
    """
    Reduces ``[B, T, D]`` to ``[B, D]`` by taking each row's last valid step.

    The incoming mask decides which step is last; the output carries no mask.
    """

    kind = NodeKind.LAST_TIME_STEP
    input_kind = ShapeKind.RECURRENT
    max_inputs = 1

    def __init__(self) -> None:
        self._index: Optional[torch.Tensor] = None
        self._input_shape: Optional[torch.Size] = None

    def output_type(self, input_types: Sequence[InputType]) -> InputType:
        return InputType.feed_forward(input_types[0].size)

    def forward(self, inputs: List[torch.Tensor], mask: Mask) -> Tuple[torch.Tensor, Mask]:
        x = inputs[0]
        B, T, _ = x.shape
        index = mask_ops.last_valid_index(mask, T, B).to(x.device)
        self._index = index
        self._input_shape = x.shape
        return x[torch.arange(B, device=x.device), index], None

    def backward(self, grad: torch.Tensor) -> Tuple[List[torch.Tensor], Dict[str, torch.Tensor]]:
        if self._index is None or self._input_shape is None:
            raise RuntimeError("backward() called before forward()")
        full = grad.new_zeros(self._input_shape)
        full[torch.arange(grad.shape[0], device=grad.device), self._index] = grad
        return [full], OrderedDict()

    def clear(self) -> None:
        self._index = None
        self._input_shape = None
