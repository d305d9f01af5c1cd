# compgraph/layers.py

from __future__ import annotations

import math
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple, Union

import torch
import torch.nn.functional as F

from . import activations
from . import masks as mask_ops
from .errors import IncompatibleShapeError
from .losses import LossFunction
from .types import Auto, InputType, ShapeKind, _AutoDim

Mask = Optional[torch.Tensor]
Shape = Tuple[int, ...]
Size = Union[int, _AutoDim]


class Layer:
    """
    Node contract for learnable (or stateless) computations driven by the graph.

    Responsibilities:
      - Declare parameter names and shapes (in a fixed order) once bound to an input type.
      - Compute forward activations and cache what backward needs.
      - Compute input and parameter gradients from an output gradient.

    A layer never owns parameter storage: the graph hands it views into the flat
    parameter buffer through set_param_views(). Layers used as declarations are
    prototypes; the builder deep-copies them before binding.
    """

    input_kind: Optional[ShapeKind] = None

    def __init__(self, activation: str = "identity") -> None:
        activations.resolve(activation)
        self.activation = activation
        self._params: Dict[str, torch.Tensor] = OrderedDict()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._describe()})"

    def _describe(self) -> str:
        return f"activation={self.activation!r}"

    # --- Shape resolution ---------------------------------------------------

    def bind(self, input_type: InputType) -> None:
        """Resolve Auto sizes from the (already adapted) input type."""

    def output_type(self, input_type: InputType) -> InputType:
        return input_type

    def param_shapes(self) -> "OrderedDict[str, Shape]":
        return OrderedDict()

    # --- Parameters -----------------------------------------------------------

    def set_param_views(self, views: Dict[str, torch.Tensor]) -> None:
        expected = self.param_shapes()
        if list(views) != list(expected):
            raise ValueError(f"{type(self).__name__} expects parameters {list(expected)}, got {list(views)}")
        for name, shape in expected.items():
            if tuple(views[name].shape) != tuple(shape):
                raise ValueError(f"Parameter {name!r} view has shape {tuple(views[name].shape)}, expected {shape}")
        self._params = OrderedDict(views)

    def parameters(self) -> Dict[str, torch.Tensor]:
        return OrderedDict(self._params)

    def num_params(self) -> int:
        return sum(math.prod(shape) for shape in self.param_shapes().values())

    def is_learnable(self) -> bool:
        return self.num_params() > 0

    def init_params(self, generator: torch.Generator) -> None:
        """Xavier-uniform weights and zero biases, written in place into the views."""
        for name, view in self._params.items():
            if name.startswith("b"):
                view.zero_()
                continue
            fan_in, fan_out = self._fans(name)
            limit = math.sqrt(6.0 / (fan_in + fan_out))
            values = torch.empty(view.shape, dtype=view.dtype).uniform_(-limit, limit, generator=generator)
            view.copy_(values)

    def _fans(self, name: str) -> Tuple[int, int]:
        shape = self.param_shapes()[name]
        return shape[0], shape[-1]

    # --- Compute ------------------------------------------------------------

    def forward(self, inputs: List[torch.Tensor], mask: Mask) -> Tuple[torch.Tensor, Mask]:
        raise NotImplementedError

    def backward(self, grad: torch.Tensor) -> Tuple[List[torch.Tensor], Dict[str, torch.Tensor]]:
        raise NotImplementedError

    def clear(self) -> None:
        """Drop activations cached by the last forward pass."""

    def _single(self, inputs: List[torch.Tensor]) -> torch.Tensor:
        if len(inputs) != 1:
            raise ValueError(f"{type(self).__name__} expects exactly one input, got {len(inputs)}")
        return inputs[0]

    def _param(self, name: str) -> torch.Tensor:
        if name not in self._params:
            raise RuntimeError(f"{type(self).__name__} has no parameter views; was the graph initialised?")
        return self._params[name]


def _resolve_size(declared: Size, inferred: int, what: str) -> int:
    if declared is Auto:
        return int(inferred)
    if int(declared) != int(inferred):  # type: ignore[arg-type]
        raise IncompatibleShapeError(f"{what}: declared n_in={declared} but input provides {inferred}")
    return int(declared)  # type: ignore[arg-type]


class _ActivationCache:
    """Pre-activation/activation pair kept between forward and backward."""

    def __init__(self, activation: str) -> None:
        self.activation = activation
        self.z: Optional[torch.Tensor] = None
        self.a: Optional[torch.Tensor] = None

    def apply(self, z: torch.Tensor) -> torch.Tensor:
        forward, _ = activations.resolve(self.activation)
        self.z = z
        self.a = forward(z)
        return self.a

    def grad(self, grad_a: torch.Tensor) -> torch.Tensor:
        if self.z is None or self.a is None:
            raise RuntimeError("backward() called before forward()")
        _, backward = activations.resolve(self.activation)
        return backward(self.z, self.a, grad_a)

    def clear(self) -> None:
        self.z = None
        self.a = None


class DenseLayer(Layer):
    """Fully connected layer: ``a = act(x @ W + b)`` with ``W`` of shape ``[n_in, n_out]``."""

    input_kind = ShapeKind.FEED_FORWARD

    def __init__(self, n_out: int, n_in: Size = Auto, activation: str = "identity") -> None:
        super().__init__(activation)
        if int(n_out) < 1:
            raise ValueError("n_out must be >= 1")
        self.n_out = int(n_out)
        self.n_in = n_in
        self._x: Optional[torch.Tensor] = None
        self._act = _ActivationCache(activation)

    def _describe(self) -> str:
        return f"n_in={self.n_in}, n_out={self.n_out}, activation={self.activation!r}"

    def bind(self, input_type: InputType) -> None:
        self.n_in = _resolve_size(self.n_in, input_type.size, type(self).__name__)

    def output_type(self, input_type: InputType) -> InputType:
        return InputType.feed_forward(self.n_out)

    def param_shapes(self) -> "OrderedDict[str, Shape]":
        if self.n_in is Auto:
            raise RuntimeError(f"{type(self).__name__}.bind() must be called before parameter shapes are known.")
        return OrderedDict([("W", (int(self.n_in), self.n_out)), ("b", (self.n_out,))])  # type: ignore[arg-type]

    def forward(self, inputs: List[torch.Tensor], mask: Mask) -> Tuple[torch.Tensor, Mask]:
        x = self._single(inputs)
        self._x = x
        z = x @ self._param("W") + self._param("b")
        return self._act.apply(z), mask

    def backward(self, grad: torch.Tensor) -> Tuple[List[torch.Tensor], Dict[str, torch.Tensor]]:
        if self._x is None:
            raise RuntimeError("backward() called before forward()")
        dz = self._act.grad(grad)
        x2 = self._x.reshape(-1, self._x.shape[-1])
        dz2 = dz.reshape(-1, dz.shape[-1])
        grads = OrderedDict([("W", x2.t() @ dz2), ("b", dz2.sum(dim=0))])
        return [dz @ self._param("W").t()], grads

    def clear(self) -> None:
        self._x = None
        self._act.clear()


class OutputLayer(DenseLayer):
    """Dense layer carrying a loss function; usable as a scored network output."""

    def __init__(
        self,
        n_out: int,
        n_in: Size = Auto,
        activation: str = "softmax",
        loss: Union[str, LossFunction] = "mcxent",
    ) -> None:
        super().__init__(n_out=n_out, n_in=n_in, activation=activation)
        self.loss = loss if isinstance(loss, LossFunction) else LossFunction(loss)

    def _describe(self) -> str:
        return f"{super()._describe()}, loss={self.loss.name!r}"


class RnnOutputLayer(OutputLayer):
    """Per-time-step output layer over ``[B, T, D]`` with a masked loss."""

    input_kind = ShapeKind.RECURRENT

    def output_type(self, input_type: InputType) -> InputType:
        return InputType.recurrent(self.n_out, timesteps=input_type.timesteps)


class ActivationLayer(Layer):
    """Parameter-free elementwise activation; accepts any shape kind."""

    def __init__(self, activation: str = "relu") -> None:
        super().__init__(activation)
        self._act = _ActivationCache(activation)

    def forward(self, inputs: List[torch.Tensor], mask: Mask) -> Tuple[torch.Tensor, Mask]:
        return self._act.apply(self._single(inputs)), mask

    def backward(self, grad: torch.Tensor) -> Tuple[List[torch.Tensor], Dict[str, torch.Tensor]]:
        return [self._act.grad(grad)], OrderedDict()

    def clear(self) -> None:
        self._act.clear()


class SimpleRnn(Layer):
    """
    Elman recurrent layer over ``[B, T, D]``.

    ``h_t = act(x_t @ W + h_{t-1} @ RW + b)`` with ``h_0 = 0``. Masked steps emit
    zeros and receive no gradient from downstream; the hidden state keeps running.

    With ``stateful`` set, ``h_0`` is the last hidden state of the previous
    forward pass and the new last state is stored for the next one.
    """

    input_kind = ShapeKind.RECURRENT

    def __init__(self, n_out: int, n_in: Size = Auto, activation: str = "tanh") -> None:
        super().__init__(activation)
        if int(n_out) < 1:
            raise ValueError("n_out must be >= 1")
        self.n_out = int(n_out)
        self.n_in = n_in
        self.stateful = False
        self._state: Optional[torch.Tensor] = None
        self._cache: Optional[Tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor, Mask]] = None

    def _describe(self) -> str:
        return f"n_in={self.n_in}, n_out={self.n_out}, activation={self.activation!r}"

    def bind(self, input_type: InputType) -> None:
        self.n_in = _resolve_size(self.n_in, input_type.size, type(self).__name__)

    def output_type(self, input_type: InputType) -> InputType:
        return InputType.recurrent(self.n_out, timesteps=input_type.timesteps)

    def param_shapes(self) -> "OrderedDict[str, Shape]":
        if self.n_in is Auto:
            raise RuntimeError("SimpleRnn.bind() must be called before parameter shapes are known.")
        return OrderedDict(
            [
                ("W", (int(self.n_in), self.n_out)),  # type: ignore[arg-type]
                ("RW", (self.n_out, self.n_out)),
                ("b", (self.n_out,)),
            ]
        )

    def forward(self, inputs: List[torch.Tensor], mask: Mask) -> Tuple[torch.Tensor, Mask]:
        x = self._single(inputs)
        if x.dim() != 3:
            raise ValueError(f"SimpleRnn expects [B, T, D] input, got shape {tuple(x.shape)}")
        W, RW, b = self._param("W"), self._param("RW"), self._param("b")
        forward_fn, _ = activations.resolve(self.activation)
        B, T, _ = x.shape
        h_prev = self._initial_state(x)
        h0 = h_prev
        zs, hs = [], []
        for t in range(T):
            z = x[:, t, :] @ W + h_prev @ RW + b
            h = forward_fn(z)
            zs.append(z)
            hs.append(h)
            h_prev = h
        z_all = torch.stack(zs, dim=1)
        h_all = torch.stack(hs, dim=1)
        self._cache = (x, h0, z_all, h_all, mask)
        if self.stateful:
            self._state = h_prev
        return mask_ops.apply_to_sequence(h_all, mask), mask

    def _initial_state(self, x: torch.Tensor) -> torch.Tensor:
        batch = x.shape[0]
        if not self.stateful or self._state is None:
            return x.new_zeros(batch, self.n_out)
        if self._state.shape[0] != batch:
            raise ValueError(
                f"Stored hidden state has batch size {self._state.shape[0]}, input has {batch}; "
                "call rnn_clear_previous_state() first"
            )
        return self._state.to(dtype=x.dtype, device=x.device)

    @property
    def previous_state(self) -> Optional[torch.Tensor]:
        return self._state

    def clear_state(self) -> None:
        self._state = None

    def backward(self, grad: torch.Tensor) -> Tuple[List[torch.Tensor], Dict[str, torch.Tensor]]:
        if self._cache is None:
            raise RuntimeError("backward() called before forward()")
        x, h0, z_all, h_all, mask = self._cache
        W, RW = self._param("W"), self._param("RW")
        _, backward_fn = activations.resolve(self.activation)
        B, T, _ = x.shape
        grad = mask_ops.apply_to_sequence(grad, mask)
        dW = torch.zeros_like(W)
        dRW = torch.zeros_like(RW)
        db = torch.zeros(self.n_out, dtype=x.dtype, device=x.device)
        dx = torch.zeros_like(x)
        dz_next: Optional[torch.Tensor] = None
        for t in reversed(range(T)):
            dh = grad[:, t, :]
            if dz_next is not None:
                dh = dh + dz_next @ RW.t()
            dz = backward_fn(z_all[:, t, :], h_all[:, t, :], dh)
            dW += x[:, t, :].t() @ dz
            h_before = h_all[:, t - 1, :] if t > 0 else h0
            dRW += h_before.t() @ dz
            db += dz.sum(dim=0)
            dx[:, t, :] = dz @ W.t()
            dz_next = dz
        return [dx], OrderedDict([("W", dW), ("RW", dRW), ("b", db)])

    def clear(self) -> None:
        self._cache = None


class ConvolutionLayer(Layer):
    """2-D convolution over ``[N, C, H, W]`` with weights ``[n_out, n_in, kh, kw]``."""

    input_kind = ShapeKind.CONVOLUTIONAL

    def __init__(
        self,
        n_out: int,
        kernel_size: Tuple[int, int] = (3, 3),
        stride: Tuple[int, int] = (1, 1),
        padding: Tuple[int, int] = (0, 0),
        n_in: Size = Auto,
        activation: str = "identity",
    ) -> None:
        super().__init__(activation)
        self.n_out = int(n_out)
        self.n_in = n_in
        self.kernel_size = tuple(int(k) for k in kernel_size)
        self.stride = tuple(int(s) for s in stride)
        self.padding = tuple(int(p) for p in padding)
        self._x: Optional[torch.Tensor] = None
        self._act = _ActivationCache(activation)

    def _describe(self) -> str:
        return (
            f"n_in={self.n_in}, n_out={self.n_out}, kernel_size={self.kernel_size}, "
            f"stride={self.stride}, padding={self.padding}, activation={self.activation!r}"
        )

    def bind(self, input_type: InputType) -> None:
        channels, height, width = input_type.geometry
        self.n_in = _resolve_size(self.n_in, channels, "ConvolutionLayer")
        out_h, out_w = self._output_hw(height, width)
        if out_h < 1 or out_w < 1:
            raise IncompatibleShapeError(
                f"ConvolutionLayer kernel {self.kernel_size} does not fit input {height}x{width}"
            )

    def _output_hw(self, height: int, width: int) -> Tuple[int, int]:
        kh, kw = self.kernel_size
        sh, sw = self.stride
        ph, pw = self.padding
        return (height + 2 * ph - kh) // sh + 1, (width + 2 * pw - kw) // sw + 1

    def output_type(self, input_type: InputType) -> InputType:
        _, height, width = input_type.geometry
        out_h, out_w = self._output_hw(height, width)
        return InputType.convolutional(out_h, out_w, self.n_out)

    def param_shapes(self) -> "OrderedDict[str, Shape]":
        if self.n_in is Auto:
            raise RuntimeError("ConvolutionLayer.bind() must be called before parameter shapes are known.")
        kh, kw = self.kernel_size
        return OrderedDict([("W", (self.n_out, int(self.n_in), kh, kw)), ("b", (self.n_out,))])  # type: ignore[arg-type]

    def _fans(self, name: str) -> Tuple[int, int]:
        kh, kw = self.kernel_size
        return int(self.n_in) * kh * kw, self.n_out * kh * kw  # type: ignore[arg-type]

    def forward(self, inputs: List[torch.Tensor], mask: Mask) -> Tuple[torch.Tensor, Mask]:
        x = self._single(inputs)
        self._x = x
        z = F.conv2d(x, self._param("W"), self._param("b"), stride=self.stride, padding=self.padding)
        return self._act.apply(z), mask

    def backward(self, grad: torch.Tensor) -> Tuple[List[torch.Tensor], Dict[str, torch.Tensor]]:
        if self._x is None:
            raise RuntimeError("backward() called before forward()")
        W = self._param("W")
        dz = self._act.grad(grad)
        dx = torch.nn.grad.conv2d_input(self._x.shape, W, dz, stride=self.stride, padding=self.padding)
        dW = torch.nn.grad.conv2d_weight(self._x, W.shape, dz, stride=self.stride, padding=self.padding)
        return [dx], OrderedDict([("W", dW), ("b", dz.sum(dim=(0, 2, 3)))])

    def clear(self) -> None:
        self._x = None
        self._act.clear()
