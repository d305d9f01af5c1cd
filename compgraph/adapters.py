# compgraph/adapters.py

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Tuple

import torch

from .errors import IncompatibleShapeError
from .types import InputType, ShapeKind

_logger = logging.getLogger(__name__)

Mask = Optional[torch.Tensor]


class Adapter:
    """
    Parameter-free reshaping node synthesized on an edge between incompatible kinds.

    Adapters reshape both the activation and its mask in forward, and reshape the
    gradient back to the producer's layout in backward.
    """

    source_kind: ShapeKind
    target_kind: ShapeKind

    def __init__(self) -> None:
        self._input_shape: Optional[torch.Size] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    def output_type(self, input_type: InputType) -> InputType:
        raise NotImplementedError

    def forward(self, x: torch.Tensor, mask: Mask, batch_size: int) -> Tuple[torch.Tensor, Mask]:
        raise NotImplementedError

    def backward(self, grad: torch.Tensor) -> torch.Tensor:
        if self._input_shape is None:
            raise RuntimeError(f"{type(self).__name__}.backward() called before forward()")
        return grad.reshape(self._input_shape)

    def clear(self) -> None:
        self._input_shape = None


class RnnToFeedForward(Adapter):
    """``[B, T, D] -> [B*T, D]``; a ``[B, T]`` mask becomes ``[B*T]``."""

    source_kind = ShapeKind.RECURRENT
    target_kind = ShapeKind.FEED_FORWARD

    def output_type(self, input_type: InputType) -> InputType:
        return InputType.feed_forward(input_type.size)

    def forward(self, x: torch.Tensor, mask: Mask, batch_size: int) -> Tuple[torch.Tensor, Mask]:
        self._input_shape = x.shape
        B, T, D = x.shape
        out_mask = mask.reshape(B * T) if mask is not None else None
        return x.reshape(B * T, D), out_mask


class FeedForwardToRnn(Adapter):
    """``[B*T, D] -> [B, T, D]`` using the minibatch size of the pass."""

    source_kind = ShapeKind.FEED_FORWARD
    target_kind = ShapeKind.RECURRENT

    def output_type(self, input_type: InputType) -> InputType:
        return InputType.recurrent(input_type.size)

    def forward(self, x: torch.Tensor, mask: Mask, batch_size: int) -> Tuple[torch.Tensor, Mask]:
        self._input_shape = x.shape
        rows = x.shape[0]
        if batch_size < 1 or rows % batch_size != 0:
            raise ValueError(f"Cannot reshape {rows} rows into minibatch of size {batch_size}")
        timesteps = rows // batch_size
        out_mask = mask.reshape(batch_size, timesteps) if mask is not None else None
        return x.reshape(batch_size, timesteps, x.shape[1]), out_mask


class CnnToFeedForward(Adapter):
    """``[N, C, H, W] -> [N, C*H*W]``; per-example masks pass through."""

    source_kind = ShapeKind.CONVOLUTIONAL
    target_kind = ShapeKind.FEED_FORWARD

    def output_type(self, input_type: InputType) -> InputType:
        channels, height, width = input_type.geometry
        return InputType.convolutional_flat(height, width, channels)

    def forward(self, x: torch.Tensor, mask: Mask, batch_size: int) -> Tuple[torch.Tensor, Mask]:
        self._input_shape = x.shape
        return x.reshape(x.shape[0], -1), mask


class FeedForwardToCnn(Adapter):
    """``[N, C*H*W] -> [N, C, H, W]`` for flattened image rows."""

    source_kind = ShapeKind.FEED_FORWARD
    target_kind = ShapeKind.CONVOLUTIONAL

    def __init__(self, channels: int, height: int, width: int) -> None:
        super().__init__()
        self.channels = int(channels)
        self.height = int(height)
        self.width = int(width)

    def __repr__(self) -> str:
        return f"FeedForwardToCnn(channels={self.channels}, height={self.height}, width={self.width})"

    def output_type(self, input_type: InputType) -> InputType:
        return InputType.convolutional(self.height, self.width, self.channels)

    def forward(self, x: torch.Tensor, mask: Mask, batch_size: int) -> Tuple[torch.Tensor, Mask]:
        expected = self.channels * self.height * self.width
        if x.shape[1] != expected:
            raise ValueError(f"FeedForwardToCnn expects rows of length {expected}, got {x.shape[1]}")
        self._input_shape = x.shape
        return x.reshape(x.shape[0], self.channels, self.height, self.width), mask


class RnnToCnn(Adapter):
    """``[B, T, C*H*W] -> [B*T, C, H, W]``; a ``[B, T]`` mask becomes ``[B*T]``."""

    source_kind = ShapeKind.RECURRENT
    target_kind = ShapeKind.CONVOLUTIONAL

    def __init__(self, channels: int, height: int, width: int) -> None:
        super().__init__()
        self.channels = int(channels)
        self.height = int(height)
        self.width = int(width)

    def __repr__(self) -> str:
        return f"RnnToCnn(channels={self.channels}, height={self.height}, width={self.width})"

    def output_type(self, input_type: InputType) -> InputType:
        return InputType.convolutional(self.height, self.width, self.channels)

    def forward(self, x: torch.Tensor, mask: Mask, batch_size: int) -> Tuple[torch.Tensor, Mask]:
        self._input_shape = x.shape
        B, T, _ = x.shape
        out_mask = mask.reshape(B * T) if mask is not None else None
        return x.reshape(B * T, self.channels, self.height, self.width), out_mask


class CnnToRnn(Adapter):
    """``[B*T, C, H, W] -> [B, T, C*H*W]`` using the minibatch size of the pass."""

    source_kind = ShapeKind.CONVOLUTIONAL
    target_kind = ShapeKind.RECURRENT

    def output_type(self, input_type: InputType) -> InputType:
        channels, height, width = input_type.geometry
        return InputType(
            ShapeKind.RECURRENT,
            size=channels * height * width,
            height=height,
            width=width,
            channels=channels,
        )

    def forward(self, x: torch.Tensor, mask: Mask, batch_size: int) -> Tuple[torch.Tensor, Mask]:
        self._input_shape = x.shape
        rows = x.shape[0]
        if batch_size < 1 or rows % batch_size != 0:
            raise ValueError(f"Cannot reshape {rows} rows into minibatch of size {batch_size}")
        timesteps = rows // batch_size
        out_mask = mask.reshape(batch_size, timesteps) if mask is not None else None
        return x.reshape(batch_size, timesteps, -1), out_mask


def _needs_geometry(cls: Callable[..., Adapter]) -> Callable[[InputType], Adapter]:
    def factory(source: InputType) -> Adapter:
        channels, height, width = source.geometry
        return cls(channels, height, width)

    return factory


_CATALOGUE: Dict[Tuple[ShapeKind, ShapeKind], Callable[[InputType], Adapter]] = {
    (ShapeKind.RECURRENT, ShapeKind.FEED_FORWARD): lambda source: RnnToFeedForward(),
    (ShapeKind.FEED_FORWARD, ShapeKind.RECURRENT): lambda source: FeedForwardToRnn(),
    (ShapeKind.CONVOLUTIONAL, ShapeKind.FEED_FORWARD): lambda source: CnnToFeedForward(),
    (ShapeKind.FEED_FORWARD, ShapeKind.CONVOLUTIONAL): _needs_geometry(FeedForwardToCnn),
    (ShapeKind.RECURRENT, ShapeKind.CONVOLUTIONAL): _needs_geometry(RnnToCnn),
    (ShapeKind.CONVOLUTIONAL, ShapeKind.RECURRENT): lambda source: CnnToRnn(),
}


def resolve_adapter(
    source: InputType,
    target_kind: ShapeKind,
    producer: str = "?",
    consumer: str = "?",
) -> Optional[Adapter]:
    """
    Adapter converting ``source`` into ``target_kind``, or None when already compatible.

    Raises IncompatibleShapeError when no adapter exists for the pair or when the
    adapter needs image geometry the producer does not carry.
    """
    if source.kind is target_kind:
        return None
    factory = _CATALOGUE.get((source.kind, target_kind))
    if factory is None:
        raise IncompatibleShapeError(
            f"No adapter from {source.kind.value} to {target_kind.value} on edge {producer!r} -> {consumer!r}",
            producer=producer,
            consumer=consumer,
        )
    try:
        adapter = factory(source)
    except ValueError as exc:
        raise IncompatibleShapeError(
            f"Edge {producer!r} -> {consumer!r}: cannot adapt {source} to {target_kind.value} ({exc})",
            producer=producer,
            consumer=consumer,
        ) from exc
    _logger.debug("Inserted %r on edge %s -> %s", adapter, producer, consumer)
    return adapter
