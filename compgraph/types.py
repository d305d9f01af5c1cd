# compgraph/types.py

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Tuple


# Sentinel for auto-inferred dimensions
class _AutoDim:
    """Sentinel used in configuration to mean 'infer this dimension at bind() time'."""

    def __repr__(self) -> str:
        return "Auto"

    def __reduce__(self) -> str:
        return "Auto"


Auto = _AutoDim()


class ShapeKind(enum.Enum):
    """Layout family of an activation tensor."""

    FEED_FORWARD = "feed_forward"  # [N, D]
    RECURRENT = "recurrent"  # [B, T, D]
    CONVOLUTIONAL = "convolutional"  # [N, C, H, W]

    @property
    def feature_axis(self) -> int:
        """Axis along which fan-in activations are concatenated."""
        if self is ShapeKind.RECURRENT:
            return 2
        return 1


class NodeKind(enum.Enum):
    """Role of a node inside the graph; the executor dispatches on this."""

    INPUT = "input"
    LAYER = "layer"
    MERGE = "merge"
    SUBSET = "subset"
    ELEMENTWISE = "elementwise"
    LAST_TIME_STEP = "last_time_step"


@dataclass(frozen=True)
class InputType:
    """
    Shape description of an activation flowing along an edge.

    Feed-forward types may carry image geometry (``convolutional_flat``) so that a
    flattened image can be adapted back into a convolutional layout.
    """

    kind: ShapeKind
    size: int = 0
    timesteps: Optional[int] = None
    height: Optional[int] = None
    width: Optional[int] = None
    channels: Optional[int] = None

    @classmethod
    def feed_forward(cls, size: int) -> "InputType":
        return cls(ShapeKind.FEED_FORWARD, size=int(size))

    @classmethod
    def recurrent(cls, size: int, timesteps: Optional[int] = None) -> "InputType":
        return cls(ShapeKind.RECURRENT, size=int(size), timesteps=timesteps)

    @classmethod
    def convolutional(cls, height: int, width: int, channels: int) -> "InputType":
        return cls(
            ShapeKind.CONVOLUTIONAL,
            size=int(height * width * channels),
            height=int(height),
            width=int(width),
            channels=int(channels),
        )

    @classmethod
    def convolutional_flat(cls, height: int, width: int, channels: int) -> "InputType":
        """Images delivered as flat rows of length ``height * width * channels``."""
        return cls(
            ShapeKind.FEED_FORWARD,
            size=int(height * width * channels),
            height=int(height),
            width=int(width),
            channels=int(channels),
        )

    @property
    def has_geometry(self) -> bool:
        return self.height is not None and self.width is not None and self.channels is not None

    @property
    def geometry(self) -> Tuple[int, int, int]:
        channels, height, width = self.channels, self.height, self.width
        if channels is None or height is None or width is None:
            raise ValueError(f"{self} carries no image geometry.")
        return channels, height, width

    def __str__(self) -> str:
        if self.kind is ShapeKind.CONVOLUTIONAL:
            return f"InputType(convolutional, h={self.height}, w={self.width}, c={self.channels})"
        if self.kind is ShapeKind.RECURRENT:
            return f"InputType(recurrent, size={self.size})"
        if self.has_geometry:
            return (
                f"InputType(feed_forward, size={self.size}, "
                f"h={self.height}, w={self.width}, c={self.channels})"
            )
        return f"InputType(feed_forward, size={self.size})"
