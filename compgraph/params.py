# compgraph/params.py

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple, Union

import torch

from .errors import ParameterCountMismatchError, UnknownParameterError

if TYPE_CHECKING:
    from .builder import GraphStructure

_logger = logging.getLogger(__name__)

Device = Union[str, torch.device]


@dataclass(frozen=True)
class ParamRange:
    """Slot of one named parameter inside the flat buffer."""

    node: str
    param: str
    offset: int
    shape: Tuple[int, ...]

    @property
    def numel(self) -> int:
        return int(math.prod(self.shape))

    @property
    def key(self) -> str:
        return f"{self.node}_{self.param}"


def layout(structure: "GraphStructure") -> List[ParamRange]:
    """
    Flat-buffer layout: evaluation order across nodes, declared order within a node.
    """
    ranges: List[ParamRange] = []
    offset = 0
    for name in structure.order:
        node = structure.nodes[name]
        if node.op is None or not node.op.is_learnable():
            continue
        for param, shape in node.op.param_shapes().items():
            entry = ParamRange(name, param, offset, tuple(int(d) for d in shape))
            ranges.append(entry)
            offset += entry.numel
    return ranges


class ParameterViews:
    """
    Flat parameter and gradient arenas plus per-parameter aliased views.

    The gradient arena is always owned. The parameter arena is either owned
    (ranges laid out back to back) or borrowed from another graph, in which case
    ``param_offsets`` point into the borrowed arena and may not be contiguous.
    """

    def __init__(
        self,
        ranges: Sequence[ParamRange],
        param_arena: torch.Tensor,
        grad_arena: torch.Tensor,
        param_offsets: Optional[Sequence[int]] = None,
    ) -> None:
        self.ranges: Tuple[ParamRange, ...] = tuple(ranges)
        self._param_arena = param_arena
        self._grad_arena = grad_arena
        self._param_offsets: Tuple[int, ...] = (
            tuple(param_offsets) if param_offsets is not None else tuple(r.offset for r in self.ranges)
        )
        self._shared = param_offsets is not None
        self._total = sum(r.numel for r in self.ranges)
        if grad_arena.numel() != self._total:
            raise ValueError(f"Gradient arena holds {grad_arena.numel()} values, layout needs {self._total}")

        self._base = self._param_offsets[0] if self._param_offsets else 0
        cursor = self._base
        contiguous = True
        for entry, offset in zip(self.ranges, self._param_offsets):
            if offset != cursor:
                contiguous = False
                break
            cursor += entry.numel
        self._contiguous = contiguous

        self._params: Dict[Tuple[str, str], torch.Tensor] = OrderedDict()
        self._grads: Dict[Tuple[str, str], torch.Tensor] = OrderedDict()
        self._by_node: Dict[str, List[str]] = OrderedDict()
        self._offsets: Dict[Tuple[str, str], int] = {}
        for entry, offset in zip(self.ranges, self._param_offsets):
            key = (entry.node, entry.param)
            self._offsets[key] = offset
            self._params[key] = param_arena.narrow(0, offset, entry.numel).view(entry.shape)
            self._grads[key] = grad_arena.narrow(0, entry.offset, entry.numel).view(entry.shape)
            self._by_node.setdefault(entry.node, []).append(entry.param)

    # --- Introspection --------------------------------------------------------

    @property
    def is_shared(self) -> bool:
        return self._shared

    @property
    def is_contiguous(self) -> bool:
        return self._contiguous

    @property
    def param_arena(self) -> torch.Tensor:
        return self._param_arena

    @property
    def dtype(self) -> torch.dtype:
        return self._grad_arena.dtype

    @property
    def device(self) -> torch.device:
        return self._grad_arena.device

    def num_params(self) -> int:
        return self._total

    def nodes(self) -> Tuple[str, ...]:
        return tuple(self._by_node)

    def param_offset(self, node: str, param: str) -> int:
        """Offset of ``node.param`` inside the parameter arena."""
        self.view_for(node, param)
        return self._offsets[(node, param)]

    # --- Views ----------------------------------------------------------------

    def view_for(self, node: str, param: str) -> Tuple[torch.Tensor, torch.Tensor]:
        """``(parameter_view, gradient_view)`` for one named parameter."""
        key = (node, param)
        if key not in self._params:
            raise UnknownParameterError(node, param, self._by_node.get(node, ()))
        return self._params[key], self._grads[key]

    def node_parameters(self, node: str) -> "OrderedDict[str, torch.Tensor]":
        return OrderedDict((param, self._params[(node, param)]) for param in self._by_node.get(node, []))

    def node_gradients(self, node: str) -> "OrderedDict[str, torch.Tensor]":
        return OrderedDict((param, self._grads[(node, param)]) for param in self._by_node.get(node, []))

    def param_table(self) -> "OrderedDict[str, torch.Tensor]":
        """Parameter views keyed ``"{node}_{param}"`` in flat-buffer order."""
        return OrderedDict((entry.key, self._params[(entry.node, entry.param)]) for entry in self.ranges)

    # --- Flat access ------------------------------------------------------------

    def flat_parameters(self) -> torch.Tensor:
        """
        The flat parameter vector.

        Aliases the arena when the ranges are contiguous; otherwise a gathered copy.
        """
        if self._contiguous:
            return self._param_arena.narrow(0, self._base, self._total)
        return torch.cat([view.reshape(-1) for view in self._params.values()])

    def set_flat_parameters(self, values: torch.Tensor) -> None:
        """Copy ``values`` into the parameter storage in place."""
        if values.dim() != 1:
            values = values.reshape(-1)
        if values.numel() != self._total:
            raise ParameterCountMismatchError(self._total, values.numel())
        values = values.to(dtype=self._param_arena.dtype, device=self._param_arena.device)
        if self._contiguous:
            self._param_arena.narrow(0, self._base, self._total).copy_(values)
            return
        for entry, view in zip(self.ranges, self._params.values()):
            view.copy_(values.narrow(0, entry.offset, entry.numel).view(entry.shape))

    def flat_gradients(self) -> torch.Tensor:
        return self._grad_arena

    def zero_gradients(self) -> None:
        self._grad_arena.zero_()


def bind_views(structure: "GraphStructure", views: ParameterViews) -> None:
    for name in structure.order:
        node = structure.nodes[name]
        if node.op is not None and node.op.is_learnable():
            node.op.set_param_views(views.node_parameters(name))


def allocate(
    structure: "GraphStructure",
    dtype: torch.dtype = torch.float32,
    device: Device = "cpu",
) -> ParameterViews:
    """Allocate owned, zero-filled arenas for ``structure`` and hand each node its views."""
    ranges = layout(structure)
    total = sum(entry.numel for entry in ranges)
    param_arena = torch.zeros(total, dtype=dtype, device=device)
    grad_arena = torch.zeros(total, dtype=dtype, device=device)
    views = ParameterViews(ranges, param_arena, grad_arena)
    bind_views(structure, views)
    _logger.debug("Allocated %d parameters in %d ranges (%s, %s)", total, len(ranges), dtype, device)
    return views


def share(parent: ParameterViews, structure: "GraphStructure") -> ParameterViews:
    """
    Views for ``structure`` whose parameters alias ``parent``'s storage.

    Every learnable (node, param) of ``structure`` must exist in ``parent`` with the
    same shape. Gradients get a fresh owned arena.
    """
    ranges = layout(structure)
    offsets: List[int] = []
    for entry in ranges:
        parent_view, _ = parent.view_for(entry.node, entry.param)
        if tuple(parent_view.shape) != entry.shape:
            raise ValueError(
                f"Cannot share {entry.key}: shape {entry.shape} differs from parent {tuple(parent_view.shape)}"
            )
        offsets.append(parent.param_offset(entry.node, entry.param))
    total = sum(entry.numel for entry in ranges)
    grad_arena = torch.zeros(total, dtype=parent.dtype, device=parent.device)
    views = ParameterViews(ranges, parent.param_arena, grad_arena, param_offsets=offsets)
    bind_views(structure, views)
    _logger.debug(
        "Sharing %d parameters with parent (contiguous=%s)", total, views.is_contiguous
    )
    return views
