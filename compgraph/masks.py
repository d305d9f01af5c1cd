# compgraph/masks.py

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

import torch

from .types import NodeKind

Mask = Optional[torch.Tensor]


def from_lengths(
    lengths: Iterable[int],
    timesteps: Optional[int] = None,
    dtype: torch.dtype = torch.float32,
) -> torch.Tensor:
    """
    Sequence mask ``[B, T]`` with ones on the first ``lengths[b]`` steps of each row.

    Args:
        lengths: Valid length per example.
        timesteps: Total length T. If omitted, inferred as ``max(lengths)``.
    """
    length_list = [int(n) for n in lengths]
    if not length_list:
        raise ValueError("Cannot build a sequence mask from an empty set of lengths.")
    if any(n < 0 for n in length_list):
        raise ValueError("Sequence lengths must be >= 0.")
    total = int(timesteps) if timesteps is not None else max(length_list)
    if max(length_list) > total:
        raise ValueError(f"Length {max(length_list)} exceeds timesteps {total}.")
    steps = torch.arange(total).unsqueeze(0)
    limits = torch.tensor(length_list).unsqueeze(1)
    return (steps < limits).to(dtype)


def all_valid(batch_size: int, timesteps: Optional[int] = None, dtype: torch.dtype = torch.float32) -> torch.Tensor:
    """Mask with every position valid: ``[B]`` or ``[B, T]``."""
    if timesteps is None:
        return torch.ones(batch_size, dtype=dtype)
    return torch.ones(batch_size, timesteps, dtype=dtype)


def logical_and(masks: Sequence[Mask]) -> Mask:
    """
    Elementwise AND of masks; ``None`` means 'all valid' and is ignored.

    Returns ``None`` when every mask is ``None``.
    """
    present = [m for m in masks if m is not None]
    if not present:
        return None
    result = present[0]
    for other in present[1:]:
        if other.shape != result.shape:
            raise ValueError(f"Cannot combine masks of shapes {tuple(result.shape)} and {tuple(other.shape)}.")
        result = result * other
    return result


# Mask policy per node kind: how incoming masks become the mask handed to the node.
_AND_KINDS = frozenset({NodeKind.MERGE, NodeKind.ELEMENTWISE, NodeKind.LAYER})
_PASS_THROUGH_KINDS = frozenset({NodeKind.SUBSET, NodeKind.LAST_TIME_STEP, NodeKind.INPUT})


def combine(masks: Sequence[Mask], kind: NodeKind) -> Mask:
    """
    Combine the masks arriving on a node's input edges.

    Policy:
      - merge, element-wise and multi-input layers: logical AND
        (a position is valid only if it is valid in every input).
      - subset, last-time-step and input nodes: pass-through of the single input mask.

    Single-input nodes of every kind receive their input mask unchanged.
    """
    mask_list: List[Mask] = list(masks)
    if not mask_list:
        return None
    if len(mask_list) == 1:
        return mask_list[0]
    if kind in _AND_KINDS:
        return logical_and(mask_list)
    if kind in _PASS_THROUGH_KINDS:
        raise ValueError(f"Node kind {kind.value!r} accepts a single input mask, got {len(mask_list)}.")
    raise ValueError(f"No mask policy for node kind {kind!r}")


def last_valid_index(mask: Mask, timesteps: int, batch_size: int) -> torch.Tensor:
    """
    Index of the last valid step per row of a ``[B, T]`` mask.

    Rows with no valid step map to index 0; a missing mask maps to ``T - 1``.
    """
    if mask is None:
        return torch.full((batch_size,), timesteps - 1, dtype=torch.long)
    steps = torch.arange(timesteps, device=mask.device).unsqueeze(0).expand_as(mask)
    marked = torch.where(mask > 0, steps, torch.zeros_like(steps))
    return marked.max(dim=1).values.to(torch.long)


def apply_to_sequence(tensor: torch.Tensor, mask: Mask) -> torch.Tensor:
    """Zero masked steps of a ``[B, T, D]`` tensor."""
    if mask is None:
        return tensor
    return tensor * mask.unsqueeze(-1).to(tensor.dtype)


def apply_to_rows(tensor: torch.Tensor, mask: Mask) -> torch.Tensor:
    """Zero masked rows of a ``[N, ...]`` tensor given an ``[N]`` mask."""
    if mask is None:
        return tensor
    shape = (mask.shape[0],) + (1,) * (tensor.dim() - 1)
    return tensor * mask.reshape(shape).to(tensor.dtype)
