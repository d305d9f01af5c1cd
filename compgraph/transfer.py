# compgraph/transfer.py

from __future__ import annotations

import copy
import enum
import logging
from typing import List, Sequence, Union

import torch

from . import params as param_ops
from .config import EdgeDecl, GraphConfig, NodeDecl
from .graph import ComputationGraph

_logger = logging.getLogger(__name__)

Names = Union[str, Sequence[str]]


class ParameterSharing(enum.Enum):
    """How an extracted subgraph relates to its parent's parameters."""

    COPY = "copy"  # independent buffer initialised from the parent
    SHARE = "share"  # parameter views alias the parent's buffer


def _as_names(names: Names) -> List[str]:
    if isinstance(names, str):
        return [names]
    result = list(names)
    if not result:
        raise ValueError("At least one node name is required")
    return result


def extract_feature_subgraph(
    graph: ComputationGraph,
    cut: Names,
    *,
    parameters: ParameterSharing,
) -> ComputationGraph:
    """
    Frozen feature extractor ending at ``cut``.

    Keeps exactly the nodes reachable backward from the cut node(s), designates
    the cut node(s) as outputs and marks every kept node frozen. ``parameters``
    decides whether the result copies the parent's parameters or aliases them.
    """
    if not isinstance(parameters, ParameterSharing):
        raise TypeError(f"parameters must be a ParameterSharing value, got {parameters!r}")
    cuts = _as_names(cut)
    kept = graph.structure.ancestors(cuts)

    source = graph.config
    config = GraphConfig(
        nodes=[copy.deepcopy(decl) for decl in source.nodes if decl.name in kept],
        edges=[edge for edge in source.edges if edge.consumer in kept],
        outputs=list(cuts),
        seed=source.seed,
        dtype=source.dtype,
        device=source.device,
    )
    sub = ComputationGraph(config)
    parent_views = graph._require_views()
    if parameters is ParameterSharing.SHARE:
        sub._attach(param_ops.share(parent_views, sub.structure))
    else:
        ranges = param_ops.layout(sub.structure)
        pieces = [parent_views.view_for(r.node, r.param)[0].reshape(-1) for r in ranges]
        flat = torch.cat(pieces) if pieces else torch.zeros(0, dtype=graph.dtype, device=graph.device)
        sub.init(params=flat)

    # Every kept node is an ancestor of some cut, so all of them are frozen.
    for name in sub.structure.order:
        sub.set_frozen(name, True)
    _logger.debug(
        "Extracted %d of %d nodes ending at %s (%s)",
        len(kept),
        len(graph.structure.nodes),
        cuts,
        parameters.value,
    )
    return sub


def append_tail(
    base: ComputationGraph,
    nodes: Sequence[NodeDecl],
    edges: Sequence[EdgeDecl],
    outputs: Sequence[str],
) -> ComputationGraph:
    """
    New graph made of ``base``'s declarations followed by a tail.

    Base parameters and frozen flags are copied; tail nodes start from a fresh
    seeded initialisation and are trainable.
    """
    source = base.config
    config = GraphConfig(
        nodes=[copy.deepcopy(decl) for decl in source.nodes] + list(nodes),
        edges=list(source.edges) + list(edges),
        outputs=list(outputs),
        seed=source.seed,
        dtype=source.dtype,
        device=source.device,
    )
    combined = ComputationGraph(config).init()
    base_views = base._require_views()
    for entry in base_views.ranges:
        target, _ = combined.view_for(entry.node, entry.param)
        source_view, _ = base_views.view_for(entry.node, entry.param)
        target.copy_(source_view)
    for name in base.frozen_nodes:
        combined.set_frozen(name, True)
    return combined


def freeze_up_to(graph: ComputationGraph, names: Names) -> List[str]:
    """
    Freeze ``names`` and all their ancestors in place.

    With several names a node is frozen when it feeds any of them. Returns the
    frozen names in evaluation order.
    """
    targets = graph.structure.ancestors(_as_names(names))
    for name in targets:
        graph.set_frozen(name, True)
    return [name for name in graph.order if name in targets]
