# compgraph/serialization.py

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Union

import torch

from .config import GraphConfig
from .errors import ParameterCountMismatchError
from .graph import ComputationGraph

_logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

FORMAT_VERSION = 1


def state_dict(graph: ComputationGraph) -> Dict[str, Any]:
    """Configuration, flat parameters and frozen flags of ``graph``."""
    return {
        "format_version": FORMAT_VERSION,
        "config": graph.config,
        "params": graph.params().detach().cpu().clone() if graph.initialized else None,
        "frozen": list(graph.frozen_nodes),
    }


def from_state_dict(state: Dict[str, Any]) -> ComputationGraph:
    version = state.get("format_version")
    if version != FORMAT_VERSION:
        raise ValueError(f"Unsupported model format version {version!r}")
    config = state["config"]
    if not isinstance(config, GraphConfig):
        raise TypeError(f"Stored configuration is {type(config).__name__}, expected GraphConfig")
    graph = ComputationGraph(config)
    params = state.get("params")
    if params is not None:
        if params.numel() != graph.num_params():
            raise ParameterCountMismatchError(graph.num_params(), params.numel())
        graph.init(params=params)
    for name in state.get("frozen", []):
        graph.set_frozen(name, True)
    return graph


def save_model(graph: ComputationGraph, path: PathLike) -> None:
    """Write ``graph`` to ``path`` with torch.save."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    torch.save(state_dict(graph), path)
    _logger.debug("Saved %d parameters to %s", graph.num_params(), path)


def load_model(path: PathLike) -> ComputationGraph:
    """
    Restore a graph written by save_model.

    The file holds pickled configuration objects, so only load files you trust.
    """
    state = torch.load(Path(path), map_location="cpu", weights_only=False)
    return from_state_dict(state)
