# compgraph/scheduler.py

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Sequence, Set, Tuple

import networkx as nx
from networkx import MultiDiGraph

from .errors import CyclicGraphError, UnknownNodeError

if TYPE_CHECKING:
    from .builder import GraphStructure

_logger = logging.getLogger(__name__)

Order = Tuple[str, ...]


def dependency_graph(names: Sequence[str], edges: Iterable[Tuple[str, str]]) -> MultiDiGraph:
    """
    Directed multigraph of ``(producer, consumer)`` pairs.

    Each node carries its declaration ``index``; repeated edges between the same
    pair are kept as parallel edges.
    """
    graph = nx.MultiDiGraph()
    for i, name in enumerate(names):
        graph.add_node(name, index=i)
    for producer, consumer in edges:
        if producer not in graph:
            raise UnknownNodeError(producer, f"edge {producer!r} -> {consumer!r}")
        if consumer not in graph:
            raise UnknownNodeError(consumer, f"edge {producer!r} -> {consumer!r}")
        graph.add_edge(producer, consumer)
    return graph


def _blocked_nodes(graph: MultiDiGraph) -> Set[str]:
    """Nodes on a cycle plus everything downstream of one."""
    cyclic: Set[str] = set()
    for component in nx.strongly_connected_components(graph):
        if len(component) > 1 or any(graph.has_edge(name, name) for name in component):
            cyclic |= component
    blocked = set(cyclic)
    for name in cyclic:
        blocked |= nx.descendants(graph, name)
    return blocked


def topological_order(names: Sequence[str], edges: Iterable[Tuple[str, str]]) -> Order:
    """
    Evaluation order over ``(producer, consumer)`` pairs.

    Ready nodes are taken smallest declaration index first, so the result is
    deterministic and independent of dict or set iteration order.
    """
    graph = dependency_graph(names, edges)
    index = {name: i for i, name in enumerate(names)}
    try:
        order = tuple(nx.lexicographical_topological_sort(graph, key=index.__getitem__))
    except nx.NetworkXUnfeasible as exc:
        blocked = _blocked_nodes(graph)
        raise CyclicGraphError(name for name in names if name in blocked) from exc
    _logger.debug("Evaluation order: %s", " -> ".join(order))
    return order


def order(structure: "GraphStructure") -> Order:
    """Evaluation order of a built structure (recomputed from its nodes and edges)."""
    return topological_order(
        list(structure.nodes),
        ((edge.producer, edge.consumer) for edge in structure.edges),
    )


def reverse_order(order: Sequence[str]) -> Order:
    """Backward visiting order: the forward order reversed."""
    return tuple(reversed(order))


def is_valid_order(order: Sequence[str], edges: Iterable[Tuple[str, str]]) -> bool:
    """True when every producer appears before each of its consumers."""
    position = {name: i for i, name in enumerate(order)}
    for producer, consumer in edges:
        if producer not in position or consumer not in position:
            return False
        if position[producer] >= position[consumer]:
            return False
    return True
