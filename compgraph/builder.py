# compgraph/builder.py

from __future__ import annotations

import copy
import logging
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

import networkx as nx
from networkx import MultiDiGraph

from . import scheduler
from .adapters import Adapter, resolve_adapter
from .config import EdgeDecl, NodeDecl
from .errors import ConfigurationError, IncompatibleShapeError, UnknownNodeError
from .layers import Layer
from .types import InputType, NodeKind, ShapeKind
from .vertices import Vertex

_logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Edge:
    """
    Resolved connection between two nodes.

    ``adapter`` is set when the producer's output kind differs from the kind the
    consumer expects; ``input_type`` is the type the consumer receives on this edge.
    """

    producer: str
    consumer: str
    slot: int
    adapter: Optional[Adapter] = None
    input_type: Optional[InputType] = None

    def __repr__(self) -> str:
        via = f" via {self.adapter!r}" if self.adapter is not None else ""
        return f"Edge({self.producer!r} -> {self.consumer!r}[{self.slot}]{via})"


@dataclass(eq=False)
class Node:
    """A built graph node owning its compute instance."""

    name: str
    kind: NodeKind
    index: int
    op: Optional[Union[Layer, Vertex]]
    inputs: List[Edge] = field(default_factory=list)
    outputs: List[Edge] = field(default_factory=list)
    input_kind: Optional[ShapeKind] = None
    output_type: Optional[InputType] = None
    frozen: bool = False

    @property
    def is_input(self) -> bool:
        return self.kind is NodeKind.INPUT

    @property
    def fan_in(self) -> int:
        return len(self.inputs)

    @property
    def compute(self) -> Union[Layer, Vertex]:
        if self.op is None:
            raise ConfigurationError(f"Input node {self.name!r} has no compute instance")
        return self.op

    def num_params(self) -> int:
        return 0 if self.op is None else self.op.num_params()


@dataclass
class GraphStructure:
    """Validated nodes, resolved edges, designated outputs and the cached evaluation order."""

    nodes: "OrderedDict[str, Node]"
    edges: List[Edge]
    outputs: Tuple[str, ...]
    order: Tuple[str, ...]

    @property
    def input_names(self) -> Tuple[str, ...]:
        return tuple(name for name, node in self.nodes.items() if node.is_input)

    def node(self, name: str) -> Node:
        try:
            return self.nodes[name]
        except KeyError:
            raise UnknownNodeError(name) from None

    def dependency_graph(self) -> MultiDiGraph:
        return scheduler.dependency_graph(list(self.nodes), ((e.producer, e.consumer) for e in self.edges))

    def ancestors(self, names: Iterable[str]) -> Set[str]:
        """The given nodes plus every node reachable backward from them."""
        targets = [self.node(name).name for name in names]
        graph = self.dependency_graph()
        seen: Set[str] = set(targets)
        for name in targets:
            seen |= nx.ancestors(graph, name)
        return seen


def _node_kind(op: object) -> NodeKind:
    if isinstance(op, InputType):
        return NodeKind.INPUT
    if isinstance(op, Layer):
        return NodeKind.LAYER
    if isinstance(op, Vertex):
        return op.kind
    raise ConfigurationError(f"Unsupported node declaration {type(op).__name__}")


def _validate(
    node_decls: Sequence[NodeDecl],
    edge_decls: Sequence[EdgeDecl],
    output_names: Sequence[str],
) -> None:
    declared: Dict[str, NodeDecl] = {}
    for decl in node_decls:
        if decl.name in declared:
            raise ConfigurationError(f"Duplicate node name {decl.name!r}")
        declared[decl.name] = decl
    if not declared:
        raise ConfigurationError("Graph declares no nodes")

    incoming: Dict[str, List[EdgeDecl]] = defaultdict(list)
    for edge in edge_decls:
        for endpoint in (edge.producer, edge.consumer):
            if endpoint not in declared:
                raise ConfigurationError(
                    f"Edge {edge.producer!r} -> {edge.consumer!r} references undeclared node {endpoint!r}"
                )
        incoming[edge.consumer].append(edge)

    if not output_names:
        raise ConfigurationError("At least one output node must be designated")
    for name in output_names:
        if name not in declared:
            raise ConfigurationError(f"Output {name!r} is not a declared node")
    if len(set(output_names)) != len(output_names):
        raise ConfigurationError(f"Duplicate output names in {list(output_names)}")

    for name, decl in declared.items():
        edges = incoming.get(name, [])
        if decl.is_input:
            if edges:
                raise ConfigurationError(f"Input node {name!r} cannot declare inputs")
            continue
        if not edges:
            raise ConfigurationError(f"Node {name!r} declares no inputs")
        slots = sorted(edge.slot for edge in edges)
        if slots != list(range(len(edges))):
            raise ConfigurationError(f"Input slots of {name!r} must be 0..{len(edges) - 1}, got {slots}")
        if isinstance(decl.op, Vertex):
            decl.op.check_input_count(len(edges), name)


def _expected_kind(node: Node, producer_types: Sequence[InputType]) -> ShapeKind:
    if node.op is not None and node.op.input_kind is not None:
        return node.op.input_kind
    kinds = {t.kind for t in producer_types}
    if len(kinds) > 1:
        described = ", ".join(f"{e.producer}: {t.kind.value}" for e, t in zip(node.inputs, producer_types))
        raise IncompatibleShapeError(
            f"Inputs of {node.name!r} must share one shape kind, got {described}",
            consumer=node.name,
        )
    return producer_types[0].kind


def _concatenated_type(name: str, types: Sequence[InputType]) -> InputType:
    """Type seen by a layer whose fan-in is concatenated along the feature axis."""
    if len(types) == 1:
        return types[0]
    first = types[0]
    if first.kind is ShapeKind.CONVOLUTIONAL:
        for other in types[1:]:
            if (other.height, other.width) != (first.height, first.width):
                raise IncompatibleShapeError(
                    f"Inputs of {name!r} differ in spatial size: {first} vs {other}",
                    consumer=name,
                )
        _, height, width = first.geometry
        return InputType.convolutional(height, width, sum(int(t.channels or 0) for t in types))
    total = sum(t.size for t in types)
    if first.kind is ShapeKind.RECURRENT:
        return InputType.recurrent(total, timesteps=first.timesteps)
    return InputType.feed_forward(total)


def _resolve_node(node: Node, producers: Dict[str, Node]) -> None:
    producer_types = []
    for edge in node.inputs:
        source = producers[edge.producer].output_type
        if source is None:
            raise ConfigurationError(f"{edge.producer!r} feeds {node.name!r} before its type is resolved")
        producer_types.append(source)
    target = _expected_kind(node, producer_types)
    node.input_kind = target

    adapted: List[InputType] = []
    for edge, source in zip(node.inputs, producer_types):
        edge.adapter = resolve_adapter(source, target, edge.producer, edge.consumer)
        edge.input_type = edge.adapter.output_type(source) if edge.adapter is not None else source
        adapted.append(edge.input_type)

    op = node.op
    try:
        if isinstance(op, Layer):
            merged = _concatenated_type(node.name, adapted)
            op.bind(merged)
            node.output_type = op.output_type(merged)
        elif isinstance(op, Vertex):
            op.bind(adapted)
            node.output_type = op.output_type(adapted)
    except IncompatibleShapeError as exc:
        if exc.consumer is not None:
            raise
        raise IncompatibleShapeError(f"Node {node.name!r}: {exc}", consumer=node.name) from exc
    except ValueError as exc:
        raise IncompatibleShapeError(f"Node {node.name!r}: {exc}", consumer=node.name) from exc


def build(
    node_decls: Sequence[NodeDecl],
    edge_decls: Sequence[EdgeDecl],
    output_names: Sequence[str],
) -> GraphStructure:
    """
    Validate declarations, fix the evaluation order and resolve every edge's shape.

    Layer and vertex prototypes are deep-copied so a configuration can be built
    any number of times; each structure owns its compute instances.
    """
    _validate(node_decls, edge_decls, output_names)

    nodes: "OrderedDict[str, Node]" = OrderedDict()
    for index, decl in enumerate(node_decls):
        if isinstance(decl.op, InputType):
            nodes[decl.name] = Node(decl.name, NodeKind.INPUT, index, op=None, output_type=decl.op)
        else:
            nodes[decl.name] = Node(decl.name, _node_kind(decl.op), index, op=copy.deepcopy(decl.op))

    edges: List[Edge] = []
    for decl in edge_decls:
        edge = Edge(decl.producer, decl.consumer, decl.slot)
        edges.append(edge)
        nodes[decl.producer].outputs.append(edge)
    for name, node in nodes.items():
        node.inputs = sorted(
            (edge for edge in edges if edge.consumer == name),
            key=lambda edge: edge.slot,
        )

    order = scheduler.topological_order(list(nodes), ((e.producer, e.consumer) for e in edges))
    for name in order:
        node = nodes[name]
        if node.is_input:
            continue
        _resolve_node(node, nodes)
        _logger.debug("Resolved %s: %s -> %s", name, node.input_kind, node.output_type)

    return GraphStructure(nodes=nodes, edges=edges, outputs=tuple(output_names), order=order)
