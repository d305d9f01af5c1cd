# compgraph/config.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Sequence, Union

import torch

from .layers import Layer
from .types import InputType
from .vertices import Vertex

if TYPE_CHECKING:
    from .builder import GraphStructure
    from .graph import ComputationGraph

NodeOp = Union[InputType, Layer, Vertex]


@dataclass
class NodeDecl:
    """A named node declaration: an input type, a layer prototype or a vertex prototype."""

    name: str
    op: NodeOp

    @property
    def is_input(self) -> bool:
        return isinstance(self.op, InputType)


@dataclass(frozen=True)
class EdgeDecl:
    """Directed connection ``producer -> consumer`` feeding the consumer's input ``slot``."""

    producer: str
    consumer: str
    slot: int = 0


@dataclass
class GraphConfig:
    """
    Ordered node/edge declarations plus the numeric settings of a graph.

    Declaration order matters: it breaks ties in the evaluation order and fixes
    the layout of the flat parameter buffer.
    """

    nodes: List[NodeDecl] = field(default_factory=list)
    edges: List[EdgeDecl] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    seed: Optional[int] = None
    dtype: torch.dtype = torch.float32
    device: Union[str, torch.device] = "cpu"

    @classmethod
    def builder(cls) -> "GraphBuilder":
        return GraphBuilder()

    @property
    def input_names(self) -> List[str]:
        return [decl.name for decl in self.nodes if decl.is_input]

    def build_structure(self) -> "GraphStructure":
        from .builder import build

        return build(self.nodes, self.edges, self.outputs)

    def to_graph(self) -> "ComputationGraph":
        from .graph import ComputationGraph

        return ComputationGraph(self)


class GraphBuilder:
    """
    Fluent construction of a GraphConfig.

    Usage:
        config = (
            GraphConfig.builder()
            .add_inputs(x=InputType.feed_forward(4))
            .add_layer("hidden", DenseLayer(8, activation="relu"), "x")
            .add_layer("out", OutputLayer(3, loss="mcxent"), "hidden")
            .set_outputs("out")
            .build()
        )
    """

    def __init__(self) -> None:
        self._nodes: List[NodeDecl] = []
        self._edges: List[EdgeDecl] = []
        self._outputs: List[str] = []
        self._seed: Optional[int] = None
        self._dtype: torch.dtype = torch.float32
        self._device: Union[str, torch.device] = "cpu"

    def add_input(self, name: str, input_type: InputType) -> "GraphBuilder":
        if not isinstance(input_type, InputType):
            raise TypeError(f"Input {name!r} must be declared with an InputType, got {type(input_type).__name__}")
        self._nodes.append(NodeDecl(name, input_type))
        return self

    def add_inputs(self, **input_types: InputType) -> "GraphBuilder":
        """Declare several input nodes at once, in keyword order."""
        for name, input_type in input_types.items():
            self.add_input(name, input_type)
        return self

    def add_layer(self, name: str, layer: Layer, *inputs: str) -> "GraphBuilder":
        if not isinstance(layer, Layer):
            raise TypeError(f"add_layer({name!r}) expects a Layer, got {type(layer).__name__}")
        self._add_node(name, layer, inputs)
        return self

    def add_vertex(self, name: str, vertex: Vertex, *inputs: str) -> "GraphBuilder":
        if not isinstance(vertex, Vertex):
            raise TypeError(f"add_vertex({name!r}) expects a Vertex, got {type(vertex).__name__}")
        self._add_node(name, vertex, inputs)
        return self

    def _add_node(self, name: str, op: NodeOp, inputs: Sequence[str]) -> None:
        self._nodes.append(NodeDecl(name, op))
        for slot, producer in enumerate(inputs):
            self._edges.append(EdgeDecl(producer, name, slot))

    def set_outputs(self, *names: str) -> "GraphBuilder":
        self._outputs = list(names)
        return self

    def seed(self, seed: Optional[int]) -> "GraphBuilder":
        self._seed = seed
        return self

    def dtype(self, dtype: torch.dtype) -> "GraphBuilder":
        self._dtype = dtype
        return self

    def device(self, device: Union[str, torch.device]) -> "GraphBuilder":
        self._device = device
        return self

    def build(self) -> GraphConfig:
        """Return the declarations as a GraphConfig and validate them structurally."""
        config = GraphConfig(
            nodes=list(self._nodes),
            edges=list(self._edges),
            outputs=list(self._outputs),
            seed=self._seed,
            dtype=self._dtype,
            device=self._device,
        )
        config.build_structure()
        return config
