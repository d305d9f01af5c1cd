# compgraph/errors.py

from __future__ import annotations

from typing import Iterable, Optional


class GraphError(Exception):
    """Base class for structural and usage errors raised by the graph engine."""


class ConfigurationError(GraphError, ValueError):
    """Malformed or ambiguous node/edge declarations."""


class IncompatibleShapeError(ConfigurationError):
    """
    No adapter exists between a producer's output kind and a consumer's expected
    input kind, or a declared size disagrees with the inferred one.
    """

    def __init__(self, message: str, producer: Optional[str] = None, consumer: Optional[str] = None) -> None:
        super().__init__(message)
        self.producer = producer
        self.consumer = consumer


class CyclicGraphError(ConfigurationError):
    """The edge relation contains a cycle, so no evaluation order exists."""

    def __init__(self, unvisited: Iterable[str]) -> None:
        self.unvisited = tuple(unvisited)
        super().__init__(
            "Graph contains a cycle; nodes left unscheduled: " + ", ".join(self.unvisited)
        )


class ParameterCountMismatchError(GraphError, ValueError):
    """A flat buffer of the wrong length was supplied for set/restore."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Expected a flat buffer of length {expected}, got {actual}.")


class UnknownNodeError(GraphError, KeyError):
    """Reference to a node name that does not exist in the graph."""

    def __init__(self, name: str, context: Optional[str] = None) -> None:
        self.name = name
        message = f"Unknown node {name!r}"
        if context:
            message = f"{message} ({context})"
        super().__init__(message)

    def __str__(self) -> str:
        return str(self.args[0])


class PassStateError(GraphError, RuntimeError):
    """An executor operation was called out of order (e.g. backward before forward)."""


class UnknownParameterError(GraphError, KeyError):
    """A node exists but owns no parameter of the requested name."""

    def __init__(self, node: str, param: str, known: Iterable[str] = ()) -> None:
        self.node = node
        self.param = param
        known = list(known)
        if known:
            message = f"Node {node!r} has no parameter {param!r}; known: {known}"
        else:
            message = f"Node {node!r} has no learnable parameters (asked for {param!r})"
        super().__init__(message)

    def __str__(self) -> str:
        return str(self.args[0])
