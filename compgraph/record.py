# compgraph/record.py

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .graph import ComputationGraph


@dataclass(frozen=True)
class NodeEvent:
    """
    One node visit captured during a forward or backward pass.
    """

    pass_index: int
    phase: str
    node: str
    shape: Tuple[int, ...]
    dtype: Optional[str]
    device: Optional[str]


class Trace:
    """
    Recording of the passes a graph executes while the trace is active.

    Responsibilities:
      - Capture node visits in execution order for both phases.
      - Count completed forward and backward passes.
    """

    def __init__(self, graph: ComputationGraph) -> None:
        self.graph = graph
        self._events: List[NodeEvent] = []
        self._passes: Dict[str, int] = {"forward": 0, "backward": 0}
        self._pass_index = -1
        self._active = False

    # ------------------------------------------------------------------ control
    def start(self) -> None:
        if self._active:
            return
        self._events.clear()
        self._passes = {"forward": 0, "backward": 0}
        self._pass_index = -1
        self.graph.register_event_listener(self._handle_event)
        self._active = True

    def stop(self) -> None:
        if not self._active:
            return
        self.graph.unregister_event_listener(self._handle_event)
        self._active = False

    # ---------------------------------------------------------------- listeners
    def _handle_event(self, payload: Dict[str, Any]) -> None:
        kind = payload.get("event")
        if kind == "pass_start":
            self._pass_index += 1
        elif kind in ("node_forward", "node_backward"):
            self._events.append(
                NodeEvent(
                    pass_index=self._pass_index,
                    phase="forward" if kind == "node_forward" else "backward",
                    node=str(payload["node"]),
                    shape=tuple(int(dim) for dim in payload.get("shape", ())),
                    dtype=payload.get("dtype"),
                    device=payload.get("device"),
                )
            )
        elif kind == "pass_end":
            phase = str(payload.get("phase"))
            self._passes[phase] = self._passes.get(phase, 0) + 1

    # ----------------------------------------------------------------- metadata
    @property
    def events(self) -> Tuple[NodeEvent, ...]:
        return tuple(self._events)

    def order(self, phase: str = "forward", pass_index: Optional[int] = None) -> Tuple[str, ...]:
        """Node names visited in ``phase``; restricted to one pass when ``pass_index`` is given."""
        return tuple(
            event.node
            for event in self._events
            if event.phase == phase and (pass_index is None or event.pass_index == pass_index)
        )

    def summary(self) -> Dict[str, Any]:
        visits: Dict[str, int] = {}
        for event in self._events:
            visits[event.node] = visits.get(event.node, 0) + 1
        return {
            "forward_passes": self._passes.get("forward", 0),
            "backward_passes": self._passes.get("backward", 0),
            "nodes": visits,
            "events": len(self._events),
        }


@contextmanager
def record(graph: ComputationGraph) -> Iterator[Trace]:
    """
    Context manager recording every pass run inside the block.

    Usage:
        with compgraph.record(graph) as trace:
            graph.compute_gradient_and_score(inputs, labels)
        trace.order("backward")
    """
    trace = Trace(graph)
    trace.start()
    try:
        yield trace
    finally:
        trace.stop()
