from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import torch

from .graph import ComputationGraph


@dataclass
class StatRecord:
    name: str
    l2: float
    max_abs: float
    mean_abs: float
    zero_frac: float


@dataclass
class GradientSummary:
    nodes: List[StatRecord]
    frozen: List[str] = field(default_factory=list)

    def to_text(self, top_k: Optional[int] = None) -> str:
        sections: List[str] = []
        if self.nodes:
            lines = ["Node gradients:"]
            rows = self.nodes if top_k is None else self.nodes[:top_k]
            for rec in rows:
                lines.append(
                    f"  {rec.name:<30} |l2|={rec.l2:.4e} "
                    f"|max|={rec.max_abs:.4e} mean|g|={rec.mean_abs:.4e} "
                    f"zero%={rec.zero_frac * 100:5.2f}"
                )
            sections.append("\n".join(lines))
        if self.frozen:
            sections.append("Frozen nodes: " + ", ".join(self.frozen))
        return "\n".join(sections)


class _StatBucket:
    __slots__ = ("entries", "l2_sum", "abs_sum", "max_abs", "zero_count", "elem_count")

    def __init__(self) -> None:
        self.entries = 0
        self.l2_sum = 0.0
        self.abs_sum = 0.0
        self.max_abs = 0.0
        self.zero_count = 0
        self.elem_count = 0

    def add(self, tensors: Sequence[torch.Tensor]) -> None:
        values = [t.reshape(-1) for t in tensors if t.numel() > 0]
        if not values:
            return
        data = torch.cat(values)
        abs_val = data.abs()
        self.entries += 1
        self.l2_sum += float(data.norm().item())
        self.abs_sum += float(abs_val.sum().item())
        self.max_abs = max(self.max_abs, float(abs_val.max().item()))
        self.zero_count += int((abs_val <= 1e-9).sum().item())
        self.elem_count += data.numel()

    def to_record(self, name: str) -> StatRecord:
        if self.entries == 0 or self.elem_count == 0:
            return StatRecord(name=name, l2=0.0, max_abs=0.0, mean_abs=0.0, zero_frac=0.0)
        return StatRecord(
            name=name,
            l2=self.l2_sum / self.entries,
            max_abs=self.max_abs,
            mean_abs=self.abs_sum / self.elem_count,
            zero_frac=self.zero_count / max(1, self.elem_count),
        )


def _sorted(records: List[StatRecord], top_k: Optional[int]) -> List[StatRecord]:
    records.sort(key=lambda rec: rec.l2, reverse=True)
    if top_k is not None:
        return records[:top_k]
    return records


def gradient_summary(graph: ComputationGraph, top_k: Optional[int] = None) -> GradientSummary:
    """
    Per-node statistics of the current gradient buffer, largest L2 first.
    """
    records: List[StatRecord] = []
    for name in graph.order:
        node = graph.node(name)
        if node.num_params() == 0:
            continue
        bucket = _StatBucket()
        bucket.add([graph.view_for(name, param)[1] for param in node.op.param_shapes()])
        records.append(bucket.to_record(name))
    return GradientSummary(nodes=_sorted(records, top_k), frozen=list(graph.frozen_nodes))


class GradientWatcher:
    """
    Accumulate per-node gradient statistics after every backward pass.

    Listens for the graph's backward ``pass_end`` event and reads the gradient
    views, so the numbers describe what the optimizer is about to consume.
    """

    def __init__(self, graph: ComputationGraph) -> None:
        self.graph = graph
        self._stats: Dict[str, _StatBucket] = {}
        self.graph.register_event_listener(self._on_event)

    def close(self) -> None:
        self.graph.unregister_event_listener(self._on_event)
        self._stats.clear()

    def _on_event(self, payload: Dict[str, Any]) -> None:
        if payload.get("event") != "pass_end" or payload.get("phase") != "backward":
            return
        for name in self.graph.order:
            node = self.graph.node(name)
            if node.num_params() == 0 or node.frozen:
                continue
            grads = [self.graph.view_for(name, param)[1] for param in node.op.param_shapes()]
            self._stats.setdefault(name, _StatBucket()).add(grads)

    def reset(self) -> None:
        self._stats.clear()

    def pop_summary(self, *, top_k: Optional[int] = None) -> Optional[GradientSummary]:
        if not self._stats:
            return None
        records = [bucket.to_record(name) for name, bucket in self._stats.items()]
        self._stats.clear()
        return GradientSummary(nodes=_sorted(records, top_k), frozen=list(self.graph.frozen_nodes))


def plot_gradient_heatmap(
    summary: GradientSummary,
    *,
    metric: str = "l2",
    ax: Optional["matplotlib.axes.Axes"] = None,
) -> "matplotlib.axes.Axes":
    """
    Render a 1×N heatmap of one gradient metric per node using matplotlib.
    """
    if not summary.nodes:
        raise ValueError("Summary has no node rows to plot.")
    values = [getattr(row, metric) for row in summary.nodes]
    labels = [row.name for row in summary.nodes]
    try:
        import matplotlib.pyplot as plt  # type: ignore
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("matplotlib is required for heatmap rendering.") from exc

    if ax is None:
        _, ax = plt.subplots(figsize=(max(4, len(values)), 2))
    im = ax.imshow([values], aspect="auto", cmap="magma")
    ax.set_yticks([])
    ax.set_xticks(range(len(labels)))
    ax.set_xticklabels(labels, rotation=45, ha="right")
    ax.set_title(f"Node gradient {metric}")
    plt.colorbar(im, ax=ax, fraction=0.046, pad=0.04)
    return ax
