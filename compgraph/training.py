from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

import torch

from .data_helper import ArrayDataset, MultiDataSet
from .diagnostics import GradientWatcher
from .graph import ComputationGraph

UPDATERS = ("sgd", "adam", "adamw")


@dataclass(frozen=True)
class TrainLoopConfig:
    epochs: int
    lr: float
    log_every: int
    updater: str = "sgd"
    momentum: float = 0.0
    weight_decay: float = 0.0
    betas: Optional[Tuple[float, float]] = None
    grad_clip: Optional[float] = None
    val_every: int = 1

    def __post_init__(self) -> None:
        if self.updater not in UPDATERS:
            raise ValueError(f"updater must be one of {UPDATERS}, got {self.updater!r}")
        if self.epochs < 0:
            raise ValueError("epochs must be >= 0")
        if self.log_every < 1:
            raise ValueError("log_every must be >= 1")


@dataclass
class EpochStats:
    avg_loss: float
    final_loss: float


def build_optimizer(graph: ComputationGraph, config: TrainLoopConfig) -> torch.optim.Optimizer:
    """torch.optim updater over the graph's trainable parameter views."""
    params = graph.trainable_parameters()
    if not params:
        raise ValueError("Graph has no trainable parameters; every learnable node is frozen.")
    betas = config.betas or (0.9, 0.999)
    if config.updater == "adamw":
        return torch.optim.AdamW(params, lr=config.lr, weight_decay=config.weight_decay, betas=betas)
    if config.updater == "adam":
        return torch.optim.Adam(params, lr=config.lr, weight_decay=config.weight_decay, betas=betas)
    return torch.optim.SGD(params, lr=config.lr, momentum=config.momentum, weight_decay=config.weight_decay)


def fit_batch(
    graph: ComputationGraph,
    batch: MultiDataSet,
    optimizer: torch.optim.Optimizer,
    grad_clip: Optional[float] = None,
) -> float:
    """
    One optimisation step: forward, score, backward into the gradient views, update.

    Gradients are zeroed by the graph's backward pass, so ``optimizer.zero_grad``
    is never called.
    """
    score = graph.compute_gradient_and_score(
        batch.features,
        batch.labels,
        masks=batch.feature_masks,
        label_masks=batch.label_masks,
    )
    graph.bind_gradients()
    if grad_clip is not None:
        torch.nn.utils.clip_grad_norm_(graph.trainable_parameters(), grad_clip)
    optimizer.step()
    return score


class Trainer:
    def __init__(
        self,
        graph: ComputationGraph,
        dataset: ArrayDataset,
        config: TrainLoopConfig,
        *,
        val_dataset: Optional[ArrayDataset] = None,
        grad_monitor: Optional[GradientWatcher] = None,
        grad_summary_top_k: Optional[int] = 5,
    ) -> None:
        self.graph = graph
        self.dataset = dataset
        self.config = config
        self.val_dataset = val_dataset
        self.optimizer: Optional[torch.optim.Optimizer] = None
        self.grad_monitor = grad_monitor
        self.grad_summary_top_k = grad_summary_top_k

    def run(self, *, seed: Optional[int] = None) -> List[float]:
        if seed is not None:
            torch.manual_seed(seed)
        history: List[float] = []
        for epoch in range(1, self.config.epochs + 1):
            stats = self._train_epoch(epoch)
            history.append(stats.avg_loss)
            self._log_epoch(epoch, stats)
            if (
                self.val_dataset is not None
                and self.config.val_every > 0
                and (epoch % self.config.val_every) == 0
            ):
                self._log_validation(epoch)
        return history

    def _train_epoch(self, epoch: int) -> EpochStats:
        total_loss = 0.0
        steps = 0
        last_loss_value = 0.0
        optimizer = self._ensure_optimizer()

        for step, batch in enumerate(self.dataset.iter_batches(shuffle=True), start=1):
            last_loss_value = fit_batch(self.graph, batch, optimizer, self.config.grad_clip)
            total_loss += last_loss_value
            steps += 1

            if step % self.config.log_every == 0 or step == self.dataset.batches_per_epoch:
                print(
                    f"[epoch {epoch}] step {step}/{self.dataset.batches_per_epoch} "
                    f"loss={last_loss_value:.4f}"
                )
                self._log_gradient_summary()

        avg_loss = total_loss / max(1, steps)
        return EpochStats(avg_loss=avg_loss, final_loss=last_loss_value)

    def _ensure_optimizer(self) -> torch.optim.Optimizer:
        if self.optimizer is None:
            self.optimizer = build_optimizer(self.graph, self.config)
        return self.optimizer

    def _log_epoch(self, epoch: int, stats: EpochStats) -> None:
        print(f"Epoch {epoch} final loss: {stats.final_loss:.4f}")

    def _log_validation(self, epoch: int) -> None:
        assert self.val_dataset is not None
        val_loss = self._evaluate(self.val_dataset)
        print(f"[val after epoch {epoch}] avg_loss={val_loss:.4f}")

    def _evaluate(self, dataset: ArrayDataset) -> float:
        total = 0.0
        steps = 0
        for batch in dataset.iter_batches(shuffle=False):
            total += self.graph.score(
                batch.features,
                batch.labels,
                masks=batch.feature_masks,
                label_masks=batch.label_masks,
            )
            steps += 1
        return total / max(1, steps)

    def _log_gradient_summary(self) -> None:
        if self.grad_monitor is None:
            return
        summary = self.grad_monitor.pop_summary(top_k=self.grad_summary_top_k)
        if summary is None:
            return
        text = summary.to_text()
        if not text:
            return
        for line in text.splitlines():
            print(f"    {line}")


def train_graph(
    graph: ComputationGraph,
    dataset: ArrayDataset,
    *,
    epochs: int,
    lr: float,
    log_every: int,
    seed: Optional[int] = None,
    updater: str = "sgd",
    momentum: float = 0.0,
    weight_decay: float = 0.0,
    betas: Optional[Tuple[float, float]] = None,
    grad_clip: Optional[float] = None,
    val_dataset: Optional[ArrayDataset] = None,
    val_every: int = 1,
    grad_monitor: Optional[GradientWatcher] = None,
    grad_summary_top_k: Optional[int] = 5,
) -> List[float]:
    """
    Train a graph on an ArrayDataset with a torch.optim updater.

    Returns a list of average loss values per epoch.
    """
    config = TrainLoopConfig(
        epochs=epochs,
        lr=lr,
        log_every=log_every,
        updater=updater,
        momentum=momentum,
        weight_decay=weight_decay,
        betas=betas,
        grad_clip=grad_clip,
        val_every=val_every,
    )
    trainer = Trainer(
        graph,
        dataset,
        config,
        val_dataset=val_dataset,
        grad_monitor=grad_monitor,
        grad_summary_top_k=grad_summary_top_k,
    )
    return trainer.run(seed=seed)
