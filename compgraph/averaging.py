# compgraph/averaging.py

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Union

import torch

from .data_helper import ArrayDataset, MultiDataSet
from .graph import ComputationGraph
from .training import TrainLoopConfig, build_optimizer, fit_batch

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregationTuple:
    """
    Partial aggregate of worker results: summed flat parameters, summed scores
    and the number of results folded in.
    """

    params: Optional[torch.Tensor]
    score: float = 0.0
    count: int = 0

    @staticmethod
    def combine(
        first: Optional["AggregationTuple"],
        second: Optional["AggregationTuple"],
    ) -> Optional["AggregationTuple"]:
        """Associative merge; ``None`` and empty tuples are identities."""
        if first is None or first.count == 0 or first.params is None:
            return second
        if second is None or second.count == 0 or second.params is None:
            return first
        return AggregationTuple(
            params=first.params + second.params,
            score=first.score + second.score,
            count=first.count + second.count,
        )

    @classmethod
    def of(cls, graph: ComputationGraph, score: float = 0.0) -> "AggregationTuple":
        return cls(params=graph.params().detach().clone(), score=float(score), count=1)

    def average_params(self) -> torch.Tensor:
        if self.params is None or self.count == 0:
            raise ValueError("Nothing aggregated.")
        return self.params / self.count

    def average_score(self) -> float:
        if self.count == 0:
            raise ValueError("Nothing aggregated.")
        return self.score / self.count


def average_parameters(sources: Sequence[Union[ComputationGraph, torch.Tensor]]) -> torch.Tensor:
    """Element-wise mean of flat parameter vectors (or of graphs' parameters)."""
    total: Optional[AggregationTuple] = None
    for source in sources:
        params = source.params() if isinstance(source, ComputationGraph) else source
        total = AggregationTuple.combine(total, AggregationTuple(params.detach().reshape(-1).clone(), 0.0, 1))
    if total is None:
        raise ValueError("average_parameters() needs at least one source.")
    return total.average_params()


@dataclass(frozen=True)
class AveragingConfig:
    workers: int = 2
    averaging_frequency: int = 1

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ValueError("workers must be >= 1")
        if self.averaging_frequency < 1:
            raise ValueError("averaging_frequency must be >= 1")


class ParallelTrainer:
    """
    Synchronous parameter-averaging data parallelism.

    Each worker is an independent clone of the baseline graph with its own
    optimizer. Every round hands each worker ``averaging_frequency`` minibatches,
    fits them concurrently, then averages the workers' flat parameters and
    writes the mean back into the baseline and every worker.
    """

    def __init__(
        self,
        graph: ComputationGraph,
        config: AveragingConfig,
        train_config: TrainLoopConfig,
    ) -> None:
        self.graph = graph
        self.config = config
        self.train_config = train_config
        self.workers: List[ComputationGraph] = [graph.clone() for _ in range(config.workers)]
        self.optimizers = [build_optimizer(worker, train_config) for worker in self.workers]
        self.rounds = 0

    def _fit_worker(self, index: int, batches: Sequence[MultiDataSet]) -> Optional[AggregationTuple]:
        if not batches:
            return None
        worker = self.workers[index]
        optimizer = self.optimizers[index]
        score = 0.0
        for batch in batches:
            score = fit_batch(worker, batch, optimizer, self.train_config.grad_clip)
        return AggregationTuple.of(worker, score)

    def fit_round(self, batches: Sequence[MultiDataSet]) -> float:
        """
        Fit one averaging round. Batches are dealt round-robin to the workers.

        Returns the mean of the workers' last minibatch scores.
        """
        shards: List[List[MultiDataSet]] = [[] for _ in self.workers]
        for i, batch in enumerate(batches):
            shards[i % len(self.workers)].append(batch)
        with ThreadPoolExecutor(max_workers=len(self.workers)) as pool:
            results = list(pool.map(self._fit_worker, range(len(self.workers)), shards))

        total: Optional[AggregationTuple] = None
        for result in results:
            total = AggregationTuple.combine(total, result)
        if total is None:
            raise ValueError("fit_round() received no batches.")
        averaged = total.average_params()
        self.graph.set_params(averaged)
        for worker in self.workers:
            worker.set_params(averaged)
        self.rounds += 1
        _logger.debug(
            "Averaging round %d: %d worker results, mean score %.6f",
            self.rounds,
            total.count,
            total.average_score(),
        )
        return total.average_score()

    def fit(self, dataset: Union[ArrayDataset, Iterable[MultiDataSet]], epochs: int = 1) -> List[float]:
        """Train for ``epochs`` passes over ``dataset``; returns the score of every round."""
        per_round = self.config.workers * self.config.averaging_frequency
        history: List[float] = []
        for epoch in range(1, epochs + 1):
            if isinstance(dataset, ArrayDataset):
                batches = dataset.iter_batches(shuffle=True)
            else:
                batches = iter(dataset)
            pending: List[MultiDataSet] = []
            for batch in batches:
                pending.append(batch)
                if len(pending) == per_round:
                    history.append(self.fit_round(pending))
                    pending = []
            if pending:
                history.append(self.fit_round(pending))
            if history:
                print(f"Epoch {epoch} final loss: {history[-1]:.4f}")
        return history
