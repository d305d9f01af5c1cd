"""
Minibatch containers for multi-input, multi-output graphs.

A MultiDataSet holds named feature and label tensors (plus optional masks)
keyed by the graph's input and output node names; ArrayDataset slices one
into minibatches for the training loop.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Union

import torch

TensorMap = Dict[str, torch.Tensor]


def _select(values: Optional[TensorMap], index: torch.Tensor) -> Optional[TensorMap]:
    if values is None:
        return None
    return {name: tensor[index] for name, tensor in values.items()}


@dataclass
class MultiDataSet:
    """
    Named features and labels sharing a leading example axis.
    """

    features: TensorMap
    labels: TensorMap = field(default_factory=dict)
    feature_masks: Optional[TensorMap] = None
    label_masks: Optional[TensorMap] = None

    def __post_init__(self) -> None:
        if not self.features:
            raise ValueError("MultiDataSet requires at least one feature tensor.")
        sizes = {int(t.shape[0]) for t in self._all_tensors()}
        if len(sizes) != 1:
            raise ValueError(f"All tensors must share the example axis, got sizes {sorted(sizes)}.")

    def _all_tensors(self) -> List[torch.Tensor]:
        tensors = list(self.features.values()) + list(self.labels.values())
        for extra in (self.feature_masks, self.label_masks):
            if extra:
                tensors.extend(extra.values())
        return tensors

    @property
    def num_examples(self) -> int:
        return int(next(iter(self.features.values())).shape[0])

    def __len__(self) -> int:
        return self.num_examples

    def select(self, index: Union[torch.Tensor, slice]) -> "MultiDataSet":
        """Examples at ``index`` (a slice or an index tensor)."""
        if isinstance(index, slice):
            index = torch.arange(self.num_examples)[index]
        return MultiDataSet(
            features=_select(self.features, index) or {},
            labels=_select(self.labels, index) or {},
            feature_masks=_select(self.feature_masks, index),
            label_masks=_select(self.label_masks, index),
        )

    def split(self, parts: int) -> List["MultiDataSet"]:
        """Split into ``parts`` contiguous shards (the last ones may be smaller)."""
        if parts < 1:
            raise ValueError("parts must be >= 1")
        size = math.ceil(self.num_examples / parts)
        return [self.select(slice(start, start + size)) for start in range(0, self.num_examples, size)]

    def to(self, device: Union[str, torch.device]) -> "MultiDataSet":
        def _move(values: Optional[TensorMap]) -> Optional[TensorMap]:
            if values is None:
                return None
            return {name: tensor.to(device) for name, tensor in values.items()}

        return MultiDataSet(
            features=_move(self.features) or {},
            labels=_move(self.labels) or {},
            feature_masks=_move(self.feature_masks),
            label_masks=_move(self.label_masks),
        )

    def summary(self) -> str:
        feats = ", ".join(f"{k}{list(v.shape)}" for k, v in self.features.items())
        labels = ", ".join(f"{k}{list(v.shape)}" for k, v in self.labels.items()) or "-"
        return f"{self.num_examples} examples; features: {feats}; labels: {labels}"


@dataclass
class ArrayDataset:
    """
    In-memory dataset yielding MultiDataSet minibatches.

    Shuffling draws from a generator seeded with ``seed`` so epochs are
    reproducible; without a seed the global torch RNG is used.
    """

    data: MultiDataSet
    batch_size: int
    seed: Optional[int] = None
    _generator: Optional[torch.Generator] = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.seed is not None:
            self._generator = torch.Generator().manual_seed(int(self.seed))

    @property
    def num_examples(self) -> int:
        return self.data.num_examples

    @property
    def batches_per_epoch(self) -> int:
        return max(1, math.ceil(self.num_examples / self.batch_size))

    def iter_batches(self, *, shuffle: bool = True) -> Iterator[MultiDataSet]:
        n = self.num_examples
        indices = torch.randperm(n, generator=self._generator) if shuffle else torch.arange(n)
        for start in range(0, n, self.batch_size):
            yield self.data.select(indices[start : start + self.batch_size])

    def __iter__(self) -> Iterator[MultiDataSet]:
        return self.iter_batches(shuffle=False)

    def metadata(self) -> Dict[str, Union[int, List[str], None]]:
        return {
            "num_examples": self.num_examples,
            "batch_size": self.batch_size,
            "batches_per_epoch": self.batches_per_epoch,
            "features": list(self.data.features),
            "labels": list(self.data.labels),
            "seed": self.seed,
        }


def synthetic_classification(
    num_examples: int,
    num_features: int,
    num_classes: int,
    *,
    input_name: str = "in",
    output_name: str = "out",
    seed: int = 7,
) -> MultiDataSet:
    """
    Linearly separable toy problem with one-hot labels.

    Features are Gaussian; the class is the argmax of a fixed random projection.
    """
    generator = torch.Generator().manual_seed(seed)
    x = torch.randn(num_examples, num_features, generator=generator)
    projection = torch.randn(num_features, num_classes, generator=generator)
    classes = (x @ projection).argmax(dim=1)
    y = torch.nn.functional.one_hot(classes, num_classes).to(x.dtype)
    return MultiDataSet(features={input_name: x}, labels={output_name: y})
