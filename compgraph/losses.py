# compgraph/losses.py

from __future__ import annotations

from typing import Callable, Dict, Optional, Tuple

import torch

_EPS = 1e-10

Score = Callable[[torch.Tensor, torch.Tensor], torch.Tensor]
Grad = Callable[[torch.Tensor, torch.Tensor], torch.Tensor]


def _mse(labels: torch.Tensor, output: torch.Tensor) -> torch.Tensor:
    return ((output - labels) ** 2).mean(dim=-1)


def _mse_grad(labels: torch.Tensor, output: torch.Tensor) -> torch.Tensor:
    return 2.0 * (output - labels) / output.shape[-1]


def _l1(labels: torch.Tensor, output: torch.Tensor) -> torch.Tensor:
    return (output - labels).abs().sum(dim=-1)


def _l1_grad(labels: torch.Tensor, output: torch.Tensor) -> torch.Tensor:
    return torch.sign(output - labels)


def _mcxent(labels: torch.Tensor, output: torch.Tensor) -> torch.Tensor:
    return -(labels * torch.log(output.clamp(min=_EPS))).sum(dim=-1)


def _mcxent_grad(labels: torch.Tensor, output: torch.Tensor) -> torch.Tensor:
    return -labels / output.clamp(min=_EPS)


def _xent(labels: torch.Tensor, output: torch.Tensor) -> torch.Tensor:
    p = output.clamp(min=_EPS, max=1.0 - _EPS)
    return -(labels * torch.log(p) + (1.0 - labels) * torch.log(1.0 - p)).sum(dim=-1)


def _xent_grad(labels: torch.Tensor, output: torch.Tensor) -> torch.Tensor:
    p = output.clamp(min=_EPS, max=1.0 - _EPS)
    return (p - labels) / (p * (1.0 - p))


_REGISTRY: Dict[str, Tuple[Score, Grad]] = {
    "mse": (_mse, _mse_grad),
    "l1": (_l1, _l1_grad),
    "mcxent": (_mcxent, _mcxent_grad),
    "negativeloglikelihood": (_mcxent, _mcxent_grad),
    "xent": (_xent, _xent_grad),
}


class LossFunction:
    """
    Per-example loss over the last axis of an output activation.

    Scores are summed over valid positions and divided by the minibatch size,
    so recurrent outputs contribute every valid time step of every example.
    """

    def __init__(self, name: str = "mse") -> None:
        if name not in _REGISTRY:
            raise ValueError(f"Unsupported loss {name!r}; expected one of {tuple(_REGISTRY)}")
        self.name = name
        self._score, self._grad = _REGISTRY[name]

    def __repr__(self) -> str:
        return f"LossFunction({self.name!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, LossFunction) and other.name == self.name

    def __hash__(self) -> int:
        return hash(self.name)

    def __getstate__(self) -> Dict[str, str]:
        return {"name": self.name}

    def __setstate__(self, state: Dict[str, str]) -> None:
        self.__init__(state["name"])

    def score(
        self,
        labels: torch.Tensor,
        output: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """Average loss per example of the minibatch (scalar tensor)."""
        return self.score_examples(labels, output, mask).sum() / output.shape[0]

    def score_examples(
        self,
        labels: torch.Tensor,
        output: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """Unnormalised loss of each example, shape ``[N]``; masked positions add nothing."""
        per_position = self._score(labels, output)
        if mask is not None:
            per_position = per_position * mask.to(per_position.dtype)
        return per_position.reshape(output.shape[0], -1).sum(dim=1)

    def gradient(
        self,
        labels: torch.Tensor,
        output: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """Gradient of :meth:`score` with respect to ``output``."""
        grad = self._grad(labels, output) / output.shape[0]
        if mask is not None:
            grad = grad * mask.unsqueeze(-1).to(grad.dtype)
        return grad
