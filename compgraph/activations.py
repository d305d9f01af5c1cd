# compgraph/activations.py

from __future__ import annotations

from typing import Callable, Dict, Tuple

import torch

Forward = Callable[[torch.Tensor], torch.Tensor]
Backward = Callable[[torch.Tensor, torch.Tensor, torch.Tensor], torch.Tensor]


def _identity(z: torch.Tensor) -> torch.Tensor:
    return z


def _identity_backward(z: torch.Tensor, a: torch.Tensor, grad: torch.Tensor) -> torch.Tensor:
    return grad


def _relu_backward(z: torch.Tensor, a: torch.Tensor, grad: torch.Tensor) -> torch.Tensor:
    return grad * (z > 0).to(grad.dtype)


def _tanh_backward(z: torch.Tensor, a: torch.Tensor, grad: torch.Tensor) -> torch.Tensor:
    return grad * (1.0 - a * a)


def _sigmoid_backward(z: torch.Tensor, a: torch.Tensor, grad: torch.Tensor) -> torch.Tensor:
    return grad * a * (1.0 - a)


def _softmax(z: torch.Tensor) -> torch.Tensor:
    return torch.softmax(z, dim=-1)


def _softmax_backward(z: torch.Tensor, a: torch.Tensor, grad: torch.Tensor) -> torch.Tensor:
    # Jacobian-vector product of softmax along the last axis.
    dot = (grad * a).sum(dim=-1, keepdim=True)
    return a * (grad - dot)


_REGISTRY: Dict[str, Tuple[Forward, Backward]] = {
    "identity": (_identity, _identity_backward),
    "relu": (torch.relu, _relu_backward),
    "tanh": (torch.tanh, _tanh_backward),
    "sigmoid": (torch.sigmoid, _sigmoid_backward),
    "softmax": (_softmax, _softmax_backward),
}


def names() -> Tuple[str, ...]:
    return tuple(_REGISTRY)


def resolve(name: str) -> Tuple[Forward, Backward]:
    """Return the (forward, backward) pair registered under ``name``."""
    try:
        return _REGISTRY[name]
    except KeyError:
        raise ValueError(f"Unsupported activation {name!r}; expected one of {names()}") from None


def register(name: str, forward: Forward, backward: Backward) -> None:
    """Register a custom activation. ``backward(z, a, grad_a)`` returns ``grad_z``."""
    if name in _REGISTRY:
        raise ValueError(f"Activation {name!r} is already registered.")
    _REGISTRY[name] = (forward, backward)
