"""
Layer Contract.

Every building block of a recurrent network exposes the same three
operations, evaluated explicitly rather than through autograd:

- forward(input) -> output        (cached in ``layer.output``)
- backward(output, gy) -> g       (cached in ``layer.delta``)
- gradient(input, error)          (per-step contribution in ``layer.gradients``)

Layers are regular ``nn.Module`` objects so that parameters, ``train()``/
``eval()`` and device moves behave like any other PyTorch module.
"""

from typing import Dict, Iterator, Optional, Tuple

import torch
import torch.nn as nn
from torch import Tensor


class Layer(nn.Module):
    """
    Base class for explicitly differentiated layers.

    Buffers:
        output: Result of the most recent ``forward`` call
        delta: Gradient w.r.t. the layer input from the most recent ``backward``
        gradients: Pending per-step weight gradients, keyed by parameter name

    ``gradient`` overwrites the pending buffers; summing contributions across
    time steps is the job of the driver that owns the unroll.
    """

    def __init__(self):
        super().__init__()
        self.output: Optional[Tensor] = None
        self.delta: Optional[Tensor] = None
        self.gradients: Dict[str, Tensor] = {}

    def forward(self, x: Tensor) -> Tensor:
        raise NotImplementedError

    def backward(self, output: Tensor, gy: Tensor) -> Tensor:
        raise NotImplementedError

    def gradient(self, x: Tensor, error: Tensor) -> None:
        """Compute the per-step weight gradient. Layers without weights do nothing."""

    def zero_gradient(self) -> None:
        """Reset the pending per-step gradient of this layer's own parameters."""
        for name, param in self.named_parameters(recurse=False):
            self.gradients[name] = torch.zeros_like(param)

    def pending_gradients(self) -> Iterator[Tuple[nn.Parameter, Tensor]]:
        """Yield (parameter, pending gradient) pairs for this layer's own parameters."""
        for name, param in self.named_parameters(recurse=False):
            grad = self.gradients.get(name)
            if grad is not None:
                yield param, grad

    @property
    def weight_size(self) -> int:
        """Number of trainable values, shared layers counted once."""
        return sum(p.numel() for p in self.parameters())

    def reset_buffers(self) -> None:
        """Drop cached activations and deltas."""
        self.output = None
        self.delta = None
