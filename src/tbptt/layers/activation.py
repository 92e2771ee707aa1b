"""
Parameter-free activation layers.

Each backward pass is expressed in terms of the cached forward output, so a
driver only has to restore ``output`` to replay an earlier time step.
"""

import torch
from torch import Tensor

from tbptt.layers.base import Layer


class Identity(Layer):
    """Pass-through layer, used as the default start module."""

    def forward(self, x: Tensor) -> Tensor:
        self.output = x
        return x

    def backward(self, output: Tensor, gy: Tensor) -> Tensor:
        self.delta = gy
        return gy


class Tanh(Layer):
    """Hyperbolic tangent: dy/dx = 1 - y^2."""

    @torch.no_grad()
    def forward(self, x: Tensor) -> Tensor:
        self.output = torch.tanh(x)
        return self.output

    @torch.no_grad()
    def backward(self, output: Tensor, gy: Tensor) -> Tensor:
        self.delta = gy * (1.0 - output * output)
        return self.delta


class Sigmoid(Layer):
    """Logistic sigmoid: dy/dx = y * (1 - y)."""

    @torch.no_grad()
    def forward(self, x: Tensor) -> Tensor:
        self.output = torch.sigmoid(x)
        return self.output

    @torch.no_grad()
    def backward(self, output: Tensor, gy: Tensor) -> Tensor:
        self.delta = gy * output * (1.0 - output)
        return self.delta


class ReLU(Layer):
    """Rectified linear unit."""

    @torch.no_grad()
    def forward(self, x: Tensor) -> Tensor:
        self.output = torch.relu(x)
        return self.output

    @torch.no_grad()
    def backward(self, output: Tensor, gy: Tensor) -> Tensor:
        self.delta = gy * (output > 0).to(gy.dtype)
        return self.delta


ACTIVATIONS = {
    "identity": Identity,
    "tanh": Tanh,
    "sigmoid": Sigmoid,
    "relu": ReLU,
}


def get_activation(name: str) -> Layer:
    """Instantiate an activation layer by name."""
    try:
        return ACTIVATIONS[name.lower()]()
    except KeyError:
        raise ValueError(
            f"Unknown activation '{name}', expected one of {sorted(ACTIVATIONS)}"
        ) from None
