"""
Affine Layer.

Explicit forward/backward/gradient version of ``nn.Linear`` operating on
``[batch, features]`` tensors.
"""

import math

import torch
import torch.nn as nn
from torch import Tensor

from tbptt.layers.base import Layer


class Linear(Layer):
    """
    Fully connected layer: y = x @ W^T + b.

    Args:
        in_features: Size of each input sample
        out_features: Size of each output sample
        bias: Whether to learn an additive bias (default: True)
    """

    def __init__(self, in_features: int, out_features: int, bias: bool = True):
        super().__init__()

        self.in_features = in_features
        self.out_features = out_features

        self.weight = nn.Parameter(torch.empty(out_features, in_features))
        if bias:
            self.bias = nn.Parameter(torch.empty(out_features))
        else:
            self.register_parameter("bias", None)

        self.reset_parameters()

    def reset_parameters(self):
        """Uniform init in [-1/sqrt(fan_in), 1/sqrt(fan_in)], matching nn.Linear."""
        bound = 1.0 / math.sqrt(self.in_features) if self.in_features > 0 else 0.0
        nn.init.uniform_(self.weight, -bound, bound)
        if self.bias is not None:
            nn.init.uniform_(self.bias, -bound, bound)

    @torch.no_grad()
    def forward(self, x: Tensor) -> Tensor:
        """
        Args:
            x: Input tensor [B, in_features]

        Returns:
            Output tensor [B, out_features]
        """
        out = x @ self.weight.t()
        if self.bias is not None:
            out = out + self.bias
        self.output = out
        return out

    @torch.no_grad()
    def backward(self, output: Tensor, gy: Tensor) -> Tensor:
        # The Jacobian of an affine map does not depend on the activation.
        self.delta = gy @ self.weight
        return self.delta

    @torch.no_grad()
    def gradient(self, x: Tensor, error: Tensor) -> None:
        self.gradients["weight"] = error.t() @ x
        if self.bias is not None:
            self.gradients["bias"] = error.sum(dim=0)

    def extra_repr(self) -> str:
        return (
            f"in_features={self.in_features}, "
            f"out_features={self.out_features}, "
            f"bias={self.bias is not None}"
        )
