"""
Loss functions with explicit gradients.
"""

import torch
import torch.nn as nn
from torch import Tensor


class MeanSquaredError(nn.Module):
    """
    Mean squared error over all elements.

    loss = mean((prediction - target)^2)
    dloss/dprediction = 2 * (prediction - target) / numel
    """

    @torch.no_grad()
    def forward(self, prediction: Tensor, target: Tensor) -> Tensor:
        return torch.mean((prediction - target) ** 2)

    @torch.no_grad()
    def backward(self, prediction: Tensor, target: Tensor) -> Tensor:
        return 2.0 * (prediction - target) / prediction.numel()
