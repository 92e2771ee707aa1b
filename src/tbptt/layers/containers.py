"""
Composite Layers.

- Sequential: chains layers, output of one feeding the next
- AddMerge: sums the outputs of its members
"""

from typing import Optional

import torch
import torch.nn as nn
from torch import Tensor

from tbptt.layers.base import Layer


class Sequential(Layer):
    """
    Container applying its layers in order.

    Forward:  input → layer_0 → layer_1 → ... → layer_N → output
    Backward: gy → layer_N.backward → ... → layer_0.backward → delta

    For ``gradient`` each layer receives the input it saw in the forward pass
    and the delta of the layer after it; the last layer receives ``error``.

    Args:
        *layers: Layers to chain. A layer may be shared with other containers.
    """

    def __init__(self, *layers: Layer):
        super().__init__()
        self.layers = nn.ModuleList(layers)

    def add(self, layer: Layer) -> None:
        self.layers.append(layer)

    def __len__(self) -> int:
        return len(self.layers)

    def __getitem__(self, idx: int) -> Layer:
        return self.layers[idx]

    def forward(self, x: Tensor) -> Tensor:
        out = x
        for layer in self.layers:
            out = layer(out)
        self.output = out
        return out

    def backward(self, output: Tensor, gy: Tensor) -> Tensor:
        grad = gy
        for layer in reversed(self.layers):
            grad = layer.backward(layer.output, grad)
        self.delta = grad
        return grad

    def gradient(self, x: Tensor, error: Tensor) -> None:
        n = len(self.layers)
        if n == 1:
            self.layers[0].gradient(x, error)
            return

        self.layers[0].gradient(x, self.layers[1].delta)
        for i in range(1, n - 1):
            self.layers[i].gradient(self.layers[i - 1].output, self.layers[i + 1].delta)
        self.layers[-1].gradient(self.layers[-2].output, error)

    def zero_gradient(self) -> None:
        for layer in self.layers:
            layer.zero_gradient()


class AddMerge(Layer):
    """
    Elementwise sum of member outputs.

    With ``run=False`` the members are assumed to have been evaluated by the
    owner already: forward only sums their cached outputs, backward hands
    ``gy`` through unchanged and gradient does nothing.

    Args:
        *layers: Members whose outputs are summed
        run: Whether to evaluate, backpropagate and differentiate the members
    """

    def __init__(self, *layers: Layer, run: bool = True):
        super().__init__()
        self.layers = nn.ModuleList(layers)
        self.run = run

    def add(self, layer: Layer) -> None:
        self.layers.append(layer)

    def forward(self, x: Tensor) -> Tensor:
        if self.run:
            for layer in self.layers:
                layer(x)

        out: Optional[Tensor] = None
        for layer in self.layers:
            out = layer.output if out is None else out + layer.output
        self.output = out
        return out

    def backward(self, output: Tensor, gy: Tensor) -> Tensor:
        if not self.run:
            self.delta = gy
            return gy

        grad: Optional[Tensor] = None
        for layer in self.layers:
            g = layer.backward(layer.output, gy)
            grad = g if grad is None else grad + g
        self.delta = grad
        return grad

    def gradient(self, x: Tensor, error: Tensor) -> None:
        if self.run:
            for layer in self.layers:
                layer.gradient(x, error)

    def zero_gradient(self) -> None:
        for layer in self.layers:
            layer.zero_gradient()

    def extra_repr(self) -> str:
        return f"run={self.run}"
