"""
Explicitly differentiated layers.

Contains the layer contract, the atomic layers, the composite containers and
the truncated-BPTT recurrent unit built from them.
"""

from tbptt.layers.base import Layer
from tbptt.layers.linear import Linear
from tbptt.layers.activation import Identity, Tanh, Sigmoid, ReLU, get_activation
from tbptt.layers.containers import Sequential, AddMerge
from tbptt.layers.recurrent import Recurrent
from tbptt.layers.loss import MeanSquaredError

__all__ = [
    "Layer",
    "Linear",
    "Identity",
    "Tanh",
    "Sigmoid",
    "ReLU",
    "get_activation",
    "Sequential",
    "AddMerge",
    "Recurrent",
    "MeanSquaredError",
]
