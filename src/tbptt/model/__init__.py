"""
Model Module.

Configuration, the sequence driver and the standard network builder.
"""

from tbptt.model.config import RecurrentConfig
from tbptt.model.rnn import RNN, build_model

__all__ = [
    "RecurrentConfig",
    "RNN",
    "build_model",
]
