"""
tbptt: Recurrent layers trained with truncated backpropagation through time.

- Recurrent: a recurrent unit built from start, input, feedback and transfer
  layers, unrolled for at most rho steps
- RNN: sequence driver running the BPTT windows and accumulating gradients
"""

__version__ = "0.1.0"

from tbptt.layers import Recurrent
from tbptt.model import RNN, RecurrentConfig, build_model
from tbptt.types import TrainingConfig, TrainingResult

__all__ = [
    "__version__",
    "Recurrent",
    "RNN",
    "RecurrentConfig",
    "build_model",
    "TrainingConfig",
    "TrainingResult",
]
