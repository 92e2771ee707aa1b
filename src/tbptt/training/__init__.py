"""
Training Module.

Provides the training pipeline including:
- BPTTTrainer: Training loop over RNN drivers
- Data pipeline: Sequence dataset, collator, synthetic task generation
"""

from tbptt.training.trainer import BPTTTrainer
from tbptt.training.data import (
    SequenceDataset,
    SyntheticConfig,
    SyntheticSequenceGenerator,
    collate_sequences,
)

__all__ = [
    "BPTTTrainer",
    "SequenceDataset",
    "SyntheticConfig",
    "SyntheticSequenceGenerator",
    "collate_sequences",
]
