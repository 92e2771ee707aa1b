"""
Sequence datasets.

Examples are (inputs, targets) pairs of shape [time, features]. The collator
stacks a batch into the [time, batch, features] layout the RNN driver expects.
"""

import math
from dataclasses import dataclass
from typing import List, Tuple

import torch
from torch import Tensor
from torch.utils.data import Dataset


class SequenceDataset(Dataset):
    """
    In-memory dataset of sequence pairs.

    Args:
        inputs: Tensor [N, T, input_dim]
        targets: Tensor [N, T, output_dim]
    """

    def __init__(self, inputs: Tensor, targets: Tensor):
        if inputs.dim() != 3 or targets.dim() != 3:
            raise ValueError("inputs and targets must have shape [N, T, features]")
        if inputs.shape[:2] != targets.shape[:2]:
            raise ValueError(
                f"inputs {tuple(inputs.shape)} and targets {tuple(targets.shape)} "
                "disagree on number of sequences or length"
            )
        self.inputs = inputs
        self.targets = targets

    def __len__(self) -> int:
        return self.inputs.shape[0]

    def __getitem__(self, idx: int) -> Tuple[Tensor, Tensor]:
        return self.inputs[idx], self.targets[idx]


def collate_sequences(batch: List[Tuple[Tensor, Tensor]]) -> Tuple[Tensor, Tensor]:
    """Stack [T, F] examples into [T, B, F] tensors."""
    inputs = torch.stack([x for x, _ in batch], dim=1)
    targets = torch.stack([y for _, y in batch], dim=1)
    return inputs, targets


@dataclass
class SyntheticConfig:
    """Configuration for synthetic sequence generation."""

    task: str = "delayed_sum"
    num_examples: int = 256
    seq_len: int = 20
    delay: int = 2
    seed: int = 0


class SyntheticSequenceGenerator:
    """
    Generates small sequence regression tasks.

    Tasks:
        delayed_sum: target_t = x_t + x_{t-delay} (zero before the start)
        sine: next-step prediction of phase-shifted sine waves

    Args:
        config: Generation parameters
    """

    TASKS = ("delayed_sum", "sine")

    def __init__(self, config: SyntheticConfig):
        if config.task not in self.TASKS:
            raise ValueError(f"Unknown task '{config.task}', expected one of {self.TASKS}")
        self.config = config
        self.generator = torch.Generator().manual_seed(config.seed)

    def generate(self) -> SequenceDataset:
        if self.config.task == "delayed_sum":
            inputs, targets = self._delayed_sum()
        else:
            inputs, targets = self._sine()
        return SequenceDataset(inputs, targets)

    def _delayed_sum(self) -> Tuple[Tensor, Tensor]:
        n, t, d = self.config.num_examples, self.config.seq_len, self.config.delay
        x = torch.rand(n, t, 1, generator=self.generator) - 0.5

        shifted = torch.zeros_like(x)
        if d < t:
            shifted[:, d:] = x[:, : t - d]
        return x, x + shifted

    def _sine(self) -> Tuple[Tensor, Tensor]:
        n, t = self.config.num_examples, self.config.seq_len
        phase = torch.rand(n, 1, generator=self.generator) * 2 * math.pi
        freq = 0.1 + 0.2 * torch.rand(n, 1, generator=self.generator)
        steps = torch.arange(t + 1, dtype=torch.float32).unsqueeze(0)

        wave = torch.sin(phase + freq * steps).unsqueeze(-1)  # [N, T+1, 1]
        return wave[:, :-1], wave[:, 1:]
