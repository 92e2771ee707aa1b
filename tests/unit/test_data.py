"""
Tests for sequence datasets and synthetic tasks.
"""

import pytest
import torch

from tbptt.training import SequenceDataset, SyntheticConfig, SyntheticSequenceGenerator
from tbptt.training.data import collate_sequences


class TestSequenceDataset:
    """Tests for SequenceDataset."""

    def test_indexing(self):
        inputs = torch.randn(4, 6, 2)
        targets = torch.randn(4, 6, 1)
        dataset = SequenceDataset(inputs, targets)

        x, y = dataset[1]

        assert len(dataset) == 4
        assert torch.equal(x, inputs[1])
        assert torch.equal(y, targets[1])

    def test_rejects_wrong_rank(self):
        with pytest.raises(ValueError):
            SequenceDataset(torch.randn(4, 6), torch.randn(4, 6, 1))

    def test_rejects_length_mismatch(self):
        with pytest.raises(ValueError):
            SequenceDataset(torch.randn(4, 6, 1), torch.randn(4, 5, 1))

    def test_collate_is_time_major(self):
        dataset = SequenceDataset(torch.randn(3, 6, 2), torch.randn(3, 6, 1))

        inputs, targets = collate_sequences([dataset[i] for i in range(3)])

        assert inputs.shape == (6, 3, 2)
        assert targets.shape == (6, 3, 1)
        assert torch.equal(inputs[:, 2], dataset.inputs[2])


class TestSyntheticSequenceGenerator:
    """Tests for synthetic tasks."""

    def test_delayed_sum(self):
        config = SyntheticConfig(task="delayed_sum", num_examples=8, seq_len=10, delay=3)
        dataset = SyntheticSequenceGenerator(config).generate()
        x, y = dataset.inputs, dataset.targets

        assert x.shape == (8, 10, 1)
        assert torch.allclose(y[:, :3], x[:, :3])
        assert torch.allclose(y[:, 3:], x[:, 3:] + x[:, :7])
        assert x.abs().max() <= 0.5

    def test_sine_is_next_step(self):
        config = SyntheticConfig(task="sine", num_examples=4, seq_len=12)
        dataset = SyntheticSequenceGenerator(config).generate()

        assert dataset.targets.shape == (4, 12, 1)
        assert torch.allclose(dataset.targets[:, :-1], dataset.inputs[:, 1:])

    def test_seeded(self):
        config = SyntheticConfig(num_examples=4, seq_len=5, seed=7)
        a = SyntheticSequenceGenerator(config).generate()
        b = SyntheticSequenceGenerator(config).generate()

        assert torch.equal(a.inputs, b.inputs)

    def test_unknown_task(self):
        with pytest.raises(ValueError):
            SyntheticSequenceGenerator(SyntheticConfig(task="copy"))
