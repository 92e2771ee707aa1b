"""
Recurrent Network Driver.

Runs a network containing Recurrent cells over sequences and implements the
outer loop of truncated BPTT:

    for every window of rho steps:
        forward t = 0 .. rho-1           (snapshot layer outputs per step)
        for t = rho-1 .. 0:
            restore snapshot t
            backward(loss gradient of step t)
            gradient(input of step t)
            accumulate per-step weight gradients

Accumulated gradients are published on ``param.grad`` so any
``torch.optim`` optimizer can consume them.
"""

from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import torch
import torch.nn as nn
from torch import Tensor

from tbptt.layers.activation import Identity, get_activation
from tbptt.layers.base import Layer
from tbptt.layers.containers import Sequential
from tbptt.layers.linear import Linear
from tbptt.layers.loss import MeanSquaredError
from tbptt.layers.recurrent import Recurrent
from tbptt.model.config import RecurrentConfig

Snapshot = List[Tuple[Layer, Optional[Tensor]]]


class RNN(nn.Module):
    """
    Sequence driver around a Sequential network.

    Args:
        network: Layers applied at every time step, usually a Recurrent cell
            followed by a readout
        rho: Window length. Defaults to the rho of the first Recurrent cell
        loss: Loss with explicit ``backward`` (default: MeanSquaredError)
        single_response: Only the last step of every window is scored
        config: Configuration the network was built from, saved with checkpoints
    """

    def __init__(
        self,
        network: Sequential,
        rho: Optional[int] = None,
        loss: Optional[nn.Module] = None,
        single_response: bool = False,
        config: Optional[RecurrentConfig] = None,
    ):
        super().__init__()

        self.network = network
        self.loss_fn = loss if loss is not None else MeanSquaredError()
        self.single_response = single_response
        self.config = config

        cells = self.cells()
        if rho is None:
            if not cells:
                raise ValueError("rho must be given for a network without Recurrent cells")
            rho = cells[0].rho
        for cell in cells:
            if cell.rho != rho:
                raise ValueError(f"Cell rho {cell.rho} does not match window length {rho}")
        self.rho = rho

    def cells(self) -> List[Recurrent]:
        return [m for m in self.network.modules() if isinstance(m, Recurrent)]

    def layers(self) -> List[Layer]:
        """All distinct layers of the network, shared layers listed once."""
        return [m for m in self.network.modules() if isinstance(m, Layer)]

    def reset_cells(self) -> None:
        for cell in self.cells():
            cell.reset_state()

    @staticmethod
    def _snapshot(layers: List[Layer]) -> Snapshot:
        # Forward passes replace buffers instead of writing into them, so
        # keeping references is enough.
        return [(layer, layer.output) for layer in layers]

    @staticmethod
    def _restore(snapshot: Snapshot) -> None:
        for layer, output in snapshot:
            layer.output = output

    @staticmethod
    def _check_sequence(inputs: Tensor, name: str = "inputs") -> None:
        if inputs.dim() != 3:
            raise ValueError(
                f"{name} must have shape [time, batch, features], got {tuple(inputs.shape)}"
            )

    def forward(self, inputs: Tensor) -> Tensor:
        """
        Run the network over a sequence in the current mode.

        Args:
            inputs: Sequence [T, B, input_dim]

        Returns:
            Outputs [T, B, output_dim]
        """
        self._check_sequence(inputs)
        self.reset_cells()
        outputs = [self.network(inputs[t]) for t in range(inputs.shape[0])]
        return torch.stack(outputs)

    @torch.no_grad()
    def predict(self, inputs: Tensor) -> Tensor:
        """Run the network in inference mode (no hidden-state history is kept)."""
        was_training = self.training
        self.eval()
        try:
            return self.forward(inputs)
        finally:
            self.train(was_training)

    def _scored(self, step: int) -> bool:
        return not self.single_response or step == self.rho - 1

    @torch.no_grad()
    def evaluate(self, inputs: Tensor, targets: Tensor) -> float:
        """Loss of a sequence without gradient computation."""
        self._check_sequence(targets, "targets")
        outputs = self.predict(inputs)
        total = 0.0
        for t in range(outputs.shape[0]):
            if self._scored(t % self.rho):
                total += self.loss_fn(outputs[t], targets[t]).item()
        return total

    @torch.no_grad()
    def evaluate_with_gradient(self, inputs: Tensor, targets: Tensor) -> float:
        """
        Truncated BPTT over a full sequence.

        The sequence is cut into consecutive windows of ``rho`` steps. Weight
        gradients of all steps and windows are summed and added to
        ``param.grad``. The cells run in training mode for the call; the
        previous mode is restored afterwards.

        Args:
            inputs: Sequence [T, B, input_dim], T a multiple of rho
            targets: Targets [T, B, output_dim]

        Returns:
            Summed loss over all scored steps
        """
        self._check_sequence(inputs)
        self._check_sequence(targets, "targets")
        num_steps = inputs.shape[0]
        if num_steps % self.rho != 0:
            raise ValueError(
                f"Sequence length {num_steps} is not a multiple of rho={self.rho}"
            )

        was_training = self.training
        self.train()
        try:
            return self._truncated_bptt(inputs, targets)
        finally:
            self.train(was_training)

    def _truncated_bptt(self, inputs: Tensor, targets: Tensor) -> float:
        num_steps = inputs.shape[0]
        self.reset_cells()

        layers = self.layers()
        params = list(self.network.parameters())
        accumulated: Dict[nn.Parameter, Tensor] = {p: torch.zeros_like(p) for p in params}
        total_loss = 0.0

        for window_start in range(0, num_steps, self.rho):
            outputs: List[Tensor] = []
            snapshots: List[Snapshot] = []

            for step in range(self.rho):
                out = self.network(inputs[window_start + step])
                outputs.append(out)
                snapshots.append(self._snapshot(layers))
                if self._scored(step):
                    total_loss += self.loss_fn(out, targets[window_start + step]).item()

            for step in reversed(range(self.rho)):
                t = window_start + step
                self._restore(snapshots[step])
                out = outputs[step]

                if self._scored(step):
                    gy = self.loss_fn.backward(out, targets[t])
                else:
                    gy = torch.zeros_like(out)

                for layer in layers:
                    layer.zero_gradient()

                self.network.backward(out, gy)
                self.network.gradient(inputs[t], gy)

                for layer in layers:
                    for param, grad in layer.pending_gradients():
                        accumulated[param] += grad

        for param in params:
            if param.grad is None:
                param.grad = accumulated[param]
            else:
                param.grad.add_(accumulated[param])

        return total_loss

    def num_parameters(self) -> int:
        return sum(p.numel() for p in self.network.parameters())

    @classmethod
    def from_pretrained(cls, path: Union[str, Path]) -> "RNN":
        """
        Load a network saved with ``save_pretrained``.

        Args:
            path: Checkpoint directory

        Returns:
            Loaded driver
        """
        from tbptt.serialization import load_network

        path = Path(path)
        network = load_network(path)

        config = None
        if (path / "config.yaml").exists():
            config = RecurrentConfig.from_pretrained(path)

        return cls(
            network,
            single_response=config.single_response if config is not None else False,
            config=config,
        )

    def save_pretrained(self, path: Union[str, Path]):
        """
        Save structure, weights and config to a checkpoint directory.

        Args:
            path: Checkpoint directory
        """
        from tbptt.serialization import save_network

        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)

        if self.config is not None:
            self.config.save(path / "config.yaml")

        save_network(self.network, path)


def build_model(config: RecurrentConfig) -> RNN:
    """
    Build the standard network: a Recurrent cell followed by a linear readout.

        start     Identity, or Linear(hidden, hidden)
        input     Linear(input_dim, hidden)
        feedback  Linear(hidden, hidden)
        transfer  activation named by config.transfer
    """
    torch.manual_seed(config.seed)

    if config.start == "linear":
        start = Linear(config.hidden_dim, config.hidden_dim, bias=config.bias)
    else:
        start = Identity()

    cell = Recurrent(
        start=start,
        input=Linear(config.input_dim, config.hidden_dim, bias=config.bias),
        feedback=Linear(config.hidden_dim, config.hidden_dim, bias=config.bias),
        transfer=get_activation(config.transfer),
        rho=config.rho,
    )
    head = Linear(config.hidden_dim, config.output_dim, bias=config.bias)

    return RNN(
        Sequential(cell, head),
        rho=config.rho,
        single_response=config.single_response,
        config=config,
    )
