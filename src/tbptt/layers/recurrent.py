"""
Recurrent Layer with Truncated Backpropagation Through Time.

Wraps four atomic layers into a recurrent unit:

    h_0 = transfer(start(input(x_0)))
    h_t = transfer(input(x_t) + feedback(h_{t-1}))     for 0 < t < rho

The unit is unrolled for at most ``rho`` steps. A driver calls ``forward``
once per step in chronological order and afterwards ``backward`` and
``gradient`` once per step in reverse order. Three counters track where each
of those passes is inside the current window.

Calls are not checked for ordering. Calling ``backward``/``gradient`` out of
order, or for a different number of steps than were forwarded, silently
produces wrong gradients. Before replaying step t the caller must restore the
``output`` buffers of every layer to the values they held after the forward
pass of step t (``tbptt.model.rnn.RNN`` does this).
"""

import copy
from typing import List, Optional

import torch
from torch import Tensor

from tbptt.layers.base import Layer
from tbptt.layers.containers import AddMerge, Sequential


class Recurrent(Layer):
    """
    Recurrent unit trained with truncated BPTT.

    Derived composites, rebuilt from the atomic layers on construction and load:
        initial   = Sequential(input, start, transfer)   first step of a window
        merge     = AddMerge(input, feedback)            members are not re-run
        recurrent = Sequential(merge, transfer)          every later step

    Args:
        start: Layer applied to the first step of a window
        input: Layer applied to the external input at every step
        feedback: Layer applied to the previous hidden state
        transfer: Layer producing the hidden state
        rho: Maximum number of unrolled steps
        owns_handles: Take exclusive ownership of (deep copy) the four layers.
            With False the layers are used by reference and must outlive the cell.

    Attributes:
        forward_step, backward_step, gradient_step: Position in the window, each in [0, rho)
        hidden_state_history: Copies of the hidden state from every training-mode step
        recurrent_error: Hidden-state gradient carried between backward calls
    """

    def __init__(
        self,
        start: Layer,
        input: Layer,
        feedback: Layer,
        transfer: Layer,
        rho: int,
        owns_handles: bool = True,
    ):
        super().__init__()

        if rho < 1:
            raise ValueError(f"rho must be >= 1, got {rho}")

        if owns_handles:
            start, input, feedback, transfer = (
                copy.deepcopy(m) for m in (start, input, feedback, transfer)
            )

        self.start = start
        self.input = input
        self.feedback = feedback
        self.transfer = transfer
        self.rho = rho
        self.owns_handles = owns_handles

        self._build_composites()

        self.forward_step = 0
        self.backward_step = 0
        self.gradient_step = 0
        self.hidden_state_history: List[Tensor] = []
        self.recurrent_error: Optional[Tensor] = None

    def _build_composites(self):
        """Wire initial, merge and recurrent from the atomic layers."""
        self.initial = Sequential(self.input, self.start, self.transfer)
        self.merge = AddMerge(self.input, self.feedback, run=False)
        self.recurrent = Sequential(self.merge, self.transfer)

    @property
    def inference_mode(self) -> bool:
        """True when forward passes are not followed by backward/gradient."""
        return not self.training

    @inference_mode.setter
    def inference_mode(self, value: bool):
        self.train(not value)

    def reset_state(self) -> None:
        """Return to the start of a window: zero counters, empty history and error."""
        self.forward_step = 0
        self.backward_step = 0
        self.gradient_step = 0
        self.hidden_state_history = []
        self.recurrent_error = None

    @torch.no_grad()
    def forward(self, x: Tensor) -> Tensor:
        """
        Advance the recurrence by one step.

        Args:
            x: External input for this step [B, input_features]

        Returns:
            Hidden state (transfer output) [B, hidden]
        """
        if self.forward_step == 0:
            self.initial(x)
        else:
            self.input(x)
            # Feedback sees the hidden state of the previous step.
            self.feedback(self.transfer.output)
            self.recurrent(x)

        output = self.transfer.output
        self.output = output

        if self.training:
            self.hidden_state_history.append(output.clone())

        self.forward_step += 1
        if self.forward_step == self.rho:
            self.forward_step = 0
            self.backward_step = 0
            self.recurrent_error = torch.zeros_like(output)

        return output

    @torch.no_grad()
    def backward(self, output: Tensor, gy: Tensor) -> Tensor:
        """
        Backpropagate one step, latest step first.

        Args:
            output: Hidden state of the step being replayed (unused, kept for the contract)
            gy: Gradient of the loss w.r.t. this step's output [B, hidden]

        Returns:
            Gradient w.r.t. this step's external input [B, input_features]
        """
        if self.recurrent_error is None:
            self.recurrent_error = gy
        else:
            self.recurrent_error = self.recurrent_error + gy

        if self.backward_step < self.rho - 1:
            self.recurrent.backward(self.recurrent.output, self.recurrent_error)
            g = self.input.backward(self.input.output, self.recurrent.delta)
            self.feedback.backward(self.feedback.output, self.recurrent.delta)
        else:
            g = self.initial.backward(self.initial.output, self.recurrent_error)

        # Incoming hidden-state gradient for the next (earlier) step. After the
        # oldest step of the window it is stale until the next forward wrap.
        self.recurrent_error = self.feedback.delta

        self.backward_step += 1
        if self.backward_step == self.rho:
            self.backward_step = 0

        self.delta = g
        return g

    @torch.no_grad()
    def gradient(self, x: Tensor, error: Tensor) -> None:
        """
        Compute the weight gradients of one step, paired with the preceding backward.

        Args:
            x: External input of the step being replayed
            error: Error signal of this step's output
        """
        if self.gradient_step < self.rho - 1:
            self.recurrent.gradient(x, error)
            self.input.gradient(x, self.merge.delta)
            # Feedback consumed the state one step older than the step being replayed.
            previous = self.hidden_state_history[
                len(self.hidden_state_history) - 2 - self.gradient_step
            ]
            self.feedback.gradient(previous, self.merge.delta)
        else:
            # The window origin runs through initial only.
            self.recurrent.zero_gradient()
            self.input.zero_gradient()
            self.feedback.zero_gradient()
            self.initial.gradient(x, self.start.delta)

        self.gradient_step += 1
        if self.gradient_step == self.rho:
            self.gradient_step = 0
            self.hidden_state_history = []

    def zero_gradient(self) -> None:
        for layer in (self.start, self.input, self.feedback, self.transfer):
            layer.zero_gradient()

    def release(self) -> None:
        """
        Drop all seven layers in one step if the cell owns them.

        A non-owning cell leaves the referenced layers alone. Calling this
        twice is a no-op.
        """
        if not self.owns_handles or self.start is None:
            return

        for name in ("initial", "merge", "recurrent", "start", "input", "feedback", "transfer"):
            setattr(self, name, None)
        self.reset_state()
        self.reset_buffers()

    def extra_repr(self) -> str:
        return f"rho={self.rho}, owns_handles={self.owns_handles}"
