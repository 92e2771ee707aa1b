"""
Tests for the truncated-BPTT Recurrent layer.

Tests:
- Construction, wiring and ownership
- Step counters and cycle-boundary resets
- Hidden-state history bookkeeping and the historical index
- Recurrent error accumulation
- Weight gradients against an autograd reference
"""

import pytest
import torch
import torch.nn.functional as F

from tbptt.layers import Identity, Layer, Linear, Recurrent, Tanh

INPUT_DIM = 3
HIDDEN_DIM = 4
BATCH = 2


def make_cell(rho: int, owns_handles: bool = True, linear_start: bool = True) -> Recurrent:
    torch.manual_seed(0)
    start = Linear(HIDDEN_DIM, HIDDEN_DIM) if linear_start else Identity()
    cell = Recurrent(
        start=start,
        input=Linear(INPUT_DIM, HIDDEN_DIM),
        feedback=Linear(HIDDEN_DIM, HIDDEN_DIM),
        transfer=Tanh(),
        rho=rho,
        owns_handles=owns_handles,
    )
    return cell.double()


def random_sequence(steps: int, features: int = INPUT_DIM):
    return [torch.randn(BATCH, features, dtype=torch.float64) for _ in range(steps)]


def reference_states(cell: Recurrent, xs):
    """Unrolled hidden states computed with autograd-tracked tensor ops."""
    states = []
    for t, x in enumerate(xs):
        i = F.linear(x, cell.input.weight, cell.input.bias)
        if t == 0:
            h = torch.tanh(F.linear(i, cell.start.weight, cell.start.bias))
        else:
            h = torch.tanh(i + F.linear(states[-1], cell.feedback.weight, cell.feedback.bias))
        states.append(h)
    return states


def snapshot(cell: Recurrent):
    return [(m, m.output) for m in cell.modules() if isinstance(m, Layer)]


def restore(saved):
    for layer, output in saved:
        layer.output = output


def run_window(cell: Recurrent, xs, gys):
    """
    Drive one window the way the RNN driver does.

    Returns:
        input gradients (chronological), per-step pending gradients
        (in call order, latest step first) and the summed weight gradients
    """
    snapshots = []
    for x in xs:
        cell(x)
        snapshots.append(snapshot(cell))

    atomic = [cell.start, cell.input, cell.feedback, cell.transfer]
    summed = {p: torch.zeros_like(p) for p in cell.parameters()}
    per_step = []
    input_grads = [None] * len(xs)

    for t in reversed(range(len(xs))):
        restore(snapshots[t])
        cell.zero_gradient()
        input_grads[t] = cell.backward(cell.output, gys[t])
        cell.gradient(xs[t], gys[t])

        step = {}
        for layer in atomic:
            for param, grad in layer.pending_gradients():
                step[param] = grad.clone()
                summed[param] += grad
        per_step.append(step)

    return input_grads, per_step, summed


class TestConstruction:
    """Tests for construction and wiring."""

    def test_invalid_rho(self):
        with pytest.raises(ValueError):
            Recurrent(Identity(), Linear(3, 4), Linear(4, 4), Tanh(), rho=0)

    def test_composite_wiring(self):
        """Test that composites reference the atomic layers in the fixed order."""
        cell = make_cell(rho=3)

        assert list(cell.initial.layers) == [cell.input, cell.start, cell.transfer]
        assert list(cell.merge.layers) == [cell.input, cell.feedback]
        assert list(cell.recurrent.layers) == [cell.merge, cell.transfer]
        assert cell.merge.run is False

    def test_initial_state(self):
        cell = make_cell(rho=3)

        assert (cell.forward_step, cell.backward_step, cell.gradient_step) == (0, 0, 0)
        assert cell.hidden_state_history == []
        assert cell.recurrent_error is None
        assert cell.inference_mode is False

    def test_owning_cell_copies_handles(self):
        """Test that an owning cell is independent from the supplied layers."""
        input_layer = Linear(INPUT_DIM, HIDDEN_DIM)
        cell = Recurrent(Identity(), input_layer, Linear(HIDDEN_DIM, HIDDEN_DIM), Tanh(), rho=2)

        assert cell.input is not input_layer
        assert torch.equal(cell.input.weight, input_layer.weight)

        with torch.no_grad():
            input_layer.weight.zero_()
        assert not torch.equal(cell.input.weight, input_layer.weight)

    def test_referencing_cell_shares_handles(self):
        input_layer = Linear(INPUT_DIM, HIDDEN_DIM)
        feedback = Linear(HIDDEN_DIM, HIDDEN_DIM)
        cell = Recurrent(Identity(), input_layer, feedback, Tanh(), rho=2, owns_handles=False)

        assert cell.input is input_layer
        assert cell.feedback is feedback
        assert cell.initial[0] is input_layer

    def test_weight_size_counts_shared_layers_once(self):
        cell = make_cell(rho=3)
        expected = sum(
            layer.weight_size for layer in (cell.start, cell.input, cell.feedback, cell.transfer)
        )
        assert cell.weight_size == expected

    def test_release_owned(self):
        """Test that an owning cell drops all seven layers together, once."""
        cell = make_cell(rho=2)
        cell(random_sequence(1)[0])

        cell.release()

        for name in ("start", "input", "feedback", "transfer", "initial", "merge", "recurrent"):
            assert getattr(cell, name) is None
        assert cell.hidden_state_history == []

        cell.release()

    def test_release_not_owned(self):
        input_layer = Linear(INPUT_DIM, HIDDEN_DIM)
        cell = Recurrent(
            Identity(), input_layer, Linear(HIDDEN_DIM, HIDDEN_DIM), Tanh(), rho=2,
            owns_handles=False,
        )

        cell.release()

        assert cell.input is input_layer


class TestForward:
    """Tests for the forward recurrence."""

    def test_matches_reference(self):
        cell = make_cell(rho=4)
        xs = random_sequence(4)
        expected = reference_states(cell, xs)

        for x, h in zip(xs, expected):
            out = cell(x)
            assert torch.allclose(out, h)
            assert out is cell.transfer.output

    def test_counter_wrap_resets_error(self):
        """Test that after rho forwards the counters and the error are reset."""
        rho = 3
        cell = make_cell(rho=rho)
        xs = random_sequence(rho)

        for x in xs[:-1]:
            cell(x)
        assert cell.forward_step == rho - 1
        assert cell.recurrent_error is None

        cell(xs[-1])

        assert cell.forward_step == 0
        assert cell.backward_step == 0
        assert cell.recurrent_error.shape == (BATCH, HIDDEN_DIM)
        assert (cell.recurrent_error == 0).all()

    def test_error_zeroed_after_previous_cycle(self):
        rho = 2
        cell = make_cell(rho=rho)
        run_window(cell, random_sequence(rho), random_sequence(rho, HIDDEN_DIM))
        assert cell.recurrent_error is not None

        for x in random_sequence(rho):
            cell(x)

        assert (cell.recurrent_error == 0).all()

    def test_new_window_restarts_from_initial(self):
        """Test that the step after a wrap takes the initial path again."""
        rho = 2
        cell = make_cell(rho=rho)
        xs = random_sequence(rho)
        for x in xs:
            cell(x)

        out = cell(xs[0])

        assert torch.allclose(out, reference_states(cell, xs[:1])[0])

    def test_history_length(self):
        """Test that history grows by one per training forward and is bounded by rho."""
        rho = 4
        cell = make_cell(rho=rho)

        for k, x in enumerate(random_sequence(rho), start=1):
            cell(x)
            assert len(cell.hidden_state_history) == k
            if k < rho:
                assert len(cell.hidden_state_history) <= rho - 1

        assert len(cell.hidden_state_history) == rho

    def test_history_holds_copies(self):
        cell = make_cell(rho=3)
        out = cell(random_sequence(1)[0])

        assert torch.equal(cell.hidden_state_history[0], out)
        assert cell.hidden_state_history[0] is not out

    def test_inference_mode_skips_history(self):
        cell = make_cell(rho=3)
        cell.eval()
        assert cell.inference_mode is True

        for x in random_sequence(3):
            cell(x)

        assert cell.hidden_state_history == []
        assert cell.forward_step == 0

    def test_inference_mode_setter(self):
        cell = make_cell(rho=3)
        cell.inference_mode = True
        assert not cell.training
        assert not cell.transfer.training

        cell.inference_mode = False
        assert cell.training


class TestBackward:
    """Tests for the backward pass."""

    def identity_cell(self, rho: int) -> Recurrent:
        return Recurrent(Identity(), Identity(), Identity(), Identity(), rho=rho)

    def test_recurrent_error_accumulates(self):
        """Test the running sum of upstream gradients across one window (rho = 3)."""
        cell = self.identity_cell(rho=3)
        for x in random_sequence(3, HIDDEN_DIM):
            cell(x)

        gy0, gy1, gy2 = [
            torch.full((BATCH, HIDDEN_DIM), v, dtype=torch.float64) for v in (1.0, 2.0, 4.0)
        ]

        g = cell.backward(cell.output, gy2)
        assert torch.allclose(cell.recurrent_error, gy2)
        assert torch.allclose(g, gy2)

        g = cell.backward(cell.output, gy1)
        assert torch.allclose(cell.recurrent_error, gy2 + gy1)
        assert torch.allclose(g, gy2 + gy1)

        # Oldest step: routed through initial.
        g = cell.backward(cell.output, gy0)
        assert torch.allclose(g, gy2 + gy1 + gy0)
        assert cell.initial.delta is g

    def test_backward_counter(self):
        rho = 3
        cell = self.identity_cell(rho=rho)
        for x in random_sequence(rho, HIDDEN_DIM):
            cell(x)

        for expected in (1, 2, 0):
            cell.backward(cell.output, torch.ones(BATCH, HIDDEN_DIM, dtype=torch.float64))
            assert cell.backward_step == expected

    def test_input_gradients_match_autograd(self):
        rho = 3
        cell = make_cell(rho=rho)
        xs = [x.requires_grad_() for x in random_sequence(rho)]
        gys = random_sequence(rho, HIDDEN_DIM)

        loss = sum((h * gy).sum() for h, gy in zip(reference_states(cell, xs), gys))
        expected = torch.autograd.grad(loss, xs)

        input_grads, _, _ = run_window(cell, [x.detach() for x in xs], gys)

        for g, e in zip(input_grads, expected):
            assert torch.allclose(g, e)


class TestGradient:
    """Tests for weight-gradient computation."""

    def test_full_cycle_matches_autograd(self):
        """Test that two steady-state steps plus one boundary step give the BPTT gradient."""
        rho = 3
        cell = make_cell(rho=rho)
        xs = random_sequence(rho)
        gys = random_sequence(rho, HIDDEN_DIM)

        params = list(cell.parameters())
        loss = sum((h * gy).sum() for h, gy in zip(reference_states(cell, xs), gys))
        expected = dict(zip(params, torch.autograd.grad(loss, params)))

        _, per_step, summed = run_window(cell, xs, gys)

        assert len(per_step) == rho
        for param in params:
            assert torch.allclose(summed[param], expected[param])

        # Steady-state steps never touch start; the boundary step never touches feedback.
        for step in per_step[:2]:
            assert (step[cell.start.weight] == 0).all()
        assert (per_step[2][cell.feedback.weight] == 0).all()
        assert (per_step[2][cell.feedback.bias] == 0).all()

    def test_boundary_zeroes_steady_state_buffers(self):
        """Test that the boundary step discards pending recurrent/input/feedback gradients."""
        rho = 3
        cell = make_cell(rho=rho)
        xs = random_sequence(rho)
        gys = random_sequence(rho, HIDDEN_DIM)

        snapshots = []
        for x in xs:
            cell(x)
            snapshots.append(snapshot(cell))

        for t in (2, 1):
            restore(snapshots[t])
            cell.backward(cell.output, gys[t])
            cell.gradient(xs[t], gys[t])
        assert not (cell.feedback.gradients["weight"] == 0).all()

        restore(snapshots[0])
        cell.backward(cell.output, gys[0])
        cell.gradient(xs[0], gys[0])

        assert (cell.feedback.gradients["weight"] == 0).all()
        assert (cell.feedback.gradients["bias"] == 0).all()
        # Input only carries the contribution routed through initial.
        assert torch.allclose(cell.input.gradients["weight"], cell.start.delta.t() @ xs[0])

    def test_history_index_in_range(self):
        """Test every historical index used in a full cycle for rho = 2 and rho = 3."""

        class RecordingList(list):
            def __init__(self, items):
                super().__init__(items)
                self.accessed = []

            def __getitem__(self, idx):
                self.accessed.append((idx, len(self)))
                return super().__getitem__(idx)

        for rho, expected in ((2, [0]), (3, [1, 0])):
            cell = make_cell(rho=rho)
            xs = random_sequence(rho)
            gys = random_sequence(rho, HIDDEN_DIM)

            snapshots = []
            for x in xs:
                cell(x)
                snapshots.append(snapshot(cell))

            history = RecordingList(cell.hidden_state_history)
            cell.hidden_state_history = history

            for step, t in enumerate(reversed(range(rho))):
                assert cell.gradient_step == step
                restore(snapshots[t])
                cell.backward(cell.output, gys[t])
                cell.gradient(xs[t], gys[t])

            assert [idx for idx, _ in history.accessed] == expected
            for idx, length in history.accessed:
                assert 0 <= idx < length
            assert cell.gradient_step == 0
            assert cell.hidden_state_history == []

    def test_counters_stay_in_range(self):
        rho = 3
        cell = make_cell(rho=rho)

        for _ in range(2):
            xs = random_sequence(rho)
            gys = random_sequence(rho, HIDDEN_DIM)
            run_window(cell, xs, gys)
            for counter in (cell.forward_step, cell.backward_step, cell.gradient_step):
                assert 0 <= counter < rho

    def test_second_window_matches_first(self):
        """Test that state is fully reset between windows."""
        rho = 3
        cell = make_cell(rho=rho)
        xs = random_sequence(rho)
        gys = random_sequence(rho, HIDDEN_DIM)

        _, _, first = run_window(cell, xs, gys)
        _, _, second = run_window(cell, xs, gys)

        for param in cell.parameters():
            assert torch.allclose(first[param], second[param])


class TestRhoOne:
    """With rho = 1 the cell is a plain feed-forward composite."""

    def test_forward_is_feed_forward(self):
        cell = make_cell(rho=1)
        xs = random_sequence(3)

        for x in xs:
            out = cell(x)
            assert torch.allclose(out, reference_states(cell, [x])[0])
            assert cell.forward_step == 0

    def test_every_step_is_boundary(self):
        cell = make_cell(rho=1)
        xs = random_sequence(3)
        gys = random_sequence(3, HIDDEN_DIM)

        for x, gy in zip(xs, gys):
            params = list(cell.parameters())
            ref = reference_states(cell, [x])[0]
            grads = torch.autograd.grad((ref * gy).sum(), params, allow_unused=True)
            # Feedback does not take part in a one-step window.
            expected = {
                p: torch.zeros_like(p) if g is None else g for p, g in zip(params, grads)
            }

            _, per_step, summed = run_window(cell, [x], [gy])

            assert (per_step[0][cell.feedback.weight] == 0).all()
            assert cell.hidden_state_history == []
            assert cell.initial.delta is cell.delta
            for param in params:
                assert torch.allclose(summed[param], expected[param])
