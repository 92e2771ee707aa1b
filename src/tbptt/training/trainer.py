"""
BPTT Trainer.

Optimization loop around ``RNN.evaluate_with_gradient``. Gradients come from
the explicit truncated-BPTT replay, so the loop never calls ``loss.backward()``;
it clips whatever the driver left on ``param.grad`` and steps AdamW.
"""

import math
import shutil
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import torch
from torch.optim import AdamW
from torch.optim.lr_scheduler import LambdaLR
from torch.utils.data import DataLoader, Dataset

from tbptt.model.rnn import RNN
from tbptt.training.data import collate_sequences
from tbptt.types import TrainingConfig, TrainingResult

try:
    import wandb
    WANDB_AVAILABLE = True
except ImportError:
    WANDB_AVAILABLE = False


def lr_multiplier(config: TrainingConfig) -> Callable[[int], float]:
    """Warmup followed by cosine or linear decay, floored at ``min_lr_ratio``."""
    warmup = config.warmup_steps
    span = max(1, config.max_steps - warmup)

    def multiplier(step: int) -> float:
        if step < warmup:
            return step / max(1, warmup)
        progress = min(1.0, (step - warmup) / span)
        if config.scheduler_type == "cosine":
            value = 0.5 * (1.0 + math.cos(math.pi * progress))
        else:
            value = 1.0 - progress
        return max(config.min_lr_ratio, value)

    return multiplier


class BPTTTrainer:
    """
    Fits an RNN driver on sequence pairs.

    Args:
        model: Driver whose cells are trained with truncated BPTT
        train_dataset: Dataset of (inputs [T, F], targets [T, O]) pairs,
            T a multiple of the model's rho
        config: Optimizer, schedule, checkpoint and logging settings
        eval_dataset: Optional held-out pairs for ``evaluate``
    """

    def __init__(
        self,
        model: RNN,
        train_dataset: Dataset,
        config: TrainingConfig,
        eval_dataset: Optional[Dataset] = None,
    ):
        self.model = model
        self.train_dataset = train_dataset
        self.eval_dataset = eval_dataset
        self.config = config

        self.optimizer = AdamW(
            self._param_groups(),
            lr=config.learning_rate,
            betas=config.betas,
            eps=config.eps,
        )
        self.scheduler = LambdaLR(self.optimizer, lr_multiplier(config))
        self._init_wandb()

        self.global_step = 0
        self.epoch = 0
        self._last_grad_norm = 0.0

    def _param_groups(self) -> List[Dict[str, Any]]:
        """Weight matrices decay, bias vectors do not."""
        matrices = [p for p in self.model.parameters() if p.dim() > 1]
        vectors = [p for p in self.model.parameters() if p.dim() <= 1]

        groups = []
        if matrices:
            groups.append({'params': matrices, 'weight_decay': self.config.weight_decay})
        if vectors:
            groups.append({'params': vectors, 'weight_decay': 0.0})
        return groups

    def _init_wandb(self):
        self.use_wandb = bool(WANDB_AVAILABLE and self.config.wandb_project)
        if not self.use_wandb:
            return

        wandb.init(
            project=self.config.wandb_project,
            entity=self.config.wandb_entity,
            config={
                'rho': self.model.rho,
                'single_response': self.model.single_response,
                'num_parameters': self.model.num_parameters(),
                'learning_rate': self.config.learning_rate,
                'batch_size': self.config.batch_size,
                'max_steps': self.config.max_steps,
            },
        )

    def _loader(self, dataset: Dataset, shuffle: bool) -> DataLoader:
        return DataLoader(
            dataset,
            batch_size=self.config.batch_size,
            shuffle=shuffle,
            collate_fn=collate_sequences,
        )

    def train(self) -> TrainingResult:
        """
        Run until ``max_steps`` optimizer steps or ``num_epochs`` passes.

        A checkpoint is written every ``save_steps`` steps and once at the end.

        Returns:
            TrainingResult with the mean batch loss and checkpoint paths
        """
        loader = self._loader(self.train_dataset, shuffle=True)
        losses: List[float] = []
        checkpoints: List[str] = []
        started = time.time()

        while self.epoch < self.config.num_epochs and self.global_step < self.config.max_steps:
            for inputs, targets in loader:
                loss = self._step(inputs, targets)
                losses.append(loss)

                if self.global_step % self.config.logging_steps == 0:
                    self._log_metrics(loss)
                if self.global_step > 0 and self.global_step % self.config.save_steps == 0:
                    checkpoints.append(self._save_checkpoint())

                self.global_step += 1
                if self.global_step >= self.config.max_steps:
                    break
            else:
                self.epoch += 1

        checkpoints.append(self._save_checkpoint())

        if self.use_wandb:
            wandb.finish()

        return TrainingResult(
            final_loss=sum(losses) / max(1, len(losses)),
            total_steps=self.global_step,
            checkpoints=checkpoints,
            metrics={'elapsed_time': time.time() - started},
        )

    def _step(self, inputs: torch.Tensor, targets: torch.Tensor) -> float:
        self.optimizer.zero_grad(set_to_none=True)
        loss = self.model.evaluate_with_gradient(inputs, targets)

        norm = torch.nn.utils.clip_grad_norm_(self.model.parameters(), self.config.max_grad_norm)
        self._last_grad_norm = float(norm)

        self.optimizer.step()
        self.scheduler.step()
        return loss

    def _log_metrics(self, loss: float):
        lr = self.scheduler.get_last_lr()[0]

        if self.use_wandb:
            wandb.log({
                'train/loss': loss,
                'train/lr': lr,
                'train/grad_norm': self._last_grad_norm,
                'train/epoch': self.epoch,
            }, step=self.global_step)

        print(
            f"Step {self.global_step}: loss={loss:.4f}, lr={lr:.2e}, "
            f"grad_norm={self._last_grad_norm:.4f}"
        )

    def _save_checkpoint(self) -> str:
        """Write model and optimizer state to ``output_dir/checkpoint-<step>``."""
        root = Path(self.config.output_dir)
        ckpt_dir = root / f"checkpoint-{self.global_step}"
        ckpt_dir.mkdir(parents=True, exist_ok=True)

        self.model.save_pretrained(ckpt_dir)
        torch.save({
            'optimizer': self.optimizer.state_dict(),
            'scheduler': self.scheduler.state_dict(),
            'global_step': self.global_step,
            'epoch': self.epoch,
        }, ckpt_dir / "training_state.bin")

        self._rotate_checkpoints(root)
        print(f"Saved checkpoint to {ckpt_dir}")
        return str(ckpt_dir)

    def _rotate_checkpoints(self, root: Path):
        """Delete the oldest checkpoints beyond ``save_total_limit``."""
        by_step = sorted(root.glob("checkpoint-*"), key=lambda p: int(p.name.rsplit("-", 1)[1]))
        excess = len(by_step) - self.config.save_total_limit
        for stale in by_step[:max(0, excess)]:
            shutil.rmtree(stale)

    def evaluate(self) -> Dict[str, Any]:
        """Mean per-batch loss over the eval dataset (empty dict without one)."""
        if self.eval_dataset is None:
            return {}

        batch_losses = [
            self.model.evaluate(inputs, targets)
            for inputs, targets in self._loader(self.eval_dataset, shuffle=False)
        ]
        metrics = {'eval/loss': sum(batch_losses) / max(1, len(batch_losses))}

        if self.use_wandb and wandb.run is not None:
            wandb.log(metrics, step=self.global_step)

        return metrics
