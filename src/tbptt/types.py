"""
Shared data classes for training and evaluation.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class TrainingConfig:
    """Configuration for training."""

    # Optimizer
    learning_rate: float = 1e-2
    weight_decay: float = 0.0
    betas: Tuple[float, float] = (0.9, 0.999)
    eps: float = 1e-8
    max_grad_norm: float = 1.0

    # Scheduler
    scheduler_type: str = "cosine"
    warmup_steps: int = 0
    min_lr_ratio: float = 0.1

    # Batch
    batch_size: int = 16
    max_steps: int = 1000
    num_epochs: int = 1

    # Checkpointing
    save_steps: int = 500
    save_total_limit: int = 3
    output_dir: str = "checkpoints"

    # Logging
    logging_steps: int = 10
    wandb_project: Optional[str] = None
    wandb_entity: Optional[str] = None

    def __post_init__(self):
        """Validate configuration."""
        if self.scheduler_type not in ("cosine", "linear"):
            raise ValueError(
                f"scheduler_type must be 'cosine' or 'linear', got '{self.scheduler_type}'"
            )
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")


@dataclass
class TrainingResult:
    """Result from a training run."""

    final_loss: float
    total_steps: int
    checkpoints: List[str]
    metrics: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EvalResult:
    """Result from an evaluation run."""

    metrics: Dict[str, float]
