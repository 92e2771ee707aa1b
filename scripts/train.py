#!/usr/bin/env python3
"""
Truncated BPTT Training Script.

Trains a recurrent network on a synthetic sequence task.

Usage:
    python scripts/train.py
    python scripts/train.py model.rho=5 data.seq_len=20 training.max_steps=200
"""

import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import hydra
from omegaconf import DictConfig, OmegaConf
import torch

from tbptt.model import RecurrentConfig, build_model
from tbptt.training import BPTTTrainer, SyntheticConfig, SyntheticSequenceGenerator
from tbptt.types import TrainingConfig


def create_model_config(cfg: DictConfig) -> RecurrentConfig:
    """Create model config from Hydra config."""
    return RecurrentConfig(
        input_dim=cfg.model.input_dim,
        hidden_dim=cfg.model.hidden_dim,
        output_dim=cfg.model.output_dim,
        rho=cfg.model.rho,
        transfer=cfg.model.transfer,
        start=cfg.model.start,
        bias=cfg.model.bias,
        single_response=cfg.model.single_response,
        seed=cfg.seed,
    )


def create_training_config(cfg: DictConfig) -> TrainingConfig:
    """Create training config from Hydra config."""
    return TrainingConfig(
        learning_rate=cfg.training.optimizer.lr,
        weight_decay=cfg.training.optimizer.weight_decay,
        betas=tuple(cfg.training.optimizer.betas),
        eps=cfg.training.optimizer.eps,
        max_grad_norm=cfg.training.max_grad_norm,
        scheduler_type=cfg.training.scheduler.type,
        warmup_steps=cfg.training.scheduler.warmup_steps,
        min_lr_ratio=cfg.training.scheduler.min_lr_ratio,
        batch_size=cfg.training.batch_size,
        max_steps=cfg.training.max_steps,
        num_epochs=cfg.training.num_epochs,
        save_steps=cfg.training.save_steps,
        save_total_limit=cfg.training.save_total_limit,
        output_dir=cfg.training.output_dir,
        logging_steps=cfg.training.logging_steps,
        wandb_project=cfg.training.wandb.project,
        wandb_entity=cfg.training.wandb.entity,
    )


@hydra.main(version_base=None, config_path="../configs", config_name="config")
def main(cfg: DictConfig):
    """Main training entry point."""
    print("=" * 60)
    print("Truncated BPTT Training")
    print("=" * 60)
    print(OmegaConf.to_yaml(cfg))

    torch.manual_seed(cfg.seed)

    model_config = create_model_config(cfg)
    if cfg.data.seq_len % model_config.rho != 0:
        raise ValueError(
            f"data.seq_len ({cfg.data.seq_len}) must be a multiple of model.rho ({model_config.rho})"
        )

    print(f"Generating synthetic '{cfg.data.task}' dataset...")
    train_dataset = SyntheticSequenceGenerator(SyntheticConfig(
        task=cfg.data.task,
        num_examples=cfg.data.num_examples,
        seq_len=cfg.data.seq_len,
        delay=cfg.data.delay,
        seed=cfg.seed,
    )).generate()
    eval_dataset = SyntheticSequenceGenerator(SyntheticConfig(
        task=cfg.data.task,
        num_examples=max(1, cfg.data.num_examples // 4),
        seq_len=cfg.data.seq_len,
        delay=cfg.data.delay,
        seed=cfg.seed + 1,
    )).generate()
    print(f"Dataset size: {len(train_dataset)} train / {len(eval_dataset)} eval sequences")

    model = build_model(model_config)
    print(f"Created model with {model.num_parameters()} parameters (rho={model.rho})")

    trainer = BPTTTrainer(
        model=model,
        train_dataset=train_dataset,
        config=create_training_config(cfg),
        eval_dataset=eval_dataset,
    )

    print("\nStarting training...")
    result = trainer.train()
    eval_metrics = trainer.evaluate()

    print("\n" + "=" * 60)
    print("Training Complete!")
    print("=" * 60)
    print(f"Final loss: {result.final_loss:.4f}")
    print(f"Eval loss: {eval_metrics.get('eval/loss', float('nan')):.4f}")
    print(f"Total steps: {result.total_steps}")
    print(f"Checkpoints: {result.checkpoints}")


if __name__ == "__main__":
    main()
