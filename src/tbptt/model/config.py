"""
Model configuration for recurrent networks trained with truncated BPTT.
"""

from dataclasses import asdict, dataclass
from pathlib import Path

import yaml

from tbptt.layers.activation import ACTIVATIONS

START_TYPES = ("identity", "linear")


@dataclass
class RecurrentConfig:
    """Configuration for a recurrent network: one Recurrent cell and a linear head."""

    # Dimensions
    input_dim: int = 1
    hidden_dim: int = 16
    output_dim: int = 1

    # Truncated unroll length
    rho: int = 10

    # Cell composition
    transfer: str = "tanh"
    start: str = "identity"
    bias: bool = True

    # Only the last step of every window contributes to the loss
    single_response: bool = False

    seed: int = 42

    def __post_init__(self):
        """Validate configuration."""
        if self.rho < 1:
            raise ValueError(f"rho must be >= 1, got {self.rho}")
        for name in ("input_dim", "hidden_dim", "output_dim"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.transfer.lower() not in ACTIVATIONS:
            raise ValueError(
                f"Unknown transfer '{self.transfer}', expected one of {sorted(ACTIVATIONS)}"
            )
        if self.start not in START_TYPES:
            raise ValueError(f"start must be one of {START_TYPES}, got '{self.start}'")

    @classmethod
    def from_yaml(cls, path: str | Path) -> "RecurrentConfig":
        """Load configuration from a YAML file."""
        with open(path, "r") as f:
            config_dict = yaml.safe_load(f)

        # Extract model section if present
        if "model" in config_dict:
            config_dict = config_dict["model"]

        return cls(**config_dict)

    @classmethod
    def from_pretrained(cls, path: str | Path) -> "RecurrentConfig":
        """Load configuration from a checkpoint directory."""
        config_path = Path(path) / "config.yaml"
        if config_path.exists():
            return cls.from_yaml(config_path)

        raise FileNotFoundError(f"No config file found in {path}")

    def save(self, path: str | Path) -> None:
        """Save configuration to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump({"model": asdict(self)}, f, default_flow_style=False)

    def num_parameters(self) -> int:
        """Number of parameters of the network built from this config."""
        bias = 1 if self.bias else 0

        # Input and feedback projections
        cell_params = (
            self.hidden_dim * (self.input_dim + bias)
            + self.hidden_dim * (self.hidden_dim + bias)
        )
        if self.start == "linear":
            cell_params += self.hidden_dim * (self.hidden_dim + bias)

        head_params = self.output_dim * (self.hidden_dim + bias)

        return cell_params + head_params
