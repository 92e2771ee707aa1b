"""
Persistence for recurrent cells and networks.

Structure is stored as YAML, weights as safetensors. A Recurrent cell is
persisted as the ordered field list

    start, input, feedback, transfer, rho, owns_handles

The derived composites (initial, merge, recurrent) are never stored; loading
goes through the Recurrent constructor, which rebuilds them with the same
wiring and starts from empty history and zero counters.
"""

from pathlib import Path
from typing import Any, Dict, List, Union

import torch
import yaml
from safetensors.torch import load_file, save_file
from torch import Tensor

from tbptt.layers.activation import ACTIVATIONS
from tbptt.layers.base import Layer
from tbptt.layers.containers import Sequential
from tbptt.layers.linear import Linear
from tbptt.layers.recurrent import Recurrent

RECURRENT_FIELDS = ("start", "input", "feedback", "transfer", "rho", "owns_handles")
HANDLE_FIELDS = RECURRENT_FIELDS[:4]

RECURRENT_STRUCTURE = "recurrent.yaml"
RECURRENT_WEIGHTS = "recurrent.safetensors"
NETWORK_STRUCTURE = "network.yaml"
NETWORK_WEIGHTS = "network.safetensors"


class DeserializationError(RuntimeError):
    """Persisted state cannot be turned back into a consistent layer."""


def layer_to_spec(layer: Layer) -> Dict[str, Any]:
    """Describe a layer's type and constructor arguments."""
    if isinstance(layer, Recurrent):
        spec: Dict[str, Any] = {"type": "recurrent"}
        for name in HANDLE_FIELDS:
            spec[name] = layer_to_spec(getattr(layer, name))
        spec["rho"] = layer.rho
        spec["owns_handles"] = layer.owns_handles
        return spec

    if isinstance(layer, Linear):
        return {
            "type": "linear",
            "in_features": layer.in_features,
            "out_features": layer.out_features,
            "bias": layer.bias is not None,
        }

    for name, cls in ACTIVATIONS.items():
        if type(layer) is cls:
            return {"type": name}

    raise TypeError(f"Cannot serialize layer of type {type(layer).__name__}")


def _field(spec: Dict[str, Any], name: str, kind: type) -> Any:
    value = spec[name]
    # bool is a subclass of int
    if (kind is not bool and isinstance(value, bool)) or not isinstance(value, kind):
        raise DeserializationError(
            f"Field '{name}' must be {kind.__name__}, got {value!r}"
        )
    return value


def layer_from_spec(spec: Dict[str, Any]) -> Layer:
    """Instantiate an (untrained) layer from its spec."""
    if not isinstance(spec, dict) or "type" not in spec:
        raise DeserializationError(f"Malformed layer spec: {spec!r}")

    layer_type = spec["type"]
    try:
        if layer_type == "recurrent":
            missing = [f for f in RECURRENT_FIELDS if f not in spec]
            if missing:
                raise DeserializationError(f"Recurrent spec is missing fields {missing}")
            handles = [layer_from_spec(spec[name]) for name in HANDLE_FIELDS]
            return Recurrent(
                *handles,
                rho=_field(spec, "rho", int),
                owns_handles=_field(spec, "owns_handles", bool),
            )

        if layer_type == "linear":
            return Linear(
                _field(spec, "in_features", int),
                _field(spec, "out_features", int),
                bias=_field(spec, "bias", bool) if "bias" in spec else True,
            )

        if layer_type in ACTIVATIONS:
            return ACTIVATIONS[layer_type]()
    except (KeyError, TypeError, ValueError) as e:
        raise DeserializationError(f"Invalid spec for layer '{layer_type}': {e}") from e

    raise DeserializationError(f"Unknown layer type '{layer_type}'")


def _collect_weights(layer: Layer, prefix: str, out: Dict[str, Tensor]) -> None:
    if isinstance(layer, Recurrent):
        for name in HANDLE_FIELDS:
            _collect_weights(getattr(layer, name), f"{prefix}{name}.", out)
        return

    for name, param in layer.named_parameters(recurse=False):
        # safetensors refuses shared storage
        out[prefix + name] = param.detach().cpu().clone().contiguous()


def _assign_weights(layer: Layer, prefix: str, tensors: Dict[str, Tensor], used: set) -> None:
    if isinstance(layer, Recurrent):
        for name in HANDLE_FIELDS:
            _assign_weights(getattr(layer, name), f"{prefix}{name}.", tensors, used)
        return

    for name, param in list(layer.named_parameters(recurse=False)):
        key = prefix + name
        if key not in tensors:
            raise DeserializationError(f"Missing weight '{key}'")
        value = tensors[key]
        if tuple(value.shape) != tuple(param.shape):
            raise DeserializationError(
                f"Shape mismatch for '{key}': expected {tuple(param.shape)}, "
                f"got {tuple(value.shape)}"
            )
        if param.dtype != value.dtype:
            # Rebuilt layers start in the default dtype; follow the stored one.
            layer.to(dtype=value.dtype)
            param = getattr(layer, name)
        with torch.no_grad():
            param.copy_(value)
        used.add(key)


def _load_weights(layers: List[Layer], prefixes: List[str], path: Path) -> None:
    if not path.exists():
        raise FileNotFoundError(f"No weights file found at {path}")
    try:
        tensors = load_file(str(path))
    except Exception as e:
        raise DeserializationError(f"Unreadable weights file {path}: {e}") from e

    used: set = set()
    for layer, prefix in zip(layers, prefixes):
        _assign_weights(layer, prefix, tensors, used)

    unexpected = sorted(set(tensors) - used)
    if unexpected:
        raise DeserializationError(f"Unexpected weights {unexpected}")


def _read_structure(path: Path) -> Any:
    if not path.exists():
        raise FileNotFoundError(f"No structure file found at {path}")
    with open(path, "r") as f:
        try:
            return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise DeserializationError(f"Invalid YAML in {path}: {e}") from e


def save_recurrent(cell: Recurrent, path: Union[str, Path]) -> None:
    """
    Save a Recurrent cell to a directory.

    Args:
        cell: Cell to persist
        path: Target directory (created if needed)
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)

    spec = layer_to_spec(cell)
    fields = {name: spec[name] for name in RECURRENT_FIELDS}

    with open(path / RECURRENT_STRUCTURE, "w") as f:
        yaml.safe_dump({"recurrent": fields}, f, default_flow_style=False, sort_keys=False)

    weights: Dict[str, Tensor] = {}
    _collect_weights(cell, "", weights)
    save_file(weights, str(path / RECURRENT_WEIGHTS))


def load_recurrent(path: Union[str, Path]) -> Recurrent:
    """
    Load a Recurrent cell saved with ``save_recurrent``.

    Raises:
        FileNotFoundError: If the structure or weights file does not exist
        DeserializationError: If the stored fields or weights are inconsistent
    """
    path = Path(path)
    data = _read_structure(path / RECURRENT_STRUCTURE)
    if not isinstance(data, dict) or not isinstance(data.get("recurrent"), dict):
        raise DeserializationError(f"{path / RECURRENT_STRUCTURE} has no 'recurrent' section")

    cell = layer_from_spec({"type": "recurrent", **data["recurrent"]})
    _load_weights([cell], [""], path / RECURRENT_WEIGHTS)
    return cell


def save_network(network: Sequential, path: Union[str, Path]) -> None:
    """Save a Sequential network (e.g. a Recurrent cell followed by a head)."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)

    specs = [layer_to_spec(layer) for layer in network.layers]
    with open(path / NETWORK_STRUCTURE, "w") as f:
        yaml.safe_dump({"layers": specs}, f, default_flow_style=False, sort_keys=False)

    weights: Dict[str, Tensor] = {}
    for i, layer in enumerate(network.layers):
        _collect_weights(layer, f"layers.{i}.", weights)
    save_file(weights, str(path / NETWORK_WEIGHTS))


def load_network(path: Union[str, Path]) -> Sequential:
    """Load a Sequential network saved with ``save_network``."""
    path = Path(path)
    data = _read_structure(path / NETWORK_STRUCTURE)
    if not isinstance(data, dict) or not isinstance(data.get("layers"), list):
        raise DeserializationError(f"{path / NETWORK_STRUCTURE} has no 'layers' list")

    layers = [layer_from_spec(spec) for spec in data["layers"]]
    _load_weights(layers, [f"layers.{i}." for i in range(len(layers))], path / NETWORK_WEIGHTS)
    return Sequential(*layers)
