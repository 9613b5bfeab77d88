"""Shared configuration behaviour for the model families.

Each family declares a dataclass deriving from ``ModelConfig`` with its own
dimensions, the architectures it supports and the mapping from Hugging Face
``config.json`` keys to its field names. Validation runs in ``__post_init__``
and raises ``ConfigurationError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any, ClassVar, Dict, Mapping, Tuple

import torch.nn as nn

from .errors import ConfigurationError


@dataclass
class ModelConfig:
    """Options common to every family."""

    model_type: ClassVar[str] = ""
    architectures: ClassVar[Tuple[str, ...]] = ("base",)
    # field name -> Hugging Face config key
    transformers_keys: ClassVar[Dict[str, str]] = {}

    architecture: str = "base"
    output_hidden_states: bool = False
    output_attentions: bool = False
    num_labels: int = 2
    id_to_label: Dict[int, str] = field(default_factory=dict)
    initializer_scale: float = 0.02

    def __post_init__(self):
        if self.architecture not in self.architectures:
            raise ConfigurationError(
                f"unknown architecture '{self.architecture}' for {self.model_type}, "
                f"expected one of {', '.join(self.architectures)}"
            )
        if self.num_labels <= 0:
            raise ConfigurationError(f"num_labels must be positive, got {self.num_labels}")
        if self.id_to_label and len(self.id_to_label) != self.num_labels:
            raise ConfigurationError(
                f"num_labels ({self.num_labels}) does not match the number of labels in "
                f"id_to_label ({len(self.id_to_label)})"
            )

    def _check_positive(self, *names: str) -> None:
        for name in names:
            value = getattr(self, name)
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")

    def _check_rate(self, *names: str) -> None:
        for name in names:
            value = getattr(self, name)
            if not 0 <= value <= 1:
                raise ConfigurationError(f"{name} must be in [0, 1], got {value}")

    def _check_heads(self, hidden_name: str, heads_name: str) -> None:
        hidden, heads = getattr(self, hidden_name), getattr(self, heads_name)
        if hidden % heads != 0:
            raise ConfigurationError(
                f"{hidden_name} ({hidden}) must be divisible by {heads_name} ({heads})"
            )

    def with_options(self, **options: Any) -> "ModelConfig":
        """Return a copy with the given fields overridden (validated again)."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigurationError(
                f"unknown options for {self.model_type}: {', '.join(unknown)}"
            )
        return replace(self, **options)

    @classmethod
    def from_transformers(cls, data: Mapping[str, Any], **options: Any) -> "ModelConfig":
        """Build a config from a Hugging Face ``config.json`` mapping.

        Keys missing from ``data`` keep their defaults; ``options`` override
        the loaded values (e.g. ``architecture``).
        """
        kwargs: Dict[str, Any] = {}
        for name, key in cls.transformers_keys.items():
            if key in data and data[key] is not None:
                kwargs[name] = data[key]
        kwargs.update(_common_options_from_transformers(data))
        kwargs.update(options)
        return cls(**kwargs)

    def init_weights(self, module: nn.Module) -> None:
        """Normal(0, initializer_scale) weights and zero biases, for ``Module.apply``."""
        if isinstance(module, (nn.Linear, nn.Conv2d)):
            nn.init.normal_(module.weight, mean=0.0, std=self.initializer_scale)
            if module.bias is not None:
                nn.init.zeros_(module.bias)
        elif isinstance(module, nn.Embedding):
            nn.init.normal_(module.weight, mean=0.0, std=self.initializer_scale)
        elif isinstance(module, nn.LayerNorm):
            nn.init.ones_(module.weight)
            nn.init.zeros_(module.bias)


def _common_options_from_transformers(data: Mapping[str, Any]) -> Dict[str, Any]:
    options: Dict[str, Any] = {}
    for key in ("output_hidden_states", "output_attentions"):
        if key in data:
            options[key] = bool(data[key])
    id2label = data.get("id2label")
    if id2label:
        options["id_to_label"] = {int(k): str(v) for k, v in id2label.items()}
        options["num_labels"] = len(id2label)
    elif data.get("num_labels") is not None:
        options["num_labels"] = int(data["num_labels"])
    return options
