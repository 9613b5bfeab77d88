"""Position-wise Feed-Forward Network.

This module implements the FFN sublayer used in Transformer blocks:
two dense projections with a nonlinearity in between.

Activations are looked up by their Hugging Face config name ("gelu", "relu",
"quick_gelu", "gelu_new", "silu", ...) so configs loaded from checkpoints can
be used as-is.
"""

import torch
import torch.nn as nn
from transformers.activations import ACT2FN

from .errors import ConfigurationError


def get_activation(name: str) -> nn.Module:
    """Return a fresh activation module for a Hugging Face activation name."""
    if name not in ACT2FN:
        raise ConfigurationError(f"unknown activation '{name}'")
    return ACT2FN[name]


class FeedForward(nn.Module):
    """
    FFN(x) = act(xW₁ + b₁)W₂ + b₂

    Args:
        d_model: model hidden size
        d_ff: intermediate size
        activation: activation name, e.g. "gelu", "relu", "quick_gelu"
        dropout: dropout applied to the activations (between the two projections)
    """

    def __init__(
        self,
        d_model: int,
        d_ff: int,
        activation: str = "gelu",
        dropout: float = 0.0,
    ):
        super().__init__()
        self.linear1 = nn.Linear(d_model, d_ff)  # w_1
        self.activation = get_activation(activation)
        self.dropout = nn.Dropout(dropout)
        self.linear2 = nn.Linear(d_ff, d_model)  # w_2

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        x: (batch, seq_len, d_model)
        returns: (batch, seq_len, d_model)
        """
        x = self.linear1(x)  # (batch, seq_len, d_ff)
        x = self.activation(x)
        x = self.dropout(x)
        x = self.linear2(x)  # (batch, seq_len, d_model)
        return x
