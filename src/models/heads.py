"""
Prediction heads for the model families.

Includes:
- ClassificationHead: dense -> tanh -> dense over one pooled position (MBART).
- LMHead: hidden states to vocabulary logits, optionally tied to an Embedding.
- QuestionAnsweringHead: per-token span start/end logits.
- Pooler: first-token dense + tanh (ViT).
- gather_positions / last_token_index: pick one hidden state per sequence.

Heads operate on hidden states only; which position to pool is decided by the
model that owns the head.
"""

from typing import Optional, Tuple

import torch
import torch.nn as nn

from .errors import ConfigurationError


def gather_positions(hidden_state: torch.Tensor, index: torch.Tensor) -> torch.Tensor:
    """
    hidden_state: (batch, seq_len, d_model), index: (batch,) position per row
    returns: (batch, d_model)
    """
    batch_indices = torch.arange(hidden_state.size(0), device=hidden_state.device)
    return hidden_state[batch_indices, index.to(device=hidden_state.device, dtype=torch.long)]


def last_token_index(input_ids: torch.Tensor, token_id: int) -> torch.Tensor:
    """Index of the last occurrence of ``token_id`` per row; rows without it get the last index."""
    seq_len = input_ids.size(1)
    positions = torch.arange(seq_len, device=input_ids.device).expand_as(input_ids)
    index = torch.where(input_ids == token_id, positions, torch.full_like(positions, -1))
    index = index.max(dim=1).values
    return torch.where(index < 0, torch.full_like(index, seq_len - 1), index)


class ClassificationHead(nn.Module):
    """
    Sentence-level classification head.

    Args:
        d_model: hidden size from encoder/decoder
        num_labels: number of output classes
        dropout: dropout probability before each dense layer
    """

    def __init__(self, d_model: int, num_labels: int, dropout: float = 0.0):
        super().__init__()
        self.dropout = nn.Dropout(dropout)
        self.dense = nn.Linear(d_model, d_model)
        self.out_proj = nn.Linear(d_model, num_labels)

    def forward(self, pooled: torch.Tensor) -> torch.Tensor:
        """
        pooled: (batch, d_model)
        returns: (batch, num_labels)
        """
        x = self.dropout(pooled)
        x = torch.tanh(self.dense(x))
        x = self.dropout(x)
        return self.out_proj(x)


class LMHead(nn.Module):
    """
    Language modeling head: maps hidden states to logits over vocabulary.

    Args:
        d_model: hidden size
        vocab_size: vocabulary size
        tie_embedding: optional nn.Embedding instance to tie weights with
        bias: whether the projection has a bias
    """

    def __init__(
        self,
        d_model: int,
        vocab_size: int,
        tie_embedding: Optional[nn.Embedding] = None,
        bias: bool = False,
    ):
        super().__init__()
        self.vocab_size = vocab_size
        self.d_model = d_model
        self.proj = nn.Linear(d_model, vocab_size, bias=bias)

        if tie_embedding is not None:
            if tie_embedding.num_embeddings != vocab_size:
                raise ConfigurationError("vocab size mismatch for weight tying")
            if tie_embedding.embedding_dim != d_model:
                raise ConfigurationError("embedding dim must match d_model for weight tying")
            # Same Parameter object, so updates affect both modules
            self.proj.weight = tie_embedding.weight

    def forward(self, hidden_states: torch.Tensor) -> torch.Tensor:
        """
        hidden_states: (batch, seq_len, d_model)
        returns logits: (batch, seq_len, vocab_size)
        """
        return self.proj(hidden_states)


class QuestionAnsweringHead(nn.Module):
    """Projects every position to a (start, end) logit pair."""

    def __init__(self, d_model: int):
        super().__init__()
        self.qa_outputs = nn.Linear(d_model, 2)

    def forward(self, hidden_states: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        hidden_states: (batch, seq_len, d_model)
        returns: start_logits, end_logits, each (batch, seq_len)
        """
        logits = self.qa_outputs(hidden_states)
        start_logits, end_logits = logits.unbind(dim=-1)
        return start_logits, end_logits


class Pooler(nn.Module):
    """First-token pooling followed by dense + tanh."""

    def __init__(self, d_model: int):
        super().__init__()
        self.dense = nn.Linear(d_model, d_model)

    def forward(self, hidden_states: torch.Tensor) -> torch.Tensor:
        return torch.tanh(self.dense(hidden_states[:, 0]))
