"""
Embedding layers for the model families.

Self-attention is permutation-invariant, so every family adds learned absolute
position embeddings to its token (or patch) embeddings. MBART reserves the
first rows of its position table, so lookups are shifted by a fixed offset.
"""

from typing import Optional

import torch
import torch.nn as nn


def default_position_ids(
    batch_size: int,
    seq_length: int,
    offset: int = 0,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    """
    (batch, seq_length) position ids ``offset + arange(seq_length)``.

    During cached decoding ``offset`` is the cache offset so the new tokens
    continue the positions of the prefix.
    """
    positions = torch.arange(offset, offset + seq_length, dtype=torch.long, device=device)
    return positions.unsqueeze(0).expand(batch_size, -1)


class LearnedPositionalEmbedding(nn.Module):
    """
    Learned positional embeddings (used by BART/MBART, CLIP, etc.).

    Args:
        max_positions: largest sequence length the model can process
        hidden_size: dimension of the embeddings
        offset: number of reserved rows; position p reads row p + offset

    Shape:
        Input: position ids (batch, seq_len)
        Output: (batch, seq_len, hidden_size)
    """

    def __init__(self, max_positions: int, hidden_size: int, offset: int = 0):
        super().__init__()
        self.max_positions = max_positions
        self.offset = offset
        self.embeddings = nn.Embedding(max_positions + offset, hidden_size)

    def forward(self, position_ids: torch.Tensor) -> torch.Tensor:
        if position_ids.numel() > 0 and int(position_ids.max()) >= self.max_positions:
            raise IndexError(
                f"position id {int(position_ids.max())} exceeds max_positions "
                f"({self.max_positions})"
            )
        return self.embeddings(position_ids + self.offset)
