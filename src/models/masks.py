"""
Attention mask helpers.

Masks are boolean: True = attend, False = mask. They are combined as booleans
and converted to an additive bias only once, right before the softmax.
"""

from typing import Optional

import torch

# Large enough to drive masked logits to zero probability after softmax
MASK_BIAS_VALUE = -1e10


def create_causal_mask(
    query_length: int,
    key_length: Optional[int] = None,
    offset: int = 0,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    """
    Create a (query_length, key_length) causal mask where entry (i, j) is True
    iff j <= offset + i.

    With offset=0 and query_length == key_length this is the usual
    lower-triangular mask. During incremental decoding the queries are the
    newly presented tokens and the keys cover every cached position, so each
    query sees the whole prefix plus itself.
    """
    if key_length is None:
        key_length = offset + query_length
    query_positions = torch.arange(query_length, device=device).unsqueeze(1) + offset
    key_positions = torch.arange(key_length, device=device).unsqueeze(0)
    return key_positions <= query_positions  # shape: (T_q, T_k)


def default_attention_mask(
    batch_size: int, seq_length: int, device: Optional[torch.device] = None
) -> torch.Tensor:
    """All-ones (B, T) padding mask used when the caller gives none."""
    return torch.ones(batch_size, seq_length, dtype=torch.bool, device=device)


def expand_attention_mask(mask: torch.Tensor) -> torch.Tensor:
    """
    Broadcast a padding mask to 4D.

    (B, T_k) -> (B, 1, 1, T_k); (B, T_q, T_k) -> (B, 1, T_q, T_k); 4D masks are
    returned unchanged.
    """
    mask = mask.to(dtype=torch.bool)
    if mask.dim() == 2:
        return mask.unsqueeze(1).unsqueeze(1)
    if mask.dim() == 3:
        return mask.unsqueeze(1)
    if mask.dim() == 4:
        return mask
    raise ValueError(f"attention mask must be 2D, 3D or 4D, got {mask.dim()}D")


def apply_causal_mask(mask: torch.Tensor, query_length: int, offset: int = 0) -> torch.Tensor:
    """AND an expanded (B, 1, *, T_k) padding mask with the offset causal mask."""
    key_length = mask.size(-1)
    causal = create_causal_mask(query_length, key_length, offset=offset, device=mask.device)
    return mask & causal.unsqueeze(0).unsqueeze(0)  # (B, 1, T_q, T_k)


def attention_bias(mask: torch.Tensor, dtype: torch.dtype = torch.float32) -> torch.Tensor:
    """Convert a boolean mask to an additive bias: 0 where allowed, large negative otherwise."""
    min_value = max(MASK_BIAS_VALUE, torch.finfo(dtype).min)
    bias = torch.zeros(mask.shape, dtype=dtype, device=mask.device)
    return bias.masked_fill(~mask.to(dtype=torch.bool), min_value)
