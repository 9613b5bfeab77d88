"""
Attention mechanisms for Transformer architecture.

This module implements the attention used by every block in the package:
- ScaledDotProductAttention: fundamental attention operation on per-head tensors
- MultiHeadAttention: learned projections + head split/merge, causal masking with
  a decode offset and key/value caching

Masks are boolean (True = attend) and turned into an additive bias only after
the causal and padding masks are combined.
"""

import math
from typing import Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from .cache import CacheEntry, merge_key_value
from .errors import ConfigurationError, ShapeMismatch
from .masks import apply_causal_mask, attention_bias, expand_attention_mask


class ScaledDotProductAttention(nn.Module):
    """
    Scaled Dot-Product Attention.

    softmax(Q·Kᵀ / sqrt(d_k) + bias) · V, with an optional per-head mask and
    dropout on the attention weights.

    The manual path computes the softmax in float32 so that large negative
    biases on long sequences still give exact zeros. When weights are not
    needed (and there is no head mask or active dropout) it falls back to
    F.scaled_dot_product_attention, which picks the best available kernel.

    See: https://pytorch.org/docs/stable/generated/torch.nn.functional.scaled_dot_product_attention.html
    """

    def __init__(self, dropout: float = 0.0):
        """
        Args:
            dropout: dropout rate on the attention weights (identity in eval mode)
        """
        super().__init__()
        self.dropout = nn.Dropout(p=dropout)

    @staticmethod
    def _check_shapes(query: torch.Tensor, key: torch.Tensor, value: torch.Tensor) -> None:
        if query.dim() != 4 or key.dim() != 4 or value.dim() != 4:
            raise ShapeMismatch("query, key and value must be (batch, num_heads, seq, d_k)")
        if query.size(0) != key.size(0) or key.size(0) != value.size(0):
            raise ShapeMismatch(
                f"batch size mismatch: query {query.size(0)}, key {key.size(0)}, "
                f"value {value.size(0)}"
            )
        if query.size(1) != key.size(1) or key.size(1) != value.size(1):
            raise ShapeMismatch("number of heads differs between query, key and value")
        if query.size(-1) != key.size(-1):
            raise ShapeMismatch(
                f"head dimension mismatch: query {query.size(-1)}, key {key.size(-1)}"
            )
        if key.size(2) != value.size(2):
            raise ShapeMismatch(
                f"key length {key.size(2)} differs from value length {value.size(2)}"
            )

    def forward(
        self,
        query: torch.Tensor,
        key: torch.Tensor,
        value: torch.Tensor,
        bias: Optional[torch.Tensor] = None,
        head_mask: Optional[torch.Tensor] = None,
        return_attn_weights: bool = False,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        """
        Args:
            query: (batch, num_heads, seq_q, d_k)
            key: (batch, num_heads, seq_k, d_k)
            value: (batch, num_heads, seq_k, d_v)
            bias: optional additive bias broadcastable to (batch, num_heads, seq_q, seq_k)
            head_mask: optional (num_heads,) or (num_heads, 1, 1); 0 disables a head

        Returns:
            output: (batch, num_heads, seq_q, d_v)
            attention_weights: post-softmax (batch, num_heads, seq_q, seq_k) or None
        """
        self._check_shapes(query, key, value)
        d_k = query.size(-1)
        scale_factor = 1.0 / math.sqrt(d_k)

        dropout_active = self.training and self.dropout.p > 0
        use_fused = (
            not return_attn_weights
            and head_mask is None
            and not dropout_active
            and query.dtype in (torch.float32, torch.float64)
        )
        if use_fused:
            attn_mask = bias.to(dtype=query.dtype) if bias is not None else None
            output = F.scaled_dot_product_attention(
                query, key, value, attn_mask=attn_mask, dropout_p=0.0, scale=scale_factor
            )
            return output, None

        scores = torch.matmul(query, key.transpose(-2, -1)) * scale_factor
        if bias is not None:
            scores = scores + bias.to(dtype=scores.dtype)
        p_attn = F.softmax(scores.float(), dim=-1).type_as(scores)

        weights = self.dropout(p_attn)
        if head_mask is not None:
            weights = weights * head_mask.to(dtype=weights.dtype).view(1, -1, 1, 1)

        output = torch.matmul(weights, value)
        return output, (p_attn if return_attn_weights else None)


# --------------- Multi-Head Attention ---------------


class MultiHeadAttention(nn.Module):
    """
    Multi-Head Attention mechanism.

    Projects the hidden state into query/key/value, splits heads, merges the
    new keys/values with the decode cache, builds the attention bias from the
    padding mask (and the causal mask shifted by the cache offset) and projects
    the merged heads back.

    Self-attention when ``key_value_states`` is None, cross-attention otherwise.

    Args:
        d_model: Dimension of model (default: 512)
        num_heads: Number of attention heads (default: 8)
        dropout: Dropout probability on the attention weights (default: 0.0)
        causal: Whether queries may only attend to earlier positions
        use_qkv_bias: Whether the query/key/value projections have a bias
    """

    def __init__(
        self,
        d_model: int = 512,
        num_heads: int = 8,
        dropout: float = 0.0,
        causal: bool = False,
        use_qkv_bias: bool = True,
    ):
        super().__init__()

        # d_k = d_model // num_heads must be an integer
        if d_model % num_heads != 0:
            raise ConfigurationError(
                f"d_model ({d_model}) must be divisible by num_heads ({num_heads})"
            )

        # Assume d_v always equals d_k
        self.d_model = d_model
        self.num_heads = num_heads
        self.d_k = d_model // num_heads
        self.causal = causal

        self.W_Q = nn.Linear(d_model, d_model, bias=use_qkv_bias)
        self.W_K = nn.Linear(d_model, d_model, bias=use_qkv_bias)
        self.W_V = nn.Linear(d_model, d_model, bias=use_qkv_bias)
        self.W_O = nn.Linear(d_model, d_model)
        self.attention = ScaledDotProductAttention(dropout=dropout)

    def _split_heads(self, x: torch.Tensor) -> torch.Tensor:
        # (batch, seq_len, d_model) -> (batch, num_heads, seq_len, d_k)
        batch_size = x.size(0)
        return x.view(batch_size, -1, self.num_heads, self.d_k).transpose(1, 2)

    def _merge_heads(self, x: torch.Tensor) -> torch.Tensor:
        # (batch, num_heads, seq_len, d_k) -> (batch, seq_len, d_model)
        batch_size = x.size(0)
        return x.transpose(1, 2).contiguous().view(batch_size, -1, self.d_model)

    def forward(
        self,
        hidden_state: torch.Tensor,
        attention_mask: Optional[torch.Tensor] = None,
        key_value_states: Optional[torch.Tensor] = None,
        head_mask: Optional[torch.Tensor] = None,
        cache_entry: Optional[CacheEntry] = None,
        offset: int = 0,
        return_attn_weights: bool = False,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor], Optional[CacheEntry]]:
        """
        Args:
            hidden_state: (batch, seq_q, d_model) query source
            attention_mask: optional padding mask over keys, (batch, seq_k) or
                (batch, seq_q, seq_k) / (batch, 1, seq_q, seq_k); for cached
                self-attention it must cover every cached position
            key_value_states: (batch, seq_k, d_model) encoder output for cross-attention
            head_mask: optional (num_heads,) mask applied to the attention weights
            cache_entry: cache slot for this sublayer, or None without a cache
            offset: number of positions already in the cache
            return_attn_weights: whether to return the attention weights

        Returns:
            output: (batch, seq_q, d_model)
            attention_weights: (batch, num_heads, seq_q, seq_k) or None
            cache_entry: updated cache slot (None without a cache)
        """
        is_cross_attention = key_value_states is not None
        query_length = hidden_state.size(1)

        query = self._split_heads(self.W_Q(hidden_state))

        if is_cross_attention and cache_entry is not None and not cache_entry.is_empty:
            # Encoder output is constant across steps: reuse cached projections
            new_keys = new_values = None
        else:
            source = key_value_states if is_cross_attention else hidden_state
            new_keys = self._split_heads(self.W_K(source))
            new_values = self._split_heads(self.W_V(source))

        key, value, cache_entry = merge_key_value(
            cache_entry, new_keys, new_values, offset, is_cross_attention=is_cross_attention
        )
        key_length = key.size(2)

        mask = None
        if attention_mask is not None:
            mask = expand_attention_mask(attention_mask.to(device=query.device))
            if mask.size(-1) != key_length:
                raise ShapeMismatch(
                    f"attention mask covers {mask.size(-1)} keys but attention has {key_length}"
                )
        if self.causal and not is_cross_attention:
            if mask is None:
                mask = torch.ones(1, 1, 1, key_length, dtype=torch.bool, device=query.device)
            mask = apply_causal_mask(mask, query_length, offset=offset)

        bias = attention_bias(mask, dtype=query.dtype) if mask is not None else None

        output, attn_weights = self.attention(
            query,
            key,
            value,
            bias=bias,
            head_mask=head_mask,
            return_attn_weights=return_attn_weights,
        )

        output = self.W_O(self._merge_heads(output))
        return output, attn_weights, cache_entry
