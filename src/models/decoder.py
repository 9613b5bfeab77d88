"""Transformer Decoder implementation.

This module implements the decoder side of the Transformer architecture:
- TransformerDecoderLayer: single decoder block with self-attn + cross-attn + FFN,
  threading its BlockCache through
- TransformerDecoder: stack of decoder blocks that owns the DecodeCache protocol

Design notes:
- Pre-LN ("first") or Post-LN ("after") LayerNorm placement
- Masks are boolean: True = attend, False = mask
- The stack works on hidden states; token/position embeddings live in the models
- Cache offset is read once before the layers and advanced once after them
"""

from typing import List, Literal, Optional, Tuple

import torch
import torch.nn as nn

from .attention import MultiHeadAttention
from .cache import (
    BlockCache,
    DecodeCache,
    cache_attention_mask,
    get_block,
    init_cache,
    put_block,
    update_offset,
)
from .errors import ConfigurationError
from .feedforward import FeedForward
from .masks import default_attention_mask
from .outputs import DecoderOutput

NormPlacement = Literal["first", "after"]


def _clamp_half(x: torch.Tensor) -> torch.Tensor:
    # Clamp inf values for fp16/bf16 stability (like HuggingFace T5)
    if x.dtype == torch.float16 or x.dtype == torch.bfloat16:
        clamp_value = torch.finfo(x.dtype).max - 1000
        x = torch.clamp(x, min=-clamp_value, max=clamp_value)
    return x


class TransformerDecoderLayer(nn.Module):
    """
    Single decoder layer:
      1) Masked self-attention (cached, causal with the cache offset)
      2) Cross-attention (encoder -> decoder), skipped without encoder output
      3) Feed-forward
    Returns the updated hidden state, both attention maps and the block cache.

    Args:
        d_model: model hidden size
        num_heads: number of attention heads
        d_ff: feed-forward intermediate size
        activation: FFN activation name
        dropout: dropout applied to sublayer outputs
        attention_dropout: dropout applied to attention weights
        activation_dropout: dropout inside the FFN
        layer_norm_eps: LayerNorm epsilon
        norm_placement: "first" (Pre-LN) or "after" (Post-LN)
        add_cross_attention: whether the block has cross-attention parameters
    """

    def __init__(
        self,
        d_model: int,
        num_heads: int,
        d_ff: int,
        activation: str = "gelu",
        dropout: float = 0.1,
        attention_dropout: float = 0.0,
        activation_dropout: float = 0.0,
        layer_norm_eps: float = 1e-5,
        norm_placement: NormPlacement = "first",
        add_cross_attention: bool = True,
    ):
        super().__init__()
        if norm_placement not in ("first", "after"):
            raise ConfigurationError(
                f"norm_placement must be 'first' or 'after', got {norm_placement!r}"
            )
        self.norm_placement = norm_placement
        self.add_cross_attention = add_cross_attention

        self.self_attn = MultiHeadAttention(
            d_model=d_model, num_heads=num_heads, dropout=attention_dropout, causal=True
        )
        self.norm1 = nn.LayerNorm(d_model, eps=layer_norm_eps)
        self.dropout1 = nn.Dropout(dropout)

        self.cross_attn: Optional[MultiHeadAttention] = None
        self.norm2: Optional[nn.LayerNorm] = None
        if add_cross_attention:
            self.cross_attn = MultiHeadAttention(
                d_model=d_model, num_heads=num_heads, dropout=attention_dropout
            )
            self.norm2 = nn.LayerNorm(d_model, eps=layer_norm_eps)
        self.dropout2 = nn.Dropout(dropout)

        self.ffn = FeedForward(
            d_model=d_model, d_ff=d_ff, activation=activation, dropout=activation_dropout
        )
        self.norm3 = nn.LayerNorm(d_model, eps=layer_norm_eps)
        self.dropout3 = nn.Dropout(dropout)

    def forward(
        self,
        tgt: torch.Tensor,
        tgt_mask: Optional[torch.Tensor] = None,
        memory: Optional[torch.Tensor] = None,
        memory_mask: Optional[torch.Tensor] = None,
        head_mask: Optional[torch.Tensor] = None,
        cross_attn_head_mask: Optional[torch.Tensor] = None,
        block_cache: Optional[BlockCache] = None,
        offset: int = 0,
        collect_attn: bool = False,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor], Optional[torch.Tensor], Optional[BlockCache]]:
        """
        Args:
            tgt: (B, T, d_model) hidden state of the new positions
            tgt_mask: (B, offset + T) padding mask over every self-attention key
            memory: (B, S, d_model) encoder output, or None to skip cross-attention
            memory_mask: (B, S) padding mask over the encoder output
            head_mask: optional (num_heads,) self-attention head mask
            cross_attn_head_mask: optional (num_heads,) cross-attention head mask
            block_cache: this layer's cache, or None without a cache
            offset: cache offset shared by all layers of the current pass
            collect_attn: whether to return attention weights

        Returns:
            (tgt_out, self_attn_weights, cross_attn_weights, block_cache)
        """
        self_entry = block_cache.self_attention if block_cache is not None else None
        cross_entry = block_cache.cross_attention if block_cache is not None else None

        # --- Masked self-attention ---
        residual = tgt
        x = self.norm1(tgt) if self.norm_placement == "first" else tgt
        self_out, self_attn, self_entry = self.self_attn(
            x,
            attention_mask=tgt_mask,
            head_mask=head_mask,
            cache_entry=self_entry,
            offset=offset,
            return_attn_weights=collect_attn,
        )
        tgt = residual + self.dropout1(self_out)
        if self.norm_placement == "after":
            tgt = self.norm1(tgt)
        tgt = _clamp_half(tgt)

        # --- Cross-attention ---
        cross_attn: Optional[torch.Tensor] = None
        if self.cross_attn is not None and memory is not None:
            assert self.norm2 is not None
            residual = tgt
            x = self.norm2(tgt) if self.norm_placement == "first" else tgt
            cross_out, cross_attn, cross_entry = self.cross_attn(
                x,
                attention_mask=memory_mask,
                key_value_states=memory,
                head_mask=cross_attn_head_mask,
                cache_entry=cross_entry,
                offset=offset,
                return_attn_weights=collect_attn,
            )
            tgt = residual + self.dropout2(cross_out)
            if self.norm_placement == "after":
                tgt = self.norm2(tgt)
            tgt = _clamp_half(tgt)

        # --- Feed-forward ---
        residual = tgt
        x = self.norm3(tgt) if self.norm_placement == "first" else tgt
        tgt = residual + self.dropout3(self.ffn(x))
        if self.norm_placement == "after":
            tgt = self.norm3(tgt)
        tgt = _clamp_half(tgt)

        if block_cache is not None:
            assert self_entry is not None
            block_cache = BlockCache(self_attention=self_entry, cross_attention=cross_entry)
        return tgt, self_attn, cross_attn, block_cache


class TransformerDecoder(nn.Module):
    """
    Decoder stack over hidden states.

    forward() takes the embedded new positions and an optional DecodeCache and
    returns (DecoderOutput, cache). With ``cache=None`` it is a plain full-sequence
    pass; with a cache it attends over everything cached so far and returns the
    next cache version with the offset advanced by the number of new positions.
    """

    def __init__(
        self,
        num_layers: int = 6,
        d_model: int = 512,
        num_heads: int = 8,
        d_ff: int = 2048,
        activation: str = "gelu",
        dropout: float = 0.1,
        attention_dropout: float = 0.0,
        activation_dropout: float = 0.0,
        layer_norm_eps: float = 1e-5,
        norm_placement: NormPlacement = "first",
        add_cross_attention: bool = True,
        final_norm: bool = True,
    ):
        super().__init__()
        if d_model % num_heads != 0:
            raise ConfigurationError(
                f"d_model ({d_model}) must be divisible by num_heads ({num_heads})"
            )
        self.num_layers = num_layers
        self.d_model = d_model
        self.num_heads = num_heads
        self.add_cross_attention = add_cross_attention

        self.layers = nn.ModuleList(
            [
                TransformerDecoderLayer(
                    d_model=d_model,
                    num_heads=num_heads,
                    d_ff=d_ff,
                    activation=activation,
                    dropout=dropout,
                    attention_dropout=attention_dropout,
                    activation_dropout=activation_dropout,
                    layer_norm_eps=layer_norm_eps,
                    norm_placement=norm_placement,
                    add_cross_attention=add_cross_attention,
                )
                for _ in range(num_layers)
            ]
        )
        self.final_norm: nn.Module = (
            nn.LayerNorm(d_model, eps=layer_norm_eps) if final_norm else nn.Identity()
        )

    def init_cache(
        self,
        batch_size: int,
        max_length: int,
        encoder_sequence_length: Optional[int] = None,
    ) -> DecodeCache:
        """Allocate an empty cache matching this stack's shape, device and dtype."""
        param = next(self.parameters())
        return init_cache(
            batch_size,
            max_length,
            num_layers=self.num_layers,
            hidden_size=self.d_model,
            num_heads=self.num_heads,
            cross_attention_enabled=self.add_cross_attention,
            encoder_sequence_length=encoder_sequence_length,
            device=param.device,
            dtype=param.dtype,
        )

    def forward(
        self,
        hidden_state: torch.Tensor,
        attention_mask: Optional[torch.Tensor] = None,
        cache: Optional[DecodeCache] = None,
        encoder_hidden_state: Optional[torch.Tensor] = None,
        encoder_attention_mask: Optional[torch.Tensor] = None,
        head_mask: Optional[torch.Tensor] = None,
        cross_attention_head_mask: Optional[torch.Tensor] = None,
        output_hidden_states: bool = False,
        output_attentions: bool = False,
    ) -> Tuple[DecoderOutput, Optional[DecodeCache]]:
        """
        Args:
            hidden_state: (B, T, d_model) embedded new positions
            attention_mask: optional (B, T) padding mask for the new positions
            cache: DecodeCache from the previous step, or None
            encoder_hidden_state: optional (B, S, d_model) encoder output
            encoder_attention_mask: optional (B, S) encoder padding mask
            head_mask: optional (num_layers, num_heads) self-attention head mask
            cross_attention_head_mask: optional (num_layers, num_heads)
            output_hidden_states: collect the input and every layer's output
            output_attentions: collect attention weights per layer

        Returns:
            (DecoderOutput, updated cache or None)
        """
        if hidden_state.dim() != 3:
            raise ValueError("hidden_state must be (B, T, d_model)")
        B, T, _ = hidden_state.shape
        device = hidden_state.device

        if attention_mask is None:
            attention_mask = default_attention_mask(B, T, device=device)
        if encoder_hidden_state is not None and encoder_attention_mask is None:
            encoder_attention_mask = default_attention_mask(
                B, encoder_hidden_state.size(1), device=device
            )

        offset = 0
        if cache is not None:
            if cache.num_layers != self.num_layers:
                raise ConfigurationError(
                    f"cache has {cache.num_layers} layers but the decoder has {self.num_layers}"
                )
            offset = cache.offset
            attention_mask, cache = cache_attention_mask(cache, attention_mask)

        hidden_states: Optional[List[torch.Tensor]] = (
            [hidden_state] if output_hidden_states else None
        )
        attentions: Optional[List[torch.Tensor]] = [] if output_attentions else None
        cross_attentions: Optional[List[Optional[torch.Tensor]]] = (
            [] if output_attentions else None
        )

        x = hidden_state
        for idx, layer in enumerate(self.layers):
            block_cache = get_block(cache, idx) if cache is not None else None
            x, self_attn, cross_attn, block_cache = layer(
                x,
                tgt_mask=attention_mask,
                memory=encoder_hidden_state,
                memory_mask=encoder_attention_mask,
                head_mask=head_mask[idx] if head_mask is not None else None,
                cross_attn_head_mask=(
                    cross_attention_head_mask[idx]
                    if cross_attention_head_mask is not None
                    else None
                ),
                block_cache=block_cache,
                offset=offset,
                collect_attn=output_attentions,
            )
            if cache is not None:
                assert block_cache is not None
                cache = put_block(cache, idx, block_cache)
            if hidden_states is not None:
                hidden_states.append(x)
            if attentions is not None and cross_attentions is not None:
                assert self_attn is not None
                attentions.append(self_attn)
                cross_attentions.append(cross_attn)

        x = self.final_norm(x)

        if cache is not None:
            cache = update_offset(cache, T)

        output = DecoderOutput(
            last_hidden_state=x,
            hidden_states=tuple(hidden_states) if hidden_states is not None else None,
            attentions=tuple(attentions) if attentions is not None else None,
            cross_attentions=tuple(cross_attentions) if cross_attentions is not None else None,
        )
        return output, cache
