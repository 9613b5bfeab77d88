"""
Transformer encoder implementation.

Contains:
- TransformerEncoderLayer: one encoder block (self-attention + FFN with residuals + LayerNorm)
- TransformerEncoder: stack of encoder layers over hidden states

Design choices:
- Pre-LN ("first") by default, Post-LN ("after") available per model.
- The FeedForward module is position-wise and does NOT include residuals or normalization.
- Self-attention can be causal (CLIP text) but never uses a decode cache; only the
  decoder stack caches.
- Embeddings are built by the model families; the stack consumes hidden states.
"""

from typing import List, Literal, Optional, Tuple

import torch
import torch.nn as nn

from .attention import MultiHeadAttention
from .errors import ConfigurationError
from .feedforward import FeedForward
from .outputs import EncoderOutput


class TransformerEncoderLayer(nn.Module):
    """
    Single Transformer encoder layer.

    Args:
        d_model: model hidden size
        num_heads: number of attention heads
        d_ff: hidden dimension of the position-wise feed-forward network
        activation: FFN activation name
        dropout: dropout probability applied to sublayer outputs
        attention_dropout: dropout on the attention weights
        activation_dropout: dropout inside the FFN
        layer_norm_eps: LayerNorm epsilon
        norm_placement: "first" (Pre-LN) or "after" (Post-LN)
        causal: restrict each position to earlier positions
        use_qkv_bias: bias on the query/key/value projections
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
        norm_placement: Literal["first", "after"] = "first",
        causal: bool = False,
        use_qkv_bias: bool = True,
    ):
        super().__init__()
        if norm_placement not in ("first", "after"):
            raise ConfigurationError(
                f"norm_placement must be 'first' or 'after', got {norm_placement!r}"
            )
        self.norm_placement = norm_placement
        self.self_attn = MultiHeadAttention(
            d_model=d_model,
            num_heads=num_heads,
            dropout=attention_dropout,
            causal=causal,
            use_qkv_bias=use_qkv_bias,
        )
        self.ffn = FeedForward(
            d_model=d_model,
            d_ff=d_ff,
            activation=activation,
            dropout=activation_dropout,
        )

        self.norm1 = nn.LayerNorm(d_model, eps=layer_norm_eps)
        self.norm2 = nn.LayerNorm(d_model, eps=layer_norm_eps)

        self.dropout1 = nn.Dropout(dropout)
        self.dropout2 = nn.Dropout(dropout)

    def forward(
        self,
        x: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        head_mask: Optional[torch.Tensor] = None,
        collect_attn: bool = False,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        """
        Forward pass for the encoder layer.

        Args:
            x: (batch, seq_len, d_model) - input embeddings / representations
            mask: optional padding mask (batch, seq_len), or pairwise (batch, seq_q, seq_k)
            head_mask: optional (num_heads,) mask on the attention weights
            collect_attn: whether to return attention weights

        Returns:
            x: (batch, seq_len, d_model)
            attn_weights: (batch, num_heads, seq_len, seq_len) or None
        """
        # Self-attention sublayer
        residual = x
        h = self.norm1(x) if self.norm_placement == "first" else x
        attn_out, attn_weights, _ = self.self_attn(
            h,
            attention_mask=mask,
            head_mask=head_mask,
            return_attn_weights=collect_attn,
        )
        x = residual + self.dropout1(attn_out)
        if self.norm_placement == "after":
            x = self.norm1(x)

        # Feed-forward sublayer
        residual = x
        h = self.norm2(x) if self.norm_placement == "first" else x
        x = residual + self.dropout2(self.ffn(h))
        if self.norm_placement == "after":
            x = self.norm2(x)

        return x, attn_weights


class TransformerEncoder(nn.Module):
    """
    Encoder stack: N encoder layers + optional final LayerNorm.

    Args:
        num_layers: number of encoder layers to stack
        d_model: model hidden size
        num_heads: number of attention heads
        d_ff: hidden dimension in FFN
        final_norm: apply a LayerNorm after the last layer (Pre-LN stacks)
        remaining args are forwarded to TransformerEncoderLayer
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
        norm_placement: Literal["first", "after"] = "first",
        causal: bool = False,
        use_qkv_bias: bool = True,
        final_norm: bool = True,
    ):
        super().__init__()
        self.num_layers = num_layers
        self.d_model = d_model

        self.layers = nn.ModuleList(
            [
                TransformerEncoderLayer(
                    d_model=d_model,
                    num_heads=num_heads,
                    d_ff=d_ff,
                    activation=activation,
                    dropout=dropout,
                    attention_dropout=attention_dropout,
                    activation_dropout=activation_dropout,
                    layer_norm_eps=layer_norm_eps,
                    norm_placement=norm_placement,
                    causal=causal,
                    use_qkv_bias=use_qkv_bias,
                )
                for _ in range(num_layers)
            ]
        )

        self.final_norm: nn.Module = (
            nn.LayerNorm(d_model, eps=layer_norm_eps) if final_norm else nn.Identity()
        )

    def forward(
        self,
        x: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        head_mask: Optional[torch.Tensor] = None,
        output_hidden_states: bool = False,
        output_attentions: bool = False,
    ) -> EncoderOutput:
        """
        Forward through the encoder.

        Args:
            x: (batch, seq, d_model) embeddings
            mask: optional boolean padding mask (batch, seq), True = attend
            head_mask: optional (num_layers, num_heads) mask on attention weights
            output_hidden_states: collect the input and every layer's output
            output_attentions: collect per-layer attention weights

        Returns:
            EncoderOutput with last_hidden_state (batch, seq, d_model)
        """
        if x.dim() != 3:
            raise ValueError("inputs must be (batch, seq, d_model) embeddings")
        if mask is not None:
            mask = mask.to(dtype=torch.bool, device=x.device)

        hidden_states: Optional[List[torch.Tensor]] = [x] if output_hidden_states else None
        attentions: Optional[List[torch.Tensor]] = [] if output_attentions else None

        for idx, layer in enumerate(self.layers):
            layer_head_mask = head_mask[idx] if head_mask is not None else None
            x, attn = layer(x, mask=mask, head_mask=layer_head_mask, collect_attn=output_attentions)
            if hidden_states is not None:
                hidden_states.append(x)
            if attentions is not None:
                assert attn is not None
                attentions.append(attn)

        # Final normalization (Pre-LN stack)
        x = self.final_norm(x)

        return EncoderOutput(
            last_hidden_state=x,
            hidden_states=tuple(hidden_states) if hidden_states is not None else None,
            attentions=tuple(attentions) if attentions is not None else None,
        )
