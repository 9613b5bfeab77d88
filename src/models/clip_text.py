"""
CLIP text encoder.

Token + learned position embeddings, a causal Pre-LN encoder stack without any
decode cache, a final LayerNorm and a pooled state taken at the EOS token
(the token with the highest id in the CLIP vocabulary).
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional

import torch
import torch.nn as nn

from .configuration import ModelConfig
from .embeddings import LearnedPositionalEmbedding, default_position_ids
from .encoder import TransformerEncoder
from .heads import gather_positions
from .outputs import EncoderOutput


@dataclass
class ClipTextConfig(ModelConfig):
    """CLIP text hyperparameters. Defaults follow openai/clip-vit-base-patch32."""

    model_type = "clip_text_model"
    architectures = ("base",)
    transformers_keys = {
        "vocab_size": "vocab_size",
        "max_positions": "max_position_embeddings",
        "hidden_size": "hidden_size",
        "num_blocks": "num_hidden_layers",
        "num_attention_heads": "num_attention_heads",
        "intermediate_size": "intermediate_size",
        "activation": "hidden_act",
        "attention_dropout_rate": "attention_dropout",
        "layer_norm_epsilon": "layer_norm_eps",
        "initializer_scale": "initializer_range",
        "pad_token_id": "pad_token_id",
        "bos_token_id": "bos_token_id",
        "eos_token_id": "eos_token_id",
    }

    vocab_size: int = 49408
    max_positions: int = 77
    hidden_size: int = 512
    num_blocks: int = 12
    num_attention_heads: int = 8
    intermediate_size: int = 2048
    activation: str = "quick_gelu"
    attention_dropout_rate: float = 0.0
    layer_norm_epsilon: float = 1e-5
    pad_token_id: int = 1
    bos_token_id: int = 0
    eos_token_id: int = 2

    def __post_init__(self):
        super().__post_init__()
        self._check_positive(
            "vocab_size",
            "max_positions",
            "hidden_size",
            "num_blocks",
            "num_attention_heads",
            "intermediate_size",
        )
        self._check_rate("attention_dropout_rate")
        self._check_heads("hidden_size", "num_attention_heads")

    @classmethod
    def from_transformers(cls, data: Mapping[str, Any], **options: Any) -> "ClipTextConfig":
        # A full CLIP config nests the text tower under text_config
        if data.get("model_type") == "clip" and "text_config" in data:
            data = data["text_config"]
        return super().from_transformers(data, **options)


class ClipTextModel(nn.Module):
    """The CLIP text tower. Returns an EncoderOutput with ``pooled_state`` set."""

    is_encoder_decoder = False

    def __init__(self, config: ClipTextConfig):
        super().__init__()
        self.config = config
        self.token_embedding = nn.Embedding(config.vocab_size, config.hidden_size)
        self.position_embedding = LearnedPositionalEmbedding(
            config.max_positions, config.hidden_size
        )
        self.encoder = TransformerEncoder(
            num_layers=config.num_blocks,
            d_model=config.hidden_size,
            num_heads=config.num_attention_heads,
            d_ff=config.intermediate_size,
            activation=config.activation,
            dropout=0.0,
            attention_dropout=config.attention_dropout_rate,
            layer_norm_eps=config.layer_norm_epsilon,
            norm_placement="first",
            causal=True,
            final_norm=False,
        )
        self.final_layer_norm = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_epsilon)
        self.apply(config.init_weights)

    def forward(
        self,
        input_ids: torch.Tensor,
        attention_mask: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
    ) -> EncoderOutput:
        """
        Args:
            input_ids: (B, T) token ids
            attention_mask: optional (B, T) padding mask
            position_ids: optional (B, T) positions, default 0..T-1

        Returns:
            EncoderOutput: last_hidden_state (B, T, d_model), pooled_state (B, d_model)
        """
        if input_ids.dim() != 2:
            raise ValueError("input_ids must be (batch, seq_len)")
        B, T = input_ids.shape
        if position_ids is None:
            position_ids = default_position_ids(B, T, device=input_ids.device)

        x = self.token_embedding(input_ids) + self.position_embedding(position_ids)
        outputs = self.encoder(
            x,
            mask=attention_mask,
            output_hidden_states=self.config.output_hidden_states,
            output_attentions=self.config.output_attentions,
        )
        hidden_state = self.final_layer_norm(outputs.last_hidden_state)
        pooled_state = gather_positions(hidden_state, input_ids.argmax(dim=-1))

        return EncoderOutput(
            last_hidden_state=hidden_state,
            hidden_states=outputs.hidden_states,
            attentions=outputs.attentions,
            pooled_state=pooled_state,
        )
