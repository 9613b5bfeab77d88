"""
MBART encoder-decoder models.

Architectures:
- base (MBartModel): encoder + decoder, no head
- for_conditional_generation: LM head tied to the shared token embedding
- for_causal_language_modeling: decoder only, cross-attention when an encoder
  hidden state is given
- for_sequence_classification: classification head on the hidden state of the
  last EOS token
- for_question_answering: span start/end logits

Embedding details: token embeddings are shared by encoder and decoder and
optionally scaled by sqrt(hidden_size); learned position embeddings reserve
two leading rows (offset 2); a LayerNorm follows the embedding sum. Blocks are
Pre-LN with a final LayerNorm in both stacks.
"""

import math
from dataclasses import dataclass, replace
from typing import Any, Optional, Tuple

import torch
import torch.nn as nn

from .cache import DecodeCache
from .configuration import ModelConfig
from .decoder import TransformerDecoder
from .embeddings import LearnedPositionalEmbedding, default_position_ids
from .encoder import TransformerEncoder
from .heads import (
    ClassificationHead,
    LMHead,
    QuestionAnsweringHead,
    gather_positions,
    last_token_index,
)
from .outputs import CausalLMOutput, DecoderOutput, EncoderOutput, Seq2SeqOutput

# MBART keeps two reserved rows at the start of the position table
POSITION_OFFSET = 2


@dataclass
class MBartConfig(ModelConfig):
    """MBART hyperparameters. Defaults follow facebook/mbart-large-cc25."""

    model_type = "mbart"
    architectures = (
        "base",
        "for_causal_language_modeling",
        "for_conditional_generation",
        "for_sequence_classification",
        "for_question_answering",
    )
    transformers_keys = {
        "vocab_size": "vocab_size",
        "max_positions": "max_position_embeddings",
        "hidden_size": "d_model",
        "encoder_num_blocks": "encoder_layers",
        "decoder_num_blocks": "decoder_layers",
        "encoder_num_attention_heads": "encoder_attention_heads",
        "decoder_num_attention_heads": "decoder_attention_heads",
        "encoder_intermediate_size": "encoder_ffn_dim",
        "decoder_intermediate_size": "decoder_ffn_dim",
        "scale_embedding": "scale_embedding",
        "activation": "activation_function",
        "dropout_rate": "dropout",
        "attention_dropout_rate": "attention_dropout",
        "activation_dropout_rate": "activation_dropout",
        "classifier_dropout_rate": "classifier_dropout",
        "initializer_scale": "init_std",
        "pad_token_id": "pad_token_id",
        "bos_token_id": "bos_token_id",
        "eos_token_id": "eos_token_id",
        "decoder_start_token_id": "decoder_start_token_id",
        "forced_eos_token_id": "forced_eos_token_id",
    }

    vocab_size: int = 50265
    max_positions: int = 1024
    hidden_size: int = 1024
    encoder_num_blocks: int = 12
    decoder_num_blocks: int = 12
    encoder_num_attention_heads: int = 16
    decoder_num_attention_heads: int = 16
    encoder_intermediate_size: int = 4096
    decoder_intermediate_size: int = 4096
    scale_embedding: bool = False
    activation: str = "gelu"
    dropout_rate: float = 0.1
    attention_dropout_rate: float = 0.0
    activation_dropout_rate: float = 0.0
    classifier_dropout_rate: float = 0.0
    layer_norm_epsilon: float = 1e-5
    pad_token_id: int = 1
    bos_token_id: int = 0
    eos_token_id: int = 2
    decoder_start_token_id: Optional[int] = None
    forced_eos_token_id: Optional[int] = 2

    def __post_init__(self):
        super().__post_init__()
        self._check_positive(
            "vocab_size",
            "max_positions",
            "hidden_size",
            "encoder_num_blocks",
            "decoder_num_blocks",
            "encoder_num_attention_heads",
            "decoder_num_attention_heads",
            "encoder_intermediate_size",
            "decoder_intermediate_size",
        )
        self._check_rate(
            "dropout_rate",
            "attention_dropout_rate",
            "activation_dropout_rate",
            "classifier_dropout_rate",
        )
        self._check_heads("hidden_size", "encoder_num_attention_heads")
        self._check_heads("hidden_size", "decoder_num_attention_heads")


def shift_tokens_right(input_ids: torch.Tensor, pad_token_id: int) -> torch.Tensor:
    """
    Default decoder inputs: each row shifted right by one, with the row's last
    non-padding token (EOS for MBART inputs) moved to the front as the start token.
    """
    eos_index = (input_ids.ne(pad_token_id).sum(dim=1) - 1).clamp(min=0)
    start_ids = gather_positions(input_ids.unsqueeze(-1), eos_index)  # (B, 1)
    if input_ids.size(1) == 1:
        return start_ids
    return torch.cat([start_ids, input_ids[:, :-1]], dim=1)


class MBartTokenEmbedding(nn.Embedding):
    """Token embedding multiplied by a constant scale (sqrt(hidden_size) or 1)."""

    def __init__(self, vocab_size: int, hidden_size: int, scale: float = 1.0):
        super().__init__(vocab_size, hidden_size)
        self.scale = scale

    def forward(self, input_ids: torch.Tensor) -> torch.Tensor:
        return super().forward(input_ids) * self.scale


def _token_embedding(config: MBartConfig) -> MBartTokenEmbedding:
    scale = math.sqrt(config.hidden_size) if config.scale_embedding else 1.0
    return MBartTokenEmbedding(config.vocab_size, config.hidden_size, scale=scale)


def _embed(
    embed_tokens: nn.Module,
    input_ids: Optional[torch.Tensor],
    input_embeds: Optional[torch.Tensor],
) -> torch.Tensor:
    if input_embeds is not None:
        return input_embeds
    if input_ids is None:
        raise ValueError("either input_ids or input_embeds must be given")
    return embed_tokens(input_ids)


class MBartEncoder(nn.Module):
    """Embeddings + Pre-LN encoder stack with a final LayerNorm."""

    def __init__(self, config: MBartConfig, embed_tokens: nn.Embedding):
        super().__init__()
        self.config = config
        self.embed_tokens = embed_tokens
        self.embed_positions = LearnedPositionalEmbedding(
            config.max_positions, config.hidden_size, offset=POSITION_OFFSET
        )
        self.layernorm_embedding = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_epsilon)
        self.dropout = nn.Dropout(config.dropout_rate)
        self.stack = TransformerEncoder(
            num_layers=config.encoder_num_blocks,
            d_model=config.hidden_size,
            num_heads=config.encoder_num_attention_heads,
            d_ff=config.encoder_intermediate_size,
            activation=config.activation,
            dropout=config.dropout_rate,
            attention_dropout=config.attention_dropout_rate,
            activation_dropout=config.activation_dropout_rate,
            layer_norm_eps=config.layer_norm_epsilon,
            norm_placement="first",
            final_norm=True,
        )

    def forward(
        self,
        input_ids: Optional[torch.Tensor] = None,
        attention_mask: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        head_mask: Optional[torch.Tensor] = None,
        input_embeds: Optional[torch.Tensor] = None,
    ) -> EncoderOutput:
        x = _embed(self.embed_tokens, input_ids, input_embeds)
        B, T, _ = x.shape
        if position_ids is None:
            position_ids = default_position_ids(B, T, device=x.device)
        x = x + self.embed_positions(position_ids)
        x = self.dropout(self.layernorm_embedding(x))
        return self.stack(
            x,
            mask=attention_mask,
            head_mask=head_mask,
            output_hidden_states=self.config.output_hidden_states,
            output_attentions=self.config.output_attentions,
        )


class MBartDecoder(nn.Module):
    """Embeddings + Pre-LN decoder stack (cached) with a final LayerNorm."""

    def __init__(self, config: MBartConfig, embed_tokens: nn.Embedding):
        super().__init__()
        self.config = config
        self.embed_tokens = embed_tokens
        self.embed_positions = LearnedPositionalEmbedding(
            config.max_positions, config.hidden_size, offset=POSITION_OFFSET
        )
        self.layernorm_embedding = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_epsilon)
        self.dropout = nn.Dropout(config.dropout_rate)
        self.stack = TransformerDecoder(
            num_layers=config.decoder_num_blocks,
            d_model=config.hidden_size,
            num_heads=config.decoder_num_attention_heads,
            d_ff=config.decoder_intermediate_size,
            activation=config.activation,
            dropout=config.dropout_rate,
            attention_dropout=config.attention_dropout_rate,
            activation_dropout=config.activation_dropout_rate,
            layer_norm_eps=config.layer_norm_epsilon,
            norm_placement="first",
            add_cross_attention=True,
            final_norm=True,
        )

    def init_cache(
        self, batch_size: int, max_length: int, encoder_sequence_length: Optional[int] = None
    ) -> DecodeCache:
        return self.stack.init_cache(batch_size, max_length, encoder_sequence_length)

    def forward(
        self,
        input_ids: Optional[torch.Tensor] = None,
        attention_mask: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        head_mask: Optional[torch.Tensor] = None,
        input_embeds: Optional[torch.Tensor] = None,
        encoder_hidden_state: Optional[torch.Tensor] = None,
        encoder_attention_mask: Optional[torch.Tensor] = None,
        cross_attention_head_mask: Optional[torch.Tensor] = None,
        cache: Optional[DecodeCache] = None,
    ) -> Tuple[DecoderOutput, Optional[DecodeCache]]:
        x = _embed(self.embed_tokens, input_ids, input_embeds)
        B, T, _ = x.shape
        if position_ids is None:
            offset = cache.offset if cache is not None else 0
            position_ids = default_position_ids(B, T, offset=offset, device=x.device)
        x = x + self.embed_positions(position_ids)
        x = self.dropout(self.layernorm_embedding(x))
        return self.stack(
            x,
            attention_mask=attention_mask,
            cache=cache,
            encoder_hidden_state=encoder_hidden_state,
            encoder_attention_mask=encoder_attention_mask,
            head_mask=head_mask,
            cross_attention_head_mask=cross_attention_head_mask,
            output_hidden_states=self.config.output_hidden_states,
            output_attentions=self.config.output_attentions,
        )


class MBartPreTrainedModel(nn.Module):
    """Holds the config and applies the normal initializer."""

    is_encoder_decoder = True

    def __init__(self, config: MBartConfig):
        super().__init__()
        self.config = config

    def post_init(self) -> None:
        self.apply(self.config.init_weights)


class MBartModel(MBartPreTrainedModel):
    """Plain MBART encoder-decoder returning the decoder's last hidden state."""

    def __init__(self, config: MBartConfig):
        super().__init__(config)
        self.shared = _token_embedding(config)
        self.encoder = MBartEncoder(config, self.shared)
        self.decoder = MBartDecoder(config, self.shared)
        self.post_init()

    def encode(
        self,
        input_ids: Optional[torch.Tensor] = None,
        attention_mask: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        head_mask: Optional[torch.Tensor] = None,
        input_embeds: Optional[torch.Tensor] = None,
    ) -> EncoderOutput:
        return self.encoder(
            input_ids=input_ids,
            attention_mask=attention_mask,
            position_ids=position_ids,
            head_mask=head_mask,
            input_embeds=input_embeds,
        )

    def init_cache(
        self,
        batch_size: int,
        max_length: int,
        encoder_hidden_state: Optional[torch.Tensor] = None,
    ) -> DecodeCache:
        """Allocate a decode cache; cross-attention storage is sized from the encoder output."""
        encoder_sequence_length = (
            encoder_hidden_state.size(1) if encoder_hidden_state is not None else None
        )
        return self.decoder.init_cache(batch_size, max_length, encoder_sequence_length)

    def forward(
        self,
        input_ids: Optional[torch.Tensor] = None,
        attention_mask: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        head_mask: Optional[torch.Tensor] = None,
        input_embeds: Optional[torch.Tensor] = None,
        decoder_input_ids: Optional[torch.Tensor] = None,
        decoder_attention_mask: Optional[torch.Tensor] = None,
        decoder_position_ids: Optional[torch.Tensor] = None,
        decoder_head_mask: Optional[torch.Tensor] = None,
        decoder_input_embeds: Optional[torch.Tensor] = None,
        encoder_hidden_state: Optional[torch.Tensor] = None,
        cross_attention_head_mask: Optional[torch.Tensor] = None,
        cache: Optional[DecodeCache] = None,
    ) -> Seq2SeqOutput:
        """
        Args:
            input_ids: (B, S) encoder token ids
            attention_mask: (B, S) encoder padding mask, also used by cross-attention
            decoder_input_ids: (B, T) decoder token ids; defaults to input_ids shifted right
            encoder_hidden_state: (B, S, d_model) precomputed encoder output;
                when given the encoder is skipped
            cache: DecodeCache from init_cache or the previous step

        Returns:
            Seq2SeqOutput with the decoder's last hidden state and the new cache
        """
        if decoder_input_ids is None and decoder_input_embeds is None:
            if input_ids is None:
                raise ValueError(
                    "decoder_input_ids or decoder_input_embeds are required without input_ids"
                )
            decoder_input_ids = shift_tokens_right(input_ids, self.config.pad_token_id)

        if encoder_hidden_state is not None:
            encoder_outputs = EncoderOutput(last_hidden_state=encoder_hidden_state)
        else:
            encoder_outputs = self.encode(
                input_ids=input_ids,
                attention_mask=attention_mask,
                position_ids=position_ids,
                head_mask=head_mask,
                input_embeds=input_embeds,
            )

        decoder_outputs, cache = self.decoder(
            input_ids=decoder_input_ids,
            attention_mask=decoder_attention_mask,
            position_ids=decoder_position_ids,
            head_mask=decoder_head_mask,
            input_embeds=decoder_input_embeds,
            encoder_hidden_state=encoder_outputs.last_hidden_state,
            encoder_attention_mask=attention_mask,
            cross_attention_head_mask=cross_attention_head_mask,
            cache=cache,
        )

        return Seq2SeqOutput(
            last_hidden_state=decoder_outputs.last_hidden_state,
            decoder_hidden_states=decoder_outputs.hidden_states,
            decoder_attentions=decoder_outputs.attentions,
            cross_attentions=decoder_outputs.cross_attentions,
            encoder_last_hidden_state=encoder_outputs.last_hidden_state,
            encoder_hidden_states=encoder_outputs.hidden_states,
            encoder_attentions=encoder_outputs.attentions,
            cache=cache,
        )


class MBartForConditionalGeneration(MBartPreTrainedModel):
    """MBART with a language modeling head tied to the shared embedding."""

    def __init__(self, config: MBartConfig):
        super().__init__(config)
        self.model = MBartModel(config)
        self.lm_head = LMHead(
            config.hidden_size, config.vocab_size, tie_embedding=self.model.shared
        )

    def encode(self, *args: Any, **kwargs: Any) -> EncoderOutput:
        return self.model.encode(*args, **kwargs)

    def init_cache(
        self,
        batch_size: int,
        max_length: int,
        encoder_hidden_state: Optional[torch.Tensor] = None,
    ) -> DecodeCache:
        return self.model.init_cache(batch_size, max_length, encoder_hidden_state)

    def forward(self, **inputs: Any) -> Seq2SeqOutput:
        """Same inputs as MBartModel.forward; adds (B, T, vocab_size) logits."""
        outputs = self.model(**inputs)
        assert outputs.last_hidden_state is not None
        return replace(outputs, logits=self.lm_head(outputs.last_hidden_state))


class MBartForSequenceClassification(MBartPreTrainedModel):
    """Classifies the decoder hidden state at the last EOS token of the input."""

    def __init__(self, config: MBartConfig):
        super().__init__(config)
        self.model = MBartModel(config)
        self.classification_head = ClassificationHead(
            config.hidden_size, config.num_labels, dropout=config.classifier_dropout_rate
        )
        self.classification_head.apply(config.init_weights)

    def forward(self, input_ids: Optional[torch.Tensor] = None, **inputs: Any) -> Seq2SeqOutput:
        if input_ids is None:
            raise ValueError("input_ids are required to locate the EOS token")
        outputs = self.model(input_ids=input_ids, **inputs)
        assert outputs.last_hidden_state is not None
        eos_index = last_token_index(input_ids, self.config.eos_token_id)
        sentence_representation = gather_positions(outputs.last_hidden_state, eos_index)
        logits = self.classification_head(sentence_representation)
        return replace(outputs, logits=logits, cache=None)


class MBartForQuestionAnswering(MBartPreTrainedModel):
    """Span classification: start/end logits for every decoder position."""

    def __init__(self, config: MBartConfig):
        super().__init__(config)
        self.model = MBartModel(config)
        self.qa_head = QuestionAnsweringHead(config.hidden_size)
        self.qa_head.apply(config.init_weights)

    def forward(self, **inputs: Any) -> Seq2SeqOutput:
        outputs = self.model(**inputs)
        assert outputs.last_hidden_state is not None
        start_logits, end_logits = self.qa_head(outputs.last_hidden_state)
        return replace(outputs, start_logits=start_logits, end_logits=end_logits, cache=None)


class MBartForCausalLM(MBartPreTrainedModel):
    """
    The MBART decoder alone with a tied LM head.

    Cross-attention runs only when ``encoder_hidden_state`` is given.
    """

    is_encoder_decoder = False

    def __init__(self, config: MBartConfig):
        super().__init__(config)
        self.embed_tokens = _token_embedding(config)
        self.decoder = MBartDecoder(config, self.embed_tokens)
        self.lm_head = LMHead(
            config.hidden_size, config.vocab_size, tie_embedding=self.embed_tokens
        )
        self.post_init()

    def init_cache(
        self,
        batch_size: int,
        max_length: int,
        encoder_hidden_state: Optional[torch.Tensor] = None,
    ) -> DecodeCache:
        encoder_sequence_length = (
            encoder_hidden_state.size(1) if encoder_hidden_state is not None else None
        )
        return self.decoder.init_cache(batch_size, max_length, encoder_sequence_length)

    def forward(
        self,
        input_ids: Optional[torch.Tensor] = None,
        attention_mask: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        head_mask: Optional[torch.Tensor] = None,
        input_embeds: Optional[torch.Tensor] = None,
        encoder_hidden_state: Optional[torch.Tensor] = None,
        encoder_attention_mask: Optional[torch.Tensor] = None,
        cross_attention_head_mask: Optional[torch.Tensor] = None,
        cache: Optional[DecodeCache] = None,
    ) -> CausalLMOutput:
        decoder_outputs, cache = self.decoder(
            input_ids=input_ids,
            attention_mask=attention_mask,
            position_ids=position_ids,
            head_mask=head_mask,
            input_embeds=input_embeds,
            encoder_hidden_state=encoder_hidden_state,
            encoder_attention_mask=encoder_attention_mask,
            cross_attention_head_mask=cross_attention_head_mask,
            cache=cache,
        )
        return CausalLMOutput(
            logits=self.lm_head(decoder_outputs.last_hidden_state),
            hidden_states=decoder_outputs.hidden_states,
            attentions=decoder_outputs.attentions,
            cross_attentions=decoder_outputs.cross_attentions,
            cache=cache,
        )
