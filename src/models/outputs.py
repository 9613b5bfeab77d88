"""Output containers returned by the stacks and models.

Optional fields are None when the value was not requested or does not apply
(e.g. cross-attention weights when no encoder output was given).
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from .cache import DecodeCache

TensorTuple = Tuple[torch.Tensor, ...]


@dataclass
class EncoderOutput:
    last_hidden_state: torch.Tensor
    hidden_states: Optional[TensorTuple] = None
    attentions: Optional[TensorTuple] = None
    pooled_state: Optional[torch.Tensor] = None
    logits: Optional[torch.Tensor] = None


@dataclass
class DecoderOutput:
    last_hidden_state: torch.Tensor
    hidden_states: Optional[TensorTuple] = None
    attentions: Optional[TensorTuple] = None
    # Per-layer entries are None for layers that skipped cross-attention
    cross_attentions: Optional[Tuple[Optional[torch.Tensor], ...]] = None


@dataclass
class Seq2SeqOutput:
    last_hidden_state: Optional[torch.Tensor] = None
    logits: Optional[torch.Tensor] = None
    start_logits: Optional[torch.Tensor] = None
    end_logits: Optional[torch.Tensor] = None
    decoder_hidden_states: Optional[TensorTuple] = None
    decoder_attentions: Optional[TensorTuple] = None
    cross_attentions: Optional[Tuple[Optional[torch.Tensor], ...]] = None
    encoder_last_hidden_state: Optional[torch.Tensor] = None
    encoder_hidden_states: Optional[TensorTuple] = None
    encoder_attentions: Optional[TensorTuple] = None
    cache: Optional[DecodeCache] = None


@dataclass
class CausalLMOutput:
    logits: torch.Tensor
    hidden_states: Optional[TensorTuple] = None
    attentions: Optional[TensorTuple] = None
    cross_attentions: Optional[Tuple[Optional[torch.Tensor], ...]] = None
    cache: Optional[DecodeCache] = None
