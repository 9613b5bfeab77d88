"""Greedy generation with the incremental decode cache.

Encoder-decoder models run the encoder once and then feed the decoder one
token per step. Decoder-only models prefill the prompt and then step one token
at a time. With ``use_cache=False`` the whole sequence is recomputed at every
step instead, which must select exactly the same tokens.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import torch
import torch.nn as nn

from ..models.errors import ConfigurationError
from ..utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class GenerationConfig:
    """Greedy decoding options.

    max_length counts every position the decoder sees: the start token plus
    generated tokens for encoder-decoder models, the prompt plus generated
    tokens for decoder-only models.
    """

    max_length: int = 20
    min_length: int = 0
    decoder_start_token_id: Optional[int] = None
    eos_token_id: Optional[int] = None
    pad_token_id: Optional[int] = None
    forced_eos_token_id: Optional[int] = None

    def __post_init__(self):
        if self.max_length <= 0:
            raise ConfigurationError(f"max_length must be positive, got {self.max_length}")
        if not 0 <= self.min_length <= self.max_length:
            raise ConfigurationError(
                f"min_length must be in [0, max_length], got {self.min_length}"
            )

    @classmethod
    def from_model_config(cls, model_config: object, **overrides) -> "GenerationConfig":
        """Take token ids from a model config (e.g. MBartConfig) where it has them."""
        values = {}
        for name in (
            "decoder_start_token_id",
            "eos_token_id",
            "pad_token_id",
            "forced_eos_token_id",
        ):
            values[name] = getattr(model_config, name, None)
        if values["decoder_start_token_id"] is None:
            values["decoder_start_token_id"] = getattr(model_config, "eos_token_id", None)
        values.update(overrides)
        return cls(**values)


def _process_logits(logits: torch.Tensor, length: int, config: GenerationConfig) -> torch.Tensor:
    """Apply min-length and forced-EOS constraints for the token at position ``length``."""
    logits = logits.clone()
    if config.eos_token_id is not None and length < config.min_length:
        logits[:, config.eos_token_id] = float("-inf")
    if config.forced_eos_token_id is not None and length == config.max_length - 1:
        forced = torch.full_like(logits, float("-inf"))
        forced[:, config.forced_eos_token_id] = 0.0
        logits = forced
    return logits


def _select_next(
    logits: torch.Tensor,
    sequences: torch.Tensor,
    finished: torch.Tensor,
    config: GenerationConfig,
) -> torch.Tensor:
    next_token = _process_logits(logits, sequences.size(1), config).argmax(dim=-1)
    if config.pad_token_id is not None:
        # Finished rows keep emitting padding
        next_token = torch.where(
            finished, torch.full_like(next_token, config.pad_token_id), next_token
        )
    return next_token


def pad_batch(
    batch: Sequence[Sequence[int]],
    pad_token_id: int,
    padding_side: str = "right",
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Stack token id lists into (B, T) ids and a boolean padding mask.

    Encoder inputs are right-padded so real tokens keep positions 0..n-1;
    decoder-only prompts are left-padded so every prompt ends at the last
    column, where generation continues. ``padding_side_for`` picks the side
    for a model.
    """
    if padding_side not in ("left", "right"):
        raise ValueError(f"padding_side must be 'left' or 'right', got '{padding_side}'")
    if not batch:
        raise ValueError("batch must contain at least one sequence")
    width = max(len(ids) for ids in batch)
    input_ids = torch.full((len(batch), width), pad_token_id, dtype=torch.long)
    attention_mask = torch.zeros(len(batch), width, dtype=torch.bool)
    for row, ids in enumerate(batch):
        if not ids:
            continue
        start = width - len(ids) if padding_side == "left" else 0
        input_ids[row, start : start + len(ids)] = torch.tensor(list(ids), dtype=torch.long)
        attention_mask[row, start : start + len(ids)] = True
    return input_ids, attention_mask


def padding_side_for(model: nn.Module) -> str:
    return "right" if getattr(model, "is_encoder_decoder", False) else "left"


@torch.no_grad()
def greedy_generate(
    model: nn.Module,
    input_ids: torch.Tensor,
    attention_mask: Optional[torch.Tensor] = None,
    config: Optional[GenerationConfig] = None,
    use_cache: bool = True,
) -> torch.Tensor:
    """
    Greedy decoding.

    Args:
        model: an encoder-decoder model exposing ``encode``/``init_cache`` (e.g.
            MBartForConditionalGeneration) or a decoder-only model exposing
            ``init_cache`` (e.g. MBartForCausalLM)
        input_ids: (B, S) encoder input ids (right-padded), or the prompt for
            decoder-only models (left-padded)
        attention_mask: optional (B, S) padding mask for ``input_ids``; decoder-only
            positions count real tokens only, so padding does not shift them
        config: decoding options; token ids default to the model config's
        use_cache: step with the decode cache instead of recomputing

    Returns:
        (B, L) token ids: the start token and generated tokens for
        encoder-decoder models, the prompt and generated tokens otherwise
    """
    if config is None:
        config = GenerationConfig.from_model_config(getattr(model, "config", None))
    if input_ids.dim() != 2:
        raise ValueError("input_ids must be (batch, seq_len)")
    if attention_mask is None:
        attention_mask = torch.ones_like(input_ids, dtype=torch.bool)
    attention_mask = attention_mask.to(dtype=torch.bool)

    if getattr(model, "is_encoder_decoder", False):
        return _generate_encoder_decoder(model, input_ids, attention_mask, config, use_cache)
    return _generate_decoder_only(model, input_ids, attention_mask, config, use_cache)


def _generate_encoder_decoder(
    model: nn.Module,
    input_ids: torch.Tensor,
    attention_mask: torch.Tensor,
    config: GenerationConfig,
    use_cache: bool,
) -> torch.Tensor:
    if config.decoder_start_token_id is None:
        raise ConfigurationError("decoder_start_token_id is required for encoder-decoder models")
    B = input_ids.size(0)
    device = input_ids.device

    encoder_hidden_state = model.encode(
        input_ids=input_ids, attention_mask=attention_mask
    ).last_hidden_state

    sequences = torch.full(
        (B, 1), config.decoder_start_token_id, dtype=torch.long, device=device
    )
    finished = torch.zeros(B, dtype=torch.bool, device=device)
    cache = model.init_cache(B, config.max_length, encoder_hidden_state) if use_cache else None

    while sequences.size(1) < config.max_length:
        if use_cache:
            outputs = model(
                decoder_input_ids=sequences[:, -1:],
                attention_mask=attention_mask,
                encoder_hidden_state=encoder_hidden_state,
                cache=cache,
            )
            cache = outputs.cache
        else:
            outputs = model(
                decoder_input_ids=sequences,
                attention_mask=attention_mask,
                encoder_hidden_state=encoder_hidden_state,
            )
        next_token = _select_next(outputs.logits[:, -1], sequences, finished, config)
        sequences = torch.cat([sequences, next_token.unsqueeze(-1)], dim=1)

        if config.eos_token_id is not None:
            finished = finished | (next_token == config.eos_token_id)
            if finished.all():
                break

    logger.debug("Generated %d tokens for %d sequences", sequences.size(1) - 1, B)
    return sequences


def _positions_from_mask(mask: torch.Tensor) -> torch.Tensor:
    """Position of each token counting only real tokens; padding gets 0."""
    return (mask.long().cumsum(dim=1) - 1).clamp(min=0)


def _generate_decoder_only(
    model: nn.Module,
    input_ids: torch.Tensor,
    attention_mask: torch.Tensor,
    config: GenerationConfig,
    use_cache: bool,
) -> torch.Tensor:
    B, prompt_length = input_ids.shape
    device = input_ids.device
    if prompt_length >= config.max_length:
        raise ConfigurationError(
            f"prompt length ({prompt_length}) must be below max_length ({config.max_length})"
        )

    sequences = input_ids
    mask = attention_mask
    positions = _positions_from_mask(mask)
    finished = torch.zeros(B, dtype=torch.bool, device=device)
    cache = model.init_cache(B, config.max_length) if use_cache else None
    step_ids, step_mask, step_positions = sequences, mask, positions

    while sequences.size(1) < config.max_length:
        if use_cache:
            outputs = model(
                input_ids=step_ids,
                attention_mask=step_mask,
                position_ids=step_positions,
                cache=cache,
            )
            cache = outputs.cache
        else:
            outputs = model(input_ids=sequences, attention_mask=mask, position_ids=positions)
        next_token = _select_next(outputs.logits[:, -1], sequences, finished, config)
        sequences = torch.cat([sequences, next_token.unsqueeze(-1)], dim=1)
        new_mask = torch.ones(B, 1, dtype=torch.bool, device=device)
        mask = torch.cat([mask, new_mask], dim=1)
        new_positions = positions[:, -1:] + 1
        positions = torch.cat([positions, new_positions], dim=1)
        step_ids, step_mask, step_positions = next_token.unsqueeze(-1), new_mask, new_positions

        if config.eos_token_id is not None:
            finished = finished | (next_token == config.eos_token_id)
            if finished.all():
                break

    logger.debug(
        "Generated %d tokens after a %d-token prompt",
        sequences.size(1) - prompt_length,
        prompt_length,
    )
    return sequences
