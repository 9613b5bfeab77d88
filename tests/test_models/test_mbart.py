import pytest
import torch

from src.models.errors import ConfigurationError
from src.models.mbart import (
    MBartConfig,
    MBartForCausalLM,
    MBartForConditionalGeneration,
    MBartForQuestionAnswering,
    MBartForSequenceClassification,
    MBartModel,
    shift_tokens_right,
)

VOCAB_SIZE = 64
HIDDEN = 32


def small_config(**overrides) -> MBartConfig:
    options = dict(
        vocab_size=VOCAB_SIZE,
        max_positions=32,
        hidden_size=HIDDEN,
        encoder_num_blocks=2,
        decoder_num_blocks=2,
        encoder_num_attention_heads=4,
        decoder_num_attention_heads=4,
        encoder_intermediate_size=64,
        decoder_intermediate_size=64,
        dropout_rate=0.0,
    )
    options.update(overrides)
    return MBartConfig(**options)


def _input_ids(batch_size=2, length=6):
    ids = torch.randint(3, VOCAB_SIZE, (batch_size, length))
    ids[:, -1] = 2  # EOS
    return ids


def test_config_validation():
    with pytest.raises(ConfigurationError):
        small_config(hidden_size=30)
    with pytest.raises(ConfigurationError):
        small_config(dropout_rate=1.5)
    with pytest.raises(ConfigurationError):
        small_config(architecture="for_image_classification")


def test_shift_tokens_right_moves_eos_to_front():
    input_ids = torch.tensor([[10, 11, 2, 1, 1], [12, 13, 14, 15, 2]])
    shifted = shift_tokens_right(input_ids, pad_token_id=1)
    assert shifted.tolist() == [[2, 10, 11, 2, 1], [2, 12, 13, 14, 15]]


def test_shift_tokens_right_single_token():
    assert shift_tokens_right(torch.tensor([[7]]), pad_token_id=1).tolist() == [[7]]


def test_base_model_shapes():
    model = MBartModel(small_config()).eval()
    input_ids = _input_ids()
    out = model(input_ids=input_ids, decoder_input_ids=_input_ids(length=4))
    assert out.last_hidden_state.shape == (2, 4, HIDDEN)
    assert out.encoder_last_hidden_state.shape == (2, 6, HIDDEN)
    assert out.logits is None
    assert out.cache is None


def test_default_decoder_inputs_are_shifted_inputs():
    model = MBartModel(small_config()).eval()
    input_ids = _input_ids()
    implicit = model(input_ids=input_ids)
    explicit = model(input_ids=input_ids, decoder_input_ids=shift_tokens_right(input_ids, 1))
    assert torch.allclose(implicit.last_hidden_state, explicit.last_hidden_state)


def test_missing_inputs_raise():
    model = MBartModel(small_config())
    with pytest.raises(ValueError):
        model(decoder_input_ids=_input_ids())


def test_encoder_hidden_state_skips_encoder():
    model = MBartModel(small_config()).eval()
    input_ids = _input_ids()
    decoder_input_ids = _input_ids(length=3)

    encoder_hidden_state = model.encode(input_ids=input_ids).last_hidden_state
    reference = model(input_ids=input_ids, decoder_input_ids=decoder_input_ids)
    reused = model(decoder_input_ids=decoder_input_ids, encoder_hidden_state=encoder_hidden_state)
    assert torch.allclose(reference.last_hidden_state, reused.last_hidden_state, atol=1e-6)


def test_output_hidden_states_and_attentions():
    config = small_config(output_hidden_states=True, output_attentions=True)
    model = MBartModel(config).eval()
    out = model(input_ids=_input_ids(), decoder_input_ids=_input_ids(length=3))

    assert len(out.encoder_hidden_states) == config.encoder_num_blocks + 1
    assert len(out.decoder_hidden_states) == config.decoder_num_blocks + 1
    assert out.encoder_attentions[0].shape == (2, 4, 6, 6)
    assert out.decoder_attentions[0].shape == (2, 4, 3, 3)
    assert out.cross_attentions[0].shape == (2, 4, 3, 6)


def test_conditional_generation_logits_and_tying():
    model = MBartForConditionalGeneration(small_config(architecture="for_conditional_generation"))
    assert model.lm_head.proj.weight is model.model.shared.weight
    assert model.model.encoder.embed_tokens is model.model.decoder.embed_tokens

    out = model(input_ids=_input_ids(), decoder_input_ids=_input_ids(length=5))
    assert out.logits.shape == (2, 5, VOCAB_SIZE)


def test_scaled_embedding():
    config = small_config(scale_embedding=True)
    model = MBartModel(config)
    ids = torch.tensor([[4]])
    expected = model.shared.weight[4] * HIDDEN**0.5
    assert torch.allclose(model.shared(ids)[0, 0], expected)


def test_cached_decoding_matches_full_pass():
    torch.manual_seed(3)
    model = MBartForConditionalGeneration(small_config()).eval()
    input_ids = _input_ids()
    attention_mask = torch.ones_like(input_ids, dtype=torch.bool)
    attention_mask[1, :2] = False
    decoder_input_ids = _input_ids(length=5)

    full = model(
        input_ids=input_ids, attention_mask=attention_mask, decoder_input_ids=decoder_input_ids
    )

    encoder_hidden_state = model.encode(
        input_ids=input_ids, attention_mask=attention_mask
    ).last_hidden_state
    cache = model.init_cache(2, max_length=5, encoder_hidden_state=encoder_hidden_state)
    steps = []
    for t in range(5):
        out = model(
            decoder_input_ids=decoder_input_ids[:, t : t + 1],
            attention_mask=attention_mask,
            encoder_hidden_state=encoder_hidden_state,
            cache=cache,
        )
        cache = out.cache
        steps.append(out.logits)

    assert torch.allclose(torch.cat(steps, dim=1), full.logits, atol=1e-4)
    assert cache.offset == 5


def test_sequence_classification_uses_last_eos():
    torch.manual_seed(4)
    config = small_config(architecture="for_sequence_classification", num_labels=3)
    model = MBartForSequenceClassification(config).eval()
    input_ids = _input_ids()

    out = model(input_ids=input_ids)
    assert out.logits.shape == (2, 3)
    assert out.cache is None

    # Tokens after the EOS are padding and do not reach the classifier
    padded = torch.cat([input_ids, torch.ones(2, 2, dtype=torch.long)], dim=1)
    mask = padded.ne(1)
    padded_out = model(input_ids=padded, attention_mask=mask, decoder_attention_mask=mask)
    assert torch.allclose(out.logits, padded_out.logits, atol=1e-5)


def test_sequence_classification_requires_input_ids():
    model = MBartForSequenceClassification(small_config())
    with pytest.raises(ValueError):
        model(input_embeds=torch.randn(1, 4, HIDDEN))


def test_question_answering_logits():
    model = MBartForQuestionAnswering(small_config(architecture="for_question_answering"))
    out = model(input_ids=_input_ids(length=7))
    assert out.start_logits.shape == (2, 7)
    assert out.end_logits.shape == (2, 7)
    assert out.logits is None


def test_causal_lm_without_encoder():
    model = MBartForCausalLM(small_config(architecture="for_causal_language_modeling")).eval()
    assert model.lm_head.proj.weight is model.embed_tokens.weight
    out = model(input_ids=_input_ids(length=4))
    assert out.logits.shape == (2, 4, VOCAB_SIZE)
    assert out.cross_attentions is None


def test_causal_lm_cached_matches_full_pass():
    torch.manual_seed(5)
    model = MBartForCausalLM(small_config()).eval()
    input_ids = _input_ids(length=6)
    full = model(input_ids=input_ids)

    cache = model.init_cache(2, max_length=6)
    prefix = model(input_ids=input_ids[:, :3], cache=cache)
    steps, cache = [prefix.logits], prefix.cache
    for t in range(3, 6):
        out = model(input_ids=input_ids[:, t : t + 1], cache=cache)
        steps.append(out.logits)
        cache = out.cache

    assert torch.allclose(torch.cat(steps, dim=1), full.logits, atol=1e-4)


def test_causal_lm_with_encoder_hidden_state():
    config = small_config(output_attentions=True)
    model = MBartForCausalLM(config).eval()
    memory = torch.randn(2, 5, HIDDEN)
    out = model(input_ids=_input_ids(length=3), encoder_hidden_state=memory)
    assert out.cross_attentions[0].shape == (2, 4, 3, 5)
