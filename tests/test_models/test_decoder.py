import pytest
import torch

from src.models.decoder import TransformerDecoder, TransformerDecoderLayer
from src.models.errors import ConfigurationError


def test_decoder_layer_shapes_and_grad():
    torch.manual_seed(0)
    d_model, num_heads, d_ff = 32, 4, 64
    batch_size, tgt_len, src_len = 2, 6, 7

    layer = TransformerDecoderLayer(d_model=d_model, num_heads=num_heads, d_ff=d_ff, dropout=0.0)
    tgt = torch.randn(batch_size, tgt_len, d_model, requires_grad=True)
    memory = torch.randn(batch_size, src_len, d_model)

    out, self_attn, cross_attn, block_cache = layer(tgt, memory=memory, collect_attn=True)
    assert out.shape == (batch_size, tgt_len, d_model)
    assert self_attn.shape == (batch_size, num_heads, tgt_len, tgt_len)
    assert cross_attn.shape == (batch_size, num_heads, tgt_len, src_len)
    assert block_cache is None

    # Backprop works
    loss = out.sum()
    loss.backward()
    grads = [p.grad for p in layer.parameters() if p.requires_grad]
    assert any(g is not None for g in grads)


def test_decoder_layer_causal_mask_blocks_future():
    torch.manual_seed(1)
    d_model, num_heads, d_ff = 48, 6, 128
    batch_size, tgt_len, src_len = 1, 5, 5

    layer = TransformerDecoderLayer(d_model=d_model, num_heads=num_heads, d_ff=d_ff, dropout=0.0)
    tgt = torch.randn(batch_size, tgt_len, d_model)
    memory = torch.randn(batch_size, src_len, d_model)

    _, self_attn, _, _ = layer(tgt, memory=memory, collect_attn=True)
    self_attn = self_attn.detach()
    # For each head and query i, keys j>i should be zero
    B, H, Tq, Tk = self_attn.shape
    for i in range(Tq):
        for j in range(i + 1, Tk):
            assert torch.allclose(self_attn[:, :, i, j], torch.zeros(B, H)), (
                f"Found nonzero attention to future position {j} from query {i}"
            )


def test_decoder_layer_skips_cross_attention_without_memory():
    layer = TransformerDecoderLayer(d_model=16, num_heads=2, d_ff=32, dropout=0.0)
    _, self_attn, cross_attn, _ = layer(torch.randn(1, 3, 16), collect_attn=True)
    assert self_attn is not None
    assert cross_attn is None


def test_decoder_layer_without_cross_attention_parameters():
    layer = TransformerDecoderLayer(d_model=16, num_heads=2, d_ff=32, add_cross_attention=False)
    assert layer.cross_attn is None
    out, _, cross_attn, _ = layer(torch.randn(1, 3, 16), memory=torch.randn(1, 4, 16))
    assert out.shape == (1, 3, 16)
    assert cross_attn is None


def test_decoder_layer_rejects_unknown_norm_placement():
    with pytest.raises(ConfigurationError):
        TransformerDecoderLayer(d_model=16, num_heads=2, d_ff=32, norm_placement="middle")


@pytest.mark.parametrize("norm_placement", ["first", "after"])
def test_decoder_stack_outputs(norm_placement):
    torch.manual_seed(2)
    d_model, num_layers, num_heads = 32, 2, 4
    batch_size, tgt_len, src_len = 2, 6, 7

    decoder = TransformerDecoder(
        num_layers=num_layers,
        d_model=d_model,
        num_heads=num_heads,
        d_ff=64,
        dropout=0.0,
        norm_placement=norm_placement,
    )
    hidden = torch.randn(batch_size, tgt_len, d_model)
    memory = torch.randn(batch_size, src_len, d_model)

    output, cache = decoder(
        hidden, encoder_hidden_state=memory, output_hidden_states=True, output_attentions=True
    )

    assert cache is None
    assert output.last_hidden_state.shape == (batch_size, tgt_len, d_model)
    # Input plus one entry per layer
    assert len(output.hidden_states) == num_layers + 1
    assert torch.equal(output.hidden_states[0], hidden)
    assert len(output.attentions) == num_layers
    assert len(output.cross_attentions) == num_layers
    assert output.cross_attentions[0].shape == (batch_size, num_heads, tgt_len, src_len)


def test_decoder_stack_collections_off_by_default():
    decoder = TransformerDecoder(num_layers=1, d_model=16, num_heads=2, d_ff=32)
    output, _ = decoder(torch.randn(1, 3, 16))
    assert output.hidden_states is None
    assert output.attentions is None
    assert output.cross_attentions is None


def test_decoder_head_mask_disables_head():
    decoder = TransformerDecoder(num_layers=2, d_model=16, num_heads=2, d_ff=32, dropout=0.0)
    head_mask = torch.tensor([[1.0, 0.0], [1.0, 1.0]])
    output, _ = decoder(torch.randn(1, 4, 16), head_mask=head_mask, output_attentions=True)
    # Returned weights are not multiplied by the head mask
    assert torch.allclose(output.attentions[0][:, 1].sum(-1), torch.ones(1, 4), atol=1e-6)


def test_decoder_cache_offset_advances_once_per_pass():
    decoder = TransformerDecoder(num_layers=3, d_model=16, num_heads=2, d_ff=32, dropout=0.0)
    decoder.eval()
    cache = decoder.init_cache(batch_size=1, max_length=8)

    _, cache = decoder(torch.randn(1, 3, 16), cache=cache)
    assert cache.offset == 3
    _, cache = decoder(torch.randn(1, 1, 16), cache=cache)
    assert cache.offset == 4
    for block in cache.blocks:
        assert block.self_attention.length == 4


def test_decoder_rejects_cache_with_wrong_layer_count():
    decoder = TransformerDecoder(num_layers=2, d_model=16, num_heads=2, d_ff=32)
    other = TransformerDecoder(num_layers=3, d_model=16, num_heads=2, d_ff=32)
    with pytest.raises(ConfigurationError):
        decoder(torch.randn(1, 1, 16), cache=other.init_cache(1, 4))


def test_decoder_train_eval_dropout_behavior():
    torch.manual_seed(3)
    d_model = 32
    batch_size, src_len, tgt_len = 2, 6, 5

    decoder = TransformerDecoder(num_layers=2, d_model=d_model, num_heads=4, d_ff=128, dropout=0.4)

    hidden = torch.randn(batch_size, tgt_len, d_model)
    memory = torch.randn(batch_size, src_len, d_model)

    decoder.train()
    out1, _ = decoder(hidden, encoder_hidden_state=memory)
    out2, _ = decoder(hidden, encoder_hidden_state=memory)
    # With dropout in train mode, outputs should usually differ
    assert not torch.allclose(out1.last_hidden_state, out2.last_hidden_state)

    decoder.eval()
    out3, _ = decoder(hidden, encoder_hidden_state=memory)
    out4, _ = decoder(hidden, encoder_hidden_state=memory)
    assert torch.allclose(out3.last_hidden_state, out4.last_hidden_state)


if __name__ == "__main__":
    pytest.main([__file__, "-q"])
