import pytest
import torch

from src.models.encoder import TransformerEncoder


def test_encoder_padding_mask_and_grad():
    """
    Output shape with a padding mask, and gradients flow through the model.
    """
    torch.manual_seed(0)
    d_model = 64
    num_layers = 3
    batch_size = 2
    seq_len = 12

    encoder = TransformerEncoder(
        num_layers=num_layers, d_model=d_model, num_heads=8, d_ff=128, dropout=0.1
    )

    x = torch.randn(batch_size, seq_len, d_model)
    mask = torch.ones(batch_size, seq_len, dtype=torch.bool)
    mask[0, -3:] = False  # first sample has last 3 tokens as padding
    mask[1, -1:] = False

    out = encoder(x, mask=mask)
    assert out.last_hidden_state.shape == (batch_size, seq_len, d_model)
    assert out.hidden_states is None
    assert out.attentions is None

    loss = out.last_hidden_state.sum()
    loss.backward()
    grads = [p.grad for p in encoder.parameters() if p.requires_grad]
    assert any(g is not None for g in grads), "No gradients found on any parameter"


def test_encoder_collects_hidden_states_and_attentions():
    torch.manual_seed(1)
    d_model, num_layers, num_heads = 48, 4, 6
    batch_size, seq_len = 1, 10

    encoder = TransformerEncoder(
        num_layers=num_layers, d_model=d_model, num_heads=num_heads, d_ff=128, dropout=0.0
    )
    embeddings = torch.randn(batch_size, seq_len, d_model)

    out = encoder(embeddings, output_hidden_states=True, output_attentions=True)
    assert len(out.hidden_states) == num_layers + 1
    assert torch.equal(out.hidden_states[0], embeddings)
    assert len(out.attentions) == num_layers
    for attn in out.attentions:
        assert attn.shape == (batch_size, num_heads, seq_len, seq_len)
        # attention rows sum to 1
        ones = torch.ones(batch_size, num_heads, seq_len)
        assert torch.allclose(attn.sum(dim=-1), ones, atol=1e-5)


def test_padding_does_not_change_real_positions():
    torch.manual_seed(2)
    encoder = TransformerEncoder(num_layers=2, d_model=32, num_heads=4, d_ff=64, dropout=0.0)
    encoder.eval()
    x = torch.randn(1, 4, 32)
    padded = torch.cat([x, torch.randn(1, 2, 32)], dim=1)
    mask = torch.tensor([[True, True, True, True, False, False]])

    plain = encoder(x).last_hidden_state
    masked = encoder(padded, mask=mask).last_hidden_state
    assert torch.allclose(plain, masked[:, :4], atol=1e-5)


def test_head_mask_per_layer():
    encoder = TransformerEncoder(num_layers=2, d_model=32, num_heads=4, d_ff=64, dropout=0.0)
    encoder.eval()
    x = torch.randn(1, 5, 32)
    head_mask = torch.ones(2, 4)
    head_mask[0, 2] = 0.0

    out = encoder(x, head_mask=head_mask).last_hidden_state
    baseline = encoder(x).last_hidden_state
    assert not torch.allclose(out, baseline)


def test_final_norm_optional():
    encoder = TransformerEncoder(num_layers=1, d_model=16, num_heads=2, d_ff=32, final_norm=False)
    assert isinstance(encoder.final_norm, torch.nn.Identity)


def test_rejects_token_ids():
    encoder = TransformerEncoder(num_layers=1, d_model=16, num_heads=2, d_ff=32)
    with pytest.raises(ValueError):
        encoder(torch.randint(0, 10, (2, 5)))


def test_train_eval_dropout_behavior():
    torch.manual_seed(3)
    encoder = TransformerEncoder(num_layers=2, d_model=32, num_heads=4, d_ff=64, dropout=0.4)
    x = torch.randn(2, 7, 32)

    encoder.train()
    out1 = encoder(x).last_hidden_state
    out2 = encoder(x).last_hidden_state
    assert not torch.allclose(out1, out2)

    encoder.eval()
    out3 = encoder(x).last_hidden_state
    out4 = encoder(x).last_hidden_state
    assert torch.allclose(out3, out4)
