"""
Tests for attention mechanisms.

Run with: pytest tests/test_models/test_attention.py -v
"""

import pytest
import torch

from src.models.attention import MultiHeadAttention, ScaledDotProductAttention
from src.models.cache import CacheEntry
from src.models.errors import ConfigurationError, ShapeMismatch
from src.models.masks import attention_bias


class TestScaledDotProductAttention:
    """Test suite for ScaledDotProductAttention.

    Note: ScaledDotProductAttention expects 4D inputs: (batch, num_heads, seq, d_k)
    """

    def test_output_shape(self):
        """Test that output shapes are correct."""
        attention = ScaledDotProductAttention()
        batch_size, num_heads, seq_len, d_k = 2, 8, 10, 64

        Q = torch.randn(batch_size, num_heads, seq_len, d_k)
        K = torch.randn(batch_size, num_heads, seq_len, d_k)
        V = torch.randn(batch_size, num_heads, seq_len, d_k)

        output, weights = attention(Q, K, V, return_attn_weights=True)

        assert output.shape == (batch_size, num_heads, seq_len, d_k)
        assert weights.shape == (batch_size, num_heads, seq_len, seq_len)

    def test_attention_weights_sum_to_one(self):
        """Test that attention weights are a valid probability distribution."""
        attention = ScaledDotProductAttention()
        batch_size, num_heads, seq_len, d_k = 2, 4, 10, 64

        Q = K = V = torch.randn(batch_size, num_heads, seq_len, d_k)
        _, weights = attention(Q, K, V, return_attn_weights=True)

        row_sums = weights.sum(dim=-1)
        assert torch.allclose(row_sums, torch.ones(batch_size, num_heads, seq_len), atol=1e-6)

    def test_masking(self):
        """Masked key positions get zero attention weight."""
        attention = ScaledDotProductAttention()
        batch_size, num_heads, seq_len, d_k = 1, 4, 5, 64

        Q = K = V = torch.randn(batch_size, num_heads, seq_len, d_k)

        mask = torch.zeros(batch_size, 1, seq_len, seq_len, dtype=torch.bool)
        mask[:, :, :, :3] = True  # Attend to first 3 key positions

        _, weights = attention(Q, K, V, bias=attention_bias(mask), return_attn_weights=True)

        assert torch.allclose(
            weights[:, :, :, 3:], torch.zeros(batch_size, num_heads, seq_len, 2), atol=1e-6
        )

    def test_fused_path_matches_manual_path(self):
        attention = ScaledDotProductAttention().eval()
        Q = torch.randn(2, 4, 6, 16)
        K = torch.randn(2, 4, 9, 16)
        V = torch.randn(2, 4, 9, 16)
        mask = torch.ones(2, 1, 1, 9, dtype=torch.bool)
        mask[1, :, :, -3:] = False
        bias = attention_bias(mask)

        fused, no_weights = attention(Q, K, V, bias=bias)
        manual, weights = attention(Q, K, V, bias=bias, return_attn_weights=True)

        assert no_weights is None
        assert weights is not None
        assert torch.allclose(fused, manual, atol=1e-5)

    def test_head_mask_zeroes_head_output(self):
        attention = ScaledDotProductAttention()
        Q = K = V = torch.randn(1, 3, 4, 8)
        head_mask = torch.tensor([1.0, 0.0, 1.0])

        output, weights = attention(Q, K, V, head_mask=head_mask, return_attn_weights=True)

        assert torch.allclose(output[:, 1], torch.zeros(1, 4, 8))
        # Returned weights are the raw post-softmax ones
        assert torch.allclose(weights[:, 1].sum(dim=-1), torch.ones(1, 4), atol=1e-6)

    def test_shape_mismatch_raises(self):
        attention = ScaledDotProductAttention()
        Q = torch.randn(2, 4, 5, 8)
        K = torch.randn(2, 4, 5, 16)
        V = torch.randn(2, 4, 5, 16)
        with pytest.raises(ShapeMismatch):
            attention(Q, K, V)

        with pytest.raises(ShapeMismatch):
            attention(Q, torch.randn(3, 4, 5, 8), torch.randn(3, 4, 5, 8))

        with pytest.raises(ShapeMismatch):
            attention(torch.randn(2, 5, 8), K, V)


class TestMultiHeadAttention:
    """Test suite for MultiHeadAttention."""

    def test_output_shape(self):
        """Test that output shapes are correct."""
        d_model, num_heads = 512, 8
        batch_size, seq_len = 2, 10

        mha = MultiHeadAttention(d_model, num_heads)

        x = torch.randn(batch_size, seq_len, d_model)
        output, attn_weights, entry = mha(x, return_attn_weights=True)

        assert output.shape == (batch_size, seq_len, d_model)
        assert attn_weights.shape == (batch_size, num_heads, seq_len, seq_len)
        assert entry is None

    def test_cross_attention_shapes(self):
        """Keys and values come from key_value_states in cross-attention."""
        d_model, num_heads = 512, 8
        batch_size = 2
        seq_len_q, seq_len_kv = 10, 20

        mha = MultiHeadAttention(d_model, num_heads)

        x = torch.randn(batch_size, seq_len_q, d_model)
        memory = torch.randn(batch_size, seq_len_kv, d_model)

        output, attn_weights, _ = mha(x, key_value_states=memory, return_attn_weights=True)

        assert output.shape == (batch_size, seq_len_q, d_model)
        assert attn_weights.shape == (batch_size, num_heads, seq_len_q, seq_len_kv)

    def test_masking(self):
        """Test that masking works correctly."""
        d_model, num_heads = 512, 8
        batch_size, seq_len = 2, 5

        mha = MultiHeadAttention(d_model, num_heads)
        x = torch.randn(batch_size, seq_len, d_model)

        # Mask out last 2 positions
        mask = torch.ones(batch_size, seq_len, dtype=torch.bool)
        mask[:, -2:] = False

        _, attn_weights, _ = mha(x, attention_mask=mask, return_attn_weights=True)

        assert torch.allclose(
            attn_weights[:, :, :, -2:], torch.zeros(batch_size, num_heads, seq_len, 2), atol=1e-6
        )

    def test_causal_attention_is_lower_triangular(self):
        mha = MultiHeadAttention(32, 4, causal=True)
        x = torch.randn(1, 6, 32)

        _, attn_weights, _ = mha(x, return_attn_weights=True)

        upper = torch.triu(torch.ones(6, 6, dtype=torch.bool), diagonal=1)
        assert torch.all(attn_weights[0, :, upper] == 0)

    def test_causal_changing_future_does_not_change_past(self):
        mha = MultiHeadAttention(32, 4, causal=True).eval()
        x = torch.randn(1, 6, 32)
        y = x.clone()
        y[:, 4:] = torch.randn(1, 2, 32)

        out_x, _, _ = mha(x)
        out_y, _, _ = mha(y)

        assert torch.allclose(out_x[:, :4], out_y[:, :4], atol=1e-6)

    def test_mask_length_must_match_keys(self):
        mha = MultiHeadAttention(32, 4)
        x = torch.randn(2, 5, 32)
        with pytest.raises(ShapeMismatch):
            mha(x, attention_mask=torch.ones(2, 4, dtype=torch.bool))

    def test_indivisible_heads_rejected(self):
        with pytest.raises(ConfigurationError):
            MultiHeadAttention(30, 4)

    def test_cached_self_attention_writes_entry(self):
        mha = MultiHeadAttention(32, 4, causal=True).eval()
        entry = CacheEntry(keys=torch.zeros(2, 4, 8, 8), values=torch.zeros(2, 4, 8, 8))
        x = torch.randn(2, 3, 32)

        _, _, entry = mha(x, attention_mask=torch.ones(2, 3), cache_entry=entry, offset=0)

        assert entry.length == 3
        assert not torch.all(entry.keys[:, :, :3] == 0)
        assert torch.all(entry.keys[:, :, 3:] == 0)

    def test_cross_attention_cache_reused(self):
        mha = MultiHeadAttention(32, 4).eval()
        memory = torch.randn(2, 5, 32)
        entry = CacheEntry(keys=None, values=None)
        x = torch.randn(2, 1, 32)

        out1, _, entry = mha(x, key_value_states=memory, cache_entry=entry)
        stored_keys = entry.keys.clone()
        # A different encoder state is ignored once the projections are cached
        out2, _, entry = mha(x, key_value_states=torch.randn(2, 5, 32), cache_entry=entry)

        assert torch.equal(entry.keys, stored_keys)
        assert torch.allclose(out1, out2)

    def test_parameters_exist(self):
        """Test that learnable parameters are created."""
        mha = MultiHeadAttention(512, 8)

        param_names = [name for name, _ in mha.named_parameters()]

        assert any("W_Q" in name for name in param_names)
        assert any("W_K" in name for name in param_names)
        assert any("W_V" in name for name in param_names)
        assert any("W_O" in name for name in param_names)

    def test_qkv_bias_optional(self):
        mha = MultiHeadAttention(64, 4, use_qkv_bias=False)
        assert mha.W_Q.bias is None
        assert mha.W_O.bias is not None

    def test_dropout_changes_output(self):
        """Test that dropout is actually applied during training."""
        torch.manual_seed(42)
        mha = MultiHeadAttention(512, 8, dropout=0.5)
        mha.train()

        x = torch.randn(2, 10, 512)

        output1, _, _ = mha(x)
        output2, _, _ = mha(x)

        assert not torch.allclose(output1, output2)

        # In eval mode, should be deterministic
        mha.eval()
        output3, _, _ = mha(x)
        output4, _, _ = mha(x)

        assert torch.allclose(output3, output4)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
