"""
Incremental decoding cache.

Layout:
- CacheEntry: key/value storage for one attention sublayer
- BlockCache: self-attention + cross-attention entries for one decoder layer
- DecodeCache: one BlockCache per layer, the shared offset and the padding mask
  of every position written so far

Self-attention storage is a fixed (B, H, max_length, d_k) buffer indexed by the
offset, so decode steps never reallocate. The records themselves are frozen:
every operation returns a new record, while the key/value buffers are shared
between versions and written in place. A caller must therefore only keep using
the cache returned by the latest call.

Passing ``cache=None`` anywhere means "no incremental decoding": keys and values
are used as computed, the offset is 0 and nothing is stored.
"""

from dataclasses import dataclass, replace
from typing import Optional, Tuple

import torch

from ..utils.logging import get_logger
from .errors import CacheOverflow, ConfigurationError, IndexOutOfRange, ShapeMismatch

logger = get_logger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Key/value storage for a single attention sublayer.

    keys/values: (batch, num_heads, capacity, d_k); the first ``length``
    positions are valid. Cross-attention entries may start without storage
    (``keys is None``) when the encoder length is unknown at init time.
    """

    keys: Optional[torch.Tensor]
    values: Optional[torch.Tensor]
    length: int = 0

    @property
    def is_empty(self) -> bool:
        return self.length == 0

    @property
    def capacity(self) -> int:
        return 0 if self.keys is None else self.keys.size(2)

    def clone(self) -> "CacheEntry":
        if self.keys is None or self.values is None:
            return self
        return replace(self, keys=self.keys.clone(), values=self.values.clone())


@dataclass(frozen=True)
class BlockCache:
    self_attention: CacheEntry
    cross_attention: Optional[CacheEntry] = None

    def clone(self) -> "BlockCache":
        cross = self.cross_attention.clone() if self.cross_attention is not None else None
        return BlockCache(self_attention=self.self_attention.clone(), cross_attention=cross)


@dataclass(frozen=True)
class DecodeCache:
    """Per-layer caches, the padding mask and the number of positions written.

    Buffers are shared with every record derived from this one and written in
    place by the next decode call, so only the latest cache may be stepped.
    Use ``clone()`` to branch several continuations from one prefix.
    """

    blocks: Tuple[BlockCache, ...]
    attention_mask: torch.Tensor  # (batch, max_length) bool
    offset: int = 0

    @property
    def num_layers(self) -> int:
        return len(self.blocks)

    @property
    def max_length(self) -> int:
        return self.attention_mask.size(1)

    @property
    def batch_size(self) -> int:
        return self.attention_mask.size(0)

    def clone(self) -> "DecodeCache":
        """Copy every buffer so the clone and this cache can be stepped independently."""
        return DecodeCache(
            blocks=tuple(block.clone() for block in self.blocks),
            attention_mask=self.attention_mask.clone(),
            offset=self.offset,
        )


def _empty_entry(
    batch_size: int,
    num_heads: int,
    length: int,
    head_dim: int,
    device: Optional[torch.device],
    dtype: torch.dtype,
) -> CacheEntry:
    shape = (batch_size, num_heads, length, head_dim)
    return CacheEntry(
        keys=torch.zeros(shape, dtype=dtype, device=device),
        values=torch.zeros(shape, dtype=dtype, device=device),
        length=0,
    )


def init_cache(
    batch_size: int,
    max_length: int,
    num_layers: int,
    hidden_size: int,
    num_heads: int,
    cross_attention_enabled: bool = False,
    encoder_sequence_length: Optional[int] = None,
    *,
    device: Optional[torch.device] = None,
    dtype: torch.dtype = torch.float32,
) -> DecodeCache:
    """
    Allocate an empty cache for one generated sequence (batch).

    Args:
        batch_size: number of sequences decoded together
        max_length: total number of positions that will ever be written
        num_layers: number of decoder layers
        hidden_size: model hidden size, split evenly across heads
        num_heads: attention heads per layer
        cross_attention_enabled: allocate cross-attention entries
        encoder_sequence_length: encoder output length; when None the
            cross-attention entries get their storage on first use

    Returns:
        DecodeCache with offset 0
    """
    if hidden_size % num_heads != 0:
        raise ConfigurationError(
            f"hidden_size ({hidden_size}) must be divisible by num_heads ({num_heads})"
        )
    if batch_size <= 0 or max_length <= 0 or num_layers <= 0:
        raise ConfigurationError(
            "batch_size, max_length and num_layers must be positive, got "
            f"{batch_size}, {max_length}, {num_layers}"
        )
    head_dim = hidden_size // num_heads

    blocks = []
    for _ in range(num_layers):
        self_entry = _empty_entry(batch_size, num_heads, max_length, head_dim, device, dtype)
        cross_entry: Optional[CacheEntry] = None
        if cross_attention_enabled:
            if encoder_sequence_length is not None:
                cross_entry = _empty_entry(
                    batch_size, num_heads, encoder_sequence_length, head_dim, device, dtype
                )
            else:
                cross_entry = CacheEntry(keys=None, values=None, length=0)
        blocks.append(BlockCache(self_attention=self_entry, cross_attention=cross_entry))

    logger.debug(
        "Allocated decode cache: %d layers, batch=%d, max_length=%d, heads=%d, head_dim=%d",
        num_layers,
        batch_size,
        max_length,
        num_heads,
        head_dim,
    )
    return DecodeCache(
        blocks=tuple(blocks),
        attention_mask=torch.zeros(batch_size, max_length, dtype=torch.bool, device=device),
        offset=0,
    )


def get_block(cache: DecodeCache, layer_index: int) -> BlockCache:
    if not 0 <= layer_index < cache.num_layers:
        raise IndexOutOfRange(
            f"layer index {layer_index} out of range for cache with {cache.num_layers} layers"
        )
    return cache.blocks[layer_index]


def put_block(cache: DecodeCache, layer_index: int, block: BlockCache) -> DecodeCache:
    """Return a new cache with ``block`` at ``layer_index``; other layers are shared."""
    if not 0 <= layer_index < cache.num_layers:
        raise IndexOutOfRange(
            f"layer index {layer_index} out of range for cache with {cache.num_layers} layers"
        )
    blocks = cache.blocks[:layer_index] + (block,) + cache.blocks[layer_index + 1 :]
    return replace(cache, blocks=blocks)


def update_offset(cache: DecodeCache, num_new_tokens: int) -> DecodeCache:
    """Advance the shared offset. Called once per full stack pass, never per layer."""
    if num_new_tokens < 0:
        raise ValueError(f"num_new_tokens must be non-negative, got {num_new_tokens}")
    return replace(cache, offset=cache.offset + num_new_tokens)


def _check_capacity(offset: int, new_length: int, capacity: int) -> None:
    if offset + new_length > capacity:
        raise CacheOverflow(
            f"cannot write positions [{offset}, {offset + new_length}) into a cache of "
            f"max_length {capacity}"
        )


def cache_attention_mask(
    cache: Optional[DecodeCache], attention_mask: torch.Tensor
) -> Tuple[torch.Tensor, Optional[DecodeCache]]:
    """
    Record the padding mask of the new positions and return the mask of every
    position seen so far.

    Args:
        cache: decode cache or None
        attention_mask: (B, T_new) padding mask for the newly presented tokens

    Returns:
        (mask, cache): mask is (B, offset + T_new); without a cache the input
        mask is returned unchanged
    """
    if cache is None:
        return attention_mask, None
    if attention_mask.dim() != 2 or attention_mask.size(0) != cache.batch_size:
        raise ShapeMismatch(
            f"attention mask of shape {tuple(attention_mask.shape)} does not match cache "
            f"batch size {cache.batch_size}"
        )
    offset = cache.offset
    new_length = attention_mask.size(1)
    _check_capacity(offset, new_length, cache.max_length)

    stored = cache.attention_mask
    stored[:, offset : offset + new_length] = attention_mask.to(
        dtype=torch.bool, device=stored.device
    )
    return stored[:, : offset + new_length], cache


def _check_against_storage(name: str, new: torch.Tensor, storage: torch.Tensor) -> None:
    if new.dim() != 4:
        raise ShapeMismatch(f"{name} must be (batch, heads, length, d_k), got {tuple(new.shape)}")
    batch, heads, _, head_dim = new.shape
    expected = (storage.size(0), storage.size(1), storage.size(3))
    if (batch, heads, head_dim) != expected:
        raise ShapeMismatch(
            f"{name} with (batch, heads, d_k)={(batch, heads, head_dim)} does not match "
            f"cache storage {expected}"
        )


def merge_key_value(
    entry: Optional[CacheEntry],
    new_keys: Optional[torch.Tensor],
    new_values: Optional[torch.Tensor],
    offset: int,
    is_cross_attention: bool = False,
) -> Tuple[torch.Tensor, torch.Tensor, Optional[CacheEntry]]:
    """
    Merge freshly projected keys/values with the cached ones.

    Self-attention: write the new (B, H, T_new, d_k) tensors at
    [offset, offset + T_new) and return the prefix [0, offset + T_new).

    Cross-attention: the encoder output never changes across decode steps, so
    the first call stores the new tensors and every later call returns the
    stored ones (the new tensors are ignored and may be None).

    Returns:
        (keys, values, updated_entry); updated_entry is None when entry is None
    """
    if entry is None:
        if new_keys is None or new_values is None:
            raise ValueError("keys and values are required when no cache entry is given")
        return new_keys, new_values, None

    if is_cross_attention:
        if not entry.is_empty:
            assert entry.keys is not None and entry.values is not None
            return entry.keys[:, :, : entry.length], entry.values[:, :, : entry.length], entry
        if new_keys is None or new_values is None:
            raise ValueError("cross-attention keys and values are required on first use")
        if new_keys.shape != new_values.shape:
            raise ShapeMismatch(
                f"keys {tuple(new_keys.shape)} and values {tuple(new_values.shape)} differ"
            )
        if entry.keys is None or entry.values is None:
            # Storage not pre-allocated: keep the tensors verbatim
            updated = CacheEntry(keys=new_keys, values=new_values, length=new_keys.size(2))
            return new_keys, new_values, updated
        _check_against_storage("cross-attention keys", new_keys, entry.keys)
        if new_keys.size(2) != entry.capacity:
            raise ShapeMismatch(
                f"encoder length {new_keys.size(2)} does not match cache allocation "
                f"{entry.capacity}"
            )
        entry.keys.copy_(new_keys)
        entry.values.copy_(new_values)
        return entry.keys, entry.values, replace(entry, length=entry.capacity)

    if new_keys is None or new_values is None:
        raise ValueError("self-attention keys and values are required")
    if entry.keys is None or entry.values is None:
        raise ValueError("self-attention cache entry has no storage")
    if new_keys.shape != new_values.shape:
        raise ShapeMismatch(
            f"keys {tuple(new_keys.shape)} and values {tuple(new_values.shape)} differ"
        )
    _check_against_storage("self-attention keys", new_keys, entry.keys)

    new_length = new_keys.size(2)
    end = offset + new_length
    _check_capacity(offset, new_length, entry.capacity)

    entry.keys[:, :, offset:end] = new_keys
    entry.values[:, :, offset:end] = new_values
    return entry.keys[:, :, :end], entry.values[:, :, :end], replace(entry, length=end)
