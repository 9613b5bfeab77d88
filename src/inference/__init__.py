"""Inference tools for seqformer."""

from .generation import GenerationConfig, greedy_generate, pad_batch, padding_side_for

__all__ = [
    "GenerationConfig",
    "greedy_generate",
    "pad_batch",
    "padding_side_for",
]
