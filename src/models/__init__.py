"""
seqformer transformer models.

This package provides:
- TransformerEncoder/TransformerDecoder stacks over hidden states
- MultiHeadAttention with causal masking and key/value caching
- DecodeCache: pre-allocated incremental decoding cache
- Model families: MBART, CLIP text, ViT
- Factory helpers to load configs and build models
"""

from .attention import MultiHeadAttention, ScaledDotProductAttention
from .cache import (
    BlockCache,
    CacheEntry,
    DecodeCache,
    cache_attention_mask,
    get_block,
    init_cache,
    merge_key_value,
    put_block,
    update_offset,
)
from .clip_text import ClipTextConfig, ClipTextModel
from .configuration import ModelConfig
from .decoder import TransformerDecoder, TransformerDecoderLayer
from .embeddings import LearnedPositionalEmbedding, default_position_ids
from .encoder import TransformerEncoder, TransformerEncoderLayer
from .errors import CacheOverflow, ConfigurationError, IndexOutOfRange, ModelError, ShapeMismatch
from .factory import (
    build_model,
    config_from_dict,
    config_from_transformers,
    load_model_config,
    load_pretrained_config,
)
from .feedforward import FeedForward
from .heads import ClassificationHead, LMHead, Pooler, QuestionAnsweringHead
from .masks import apply_causal_mask, attention_bias, create_causal_mask, expand_attention_mask
from .mbart import (
    MBartConfig,
    MBartForCausalLM,
    MBartForConditionalGeneration,
    MBartForQuestionAnswering,
    MBartForSequenceClassification,
    MBartModel,
    shift_tokens_right,
)
from .outputs import CausalLMOutput, DecoderOutput, EncoderOutput, Seq2SeqOutput
from .vit import ViTConfig, ViTForImageClassification, ViTForMaskedImageModeling, ViTModel

__all__ = [
    "MultiHeadAttention",
    "ScaledDotProductAttention",
    "BlockCache",
    "CacheEntry",
    "DecodeCache",
    "cache_attention_mask",
    "get_block",
    "init_cache",
    "merge_key_value",
    "put_block",
    "update_offset",
    "ClipTextConfig",
    "ClipTextModel",
    "ModelConfig",
    "TransformerDecoder",
    "TransformerDecoderLayer",
    "LearnedPositionalEmbedding",
    "default_position_ids",
    "TransformerEncoder",
    "TransformerEncoderLayer",
    "CacheOverflow",
    "ConfigurationError",
    "IndexOutOfRange",
    "ModelError",
    "ShapeMismatch",
    "build_model",
    "config_from_dict",
    "config_from_transformers",
    "load_model_config",
    "load_pretrained_config",
    "FeedForward",
    "ClassificationHead",
    "LMHead",
    "Pooler",
    "QuestionAnsweringHead",
    "apply_causal_mask",
    "attention_bias",
    "create_causal_mask",
    "expand_attention_mask",
    "MBartConfig",
    "MBartForCausalLM",
    "MBartForConditionalGeneration",
    "MBartForQuestionAnswering",
    "MBartForSequenceClassification",
    "MBartModel",
    "shift_tokens_right",
    "CausalLMOutput",
    "DecoderOutput",
    "EncoderOutput",
    "Seq2SeqOutput",
    "ViTConfig",
    "ViTForImageClassification",
    "ViTForMaskedImageModeling",
    "ViTModel",
]
