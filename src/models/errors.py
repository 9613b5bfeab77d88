"""
Exceptions raised by the model and cache code.

All of them signal a contract violation by the caller (wrong shapes, bad
configuration, an undersized cache). None of them is retried internally.
"""


class ModelError(Exception):
    """Base class for seqformer model errors."""


class ShapeMismatch(ModelError, ValueError):
    """Query/key/value or cache tensors disagree on batch, heads or head_dim."""


class IndexOutOfRange(ModelError, IndexError):
    """Layer index outside ``[0, num_layers)``."""


class ConfigurationError(ModelError, ValueError):
    """Invalid model or cache configuration."""


class CacheOverflow(ConfigurationError):
    """Attempted write past ``max_length`` in pre-allocated cache storage.

    The cache never grows; the generation loop must size ``max_length`` for the
    whole sequence up front.
    """
