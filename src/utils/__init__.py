"""General utilities for seqformer."""

from .config import Config, load_json, load_yaml
from .logging import configure_logging, get_logger
from .random import set_seed

__all__ = [
    "Config",
    "load_yaml",
    "load_json",
    "configure_logging",
    "get_logger",
    "set_seed",
]
