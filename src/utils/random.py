"""
Randomness utilities for seqformer.

Provides seed management for reproducibility.
"""

import random

import numpy as np
import torch


def set_seed(seed: int) -> None:
    """Set seeds for reproducibility across all RNGs."""
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)
