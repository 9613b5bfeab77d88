"""
Configuration file utilities for seqformer.

Provides YAML and JSON configuration loading with validation.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import yaml


@dataclass
class Config:
    data: Dict[str, Any]


def load_yaml(path: str | Path) -> Config:
    with Path(path).open("r", encoding="utf-8") as handle:
        content = yaml.safe_load(handle)
    if not isinstance(content, dict):
        raise ValueError(f"YAML configuration '{path}' must contain a mapping at the root")
    return Config(data=content)


def load_json(path: str | Path) -> Config:
    """Load a JSON file such as a checkpoint's ``config.json``."""
    with Path(path).open("r", encoding="utf-8") as handle:
        content = json.load(handle)
    if not isinstance(content, dict):
        raise ValueError(f"JSON configuration '{path}' must contain an object at the root")
    return Config(data=content)
