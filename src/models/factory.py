"""Factory helpers to load model configurations and assemble models."""

from __future__ import annotations

from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Type

import torch.nn as nn
from transformers import AutoConfig

from ..utils.config import load_json, load_yaml
from ..utils.logging import get_logger
from .clip_text import ClipTextConfig, ClipTextModel
from .configuration import ModelConfig
from .errors import ConfigurationError
from .mbart import (
    MBartConfig,
    MBartForCausalLM,
    MBartForConditionalGeneration,
    MBartForQuestionAnswering,
    MBartForSequenceClassification,
    MBartModel,
)
from .vit import ViTConfig, ViTForImageClassification, ViTForMaskedImageModeling, ViTModel

logger = get_logger(__name__)

# Hugging Face model_type -> config class; "clip" loads the text tower of a full CLIP config
CONFIG_CLASSES: Dict[str, Type[ModelConfig]] = {
    "mbart": MBartConfig,
    "clip": ClipTextConfig,
    "clip_text_model": ClipTextConfig,
    "vit": ViTConfig,
}

MODEL_CLASSES: Dict[Tuple[str, str], Type[nn.Module]] = {
    ("mbart", "base"): MBartModel,
    ("mbart", "for_conditional_generation"): MBartForConditionalGeneration,
    ("mbart", "for_causal_language_modeling"): MBartForCausalLM,
    ("mbart", "for_sequence_classification"): MBartForSequenceClassification,
    ("mbart", "for_question_answering"): MBartForQuestionAnswering,
    ("clip_text_model", "base"): ClipTextModel,
    ("vit", "base"): ViTModel,
    ("vit", "for_image_classification"): ViTForImageClassification,
    ("vit", "for_masked_image_modeling"): ViTForMaskedImageModeling,
}


def _config_class(model_type: Optional[str]) -> Type[ModelConfig]:
    if model_type is None:
        raise ConfigurationError("configuration is missing 'model_type'")
    try:
        return CONFIG_CLASSES[model_type]
    except KeyError:
        raise ConfigurationError(
            f"unsupported model_type '{model_type}', expected one of "
            f"{', '.join(sorted(CONFIG_CLASSES))}"
        ) from None


def config_from_dict(data: Mapping[str, Any], **options: Any) -> ModelConfig:
    """Build a config from a mapping of field names plus ``model_type``.

    This is the format of the YAML files under ``configs/model``; unknown keys
    are rejected so typos do not silently fall back to defaults.
    """
    values = dict(data)
    cls = _config_class(values.pop("model_type", None))
    values.update(options)
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(f"unknown options for {cls.model_type}: {', '.join(unknown)}")
    if "id_to_label" in values and values["id_to_label"] is not None:
        values["id_to_label"] = {int(k): str(v) for k, v in values["id_to_label"].items()}
    return cls(**values)


def config_from_transformers(data: Mapping[str, Any], **options: Any) -> ModelConfig:
    """Build a config from a Hugging Face ``config.json`` mapping."""
    cls = _config_class(data.get("model_type"))
    return cls.from_transformers(data, **options)


def load_pretrained_config(name_or_path: str | Path, **options: Any) -> ModelConfig:
    """Load a config from the Hugging Face Hub or a local checkpoint directory.

    A path to a ``config.json`` file is read directly; anything else goes
    through ``transformers.AutoConfig``.
    """
    path = Path(name_or_path)
    if path.is_file():
        data: Mapping[str, Any] = load_json(path).data
    else:
        data = AutoConfig.from_pretrained(str(name_or_path)).to_dict()
    config = config_from_transformers(data, **options)
    logger.info("Loaded %s configuration from %s", config.model_type, name_or_path)
    return config


def load_model_config(path: str | Path, **options: Any) -> ModelConfig:
    """Load a model configuration from YAML."""

    data = load_yaml(str(path)).data
    config = config_from_dict(data, **options)
    logger.info("Loaded %s configuration from %s", config.model_type, path)
    return config


def build_model(config: ModelConfig, architecture: Optional[str] = None) -> nn.Module:
    """Construct the model class for ``config``'s family and architecture.

    Args:
        config: a family config (MBartConfig, ClipTextConfig or ViTConfig)
        architecture: overrides ``config.architecture`` when given
    """
    if architecture is not None and architecture != config.architecture:
        config = config.with_options(architecture=architecture)
    key = (config.model_type, config.architecture)
    if key not in MODEL_CLASSES:
        raise ConfigurationError(
            f"no model for {config.model_type} architecture '{config.architecture}'"
        )
    model = MODEL_CLASSES[key](config)
    num_params = sum(p.numel() for p in model.parameters())
    logger.info(
        "Built %s (%s) with %d parameters",
        type(model).__name__,
        config.architecture,
        num_params,
    )
    return model
