"""
Vision Transformer (ViT) models.

Architectures:
- base (ViTModel): patch embeddings + Pre-LN encoder + LayerNorm + tanh pooler
- for_image_classification: linear classifier on the [CLS] hidden state
- for_masked_image_modeling: reconstructs pixels from the patch hidden states
  with a 1x1 convolution followed by a pixel shuffle

References:
    An Image is Worth 16x16 Words: Transformers for Image Recognition at Scale
    https://arxiv.org/abs/2010.11929
"""

from dataclasses import dataclass
from typing import Optional

import torch
import torch.nn as nn

from .configuration import ModelConfig
from .encoder import TransformerEncoder
from .errors import ConfigurationError, ShapeMismatch
from .heads import Pooler
from .outputs import EncoderOutput


@dataclass
class ViTConfig(ModelConfig):
    """ViT hyperparameters. Defaults follow google/vit-base-patch16-224."""

    model_type = "vit"
    architectures = ("base", "for_image_classification", "for_masked_image_modeling")
    transformers_keys = {
        "image_size": "image_size",
        "num_channels": "num_channels",
        "patch_size": "patch_size",
        "hidden_size": "hidden_size",
        "num_blocks": "num_hidden_layers",
        "num_attention_heads": "num_attention_heads",
        "intermediate_size": "intermediate_size",
        "activation": "hidden_act",
        "use_qkv_bias": "qkv_bias",
        "dropout_rate": "hidden_dropout_prob",
        "attention_dropout_rate": "attention_probs_dropout_prob",
        "layer_norm_epsilon": "layer_norm_eps",
        "initializer_scale": "initializer_range",
    }

    image_size: int = 224
    num_channels: int = 3
    patch_size: int = 16
    hidden_size: int = 768
    num_blocks: int = 12
    num_attention_heads: int = 12
    intermediate_size: int = 3072
    use_qkv_bias: bool = True
    activation: str = "gelu"
    dropout_rate: float = 0.0
    attention_dropout_rate: float = 0.0
    layer_norm_epsilon: float = 1e-12

    def __post_init__(self):
        super().__post_init__()
        self._check_positive(
            "image_size",
            "num_channels",
            "patch_size",
            "hidden_size",
            "num_blocks",
            "num_attention_heads",
            "intermediate_size",
        )
        self._check_rate("dropout_rate", "attention_dropout_rate")
        self._check_heads("hidden_size", "num_attention_heads")
        if self.image_size % self.patch_size != 0:
            raise ConfigurationError(
                f"image_size ({self.image_size}) must be divisible by "
                f"patch_size ({self.patch_size})"
            )

    @property
    def num_patches(self) -> int:
        return (self.image_size // self.patch_size) ** 2


class ViTEmbeddings(nn.Module):
    """
    Patch embeddings with an optional patch mask, a prepended [CLS] token and
    learned position embeddings.
    """

    def __init__(self, config: ViTConfig):
        super().__init__()
        self.config = config
        self.projection = nn.Conv2d(
            config.num_channels,
            config.hidden_size,
            kernel_size=config.patch_size,
            stride=config.patch_size,
        )
        self.cls_token = nn.Parameter(torch.zeros(1, 1, config.hidden_size))
        self.mask_token = nn.Parameter(torch.zeros(1, 1, config.hidden_size))
        self.position_embeddings = nn.Parameter(
            torch.zeros(1, config.num_patches + 1, config.hidden_size)
        )
        self.dropout = nn.Dropout(config.dropout_rate)

    def forward(
        self, pixel_values: torch.Tensor, patch_mask: Optional[torch.Tensor] = None
    ) -> torch.Tensor:
        """
        Args:
            pixel_values: (B, C, H, W) with H == W == image_size
            patch_mask: optional (B, num_patches), True replaces the patch with the mask token

        Returns:
            (B, num_patches + 1, d_model)
        """
        expected = (self.config.num_channels, self.config.image_size, self.config.image_size)
        if pixel_values.dim() != 4 or tuple(pixel_values.shape[1:]) != expected:
            raise ShapeMismatch(
                f"pixel_values must be (batch, {expected[0]}, {expected[1]}, {expected[2]}), "
                f"got {tuple(pixel_values.shape)}"
            )
        x = self.projection(pixel_values).flatten(2).transpose(1, 2)  # (B, L, d_model)
        B, L, _ = x.shape

        if patch_mask is not None:
            if tuple(patch_mask.shape) != (B, L):
                raise ShapeMismatch(f"patch_mask must be ({B}, {L}), got {tuple(patch_mask.shape)}")
            mask = patch_mask.unsqueeze(-1).to(dtype=x.dtype)
            x = x * (1.0 - mask) + self.mask_token.expand(B, L, -1) * mask

        x = torch.cat([self.cls_token.expand(B, -1, -1), x], dim=1)
        x = x + self.position_embeddings
        return self.dropout(x)


class ViTModel(nn.Module):
    """Plain ViT. ``pooled_state`` is None when built without the pooler."""

    is_encoder_decoder = False

    def __init__(self, config: ViTConfig, add_pooling_layer: bool = True):
        super().__init__()
        self.config = config
        self.embeddings = ViTEmbeddings(config)
        self.encoder = TransformerEncoder(
            num_layers=config.num_blocks,
            d_model=config.hidden_size,
            num_heads=config.num_attention_heads,
            d_ff=config.intermediate_size,
            activation=config.activation,
            dropout=config.dropout_rate,
            attention_dropout=config.attention_dropout_rate,
            layer_norm_eps=config.layer_norm_epsilon,
            norm_placement="first",
            use_qkv_bias=config.use_qkv_bias,
            final_norm=False,
        )
        self.layernorm = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_epsilon)
        self.pooler: Optional[Pooler] = Pooler(config.hidden_size) if add_pooling_layer else None
        self.apply(config.init_weights)

    def forward(
        self, pixel_values: torch.Tensor, patch_mask: Optional[torch.Tensor] = None
    ) -> EncoderOutput:
        x = self.embeddings(pixel_values, patch_mask=patch_mask)
        outputs = self.encoder(
            x,
            output_hidden_states=self.config.output_hidden_states,
            output_attentions=self.config.output_attentions,
        )
        hidden_state = self.layernorm(outputs.last_hidden_state)
        pooled_state = self.pooler(hidden_state) if self.pooler is not None else None
        return EncoderOutput(
            last_hidden_state=hidden_state,
            hidden_states=outputs.hidden_states,
            attentions=outputs.attentions,
            pooled_state=pooled_state,
        )


class ViTForImageClassification(nn.Module):
    """Linear classifier on the [CLS] token of the final hidden state."""

    is_encoder_decoder = False

    def __init__(self, config: ViTConfig):
        super().__init__()
        self.config = config
        self.vit = ViTModel(config, add_pooling_layer=False)
        self.classifier = nn.Linear(config.hidden_size, config.num_labels)
        self.classifier.apply(config.init_weights)

    def forward(
        self, pixel_values: torch.Tensor, patch_mask: Optional[torch.Tensor] = None
    ) -> EncoderOutput:
        outputs = self.vit(pixel_values, patch_mask=patch_mask)
        outputs.logits = self.classifier(outputs.last_hidden_state[:, 0])
        return outputs


class ViTForMaskedImageModeling(nn.Module):
    """
    Predicts pixel values from the patch hidden states.

    The [CLS] position is dropped, the patches are laid back out on their grid,
    projected to patch_size**2 * num_channels channels and pixel-shuffled up to
    the input resolution.
    """

    is_encoder_decoder = False

    def __init__(self, config: ViTConfig):
        super().__init__()
        self.config = config
        self.vit = ViTModel(config, add_pooling_layer=False)
        self.decoder = nn.Sequential(
            nn.Conv2d(
                config.hidden_size,
                config.patch_size**2 * config.num_channels,
                kernel_size=1,
            ),
            nn.PixelShuffle(config.patch_size),
        )
        self.decoder.apply(config.init_weights)

    def forward(
        self, pixel_values: torch.Tensor, patch_mask: Optional[torch.Tensor] = None
    ) -> EncoderOutput:
        """
        Returns:
            EncoderOutput whose logits are reconstructed pixels (B, C, H, W)
        """
        outputs = self.vit(pixel_values, patch_mask=patch_mask)
        x = outputs.last_hidden_state[:, 1:]  # drop [CLS]
        B, L, C = x.shape
        side = int(L**0.5)
        x = x.transpose(1, 2).reshape(B, C, side, side)
        outputs.logits = self.decoder(x)
        return outputs
