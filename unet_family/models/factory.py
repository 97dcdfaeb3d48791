"""
Model construction from configuration.
"""

import logging

from torch import nn

from ..configs.config import ModelConfig
from ..planning.plans import Plans
from .plain_unet import PlainConvUNet
from .unet import UNet
from .unet_plusplus import UNetPlusPlus

logger = logging.getLogger(__name__)

ARCHITECTURES = ("unet", "unet_plusplus", "plain_unet")


def count_parameters(model: nn.Module) -> int:
    """Return total number of trainable parameters."""
    return sum(p.numel() for p in model.parameters() if p.requires_grad)


def create_model(config: ModelConfig) -> nn.Module:
    """
    Build the network described by a ModelConfig.

    Args:
        config: Model configuration.

    Returns:
        Uninitialized (randomly weighted) model.

    Raises:
        ValueError: For unknown architectures or a plain_unet without plans.
    """
    architecture = config.architecture.lower()

    if architecture == "unet":
        model = UNet(
            in_channels=config.in_channels,
            out_channels=config.out_channels,
            dims=config.dims,
            base_channels=config.base_channels,
            depth=config.depth,
            norm=config.norm,
            padding=config.padding,
            skip_mode=config.skip_mode,
            upsample=config.upsample,
        )
    elif architecture == "unet_plusplus":
        model = UNetPlusPlus(
            in_channels=config.in_channels,
            out_channels=config.out_channels,
            dims=config.dims,
            base_channels=config.base_channels,
            depth=config.depth,
            norm=config.norm,
            deep_supervision=config.deep_supervision,
        )
    elif architecture == "plain_unet":
        if config.plans_path is None:
            raise ValueError("plain_unet requires model.plans_path")
        plans = Plans.load(config.plans_path)
        configuration = plans.get_configuration(config.plans_configuration)
        model = PlainConvUNet.from_plans(
            configuration,
            in_channels=len(plans.modalities),
            num_classes=plans.num_classes,
            deep_supervision=config.deep_supervision,
        )
    else:
        raise ValueError(
            f"Unknown architecture '{config.architecture}'. Choose from {ARCHITECTURES}"
        )

    logger.info(f"Created {type(model).__name__} with {count_parameters(model):,} parameters")
    return model
