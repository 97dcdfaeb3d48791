"""Neural network model architectures."""

from .factory import ARCHITECTURES, count_parameters, create_model
from .plain_unet import PlainConvUNet
from .unet import UNet
from .unet_plusplus import UNetPlusPlus

__all__ = [
    "ARCHITECTURES",
    "PlainConvUNet",
    "UNet",
    "UNetPlusPlus",
    "count_parameters",
    "create_model",
]
