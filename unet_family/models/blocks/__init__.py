"""Reusable neural network building blocks."""

from .conv_block import (
    ConvNormAct,
    DoubleConv,
    center_crop,
    get_activation,
    get_conv,
    get_conv_transpose,
    get_max_pool,
    get_norm,
    pick_groups,
)

__all__ = [
    "ConvNormAct",
    "DoubleConv",
    "center_crop",
    "get_activation",
    "get_conv",
    "get_conv_transpose",
    "get_max_pool",
    "get_norm",
    "pick_groups",
]
