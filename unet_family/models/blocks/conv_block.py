"""
Dimension-generic convolution blocks shared by the U-Net family.

All blocks work on 2D (B, C, H, W) or 3D (B, C, D, H, W) tensors,
selected with the ``dims`` argument.
"""

from typing import Optional, Sequence, Tuple, Union

import torch
from torch import nn

KernelSize = Union[int, Sequence[int]]

_CONV = {2: nn.Conv2d, 3: nn.Conv3d}
_CONV_TRANSPOSE = {2: nn.ConvTranspose2d, 3: nn.ConvTranspose3d}
_MAX_POOL = {2: nn.MaxPool2d, 3: nn.MaxPool3d}
_DROPOUT = {2: nn.Dropout2d, 3: nn.Dropout3d}


def _check_dims(dims: int) -> None:
    if dims not in (2, 3):
        raise ValueError(f"dims must be 2 or 3, got {dims}")


def get_conv(dims: int) -> type:
    """Return Conv2d or Conv3d."""
    _check_dims(dims)
    return _CONV[dims]


def get_conv_transpose(dims: int) -> type:
    """Return ConvTranspose2d or ConvTranspose3d."""
    _check_dims(dims)
    return _CONV_TRANSPOSE[dims]


def get_max_pool(dims: int) -> type:
    """Return MaxPool2d or MaxPool3d."""
    _check_dims(dims)
    return _MAX_POOL[dims]


def pick_groups(channels: int, target_groups: int = 8) -> int:
    """
    Find largest group divisor for GroupNorm.

    Args:
        channels: Number of channels.
        target_groups: Desired number of groups.

    Returns:
        Valid number of groups that divides channels.
    """
    for g in range(min(target_groups, channels), 0, -1):
        if channels % g == 0:
            return g
    return 1


def get_norm(name: str, dims: int, channels: int) -> nn.Module:
    """
    Build a normalization layer.

    Args:
        name: One of "batch", "instance", "group" or "none".
        dims: Spatial dimensionality (2 or 3).
        channels: Number of channels to normalize.

    Returns:
        Normalization module (nn.Identity for "none").
    """
    _check_dims(dims)
    name = name.lower()

    if name == "batch":
        return nn.BatchNorm2d(channels) if dims == 2 else nn.BatchNorm3d(channels)
    if name == "instance":
        if dims == 2:
            return nn.InstanceNorm2d(channels, eps=1e-5, affine=True)
        return nn.InstanceNorm3d(channels, eps=1e-5, affine=True)
    if name == "group":
        return nn.GroupNorm(num_groups=pick_groups(channels), num_channels=channels)
    if name == "none":
        return nn.Identity()

    raise ValueError(f"Unknown norm '{name}'. Use batch, instance, group or none")


def get_activation(name: str) -> nn.Module:
    """Build an activation layer ("relu" or "leaky_relu")."""
    name = name.lower()
    if name == "relu":
        return nn.ReLU(inplace=True)
    if name == "leaky_relu":
        return nn.LeakyReLU(negative_slope=0.01, inplace=True)
    raise ValueError(f"Unknown activation '{name}'. Use relu or leaky_relu")


class ConvNormAct(nn.Module):
    """
    Convolution followed by normalization and activation.

    Architecture:
        x -> Conv -> Norm -> Act [-> Dropout]
    """

    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        dims: int = 2,
        kernel_size: KernelSize = 3,
        stride: KernelSize = 1,
        padding: Optional[KernelSize] = None,
        norm: str = "batch",
        activation: str = "relu",
        dropout: float = 0.0,
        bias: Optional[bool] = None,
    ) -> None:
        """
        Initialize block.

        Args:
            in_channels: Number of input channels.
            out_channels: Number of output channels.
            dims: Spatial dimensionality (2 or 3).
            kernel_size: Conv kernel size, scalar or per-axis.
            stride: Conv stride, scalar or per-axis.
            padding: Conv padding. None means "same" padding (kernel // 2).
            norm: Normalization name, see get_norm.
            activation: Activation name, see get_activation.
            dropout: Channel dropout probability (0 disables).
            bias: Conv bias. Defaults to True only when norm is "none".
        """
        super().__init__()

        if padding is None:
            if isinstance(kernel_size, int):
                padding = kernel_size // 2
            else:
                padding = tuple(k // 2 for k in kernel_size)

        if bias is None:
            bias = norm == "none"

        self.conv = get_conv(dims)(
            in_channels,
            out_channels,
            kernel_size=kernel_size,
            stride=stride,
            padding=padding,
            bias=bias,
        )
        self.norm = get_norm(norm, dims, out_channels)
        self.act = get_activation(activation)
        self.dropout = _DROPOUT[dims](dropout) if dropout > 0 else None

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = self.act(self.norm(self.conv(x)))
        if self.dropout is not None:
            x = self.dropout(x)
        return x


class DoubleConv(nn.Module):
    """
    Two stacked ConvNormAct blocks, the basic U-Net stage.

    The first conv may stride for downsampling (nnU-Net style);
    the second always has stride 1.
    """

    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        dims: int = 2,
        kernel_size: KernelSize = 3,
        stride: KernelSize = 1,
        padding: Optional[KernelSize] = None,
        norm: str = "batch",
        activation: str = "relu",
        dropout: float = 0.0,
        mid_channels: Optional[int] = None,
    ) -> None:
        super().__init__()

        mid_channels = mid_channels or out_channels
        common = dict(dims=dims, kernel_size=kernel_size, norm=norm, activation=activation)

        self.block = nn.Sequential(
            ConvNormAct(in_channels, mid_channels, stride=stride, padding=padding, **common),
            ConvNormAct(
                mid_channels, out_channels, padding=padding, dropout=dropout, **common
            ),
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.block(x)


def center_crop(
    tensor: torch.Tensor,
    target_spatial_shape: Tuple[int, ...],
) -> torch.Tensor:
    """
    Crop the spatial dims of a (B, C, ...) tensor symmetrically.

    Used by the valid-convolution U-Net to align encoder skips with
    the smaller decoder feature maps.

    Args:
        tensor: Input tensor.
        target_spatial_shape: Desired spatial shape.

    Returns:
        Cropped tensor.

    Raises:
        ValueError: If the target is larger than the tensor along any axis.
    """
    spatial = tensor.shape[2:]
    if len(spatial) != len(target_spatial_shape):
        raise ValueError(
            f"Rank mismatch: tensor spatial {tuple(spatial)} vs target {tuple(target_spatial_shape)}"
        )

    slices = [slice(None), slice(None)]
    for size, target in zip(spatial, target_spatial_shape):
        if target > size:
            raise ValueError(f"Cannot crop size {size} to larger size {target}")
        start = (size - target) // 2
        slices.append(slice(start, start + target))

    return tensor[tuple(slices)]
