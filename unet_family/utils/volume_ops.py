"""
Array operations for 2D and 3D medical imaging data.

Includes bounding box extraction, padding and padding removal.
All functions work on any number of spatial dimensions.
"""

from typing import Sequence, Tuple, Union

import numpy as np


def get_bbox_slices(
    volume: np.ndarray,
    padding: int = 0,
    return_coords: bool = False,
) -> Union[Tuple[slice, ...], Tuple[Tuple[slice, ...], np.ndarray, np.ndarray]]:
    """
    Calculate bounding box slices for the non-zero region.

    Args:
        volume: Array to find bounding box of.
        padding: Padding to add around bounding box.
        return_coords: If True, also return min/max coordinates.

    Returns:
        Tuple of slice objects for each dimension.
        If return_coords=True, also returns (min_coords, max_coords).

    Raises:
        ValueError: If volume is empty (all zeros).
    """
    nonzero_coords = np.argwhere(volume > 0)

    if nonzero_coords.size == 0:
        raise ValueError("Volume is empty (all zeros)")

    min_coords = nonzero_coords.min(axis=0)
    max_coords = nonzero_coords.max(axis=0)

    slices = []
    for axis in range(volume.ndim):
        start = max(0, min_coords[axis] - padding)
        stop = min(volume.shape[axis], max_coords[axis] + 1 + padding)
        slices.append(slice(int(start), int(stop)))

    slices = tuple(slices)

    if return_coords:
        return slices, min_coords, max_coords
    return slices


def pad_to_shape(
    volume: np.ndarray,
    target_shape: Sequence[int],
    mode: str = "constant",
    constant_value: float = 0,
) -> np.ndarray:
    """
    Pad the trailing axes of an array to target shape, centered.

    ``target_shape`` may be shorter than ``volume.ndim``; leading axes
    (e.g. channels) are then left untouched.

    Args:
        volume: Array to pad.
        target_shape: Desired shape of the trailing axes.
        mode: Padding mode ('constant', 'edge', 'reflect', etc.).
        constant_value: Value for constant padding.

    Returns:
        Padded array.

    Raises:
        ValueError: If volume is larger than target in any dimension.
    """
    n_lead = volume.ndim - len(target_shape)
    if n_lead < 0:
        raise ValueError(
            f"Target shape {tuple(target_shape)} has more dims than volume {volume.shape}"
        )

    pad_widths = [(0, 0)] * n_lead
    for curr, target in zip(volume.shape[n_lead:], target_shape):
        if curr > target:
            raise ValueError(
                f"Volume dimension {curr} exceeds target {target}. "
                "Use cropping instead."
            )
        total_pad = target - curr
        pad_before = total_pad // 2
        pad_widths.append((pad_before, total_pad - pad_before))

    if mode == "constant":
        return np.pad(volume, pad_widths, mode=mode, constant_values=constant_value)
    return np.pad(volume, pad_widths, mode=mode)


def pad_to_minimum(
    volume: np.ndarray,
    min_shape: Sequence[int],
    mode: str = "constant",
    constant_value: float = 0,
) -> np.ndarray:
    """
    Pad trailing axes to a minimum shape if needed.

    Returns the input unchanged when it is already large enough.
    """
    n_lead = volume.ndim - len(min_shape)
    current = volume.shape[n_lead:]
    target_shape = tuple(max(c, m) for c, m in zip(current, min_shape))

    if target_shape == tuple(current):
        return volume

    return pad_to_shape(volume, target_shape, mode=mode, constant_value=constant_value)


def pad_to_divisible(
    volume: np.ndarray,
    divisor: Union[int, Sequence[int]] = 8,
    spatial_dims: int = None,
    mode: str = "constant",
    constant_value: float = 0,
) -> Tuple[np.ndarray, Tuple[int, ...]]:
    """
    Pad trailing axes so each is divisible by divisor.

    Useful for U-Net architectures that require specific divisibility.

    Args:
        volume: Array to pad.
        divisor: Scalar or per-axis divisor.
        spatial_dims: Number of trailing axes to pad (default: all).
        mode: Padding mode.
        constant_value: Value for constant padding.

    Returns:
        Tuple of (padded_volume, original spatial shape).
    """
    spatial_dims = spatial_dims or volume.ndim
    original_shape = tuple(volume.shape[-spatial_dims:])
    if isinstance(divisor, int):
        divisor = [divisor] * spatial_dims

    target_shape = tuple(
        ((dim + d - 1) // d) * d for dim, d in zip(original_shape, divisor)
    )

    if target_shape == original_shape:
        return volume, original_shape

    padded = pad_to_shape(volume, target_shape, mode=mode, constant_value=constant_value)
    return padded, original_shape


def remove_padding(
    volume: np.ndarray,
    original_shape: Sequence[int],
) -> np.ndarray:
    """
    Remove centered padding from the trailing axes.

    Args:
        volume: Padded array.
        original_shape: Spatial shape before padding.

    Returns:
        Array cropped to original shape.
    """
    n_lead = volume.ndim - len(original_shape)
    slices = [slice(None)] * n_lead

    for curr, orig in zip(volume.shape[n_lead:], original_shape):
        start = (curr - orig) // 2
        slices.append(slice(start, start + orig))

    return volume[tuple(slices)]
