"""
Spacing normalization by resampling.

Images are resampled with third order splines, segmentations one label at
a time with linear interpolation followed by an argmax. Strongly
anisotropic 3D data (e.g. thick-slice MRI) is resampled in-plane first and
then with nearest neighbour along the out-of-plane axis, which avoids
interpolation artifacts between distant slices.
"""

import logging
from typing import Optional, Sequence

import numpy as np
from skimage.transform import resize

logger = logging.getLogger(__name__)


def compute_new_shape(
    shape: Sequence[int],
    spacing: Sequence[float],
    target_spacing: Sequence[float],
) -> np.ndarray:
    """Shape an image takes after resampling from spacing to target_spacing."""
    shape = np.asarray(shape, dtype=float)
    ratio = np.asarray(spacing, dtype=float) / np.asarray(target_spacing, dtype=float)
    return np.maximum(np.round(shape * ratio), 1).astype(int)


def is_anisotropic(spacing: Sequence[float], threshold: float = 3.0) -> bool:
    """True if the coarsest axis is more than ``threshold`` times the finest."""
    spacing = np.asarray(spacing, dtype=float)
    return bool(spacing.max() / spacing.min() > threshold)


def get_lowres_axis(spacing: Sequence[float]) -> Optional[int]:
    """Index of the single coarsest axis, or None if it is not unique."""
    spacing = np.asarray(spacing, dtype=float)
    axes = np.flatnonzero(spacing == spacing.max())
    return int(axes[0]) if len(axes) == 1 else None


def resize_segmentation(
    seg: np.ndarray,
    new_shape: Sequence[int],
    order: int = 1,
) -> np.ndarray:
    """
    Resize a label map without mixing label values.

    Each label is resized as a float mask; every output voxel takes the
    label with the highest interpolated value.

    Args:
        seg: Label map (*spatial).
        new_shape: Target shape.
        order: Interpolation order for the per-label masks (0 = nearest).

    Returns:
        Resized label map with the input dtype.
    """
    new_shape = tuple(int(s) for s in new_shape)
    if tuple(seg.shape) == new_shape:
        return seg.copy()

    if order == 0:
        return resize(
            seg, new_shape, order=0, mode="edge", clip=True,
            anti_aliasing=False, preserve_range=True,
        ).astype(seg.dtype)

    labels = np.unique(seg)
    scores = np.stack([
        resize(
            (seg == label).astype(np.float32), new_shape, order=order, mode="edge",
            clip=True, anti_aliasing=False,
        )
        for label in labels
    ])
    return labels[np.argmax(scores, axis=0)].astype(seg.dtype)


def _resize(channel: np.ndarray, new_shape: Sequence[int], order: int, is_seg: bool) -> np.ndarray:
    if is_seg:
        return resize_segmentation(channel, new_shape, order=order)
    return resize(
        channel.astype(np.float32), tuple(int(s) for s in new_shape), order=order,
        mode="edge", anti_aliasing=False, preserve_range=True,
    ).astype(np.float32)


def _resample_separate_z(
    channel: np.ndarray,
    new_shape: Sequence[int],
    axis: int,
    order: int,
    order_z: int,
    is_seg: bool,
) -> np.ndarray:
    moved = np.moveaxis(channel, axis, 0)
    target = [int(new_shape[axis])] + [int(new_shape[i]) for i in range(channel.ndim) if i != axis]

    in_plane = np.stack([_resize(s, target[1:], order, is_seg) for s in moved])
    if in_plane.shape[0] != target[0]:
        in_plane = _resize(in_plane, target, order_z, is_seg)

    return np.moveaxis(in_plane, 0, axis)


def resample_data(
    data: np.ndarray,
    current_spacing: Sequence[float],
    target_spacing: Sequence[float],
    is_seg: bool = False,
    order: int = 3,
    order_z: int = 0,
    anisotropy_threshold: float = 3.0,
    new_shape: Optional[Sequence[int]] = None,
) -> np.ndarray:
    """
    Resample a (C, *spatial) array to a new spacing.

    Args:
        data: Image or segmentation with a leading channel axis.
        current_spacing: Spacing of ``data``.
        target_spacing: Desired spacing.
        is_seg: Treat data as label maps.
        order: Interpolation order (3 for images; segs use 1).
        order_z: Order along the coarse axis for anisotropic data.
        anisotropy_threshold: Spacing ratio that triggers separate-z.
        new_shape: Explicit output shape (overrides the spacing ratio).

    Returns:
        Resampled array with the same number of channels.
    """
    if data.ndim != len(current_spacing) + 1:
        raise ValueError(
            f"Expected (C, *spatial) with {len(current_spacing)} spatial dims, got {data.shape}"
        )

    if new_shape is None:
        new_shape = compute_new_shape(data.shape[1:], current_spacing, target_spacing)
    new_shape = [int(s) for s in new_shape]

    if list(data.shape[1:]) == new_shape:
        return data.copy()

    if is_seg:
        order = min(order, 1)

    axis = None
    if len(new_shape) == 3:
        if is_anisotropic(current_spacing, anisotropy_threshold):
            axis = get_lowres_axis(current_spacing)
        elif is_anisotropic(target_spacing, anisotropy_threshold):
            axis = get_lowres_axis(target_spacing)

    if axis is not None:
        logger.debug(f"Separate-z resampling along axis {axis}")
        channels = [
            _resample_separate_z(c, new_shape, axis, order, order_z, is_seg) for c in data
        ]
    else:
        channels = [_resize(c, new_shape, order, is_seg) for c in data]

    return np.stack(channels)
