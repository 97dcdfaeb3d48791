"""
Post-processing utilities for segmentation predictions.

All functions accept label maps; every nonzero label is processed on its
own so multiclass predictions keep their label values.
"""

from typing import Optional, Sequence

import numpy as np
from scipy import ndimage
from skimage import measure


def _labels_to_process(seg: np.ndarray, labels: Optional[Sequence[int]]) -> Sequence[int]:
    if labels is None:
        return [int(v) for v in np.unique(seg) if v > 0]
    return labels


def keep_largest_component(
    seg: np.ndarray,
    labels: Optional[Sequence[int]] = None,
    connectivity: int = 1,
) -> np.ndarray:
    """
    Keep only the largest connected component of each label.

    Args:
        seg: Label map (binary masks work too).
        labels: Labels to process; defaults to every nonzero label present.
        connectivity: Connectivity for labeling (1 to ndim).

    Returns:
        Label map where removed voxels are set to background.
    """
    out = seg.copy()
    for label in _labels_to_process(seg, labels):
        components = measure.label(seg == label, connectivity=connectivity)
        if components.max() <= 1:
            continue

        counts = np.bincount(components.ravel())
        counts[0] = 0
        out[(components > 0) & (components != counts.argmax())] = 0

    return out


def remove_small_components(
    seg: np.ndarray,
    min_size: int,
    labels: Optional[Sequence[int]] = None,
    connectivity: int = 1,
) -> np.ndarray:
    """
    Remove connected components smaller than min_size voxels.

    Args:
        seg: Label map.
        min_size: Minimum component size in voxels.
        labels: Labels to process; defaults to every nonzero label present.
        connectivity: Connectivity for labeling.

    Returns:
        Filtered label map.
    """
    out = seg.copy()
    for label in _labels_to_process(seg, labels):
        components = measure.label(seg == label, connectivity=connectivity)
        counts = np.bincount(components.ravel())
        small = np.flatnonzero(counts < min_size)
        small = small[small > 0]
        if len(small):
            out[np.isin(components, small)] = 0

    return out


def fill_holes(seg: np.ndarray, labels: Optional[Sequence[int]] = None) -> np.ndarray:
    """
    Fill background holes enclosed by a label.

    Only background voxels are filled, so one label never overwrites
    another.
    """
    out = seg.copy()
    for label in _labels_to_process(seg, labels):
        filled = ndimage.binary_fill_holes(seg == label)
        out[filled & (out == 0)] = label
    return out


def postprocess_segmentation(
    seg: np.ndarray,
    keep_largest: bool = False,
    min_component_size: Optional[int] = None,
    fill_holes_flag: bool = False,
) -> np.ndarray:
    """
    Apply the post-processing pipeline to a predicted label map.

    Args:
        seg: Predicted label map.
        keep_largest: Keep only the largest component per label.
        min_component_size: Remove components smaller than this.
        fill_holes_flag: Fill holes per label.

    Returns:
        Post-processed label map.
    """
    if min_component_size is not None and min_component_size > 0:
        seg = remove_small_components(seg, min_size=min_component_size)

    if keep_largest:
        seg = keep_largest_component(seg)

    if fill_holes_flag:
        seg = fill_holes(seg)

    return seg
