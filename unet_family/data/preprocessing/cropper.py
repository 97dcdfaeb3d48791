"""
Crop-to-nonzero preprocessing.

Medical volumes often carry large zero borders (e.g. skull-stripped MRI).
Cropping them away is the first preprocessing step and also feeds the
"relative size after cropping" statistic of the dataset fingerprint.
"""

import logging
from typing import Optional, Tuple

import numpy as np
from scipy import ndimage

from ...utils.volume_ops import get_bbox_slices

logger = logging.getLogger(__name__)


def create_nonzero_mask(image: np.ndarray) -> np.ndarray:
    """
    Build a mask of voxels that are nonzero in any channel.

    Args:
        image: Array of shape (C, *spatial).

    Returns:
        Boolean mask of shape (*spatial) with holes filled.
    """
    nonzero = np.any(image != 0, axis=0)
    return ndimage.binary_fill_holes(nonzero)


def crop_to_nonzero(
    image: np.ndarray,
    seg: Optional[np.ndarray] = None,
    nonzero_label: int = -1,
) -> Tuple[np.ndarray, np.ndarray, Tuple[slice, ...]]:
    """
    Crop image (and segmentation) to the nonzero region of the image.

    Background voxels of the segmentation that lie outside the nonzero
    mask are set to ``nonzero_label`` so normalization can ignore them.

    Args:
        image: Array of shape (C, *spatial).
        seg: Optional label array of shape (*spatial).
        nonzero_label: Value for background outside the nonzero mask.

    Returns:
        Tuple of (cropped_image, cropped_seg, bbox slices). Without a seg,
        cropped_seg marks the region outside the nonzero mask. If the image is
        entirely zero, nothing is cropped and the full-extent bbox is returned.
    """
    nonzero_mask = create_nonzero_mask(image)

    if not nonzero_mask.any():
        logger.warning("Image is entirely zero, skipping crop")
        slices = tuple(slice(0, s) for s in image.shape[1:])
    else:
        slices = get_bbox_slices(nonzero_mask)

    cropped_image = image[(slice(None),) + slices]
    cropped_mask = nonzero_mask[slices]

    if seg is not None:
        cropped_seg = seg[slices].astype(np.int16)
        cropped_seg[(cropped_seg == 0) & ~cropped_mask] = nonzero_label
    else:
        cropped_seg = np.where(cropped_mask, 0, nonzero_label).astype(np.int8)

    return cropped_image, cropped_seg, slices
