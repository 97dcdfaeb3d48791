"""
I/O utilities for loading and saving medical imaging data.

Consolidates NPZ and NIfTI file handling with smart key detection.
NIfTI arrays are transposed to (z, y, x) order so that the last two axes
are always the in-plane axes; spacings follow the same order.
"""

from pathlib import Path
from typing import List, Optional, Tuple, Union

import nibabel as nib
import numpy as np


# Default key priority for NPZ files
DEFAULT_IMAGE_KEYS = ["image", "img", "volume", "data"]
DEFAULT_LABEL_KEYS = ["label", "mask", "segmentation", "seg"]


def load_npz(
    path: Union[str, Path],
    key: Optional[str] = None,
    priority_keys: Optional[List[str]] = None,
) -> np.ndarray:
    """
    Load array from NPZ file with intelligent key detection.

    Args:
        path: Path to NPZ file.
        key: Specific key to load. If provided, uses this directly.
        priority_keys: List of keys to try in order. Falls back to first available.

    Returns:
        Loaded numpy array.

    Raises:
        KeyError: If specified key not found.
        ValueError: If file contains no arrays.
    """
    path = Path(path)

    with np.load(path) as data:
        if key is not None:
            if key in data:
                return data[key]
            raise KeyError(f"Key '{key}' not found in {path.name}. Available: {data.files}")

        if priority_keys:
            for k in priority_keys:
                if k in data:
                    return data[k]

        if len(data.files) > 0:
            return data[data.files[0]]

    raise ValueError(f"No arrays found in {path.name}")


def load_npz_case(
    path: Union[str, Path],
) -> Tuple[np.ndarray, Optional[np.ndarray], Optional[np.ndarray]]:
    """
    Load a preprocessed case.

    Args:
        path: Path to NPZ file.

    Returns:
        Tuple of (image, label or None, spacing or None).

    Raises:
        KeyError: If no image key is present.
    """
    path = Path(path)

    with np.load(path) as data:
        image = next((data[k] for k in DEFAULT_IMAGE_KEYS if k in data), None)
        label = next((data[k] for k in DEFAULT_LABEL_KEYS if k in data), None)
        spacing = data["spacing"] if "spacing" in data else None

    if image is None:
        raise KeyError(f"No image key found in {path.name}")

    return image, label, spacing


def save_npz(
    path: Union[str, Path],
    image: Optional[np.ndarray] = None,
    label: Optional[np.ndarray] = None,
    compressed: bool = True,
    **kwargs,
) -> Path:
    """
    Save arrays to NPZ file with standardized keys.

    Args:
        path: Output path.
        image: Image array (saved with key 'image').
        label: Label/mask array (saved with key 'label').
        compressed: Whether to use compression.
        **kwargs: Additional arrays to save.

    Returns:
        Path to saved file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    arrays = {}
    if image is not None:
        arrays["image"] = image
    if label is not None:
        arrays["label"] = label
    arrays.update({k: v for k, v in kwargs.items() if v is not None})

    if not arrays:
        raise ValueError("No arrays provided to save")

    if compressed:
        np.savez_compressed(path, **arrays)
    else:
        np.savez(path, **arrays)

    return path


def load_nifti(path: Union[str, Path]) -> Tuple[np.ndarray, Tuple[float, ...], np.ndarray]:
    """
    Load NIfTI file in (z, y, x) order.

    Args:
        path: Path to NIfTI file (.nii or .nii.gz).

    Returns:
        Tuple of (data array, spacing, affine matrix).
    """
    path = Path(path)
    nii = nib.load(path)
    data = np.asarray(nii.dataobj)
    ndim = min(data.ndim, 3)
    data = data.transpose(tuple(range(ndim))[::-1])
    spacing = tuple(float(s) for s in nii.header.get_zooms()[:ndim])[::-1]
    return data, spacing, nii.affine


def save_nifti(
    path: Union[str, Path],
    data: np.ndarray,
    affine: Optional[np.ndarray] = None,
    spacing: Optional[Tuple[float, ...]] = None,
    dtype: Optional[np.dtype] = None,
) -> Path:
    """
    Save a (z, y, x) array as NIfTI file.

    Args:
        path: Output path.
        data: Data array in (z, y, x) order.
        affine: 4x4 affine matrix. Built from spacing if omitted.
        spacing: Spacing in (z, y, x) order, used when affine is None.
        dtype: Optional dtype to cast data to before saving.

    Returns:
        Path to saved file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if dtype is not None:
        data = data.astype(dtype)

    if affine is None:
        affine = np.eye(4)
        if spacing is not None:
            for i, s in enumerate(reversed(spacing)):
                affine[i, i] = s

    data = data.transpose(tuple(range(data.ndim))[::-1])
    nib.save(nib.Nifti1Image(data, affine), path)

    return path
