"""
Intensity normalization for medical images.

Two schemes are used by the planner:
  - "CT": clip to the dataset's foreground [0.5, 99.5] percentiles, then
    z-score with the dataset's foreground mean and std. CT intensities
    are quantitative (Hounsfield units), so global statistics apply.
  - "zscore": per-case z-score, optionally restricted to the nonzero mask.

CT window/level presets map HU volumes to display ranges.
"""

from typing import Dict, Optional, Sequence, Tuple

import numpy as np

WINDOW_PRESETS = {
    "bone": (400, 1500),
    "soft_tissue": (40, 400),
    "lung": (-600, 1500),
    "brain": (40, 80),
    "liver": (60, 150),
    "mediastinum": (50, 350),
    "abdomen": (40, 400),
}


def ct_normalize(
    image: np.ndarray,
    intensity_properties: Dict[str, float],
) -> np.ndarray:
    """
    Normalize a CT channel with dataset-wide foreground statistics.

    Args:
        image: Single-channel image.
        intensity_properties: Fingerprint statistics for this channel
            (mean, std, percentile_00_5, percentile_99_5).

    Returns:
        Normalized float32 image.
    """
    lower = intensity_properties["percentile_00_5"]
    upper = intensity_properties["percentile_99_5"]
    mean = intensity_properties["mean"]
    std = intensity_properties["std"]

    image = np.clip(image.astype(np.float32), lower, upper)
    return (image - mean) / max(std, 1e-8)


def zscore_normalize(
    image: np.ndarray,
    mask: Optional[np.ndarray] = None,
    eps: float = 1e-8,
) -> np.ndarray:
    """
    Z-score standardization (zero mean, unit variance).

    With a mask, statistics come from the masked voxels only and voxels
    outside the mask are set to 0.

    Args:
        image: Single-channel image.
        mask: Optional boolean mask of the same shape.
        eps: Small value to prevent division by zero.

    Returns:
        Standardized float32 image.
    """
    image = image.astype(np.float32)

    if mask is None:
        return (image - image.mean()) / max(image.std(), eps)

    mask = mask.astype(bool)
    if not mask.any():
        return np.zeros_like(image)

    values = image[mask]
    result = (image - values.mean()) / max(values.std(), eps)
    result[~mask] = 0
    return result


def normalize_image(
    image: np.ndarray,
    schemes: Sequence[str],
    use_mask: Sequence[bool],
    intensity_properties: Dict[str, Dict[str, float]],
    seg: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Normalize every channel of a (C, *spatial) image.

    Args:
        image: Multi-channel image.
        schemes: Scheme per channel ("CT" or "zscore").
        use_mask: Whether z-scoring uses the nonzero mask (seg >= 0).
        intensity_properties: Fingerprint statistics keyed by channel.
        seg: Cropped segmentation where -1 marks outside the nonzero mask.

    Returns:
        Normalized float32 image.

    Raises:
        ValueError: For unknown schemes or mismatched channel counts.
    """
    if len(schemes) != image.shape[0]:
        raise ValueError(
            f"{len(schemes)} normalization schemes for {image.shape[0]} channels"
        )

    out = np.empty(image.shape, dtype=np.float32)
    for c, scheme in enumerate(schemes):
        if scheme == "CT":
            out[c] = ct_normalize(image[c], intensity_properties[str(c)])
        elif scheme == "zscore":
            mask = (seg >= 0) if (use_mask[c] and seg is not None) else None
            out[c] = zscore_normalize(image[c], mask)
        else:
            raise ValueError(f"Unknown normalization scheme '{scheme}'")
    return out


def apply_ct_window(
    image: np.ndarray,
    window_level: float,
    window_width: float,
    output_range: Tuple[float, float] = (0, 255),
    output_dtype: np.dtype = np.uint8,
) -> np.ndarray:
    """
    Apply CT windowing (Width/Level) and normalize to output range.

    Args:
        image: Input CT image (typically int16 or float32).
        window_level: Center of the window (in Hounsfield Units).
        window_width: Width of the window (in HU).
        output_range: Output value range (min, max).
        output_dtype: Output data type.

    Returns:
        Windowed and normalized image.
    """
    lower_bound = window_level - (window_width / 2)
    upper_bound = window_level + (window_width / 2)

    windowed = np.clip(image, lower_bound, upper_bound)

    if window_width > 0:
        normalized = (windowed - lower_bound) / window_width
    else:
        normalized = windowed - lower_bound

    out_min, out_max = output_range
    scaled = normalized * (out_max - out_min) + out_min

    return scaled.astype(output_dtype)


def get_window_preset(preset: str) -> Tuple[float, float]:
    """
    Get predefined CT window settings.

    Args:
        preset: Name of window preset (see WINDOW_PRESETS).

    Returns:
        Tuple of (window_level, window_width).
    """
    if preset not in WINDOW_PRESETS:
        available = ", ".join(WINDOW_PRESETS)
        raise ValueError(f"Unknown preset '{preset}'. Available: {available}")

    return WINDOW_PRESETS[preset]
