"""Data preprocessing utilities."""

from .cropper import create_nonzero_mask, crop_to_nonzero
from .normalization import apply_ct_window, ct_normalize, normalize_image, zscore_normalize
from .pipeline import preprocess_case, preprocess_dataset
from .resampler import compute_new_shape, resample_data, resize_segmentation

__all__ = [
    "apply_ct_window",
    "compute_new_shape",
    "create_nonzero_mask",
    "crop_to_nonzero",
    "ct_normalize",
    "normalize_image",
    "preprocess_case",
    "preprocess_dataset",
    "resample_data",
    "resize_segmentation",
    "zscore_normalize",
]
