"""Shared utility functions."""

from .io import load_nifti, load_npz, load_npz_case, save_nifti, save_npz
from .naming import case_id_from_filename, group_channel_files, strip_extension
from .volume_ops import get_bbox_slices, pad_to_divisible, pad_to_shape, remove_padding

__all__ = [
    # I/O
    "load_npz",
    "load_npz_case",
    "save_npz",
    "load_nifti",
    "save_nifti",
    # Volume operations
    "get_bbox_slices",
    "pad_to_divisible",
    "pad_to_shape",
    "remove_padding",
    # Naming
    "case_id_from_filename",
    "group_channel_files",
    "strip_extension",
]
