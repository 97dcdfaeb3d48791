"""Data processing, loading, and augmentation."""

from .augmentation.transforms import IdentityAugmentation, SpatialAugmentation
from .datasets.patch_dataset import PatchDataset, create_data_splits

__all__ = ["IdentityAugmentation", "PatchDataset", "SpatialAugmentation", "create_data_splits"]
