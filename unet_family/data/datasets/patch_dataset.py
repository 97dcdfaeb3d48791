"""
PyTorch dataset for patch-based segmentation training.

Loads preprocessed NPZ cases (``image`` of shape (C, *spatial), ``label``
of shape (*spatial)) and samples fixed size patches, optionally centred on
foreground voxels.
"""

import logging
import random
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch
from torch.utils.data import Dataset

from ...utils.io import load_npz_case
from ...utils.volume_ops import pad_to_minimum
from ..augmentation.transforms import IdentityAugmentation, SpatialAugmentation

logger = logging.getLogger(__name__)


class PatchDataset(Dataset):
    """
    Random patch sampler over preprocessed cases.

    A 2D patch size on 3D cases samples one slice along the first spatial
    axis per item. Voxels marked -1 (outside the nonzero mask) are treated
    as background.
    """

    def __init__(
        self,
        file_paths: List[Path],
        patch_size: Sequence[int],
        oversample_foreground_percent: float = 0.33,
        augment: bool = False,
        aug_params: Optional[Dict] = None,
        samples_per_epoch: Optional[int] = None,
    ) -> None:
        """
        Initialize dataset.

        Args:
            file_paths: List of paths to preprocessed NPZ files.
            patch_size: Spatial patch size (2 or 3 dims).
            oversample_foreground_percent: Probability that a patch is
                centred on a random foreground voxel.
            augment: Whether to apply augmentation.
            aug_params: Keyword arguments for SpatialAugmentation.
            samples_per_epoch: Dataset length; defaults to one patch per case.
        """
        self.files = [Path(p) for p in file_paths]
        self.patch_size = tuple(int(p) for p in patch_size)
        self.oversample_foreground_percent = oversample_foreground_percent
        self.samples_per_epoch = samples_per_epoch

        if augment:
            self.aug = SpatialAugmentation(**(aug_params or {}))
        else:
            self.aug = IdentityAugmentation()

        for f in self.files:
            if not f.exists():
                logger.warning(f"File not found: {f}")

    def __len__(self) -> int:
        if self.samples_per_epoch is not None:
            return self.samples_per_epoch
        return len(self.files)

    def __getitem__(self, idx: int) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Sample a patch from case ``idx``.

        Returns:
            Tuple of (image (C, *patch) float32, label (1, *patch) int64).
        """
        path = self.files[idx % len(self.files)]
        try:
            image, label, _ = load_npz_case(path)
        except Exception as e:
            logger.error(f"Error loading {path}: {e}")
            raise

        image = image.astype(np.float32)
        if label is not None and image.ndim == label.ndim:
            image = image[None]
        if label is None:
            label = np.zeros(image.shape[1:], dtype=np.int16)

        force_fg = random.random() < self.oversample_foreground_percent

        if len(self.patch_size) == label.ndim - 1:
            z = self._pick_slice(label, force_fg)
            image = image[:, z]
            label = label[z]
        elif len(self.patch_size) != label.ndim:
            raise ValueError(
                f"Patch size {self.patch_size} does not fit case of shape {label.shape}"
            )

        image, label = self._crop_patch(image, label, force_fg)
        image, label = self.aug(image, label)

        label = np.where(label < 0, 0, label).astype(np.int64)

        image_tensor = torch.from_numpy(np.ascontiguousarray(image, dtype=np.float32))
        label_tensor = torch.from_numpy(np.ascontiguousarray(label)).unsqueeze(0)

        return image_tensor, label_tensor

    @staticmethod
    def _pick_slice(label: np.ndarray, force_fg: bool) -> int:
        """Slice index along axis 0, preferring foreground slices if forced."""
        if force_fg:
            fg_slices = np.flatnonzero((label > 0).any(axis=tuple(range(1, label.ndim))))
            if len(fg_slices):
                return int(random.choice(fg_slices))
        return random.randrange(label.shape[0])

    def _crop_patch(
        self,
        image: np.ndarray,
        label: np.ndarray,
        force_fg: bool,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Pad to at least the patch size and cut out one patch.

        Args:
            image: Image (C, *spatial).
            label: Label (*spatial).
            force_fg: Centre the patch on a random foreground voxel if any.

        Returns:
            Tuple of (image_patch, label_patch).
        """
        image = pad_to_minimum(image, self.patch_size)
        label = pad_to_minimum(label, self.patch_size, constant_value=-1)
        shape = np.array(label.shape)
        patch = np.array(self.patch_size)
        max_start = shape - patch

        fg = np.argwhere(label > 0) if force_fg else None
        if fg is not None and len(fg):
            center = fg[random.randrange(len(fg))]
            start = np.clip(center - patch // 2, 0, max_start)
        else:
            start = np.array([random.randint(0, m) for m in max_start])

        slices = tuple(slice(int(s), int(s + p)) for s, p in zip(start, patch))
        return image[(slice(None),) + slices], label[slices]

    def get_sample_info(self, idx: int) -> Dict:
        """
        Get metadata about a case.

        Args:
            idx: Case index.

        Returns:
            Dictionary with file path and shape info.
        """
        path = self.files[idx]
        image, label, spacing = load_npz_case(path)

        return {
            "path": str(path),
            "filename": path.name,
            "image_shape": image.shape,
            "label_shape": None if label is None else label.shape,
            "spacing": None if spacing is None else spacing.tolist(),
        }


def create_data_splits(
    file_paths: List[Path],
    train_ratio: float = 0.8,
    val_ratio: float = 0.2,
    test_ratio: float = 0.0,
    seed: int = 42,
) -> Tuple[List[Path], List[Path], List[Path]]:
    """
    Split file paths into train/val/test sets.

    Args:
        file_paths: List of all file paths.
        train_ratio: Fraction for training.
        val_ratio: Fraction for validation.
        test_ratio: Fraction for testing.
        seed: Random seed for reproducibility.

    Returns:
        Tuple of (train_files, val_files, test_files).

    Raises:
        ValueError: If the ratios do not sum to one.
    """
    if abs(train_ratio + val_ratio + test_ratio - 1.0) > 1e-6:
        raise ValueError(
            f"Split ratios must sum to 1, got {train_ratio + val_ratio + test_ratio}"
        )

    rng = np.random.default_rng(seed)
    indices = np.arange(len(file_paths))
    rng.shuffle(indices)

    n = len(file_paths)
    train_end = int(round(n * train_ratio))
    val_end = train_end + int(round(n * val_ratio))

    train_files = [file_paths[i] for i in indices[:train_end]]
    val_files = [file_paths[i] for i in indices[train_end:val_end]]
    test_files = [file_paths[i] for i in indices[val_end:]]

    return train_files, val_files, test_files
