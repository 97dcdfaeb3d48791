"""
Patch augmentation transforms for 2D and 3D segmentation.

Spatial transforms are applied identically to the image and its label map;
intensity transforms touch the image only.
"""

import random
from typing import Tuple

import numpy as np
from scipy.ndimage import rotate


class SpatialAugmentation:
    """
    Random augmentation for (C, *spatial) image patches and (*spatial) labels.

    Works for any number of spatial dims. Rotation happens in the plane of
    the last two axes, which is the axial plane for (D, H, W) volumes.
    """

    def __init__(
        self,
        mirror_prob: float = 0.5,
        rotate_prob: float = 0.2,
        rotate_range: Tuple[float, float] = (-15.0, 15.0),
        noise_prob: float = 0.1,
        noise_std: float = 0.1,
        brightness_prob: float = 0.15,
        brightness_range: Tuple[float, float] = (0.75, 1.25),
        contrast_prob: float = 0.15,
        contrast_range: Tuple[float, float] = (0.75, 1.25),
    ) -> None:
        """
        Args:
            mirror_prob: Per-axis probability of a flip.
            rotate_prob: Probability of applying rotation.
            rotate_range: Range of rotation angles in degrees.
            noise_prob: Probability of adding Gaussian noise.
            noise_std: Standard deviation of Gaussian noise.
            brightness_prob: Probability of brightness adjustment.
            brightness_range: Range of brightness multipliers.
            contrast_prob: Probability of contrast adjustment.
            contrast_range: Range of contrast factors around the mean.
        """
        self.mirror_prob = mirror_prob
        self.rotate_prob = rotate_prob
        self.rotate_range = rotate_range
        self.noise_prob = noise_prob
        self.noise_std = noise_std
        self.brightness_prob = brightness_prob
        self.brightness_range = brightness_range
        self.contrast_prob = contrast_prob
        self.contrast_range = contrast_range

    def __call__(
        self,
        image: np.ndarray,
        label: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Apply augmentations to an image patch and its labels.

        Args:
            image: Image patch (C, *spatial).
            label: Label patch (*spatial).

        Returns:
            Tuple of (augmented_image, augmented_label).
        """
        spatial_dims = label.ndim

        # Mirroring
        for axis in range(spatial_dims):
            if random.random() < self.mirror_prob:
                image = np.flip(image, axis=axis + 1)
                label = np.flip(label, axis=axis)
        image = np.ascontiguousarray(image)
        label = np.ascontiguousarray(label)

        # In-plane rotation
        if spatial_dims >= 2 and random.random() < self.rotate_prob:
            angle = random.uniform(*self.rotate_range)
            axes = (spatial_dims - 2, spatial_dims - 1)
            image = np.stack([
                rotate(c, angle, axes=axes, reshape=False, order=1, mode="nearest")
                for c in image
            ])
            label = rotate(label, angle, axes=axes, reshape=False, order=0, mode="nearest")

        # Gaussian noise
        if random.random() < self.noise_prob:
            image = image + np.random.normal(0, self.noise_std, image.shape)

        # Brightness
        if random.random() < self.brightness_prob:
            image = image * random.uniform(*self.brightness_range)

        # Contrast, per channel around the channel mean
        if random.random() < self.contrast_prob:
            factor = random.uniform(*self.contrast_range)
            axes = tuple(range(1, image.ndim))
            mean = image.mean(axis=axes, keepdims=True)
            image = (image - mean) * factor + mean

        return image.astype(np.float32), label


class IdentityAugmentation:
    """No-op augmentation for validation/test sets."""

    def __call__(
        self,
        image: np.ndarray,
        label: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Return inputs unchanged."""
        return image, label
