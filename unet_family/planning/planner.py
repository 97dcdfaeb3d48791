"""
nnU-Net style experiment planning.

Derives target spacing, normalization, patch size, network topology and
batch size from a dataset fingerprint. All rules are heuristics from the
nnU-Net paper (Isensee et al., 2021); the GPU memory model is an analytic
activation-count proxy rather than an instantiated network.
"""

import logging
from copy import deepcopy
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..data.preprocessing.resampler import compute_new_shape
from .fingerprint import DatasetFingerprint
from .plans import Configuration, Plans

logger = logging.getLogger(__name__)

BASE_FEATURES = 32
MAX_FEATURES_3D = 320
MAX_FEATURES_2D = 512
MIN_FEATURE_MAP_SIZE = 4
REFERENCE_BATCH_SIZE_3D = 2
REFERENCE_BATCH_SIZE_2D = 12
REFERENCE_PATCH_3D = (128, 128, 128)
REFERENCE_PATCH_2D = (256, 256)
REFERENCE_GPU_MEMORY_GB = 8.0
DATASET_FRACTION_PER_BATCH = 0.05
LOWRES_PATCH_COVERAGE = 0.25
LOWRES_SPACING_STEP = 1.01
LOWRES_MAX_STEPS = 100


def determine_target_spacing(
    spacings: Sequence[Sequence[float]],
    shapes: Sequence[Sequence[int]],
    anisotropy_threshold: float = 3.0,
) -> np.ndarray:
    """
    Pick the resampling target spacing.

    The median spacing is used unless the data is strongly anisotropic
    (both in spacing and in voxel count along the coarse axis). In that
    case the coarse axis gets the 10th percentile of its spacings so that
    interpolation does not invent too many slices.

    Args:
        spacings: Per-case spacings.
        shapes: Per-case shapes after cropping.
        anisotropy_threshold: Ratio that counts as anisotropic.

    Returns:
        Target spacing per axis.
    """
    spacings = np.asarray(spacings, dtype=float)
    shapes = np.asarray(shapes, dtype=float)

    target = np.percentile(spacings, 50, axis=0)
    if len(target) < 2:
        return target

    target_size = np.percentile(shapes, 50, axis=0)
    worst = int(np.argmax(target))
    others = [i for i in range(len(target)) if i != worst]
    other_spacing = target[others]
    other_size = target_size[others]

    has_aniso_spacing = target[worst] > anisotropy_threshold * min(other_spacing)
    has_aniso_voxels = target_size[worst] * anisotropy_threshold < min(other_size)

    if has_aniso_spacing and has_aniso_voxels:
        axis_target = np.percentile(spacings[:, worst], 10)
        if axis_target < max(other_spacing):
            axis_target = max(max(other_spacing), axis_target) + 1e-5
        target[worst] = axis_target
        logger.info(f"Anisotropic dataset: axis {worst} target spacing set to {axis_target:.4f}")

    return target


def determine_normalization(
    modalities: Sequence[str],
    fingerprint: DatasetFingerprint,
) -> Tuple[List[str], List[bool]]:
    """
    Choose a normalization scheme per channel.

    CT channels use global foreground statistics ("CT"); everything else
    is z-scored per case. Z-scoring is restricted to the nonzero mask when
    cropping removed at least a quarter of the median image.

    Returns:
        Tuple of (schemes, use_mask_for_norm).

    Raises:
        ValueError: If the number of modalities does not match the channels.
    """
    if len(modalities) != fingerprint.num_channels:
        raise ValueError(
            f"{len(modalities)} modalities given but fingerprint has "
            f"{fingerprint.num_channels} channels"
        )

    use_nonzero_mask = fingerprint.median_relative_size_after_cropping < 0.75

    schemes = []
    use_mask = []
    for c, modality in enumerate(modalities):
        stats = fingerprint.foreground_intensity_properties[str(c)]
        if modality.upper() == "CT":
            if np.isnan(stats["mean"]):
                logger.warning(f"Channel {c}: no foreground statistics, falling back to zscore")
                schemes.append("zscore")
                use_mask.append(use_nonzero_mask)
            else:
                schemes.append("CT")
                use_mask.append(False)
        else:
            schemes.append("zscore")
            use_mask.append(use_nonzero_mask)

    return schemes, use_mask


def _pad_shape(shape: Sequence[int], divisible_by: Sequence[int]) -> List[int]:
    return [int(np.ceil(s / d) * d) for s, d in zip(shape, divisible_by)]


def get_pool_and_conv_props(
    spacing: Sequence[float],
    patch_size: Sequence[int],
    min_feature_map_size: int = MIN_FEATURE_MAP_SIZE,
    max_numpool: int = 999999,
) -> Tuple[List[int], List[List[int]], List[List[int]], List[int], List[int]]:
    """
    Derive the U-Net topology for a patch size and spacing.

    At every step all axes are pooled that (a) are still at least
    2 * min_feature_map_size large and (b) have a spacing within a factor
    2 of the finest valid spacing. Conv kernels along an axis switch from
    1 to 3 once its spacing comes within a factor 2 of the finest spacing.

    Args:
        spacing: Voxel spacing of the configuration.
        patch_size: Requested patch size.
        min_feature_map_size: Smallest allowed bottleneck edge.
        max_numpool: Upper bound on pooling operations per axis.

    Returns:
        Tuple of (num_pool_per_axis, pool_op_kernel_sizes,
        conv_kernel_sizes, padded_patch_size, shape_must_be_divisible_by).
        pool_op_kernel_sizes starts with an all-ones stage.
    """
    dim = len(spacing)
    current_spacing = [float(s) for s in spacing]
    current_size = [int(s) for s in patch_size]

    pool_op_kernel_sizes = [[1] * dim]
    conv_kernel_sizes = []
    num_pool_per_axis = [0] * dim
    kernel_size = [1] * dim

    while True:
        valid_axes = [i for i in range(dim) if current_size[i] >= 2 * min_feature_map_size]
        if not valid_axes:
            break

        min_spacing = min(current_spacing[i] for i in valid_axes)
        valid_axes = [i for i in valid_axes if current_spacing[i] / min_spacing < 2]
        valid_axes = [i for i in valid_axes if num_pool_per_axis[i] < max_numpool]

        if len(valid_axes) == 1 and current_size[valid_axes[0]] < 3 * min_feature_map_size:
            break
        if not valid_axes:
            break

        for d in range(dim):
            if kernel_size[d] != 3 and current_spacing[d] / min(current_spacing) < 2:
                kernel_size[d] = 3

        pool = [1] * dim
        for axis in valid_axes:
            pool[axis] = 2
            num_pool_per_axis[axis] += 1
            current_spacing[axis] *= 2
            current_size[axis] = int(np.ceil(current_size[axis] / 2))

        pool_op_kernel_sizes.append(pool)
        conv_kernel_sizes.append(deepcopy(kernel_size))

    must_be_divisible_by = [2**n for n in num_pool_per_axis]
    padded_patch = _pad_shape(patch_size, must_be_divisible_by)

    # One kernel per pooled stage plus the bottleneck, which is always 3
    conv_kernel_sizes.append([3] * dim)

    return (
        num_pool_per_axis,
        pool_op_kernel_sizes,
        conv_kernel_sizes,
        padded_patch,
        must_be_divisible_by,
    )


def features_per_stage(num_stages: int, dims: int) -> List[int]:
    """Feature widths: 32 doubling per stage, capped at 320 (3D) / 512 (2D)."""
    cap = MAX_FEATURES_3D if dims == 3 else MAX_FEATURES_2D
    return [min(BASE_FEATURES * 2**i, cap) for i in range(num_stages)]


def estimate_vram_proxy(
    patch_size: Sequence[int],
    features: Sequence[int],
    strides: Sequence[Sequence[int]],
    n_conv_per_stage: Sequence[int],
    n_conv_per_stage_decoder: Sequence[int],
    num_classes: int,
    input_channels: int = 1,
) -> float:
    """
    Approximate activation memory of a PlainConvUNet forward pass.

    Counts feature map elements (channels x voxels) produced by every conv
    in encoder and decoder plus the transposed convs and the output.
    The value is only meaningful relative to the reference proxy.
    """
    size = np.asarray(patch_size, dtype=float)
    full = float(np.prod(size))
    total = input_channels * full

    for s, feat in enumerate(features):
        size = size / np.asarray(strides[s], dtype=float)
        voxels = float(np.prod(size))
        total += n_conv_per_stage[s] * feat * voxels
        if s < len(features) - 1:
            # decoder convs at this resolution plus the transposed conv output
            total += (n_conv_per_stage_decoder[s] + 1) * feat * voxels

    total += num_classes * full
    return total


def _reference_proxy(dims: int, num_classes: int, input_channels: int) -> float:
    spacing = [1.0] * dims
    patch = REFERENCE_PATCH_3D if dims == 3 else REFERENCE_PATCH_2D
    _, strides, _, patch, _ = get_pool_and_conv_props(spacing, patch)
    n_stages = len(strides)
    return estimate_vram_proxy(
        patch,
        features_per_stage(n_stages, dims),
        strides,
        [2] * n_stages,
        [2] * (n_stages - 1),
        num_classes,
        input_channels,
    )


class ExperimentPlanner:
    """
    Turns a dataset fingerprint into plans.

    Args:
        fingerprint: Dataset fingerprint.
        modalities: Modality name per channel ("CT", "MRI", ...).
        gpu_memory_target_gb: Memory budget the plans should fit.
        anisotropy_threshold: Spacing ratio treated as anisotropic.
        dataset_name: Name stored in the plans.
    """

    def __init__(
        self,
        fingerprint: DatasetFingerprint,
        modalities: Sequence[str],
        gpu_memory_target_gb: float = REFERENCE_GPU_MEMORY_GB,
        anisotropy_threshold: float = 3.0,
        dataset_name: str = "dataset",
    ) -> None:
        self.fingerprint = fingerprint
        self.modalities = list(modalities)
        self.gpu_memory_target_gb = gpu_memory_target_gb
        self.anisotropy_threshold = anisotropy_threshold
        self.dataset_name = dataset_name

        self.num_classes = max(len(fingerprint.labels), 2)
        self.input_channels = len(self.modalities)
        self.normalization_schemes, self.use_mask_for_norm = determine_normalization(
            self.modalities, fingerprint
        )

    def _budget(self, dims: int) -> float:
        ref = _reference_proxy(dims, self.num_classes, self.input_channels)
        return ref * self.gpu_memory_target_gb / REFERENCE_GPU_MEMORY_GB

    def plan_configuration(
        self,
        name: str,
        spacing: Sequence[float],
        median_shape: Sequence[float],
        approximate_n_voxels_dataset: float,
    ) -> Configuration:
        """
        Plan one configuration at a given spacing.

        Args:
            name: Configuration name.
            spacing: Target spacing of this configuration.
            median_shape: Median image shape (voxels) at that spacing.
            approximate_n_voxels_dataset: Voxels in the whole dataset at
                that spacing, used to cap the batch size.

        Returns:
            Configuration.
        """
        spacing = [float(s) for s in spacing]
        median_shape = np.asarray(median_shape, dtype=float)
        dims = len(spacing)

        # Patch isotropic in mm, with a fixed voxel count, clipped to the image
        target_voxels = 256**3 if dims == 3 else 2048**2
        tmp = 1.0 / np.asarray(spacing)
        initial = tmp * (target_voxels / np.prod(tmp)) ** (1.0 / dims)
        patch = [int(round(min(p, m))) for p, m in zip(initial, median_shape)]
        patch = [max(p, 1) for p in patch]

        num_pool, strides, kernels, patch, divisible = get_pool_and_conv_props(spacing, patch)
        n_stages = len(strides)
        feats = features_per_stage(n_stages, dims)

        def proxy() -> float:
            return estimate_vram_proxy(
                patch,
                feats,
                strides,
                [2] * n_stages,
                [2] * (n_stages - 1),
                self.num_classes,
                self.input_channels,
            )

        budget = self._budget(dims)
        ref_bs = REFERENCE_BATCH_SIZE_3D if dims == 3 else REFERENCE_BATCH_SIZE_2D
        estimate = proxy()

        while estimate > budget:
            ratios = np.asarray(patch) / median_shape
            axis = int(np.argsort(ratios)[-1])
            reduced = deepcopy(patch)
            reduced[axis] -= divisible[axis]
            if reduced[axis] < 1:
                logger.warning(f"{name}: cannot shrink patch {patch} further")
                break

            num_pool, strides, kernels, patch, divisible = get_pool_and_conv_props(
                spacing, reduced
            )
            n_stages = len(strides)
            feats = features_per_stage(n_stages, dims)
            estimate = proxy()

        batch_size = int(np.floor(budget / estimate * ref_bs))
        bs_cap = int(round(approximate_n_voxels_dataset * DATASET_FRACTION_PER_BATCH / np.prod(patch)))
        batch_size = max(min(batch_size, bs_cap), 2)

        configuration = Configuration(
            name=name,
            patch_size=[int(p) for p in patch],
            spacing=spacing,
            median_image_size=[float(m) for m in median_shape],
            batch_size=batch_size,
            normalization_schemes=list(self.normalization_schemes),
            use_mask_for_norm=list(self.use_mask_for_norm),
            features_per_stage=feats,
            conv_kernel_sizes=kernels,
            pool_op_kernel_sizes=strides,
            n_conv_per_stage_encoder=[2] * n_stages,
            n_conv_per_stage_decoder=[2] * (n_stages - 1),
            num_pool_per_axis=num_pool,
            shape_must_be_divisible_by=divisible,
            anisotropy_threshold=self.anisotropy_threshold,
        )

        logger.info(
            f"{name}: patch {configuration.patch_size}, spacing "
            f"{[round(s, 4) for s in spacing]}, batch {batch_size}, stages {n_stages}"
        )
        return configuration

    def _plan_lowres(
        self,
        fullres: Configuration,
        fullres_median_shape: np.ndarray,
    ) -> Optional[Configuration]:
        coverage = np.prod(fullres.patch_size) / np.prod(fullres_median_shape)
        if coverage >= LOWRES_PATCH_COVERAGE:
            return None

        fullres_spacing = np.asarray(fullres.spacing)
        spacing = fullres_spacing.copy()
        lowres: Optional[Configuration] = None

        for _ in range(LOWRES_MAX_STEPS):
            if spacing.max() / spacing.min() > 2:
                # Grow the fine axes first until spacing is roughly isotropic
                grow = spacing < spacing.max()
                spacing = np.where(grow, spacing * LOWRES_SPACING_STEP, spacing)
            else:
                spacing = spacing * LOWRES_SPACING_STEP

            median_shape = fullres_median_shape * fullres_spacing / spacing
            n_voxels = float(np.prod(median_shape)) * self.fingerprint.num_cases
            lowres = self.plan_configuration("3d_lowres", spacing, median_shape, n_voxels)

            if np.prod(lowres.patch_size) / np.prod(median_shape) >= LOWRES_PATCH_COVERAGE:
                break

        return lowres

    def plan(self) -> Plans:
        """
        Plan all configurations.

        Returns:
            Plans with "2d", plus "3d_fullres" and (when the fullres patch
            covers less than a quarter of the median image) "3d_lowres"
            for 3D data.
        """
        fp = self.fingerprint
        target_spacing = determine_target_spacing(
            fp.spacings, fp.shapes_after_crop, self.anisotropy_threshold
        )
        new_shapes = [
            compute_new_shape(shape, spacing, target_spacing)
            for shape, spacing in zip(fp.shapes_after_crop, fp.spacings)
        ]
        median_shape = np.median(np.asarray(new_shapes, dtype=float), axis=0)
        n_voxels = float(np.prod(median_shape)) * fp.num_cases
        spatial_dims = len(target_spacing)

        configurations: Dict[str, Configuration] = {}

        if spatial_dims == 3:
            configurations["2d"] = self.plan_configuration(
                "2d", target_spacing[1:], median_shape[1:], n_voxels
            )
            fullres = self.plan_configuration(
                "3d_fullres", target_spacing, median_shape, n_voxels
            )
            configurations["3d_fullres"] = fullres
            lowres = self._plan_lowres(fullres, median_shape)
            if lowres is not None:
                configurations["3d_lowres"] = lowres
        elif spatial_dims == 2:
            configurations["2d"] = self.plan_configuration(
                "2d", target_spacing, median_shape, n_voxels
            )
        else:
            raise ValueError(f"Only 2D and 3D data can be planned, got {spatial_dims}D")

        return Plans(
            dataset_name=self.dataset_name,
            modalities=list(self.modalities),
            labels=list(fp.labels),
            original_median_spacing=[float(s) for s in fp.median_spacing],
            original_median_shape=[float(s) for s in fp.median_shape],
            foreground_intensity_properties=deepcopy(fp.foreground_intensity_properties),
            configurations=configurations,
        )
