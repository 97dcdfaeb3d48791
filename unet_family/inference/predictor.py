"""
Sliding window inference for 2D and 3D segmentation networks.

Patches are placed so that they cover the whole image with a fixed
relative overlap, their softmax outputs are weighted by a Gaussian
importance map and averaged.
"""

import itertools
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import torch
from scipy.ndimage import gaussian_filter
from torch import nn
from tqdm.auto import tqdm

from ..configs.config import ModelConfig
from ..models.factory import create_model
from ..planning.plans import Plans
from ..utils.io import load_npz_case, save_npz
from ..utils.naming import case_id_from_filename
from ..utils.volume_ops import pad_to_minimum, remove_padding
from .postprocessing import postprocess_segmentation

logger = logging.getLogger(__name__)


def compute_steps(
    image_size: Sequence[int],
    patch_size: Sequence[int],
    step_size: float,
) -> List[List[int]]:
    """
    Patch start positions per axis.

    Starts are evenly spaced between 0 and ``size - patch`` with at most
    ``step_size * patch`` voxels between neighbours.

    Args:
        image_size: Spatial image size, at least patch_size on every axis.
        patch_size: Spatial patch size.
        step_size: Step as a fraction of the patch size, in (0, 1].

    Returns:
        One list of start indices per axis.
    """
    if not 0 < step_size <= 1:
        raise ValueError(f"step_size must be in (0, 1], got {step_size}")
    if any(i < p for i, p in zip(image_size, patch_size)):
        raise ValueError(f"Image {tuple(image_size)} is smaller than patch {tuple(patch_size)}")

    steps = []
    for size, patch in zip(image_size, patch_size):
        target_step = patch * step_size
        num_steps = int(np.ceil((size - patch) / target_step)) + 1
        max_start = size - patch
        actual_step = max_start / (num_steps - 1) if num_steps > 1 else 0
        steps.append([int(np.round(actual_step * i)) for i in range(num_steps)])

    return steps


def gaussian_importance_map(
    patch_size: Sequence[int],
    sigma_scale: float = 1.0 / 8,
) -> np.ndarray:
    """
    Gaussian weight map centred in the patch.

    Normalized to a maximum of 1; zeros are replaced by the smallest nonzero
    value so that no voxel ends up without weight.
    """
    tmp = np.zeros(patch_size, dtype=np.float64)
    tmp[tuple(p // 2 for p in patch_size)] = 1
    sigmas = [p * sigma_scale for p in patch_size]

    gaussian = gaussian_filter(tmp, sigmas, 0, mode="constant", cval=0)
    gaussian = gaussian / gaussian.max()
    gaussian[gaussian == 0] = gaussian[gaussian != 0].min()

    return gaussian.astype(np.float32)


def _planned_patch_size(model_config: Optional[dict]) -> Optional[Tuple[int, ...]]:
    """Patch size of the planned configuration a model was trained with, if any."""
    if not model_config or not model_config.get("plans_path"):
        return None
    plans = Plans.load(model_config["plans_path"])
    name = model_config.get("plans_configuration", "3d_fullres")
    return tuple(plans.get_configuration(name).patch_size)


class SlidingWindowPredictor:
    """
    Sliding window predictor.

    Handles:
    - Gaussian weighted patch aggregation
    - Padding for images smaller than the patch
    - Test-time mirroring
    - 2D networks on 3D volumes (slice by slice)
    - Batch inference over directories
    """

    def __init__(
        self,
        model: nn.Module,
        patch_size: Sequence[int],
        num_classes: Optional[int] = None,
        step_size: float = 0.5,
        use_gaussian: bool = True,
        use_mirroring: bool = False,
        device: Union[str, torch.device] = "cuda",
        keep_largest_component: bool = False,
    ) -> None:
        """
        Initialize predictor.

        Args:
            model: Trained segmentation model.
            patch_size: Spatial patch size; must suit the network.
            num_classes: Output channels; taken from the first prediction
                when None.
            step_size: Patch step as a fraction of the patch size.
            use_gaussian: Weight patches with a Gaussian importance map.
            use_mirroring: Average predictions over mirrored inputs.
            device: Device to run inference on.
            keep_largest_component: Keep the largest component per label.
        """
        self.device = torch.device(device)
        self.model = model.to(self.device)
        self.model.eval()

        self.patch_size = tuple(int(p) for p in patch_size)
        self.num_classes = num_classes
        self.step_size = step_size
        self.use_gaussian = use_gaussian
        self.use_mirroring = use_mirroring
        self.keep_largest_component = keep_largest_component

        if use_gaussian:
            self.importance_map = torch.from_numpy(gaussian_importance_map(self.patch_size))
        else:
            self.importance_map = torch.ones(self.patch_size)

    @classmethod
    def from_checkpoint(
        cls,
        checkpoint_path: Union[str, Path],
        model: Optional[nn.Module] = None,
        device: str = "cuda",
        patch_size: Optional[Sequence[int]] = None,
        default_patch_size: Optional[Sequence[int]] = None,
        **kwargs,
    ) -> "SlidingWindowPredictor":
        """
        Create predictor from a checkpoint written by ``Trainer``.

        Args:
            checkpoint_path: Path to checkpoint file.
            model: Model architecture; rebuilt from the stored model config
                when None.
            device: Device to load model on.
            patch_size: Window size. Taken from the plans referenced by the
                stored model config when None.
            default_patch_size: Used when neither patch_size nor plans give one.
            **kwargs: Additional arguments for SlidingWindowPredictor.

        Returns:
            Initialized predictor.

        Raises:
            KeyError: If the model must be rebuilt and no model config is stored.
            ValueError: If no patch size can be determined.
        """
        checkpoint = torch.load(checkpoint_path, map_location=device, weights_only=False)

        if model is None:
            if not checkpoint.get("model_config"):
                raise KeyError(f"No model_config in {checkpoint_path}; pass a model")
            model = create_model(ModelConfig(**checkpoint["model_config"]))

        if "model_state" in checkpoint:
            model.load_state_dict(checkpoint["model_state"])
        else:
            model.load_state_dict(checkpoint)

        if patch_size is None:
            patch_size = _planned_patch_size(checkpoint.get("model_config")) or default_patch_size
        if patch_size is None:
            raise ValueError(f"No patch size given and {checkpoint_path} references no plans")

        return cls(model, patch_size=patch_size, device=device, **kwargs)

    def _mirror_axes(self, n_spatial: int) -> List[Tuple[int, ...]]:
        """Flip axis combinations on a (B, C, *spatial) tensor, identity first."""
        if not self.use_mirroring:
            return [()]
        axes = [a + 2 for a in range(n_spatial)]
        return [
            combo
            for r in range(len(axes) + 1)
            for combo in itertools.combinations(axes, r)
        ]

    @torch.no_grad()
    def _predict_patch(self, patch: torch.Tensor) -> torch.Tensor:
        """Softmax probabilities for one (1, C, *patch) tensor, mirror-averaged."""
        flips = self._mirror_axes(patch.dim() - 2)
        total = None
        for axes in flips:
            x = torch.flip(patch, axes) if axes else patch
            with torch.autocast(device_type=self.device.type, enabled=self.device.type == "cuda"):
                logits = self.model(x)
            if isinstance(logits, (list, tuple)):
                logits = logits[0]
            logits = logits.float()

            if tuple(logits.shape[2:]) != tuple(patch.shape[2:]):
                raise ValueError(
                    f"Network output {tuple(logits.shape[2:])} does not match patch "
                    f"{tuple(patch.shape[2:])}; sliding window needs same-size outputs"
                )

            if logits.shape[1] == 1:
                fg = torch.sigmoid(logits)
                probs = torch.cat([1 - fg, fg], dim=1)
            else:
                probs = torch.softmax(logits, dim=1)
            if axes:
                probs = torch.flip(probs, axes)
            total = probs if total is None else total + probs

        return total / len(flips)

    def predict_probabilities(self, image: np.ndarray) -> np.ndarray:
        """
        Run sliding window inference on one image.

        Args:
            image: Preprocessed image (C, *spatial) or (*spatial). A 2D
                patch size on a (C, D, H, W) image predicts each slice of D.

        Returns:
            Class probabilities (num_classes, *spatial).
        """
        image = np.asarray(image, dtype=np.float32)
        n_dims = len(self.patch_size)
        if image.ndim == n_dims:
            image = image[None]

        if image.ndim == n_dims + 2:
            slices = [self.predict_probabilities(image[:, z]) for z in range(image.shape[1])]
            return np.stack(slices, axis=1)

        if image.ndim != n_dims + 1:
            raise ValueError(
                f"Expected image with {n_dims} spatial dims (plus channel), got {image.shape}"
            )

        original_shape = image.shape[1:]
        padded = pad_to_minimum(image, self.patch_size)
        spatial = padded.shape[1:]

        steps = compute_steps(spatial, self.patch_size, self.step_size)
        data = torch.from_numpy(padded).to(self.device)
        weight = self.importance_map.to(self.device)

        accumulated = None
        counts = torch.zeros(spatial, dtype=torch.float32, device=self.device)

        for starts in itertools.product(*steps):
            region = tuple(slice(s, s + p) for s, p in zip(starts, self.patch_size))
            probs = self._predict_patch(data[(slice(None),) + region][None])[0]

            if accumulated is None:
                num_classes = self.num_classes or probs.shape[0]
                accumulated = torch.zeros(
                    (num_classes,) + tuple(spatial), dtype=torch.float32, device=self.device
                )
            accumulated[(slice(None),) + region] += probs * weight
            counts[region] += weight

        probabilities = (accumulated / counts).cpu().numpy()
        if tuple(spatial) != tuple(original_shape):
            probabilities = remove_padding(probabilities, original_shape)
        return probabilities

    def predict_single(
        self,
        image: np.ndarray,
        return_probabilities: bool = False,
    ) -> Union[np.ndarray, Tuple[np.ndarray, np.ndarray]]:
        """
        Predict a label map for one image.

        Args:
            image: Preprocessed image (C, *spatial) or (*spatial).
            return_probabilities: If True, also return probabilities.

        Returns:
            Label map, or (label map, probabilities).
        """
        probabilities = self.predict_probabilities(image)
        segmentation = probabilities.argmax(axis=0).astype(np.uint8)

        if self.keep_largest_component:
            segmentation = postprocess_segmentation(segmentation, keep_largest=True)

        if return_probabilities:
            return segmentation, probabilities
        return segmentation

    def predict_file(
        self,
        input_path: Union[str, Path],
        output_path: Optional[Union[str, Path]] = None,
        save_probabilities: bool = False,
    ) -> Path:
        """
        Predict on a single preprocessed NPZ file.

        Args:
            input_path: Path to input NPZ file.
            output_path: Optional output path. If None, creates
                ``<case>_prediction.npz`` next to the input.
            save_probabilities: Save probabilities alongside the mask.

        Returns:
            Output path.
        """
        input_path = Path(input_path)

        if output_path is None:
            output_path = input_path.parent / f"{case_id_from_filename(input_path.name)}_prediction.npz"
        output_path = Path(output_path)

        image, _, spacing = load_npz_case(input_path)
        mask, probabilities = self.predict_single(image, return_probabilities=True)

        save_npz(
            output_path,
            mask=mask,
            probabilities=probabilities.astype(np.float16) if save_probabilities else None,
            spacing=spacing,
        )

        logger.info(f"Saved prediction: {output_path.name}")
        return output_path

    def predict_batch(
        self,
        input_dir: Union[str, Path],
        output_dir: Optional[Union[str, Path]] = None,
        pattern: str = "*.npz",
        exclude_pattern: str = "prediction",
        save_probabilities: bool = False,
        show_progress: bool = True,
    ) -> List[Path]:
        """
        Batch predict on all files in a directory.

        Failing files are logged and skipped.

        Args:
            input_dir: Input directory.
            output_dir: Output directory. If None, saves alongside inputs.
            pattern: Glob pattern for input files.
            exclude_pattern: Skip files containing this string.
            save_probabilities: Save probability maps.
            show_progress: Show progress bar.

        Returns:
            List of successfully written output paths.
        """
        input_dir = Path(input_dir)
        output_dir = Path(output_dir) if output_dir else None

        if output_dir:
            output_dir.mkdir(parents=True, exist_ok=True)

        input_files = sorted(f for f in input_dir.glob(pattern) if exclude_pattern not in f.name)

        logger.info(f"Found {len(input_files)} files to process")

        results = []
        iterator = input_files
        if show_progress:
            iterator = tqdm(input_files, desc="Inference")

        for input_path in iterator:
            output_path = None
            if output_dir:
                output_path = output_dir / f"{case_id_from_filename(input_path.name)}_prediction.npz"

            try:
                results.append(
                    self.predict_file(input_path, output_path, save_probabilities=save_probabilities)
                )
            except Exception as e:
                logger.error(f"Error processing {input_path.name}: {e}")

        logger.info(f"Processed {len(results)}/{len(input_files)} files")
        return results
