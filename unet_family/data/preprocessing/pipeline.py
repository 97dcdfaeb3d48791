"""
Per-case preprocessing driven by plans.

crop to nonzero -> normalize -> resample to the configuration spacing
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from tqdm.auto import tqdm

from ...utils.io import save_npz
from .cropper import crop_to_nonzero
from .normalization import normalize_image
from .resampler import resample_data

logger = logging.getLogger(__name__)


def preprocess_case(
    image: np.ndarray,
    seg: Optional[np.ndarray],
    spacing: Sequence[float],
    configuration,
    intensity_properties: Dict[str, Dict[str, float]],
) -> Tuple[np.ndarray, Optional[np.ndarray], Dict]:
    """
    Preprocess one case for a planned configuration.

    For a 2D configuration on 3D data the in-plane (last two) axes are
    resampled and the first axis is kept.

    Args:
        image: Image of shape (C, *spatial) or (*spatial).
        seg: Optional label map (*spatial).
        spacing: Voxel spacing of the image.
        configuration: Planned ``Configuration``.
        intensity_properties: ``Plans.foreground_intensity_properties``.

    Returns:
        Tuple of (image, seg or None, properties). Properties record the
        original shape, spacing, crop bbox and shape after cropping so
        predictions can be mapped back.
    """
    spacing = [float(s) for s in spacing]
    image = np.asarray(image)
    if image.ndim == len(spacing):
        image = image[None]

    properties = {
        "original_shape": list(image.shape[1:]),
        "original_spacing": spacing,
    }

    image, cropped_seg, bbox = crop_to_nonzero(image, seg)
    properties["bbox"] = [[s.start, s.stop] for s in bbox]
    properties["shape_after_crop"] = list(image.shape[1:])

    image = normalize_image(
        image,
        configuration.normalization_schemes,
        configuration.use_mask_for_norm,
        intensity_properties,
        seg=cropped_seg,
    )

    target_spacing = list(configuration.spacing)
    if len(target_spacing) < len(spacing):
        # 2D configuration on 3D data: keep the slice axis
        target_spacing = spacing[: len(spacing) - len(target_spacing)] + target_spacing

    image = resample_data(
        image,
        spacing,
        target_spacing,
        is_seg=False,
        anisotropy_threshold=configuration.anisotropy_threshold,
    )
    properties["target_spacing"] = target_spacing
    properties["shape_after_resampling"] = list(image.shape[1:])

    out_seg = None
    if seg is not None:
        out_seg = resample_data(
            cropped_seg[None],
            spacing,
            target_spacing,
            is_seg=True,
            new_shape=image.shape[1:],
            anisotropy_threshold=configuration.anisotropy_threshold,
        )[0]

    return image, out_seg, properties


def preprocess_dataset(
    case_ids: List[str],
    cases: List[Tuple[np.ndarray, np.ndarray, Sequence[float]]],
    output_dir: Union[str, Path],
    plans,
    configuration_name: str,
    show_progress: bool = True,
) -> List[Path]:
    """
    Preprocess every case and write ``<case>.npz`` files.

    Each file holds ``image`` (C, *spatial), ``label`` (*spatial) and
    ``spacing``. Failing cases are logged and skipped.

    Args:
        case_ids: Case identifiers.
        cases: (image, seg, spacing) tuples, e.g. from ``load_raw_cases``.
        output_dir: Output directory.
        plans: ``Plans`` object.
        configuration_name: Configuration to preprocess for.
        show_progress: Show progress bar.

    Returns:
        List of written paths.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    configuration = plans.get_configuration(configuration_name)

    logger.info(f"Preprocessing {len(cases)} cases for '{configuration_name}' into {output_dir}")

    iterator = zip(case_ids, cases)
    if show_progress:
        iterator = tqdm(list(iterator), desc="Preprocess")

    written = []
    for case_id, (image, seg, spacing) in iterator:
        try:
            image_p, seg_p, props = preprocess_case(
                image, seg, spacing, configuration, plans.foreground_intensity_properties
            )
            path = save_npz(
                output_dir / f"{case_id}.npz",
                image=image_p.astype(np.float32),
                label=seg_p.astype(np.int16) if seg_p is not None else None,
                spacing=np.asarray(props["target_spacing"], dtype=np.float32),
            )
            logger.debug(
                f"{case_id}: {props['original_shape']} -> {props['shape_after_resampling']}"
            )
            written.append(path)

        except Exception as e:
            logger.error(f"Failed on {case_id}: {e}")

    logger.info(f"Successfully preprocessed {len(written)}/{len(cases)} cases")
    return written
