"""
Dataset fingerprint extraction.

The fingerprint is the set of dataset properties that nnU-Net-style
planning derives every design choice from: voxel spacings, image shapes
after cropping, foreground intensity statistics per channel and the
label set.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
from tqdm.auto import tqdm

from ..data.preprocessing.cropper import crop_to_nonzero
from ..utils.io import load_nifti, load_npz_case
from ..utils.naming import group_channel_files

logger = logging.getLogger(__name__)

INTENSITY_KEYS = (
    "mean",
    "median",
    "std",
    "min",
    "max",
    "percentile_99_5",
    "percentile_00_5",
)


@dataclass
class CaseFingerprint:
    """Properties of a single training case."""

    spacing: List[float]
    shape_before_crop: List[int]
    shape_after_crop: List[int]
    foreground_samples: List[np.ndarray]
    labels: List[int]

    @property
    def relative_size_after_cropping(self) -> float:
        return float(np.prod(self.shape_after_crop) / np.prod(self.shape_before_crop))


def _ensure_channel_axis(image: np.ndarray, n_spatial: int) -> np.ndarray:
    if image.ndim == n_spatial:
        return image[None]
    if image.ndim == n_spatial + 1:
        return image
    raise ValueError(
        f"Image has {image.ndim} dims but spacing has {n_spatial} entries"
    )


def compute_case_fingerprint(
    image: np.ndarray,
    seg: np.ndarray,
    spacing: Sequence[float],
    num_samples: int = 10000,
    seed: int = 1234,
) -> CaseFingerprint:
    """
    Fingerprint one case.

    Args:
        image: Image of shape (C, *spatial) or (*spatial).
        seg: Label map of shape (*spatial); foreground is seg > 0.
        spacing: Voxel spacing per spatial axis.
        num_samples: Foreground intensities sampled per channel
            (with replacement).
        seed: Seed for the sampling generator.

    Returns:
        CaseFingerprint.
    """
    spacing = [float(s) for s in spacing]
    image = _ensure_channel_axis(np.asarray(image), len(spacing))
    seg = np.asarray(seg)

    if image.shape[1:] != seg.shape:
        raise ValueError(
            f"Image spatial shape {image.shape[1:]} does not match seg shape {seg.shape}"
        )

    shape_before = list(image.shape[1:])
    cropped_image, cropped_seg, _ = crop_to_nonzero(image, seg)

    rng = np.random.default_rng(seed)
    foreground = cropped_seg > 0
    samples = []
    for channel in cropped_image:
        values = channel[foreground]
        if values.size == 0:
            samples.append(np.empty(0, dtype=np.float32))
        else:
            samples.append(rng.choice(values, num_samples, replace=True).astype(np.float32))

    labels = [int(v) for v in np.unique(cropped_seg) if v >= 0]

    return CaseFingerprint(
        spacing=spacing,
        shape_before_crop=shape_before,
        shape_after_crop=list(cropped_image.shape[1:]),
        foreground_samples=samples,
        labels=labels,
    )


def _intensity_statistics(values: np.ndarray) -> Dict[str, float]:
    if values.size == 0:
        logger.warning("No foreground voxels found; intensity statistics are NaN")
        return {k: float("nan") for k in INTENSITY_KEYS}

    return {
        "mean": float(np.mean(values)),
        "median": float(np.median(values)),
        "std": float(np.std(values)),
        "min": float(np.min(values)),
        "max": float(np.max(values)),
        "percentile_99_5": float(np.percentile(values, 99.5)),
        "percentile_00_5": float(np.percentile(values, 0.5)),
    }


@dataclass
class DatasetFingerprint:
    """Aggregated properties of a whole dataset."""

    spacings: List[List[float]]
    shapes_after_crop: List[List[int]]
    foreground_intensity_properties: Dict[str, Dict[str, float]]
    labels: List[int]
    median_relative_size_after_cropping: float
    case_ids: List[str] = field(default_factory=list)

    @property
    def num_cases(self) -> int:
        return len(self.spacings)

    @property
    def num_channels(self) -> int:
        return len(self.foreground_intensity_properties)

    @property
    def median_spacing(self) -> np.ndarray:
        return np.median(np.array(self.spacings), axis=0)

    @property
    def median_shape(self) -> np.ndarray:
        return np.median(np.array(self.shapes_after_crop), axis=0)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "DatasetFingerprint":
        return cls(**data)

    def save(self, path: Union[str, Path]) -> Path:
        """Save fingerprint as JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        return path

    @classmethod
    def load(cls, path: Union[str, Path]) -> "DatasetFingerprint":
        """Load a fingerprint written by ``save``."""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))


def extract_dataset_fingerprint(
    cases: Iterable[Tuple[np.ndarray, np.ndarray, Sequence[float]]],
    num_samples: int = 10000,
    case_ids: Optional[List[str]] = None,
    show_progress: bool = False,
) -> DatasetFingerprint:
    """
    Aggregate case fingerprints into a dataset fingerprint.

    Args:
        cases: Iterable of (image, seg, spacing) tuples.
        num_samples: Total foreground samples per channel, spread over cases.
        case_ids: Optional identifiers, stored for reference.
        show_progress: Show progress bar.

    Returns:
        DatasetFingerprint.

    Raises:
        ValueError: If no cases are given or channel counts differ.
    """
    cases = list(cases)
    if not cases:
        raise ValueError("Cannot fingerprint an empty dataset")

    per_case_samples = max(1, num_samples // len(cases))

    iterator = cases
    if show_progress:
        iterator = tqdm(cases, desc="Fingerprint")

    fingerprints = []
    for image, seg, spacing in iterator:
        fingerprints.append(
            compute_case_fingerprint(image, seg, spacing, num_samples=per_case_samples)
        )

    num_channels = {len(fp.foreground_samples) for fp in fingerprints}
    if len(num_channels) != 1:
        raise ValueError(f"Cases have differing channel counts: {sorted(num_channels)}")

    intensity = {}
    for c in range(num_channels.pop()):
        values = np.concatenate([fp.foreground_samples[c] for fp in fingerprints])
        intensity[str(c)] = _intensity_statistics(values)

    labels = sorted({label for fp in fingerprints for label in fp.labels})

    fingerprint = DatasetFingerprint(
        spacings=[fp.spacing for fp in fingerprints],
        shapes_after_crop=[fp.shape_after_crop for fp in fingerprints],
        foreground_intensity_properties=intensity,
        labels=labels,
        median_relative_size_after_cropping=float(
            np.median([fp.relative_size_after_cropping for fp in fingerprints])
        ),
        case_ids=list(case_ids) if case_ids else [],
    )

    logger.info(
        f"Fingerprint: {fingerprint.num_cases} cases, "
        f"median spacing {fingerprint.median_spacing.tolist()}, "
        f"median shape {fingerprint.median_shape.tolist()}, labels {labels}"
    )
    return fingerprint


def load_raw_cases(
    data_dir: Union[str, Path],
) -> Tuple[List[str], List[Tuple[np.ndarray, np.ndarray, Tuple[float, ...]]]]:
    """
    Load all cases of a raw dataset directory.

    Two layouts are recognized:
      - NIfTI: ``imagesTr/<case>_<XXXX>.nii.gz`` with ``labelsTr/<case>.nii.gz``
      - NPZ: ``*.npz`` files holding ``image``, ``label`` and ``spacing``

    Args:
        data_dir: Dataset directory.

    Returns:
        Tuple of (case ids, list of (image, seg, spacing)).

    Raises:
        FileNotFoundError: If neither layout is found.
    """
    data_dir = Path(data_dir)
    images_dir = data_dir / "imagesTr"
    labels_dir = data_dir / "labelsTr"

    case_ids = []
    cases = []

    if images_dir.is_dir():
        groups = group_channel_files(
            list(images_dir.glob("*.nii.gz")) + list(images_dir.glob("*.nii"))
        )
        for case_id, files in groups.items():
            label_path = labels_dir / f"{case_id}.nii.gz"
            if not label_path.exists():
                label_path = labels_dir / f"{case_id}.nii"
            if not label_path.exists():
                logger.warning(f"No label for {case_id}, skipping")
                continue

            channels = []
            spacing = None
            for f in files:
                data, spacing, _ = load_nifti(f)
                channels.append(data.astype(np.float32))
            seg, _, _ = load_nifti(label_path)

            case_ids.append(case_id)
            cases.append((np.stack(channels), seg.astype(np.int16), spacing))

    else:
        for path in sorted(data_dir.glob("*.npz")):
            image, label, spacing = load_npz_case(path)
            if label is None or spacing is None:
                logger.warning(f"{path.name} lacks label or spacing, skipping")
                continue
            case_ids.append(path.stem)
            cases.append((image, label, tuple(float(s) for s in spacing)))

    if not cases:
        raise FileNotFoundError(f"No usable cases found in {data_dir}")

    logger.info(f"Loaded {len(cases)} cases from {data_dir}")
    return case_ids, cases


def extract_fingerprint_from_directory(
    data_dir: Union[str, Path],
    num_samples: int = 10000,
    show_progress: bool = True,
) -> DatasetFingerprint:
    """Load a raw dataset directory and fingerprint it."""
    case_ids, cases = load_raw_cases(data_dir)
    return extract_dataset_fingerprint(
        cases,
        num_samples=num_samples,
        case_ids=case_ids,
        show_progress=show_progress,
    )
