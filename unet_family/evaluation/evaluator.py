"""
Batch evaluation of segmentation predictions.

Matches prediction and ground truth files by case id and computes
per-label metrics across the dataset.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from tqdm.auto import tqdm

from ..utils.io import load_nifti, load_npz
from ..utils.naming import case_id_from_filename
from .metrics import compute_metrics

logger = logging.getLogger(__name__)


# Default key search order
PREDICTION_KEYS = ["mask", "prediction", "pred", "segmentation", "label"]
GROUND_TRUTH_KEYS = ["label", "mask", "ground_truth", "gt", "segmentation", "seg"]

SUPPORTED_SUFFIXES = (".npz", ".nii", ".nii.gz")


def _load_label_map(path: Path, priority_keys: List[str]) -> np.ndarray:
    """Load a label map from NPZ (key priority) or NIfTI."""
    if path.name.endswith((".nii", ".nii.gz")):
        data, _, _ = load_nifti(path)
        return np.rint(data).astype(np.int16)
    return load_npz(path, priority_keys=priority_keys)


def _index_by_case(directory: Path, suffixes: Sequence[str] = ("_prediction",)) -> Dict[str, Path]:
    files = sorted(
        p for p in directory.iterdir()
        if p.is_file() and p.name.endswith(SUPPORTED_SUFFIXES)
    )
    # Label maps have no channel suffix, "case_0001.nii.gz" is case "case_0001"
    return {case_id_from_filename(p.name, suffixes, strip_channel=False): p for p in files}


class SegmentationEvaluator:
    """
    Batch evaluator for segmentation predictions.

    Matches prediction files with ground truth files by case id and
    computes metrics per foreground label.
    """

    def __init__(
        self,
        prediction_dir: Union[str, Path],
        ground_truth_dir: Union[str, Path],
        labels: Optional[Sequence[int]] = None,
        spacing: Optional[Sequence[float]] = None,
        compute_distances: bool = False,
    ) -> None:
        """
        Initialize evaluator.

        Args:
            prediction_dir: Directory containing prediction files.
            ground_truth_dir: Directory with ground truth files.
            labels: Labels to score; defaults to those present per case.
            spacing: Voxel spacing for distance metrics.
            compute_distances: Also compute HD95.
        """
        self.prediction_dir = Path(prediction_dir)
        self.ground_truth_dir = Path(ground_truth_dir)
        self.labels = labels
        self.spacing = spacing
        self.compute_distances = compute_distances

    def match_cases(self) -> Dict[str, tuple]:
        """
        Pair prediction and ground truth files.

        Returns:
            Mapping of case id to (prediction_path, ground_truth_path).
        """
        predictions = _index_by_case(self.prediction_dir)
        references = _index_by_case(self.ground_truth_dir)

        missing = sorted(set(predictions) - set(references))
        for case_id in missing:
            logger.warning(f"No ground truth found for {case_id}")

        return {
            case_id: (path, references[case_id])
            for case_id, path in predictions.items()
            if case_id in references
        }

    def evaluate_single(
        self,
        prediction_path: Path,
        ground_truth_path: Path,
    ) -> Dict[int, Dict[str, float]]:
        """
        Evaluate a single prediction-GT pair.

        Args:
            prediction_path: Path to prediction file.
            ground_truth_path: Path to ground truth file.

        Returns:
            Per-label metric dicts.
        """
        pred = _load_label_map(prediction_path, PREDICTION_KEYS)
        gt = _load_label_map(ground_truth_path, GROUND_TRUTH_KEYS)
        gt = np.where(gt < 0, 0, gt)

        return compute_metrics(
            pred,
            gt,
            labels=self.labels,
            spacing=self.spacing,
            compute_distances=self.compute_distances,
        )

    def evaluate_all(self, show_progress: bool = True) -> pd.DataFrame:
        """
        Evaluate all matched cases.

        Args:
            show_progress: Show progress bar.

        Returns:
            DataFrame with one row per case and label.
        """
        pairs = self.match_cases()
        logger.info(f"Found {len(pairs)} prediction/ground truth pairs")

        rows = []
        iterator = pairs.items()
        if show_progress:
            iterator = tqdm(list(iterator), desc="Evaluating")

        for case_id, (pred_path, gt_path) in iterator:
            try:
                per_label = self.evaluate_single(pred_path, gt_path)
            except Exception as e:
                logger.error(f"Error evaluating {case_id}: {e}")
                continue

            for label, metrics in per_label.items():
                rows.append({"case_id": case_id, "label": label, **metrics})

        if not rows:
            logger.warning("No valid evaluations completed")
            return pd.DataFrame()

        return pd.DataFrame(rows)

    @staticmethod
    def compute_summary(df: pd.DataFrame) -> pd.DataFrame:
        """
        Mean of every metric per label.

        Args:
            df: Results DataFrame from evaluate_all().

        Returns:
            Summary DataFrame indexed by label.
        """
        metric_cols = [c for c in df.select_dtypes(include=[np.number]).columns if c != "label"]
        return df.groupby("label")[metric_cols].mean()

    def save_results(
        self,
        df: pd.DataFrame,
        output_path: Union[str, Path],
        include_summary: bool = True,
    ) -> Path:
        """
        Save evaluation results to CSV.

        Summary rows (case_id ``mean``) are appended per label.

        Args:
            df: Results DataFrame.
            output_path: Output CSV path.
            include_summary: Append summary rows.

        Returns:
            Path to saved file.
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        if include_summary and len(df) > 0:
            summary = self.compute_summary(df)
            logger.info(f"Per-label means:\n{summary.to_string()}")

            summary_rows = summary.reset_index()
            summary_rows.insert(0, "case_id", "mean")
            df = pd.concat([df, summary_rows], ignore_index=True)

        df.to_csv(output_path, index=False)
        logger.info(f"Results saved to: {output_path}")

        return output_path


def evaluate_directory(
    prediction_dir: Union[str, Path],
    ground_truth_dir: Union[str, Path],
    output_path: Optional[Union[str, Path]] = None,
    labels: Optional[Sequence[int]] = None,
    show_progress: bool = True,
) -> pd.DataFrame:
    """
    Convenience function to evaluate predictions in a directory.

    Args:
        prediction_dir: Directory with predictions.
        ground_truth_dir: Directory with ground truth.
        output_path: Optional path to save CSV results.
        labels: Labels to score.
        show_progress: Show progress bar.

    Returns:
        DataFrame with evaluation results.
    """
    evaluator = SegmentationEvaluator(
        prediction_dir=prediction_dir,
        ground_truth_dir=ground_truth_dir,
        labels=labels,
    )

    results = evaluator.evaluate_all(show_progress=show_progress)

    if output_path and len(results) > 0:
        evaluator.save_results(results, output_path)

    return results
