"""
Segmentation evaluation metrics.

Includes overlap metrics (Dice, IoU, precision, recall) and the 95th
percentile Hausdorff distance. Overlap metrics score two empty masks as a
perfect match (1.0).
"""

from typing import Dict, Optional, Sequence

import numpy as np
from scipy.ndimage import binary_erosion, generate_binary_structure
from scipy.spatial import cKDTree


def _confusion(prediction: np.ndarray, ground_truth: np.ndarray):
    pred = prediction.astype(bool)
    gt = ground_truth.astype(bool)
    tp = int(np.logical_and(pred, gt).sum())
    fp = int(np.logical_and(pred, ~gt).sum())
    fn = int(np.logical_and(~pred, gt).sum())
    return tp, fp, fn


def _ratio(numerator: float, denominator: float, both_empty: bool) -> float:
    if denominator == 0:
        return 1.0 if both_empty else 0.0
    return float(numerator / denominator)


def dice_score(prediction: np.ndarray, ground_truth: np.ndarray) -> float:
    """
    Compute Dice coefficient (F1 score).

    Args:
        prediction: Binary prediction mask.
        ground_truth: Binary ground truth mask.

    Returns:
        Dice score in range [0, 1]; 1.0 when both masks are empty.
    """
    tp, fp, fn = _confusion(prediction, ground_truth)
    return _ratio(2 * tp, 2 * tp + fp + fn, tp + fp + fn == 0)


def iou_score(prediction: np.ndarray, ground_truth: np.ndarray) -> float:
    """Intersection over Union (Jaccard index); 1.0 when both masks are empty."""
    tp, fp, fn = _confusion(prediction, ground_truth)
    return _ratio(tp, tp + fp + fn, tp + fp + fn == 0)


def precision_score(prediction: np.ndarray, ground_truth: np.ndarray) -> float:
    """Positive predictive value; 1.0 when both masks are empty."""
    tp, fp, fn = _confusion(prediction, ground_truth)
    return _ratio(tp, tp + fp, tp + fp + fn == 0)


def recall_score(prediction: np.ndarray, ground_truth: np.ndarray) -> float:
    """Sensitivity; 1.0 when both masks are empty."""
    tp, fp, fn = _confusion(prediction, ground_truth)
    return _ratio(tp, tp + fn, tp + fp + fn == 0)


def hausdorff_95(
    prediction: np.ndarray,
    ground_truth: np.ndarray,
    spacing: Optional[Sequence[float]] = None,
) -> float:
    """
    Compute 95th percentile Hausdorff Distance.

    Uses KDTree for efficient nearest-neighbor computation.

    Args:
        prediction: Binary prediction mask (2D or 3D).
        ground_truth: Binary ground truth mask.
        spacing: Voxel spacing per axis; defaults to 1.

    Returns:
        HD95 in spacing units, 0.0 if both masks are empty, NaN if only
        one is.
    """
    pred = prediction.astype(bool)
    gt = ground_truth.astype(bool)

    if not pred.any() and not gt.any():
        return 0.0
    if not pred.any() or not gt.any():
        return np.nan

    spacing = np.ones(pred.ndim) if spacing is None else np.asarray(spacing, dtype=float)

    struct = generate_binary_structure(pred.ndim, 1)
    pred_border = pred ^ binary_erosion(pred, structure=struct)
    gt_border = gt ^ binary_erosion(gt, structure=struct)

    pred_coords = np.argwhere(pred_border) * spacing
    gt_coords = np.argwhere(gt_border) * spacing

    dist_gt_to_pred, _ = cKDTree(pred_coords).query(gt_coords)
    dist_pred_to_gt, _ = cKDTree(gt_coords).query(pred_coords)

    return float(max(np.percentile(dist_gt_to_pred, 95), np.percentile(dist_pred_to_gt, 95)))


def compute_metrics(
    prediction: np.ndarray,
    ground_truth: np.ndarray,
    labels: Optional[Sequence[int]] = None,
    spacing: Optional[Sequence[float]] = None,
    compute_distances: bool = False,
) -> Dict[int, Dict[str, float]]:
    """
    Compute segmentation metrics for every foreground label.

    Args:
        prediction: Predicted label map.
        ground_truth: Ground truth label map of the same shape.
        labels: Labels to score; defaults to every nonzero label present in
            either map.
        spacing: Voxel spacing for distance metrics.
        compute_distances: Also compute HD95 (slower).

    Returns:
        Mapping of label to a dict of metric values.

    Raises:
        ValueError: If the shapes differ.
    """
    if prediction.shape != ground_truth.shape:
        raise ValueError(f"Shape mismatch: pred {prediction.shape} vs gt {ground_truth.shape}")

    if labels is None:
        present = np.union1d(np.unique(prediction), np.unique(ground_truth))
        labels = [int(v) for v in present if v > 0]

    results = {}
    for label in labels:
        pred = prediction == label
        gt = ground_truth == label
        metrics = {
            "dice": dice_score(pred, gt),
            "iou": iou_score(pred, gt),
            "precision": precision_score(pred, gt),
            "recall": recall_score(pred, gt),
            "n_pred": int(pred.sum()),
            "n_ref": int(gt.sum()),
        }
        if compute_distances:
            metrics["hd95"] = hausdorff_95(pred, gt, spacing)
        results[int(label)] = metrics

    return results
