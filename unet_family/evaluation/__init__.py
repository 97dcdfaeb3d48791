"""Evaluation metrics and tools."""

from .evaluator import SegmentationEvaluator, evaluate_directory
from .metrics import (
    compute_metrics,
    dice_score,
    hausdorff_95,
    iou_score,
    precision_score,
    recall_score,
)

__all__ = [
    "SegmentationEvaluator",
    "compute_metrics",
    "dice_score",
    "evaluate_directory",
    "hausdorff_95",
    "iou_score",
    "precision_score",
    "recall_score",
]
