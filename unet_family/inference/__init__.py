"""Inference pipeline components."""

from .postprocessing import (
    fill_holes,
    keep_largest_component,
    postprocess_segmentation,
    remove_small_components,
)
from .predictor import SlidingWindowPredictor, compute_steps, gaussian_importance_map

__all__ = [
    "SlidingWindowPredictor",
    "compute_steps",
    "fill_holes",
    "gaussian_importance_map",
    "keep_largest_component",
    "postprocess_segmentation",
    "remove_small_components",
]
