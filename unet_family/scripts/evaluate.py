#!/usr/bin/env python3
"""
Evaluation script for segmentation predictions.

Usage:
    unet-family-evaluate --predictions ./predictions --ground-truth ./preprocessed
    unet-family-evaluate --predictions ./predictions --ground-truth ./labelsTr --output metrics.csv
"""

import argparse
import logging
from pathlib import Path

from unet_family.evaluation.evaluator import SegmentationEvaluator

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Evaluate segmentation predictions")

    parser.add_argument(
        "--predictions",
        type=Path,
        required=True,
        help="Directory containing <case>_prediction.npz files",
    )
    parser.add_argument(
        "--ground-truth",
        type=Path,
        required=True,
        help="Directory containing ground truth NPZ or NIfTI files",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help="Output CSV path (default: predictions/evaluation_metrics.csv)",
    )
    parser.add_argument(
        "--labels",
        type=int,
        nargs="+",
        help="Labels to evaluate (default: all present)",
    )
    parser.add_argument(
        "--spacing",
        type=float,
        nargs="+",
        help="Voxel spacing for distance metrics",
    )
    parser.add_argument(
        "--hd95",
        action="store_true",
        help="Also compute the 95th percentile Hausdorff distance",
    )

    return parser.parse_args(argv)


def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = parse_args(argv)

    for directory in (args.predictions, args.ground_truth):
        if not directory.exists():
            logger.error(f"Directory not found: {directory}")
            return 1

    evaluator = SegmentationEvaluator(
        prediction_dir=args.predictions,
        ground_truth_dir=args.ground_truth,
        labels=args.labels,
        spacing=args.spacing,
        compute_distances=args.hd95,
    )

    logger.info("Running evaluation...")
    results = evaluator.evaluate_all(show_progress=True)

    if len(results) == 0:
        logger.warning("No valid evaluations completed")
        return 1

    logger.info(f"Evaluated {results['case_id'].nunique()} cases")

    output_path = args.output or (args.predictions / "evaluation_metrics.csv")
    evaluator.save_results(results, output_path, include_summary=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
