#!/usr/bin/env python3
"""
Sliding window inference script.

Inputs are preprocessed NPZ files (see unet-family-preprocess).

Usage:
    unet-family-predict --input ./preprocessed --checkpoint results/run/checkpoints/best.pt --output ./predictions
    unet-family-predict --input case_001.npz --checkpoint best.pt --config config.yaml
"""

import argparse
import logging
from pathlib import Path

import torch

from unet_family.configs.config import Config
from unet_family.inference.predictor import SlidingWindowPredictor

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run sliding window inference")

    parser.add_argument(
        "--input",
        type=Path,
        required=True,
        help="Input NPZ file or directory",
    )
    parser.add_argument(
        "--checkpoint",
        type=Path,
        required=True,
        help="Checkpoint written by unet-family-train",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="YAML config for inference settings (default: built-in defaults)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help="Output directory (default: <input>/predictions)",
    )
    parser.add_argument(
        "--patch-size",
        type=int,
        nargs="+",
        help="Patch size for the sliding window",
    )
    parser.add_argument(
        "--step-size",
        type=float,
        help="Patch step as a fraction of the patch size",
    )
    parser.add_argument(
        "--mirror",
        action="store_true",
        help="Enable test-time mirroring",
    )
    parser.add_argument(
        "--save-probabilities",
        action="store_true",
        help="Store class probabilities alongside the mask",
    )
    parser.add_argument(
        "--device",
        default="cuda",
        help="Device to run on",
    )

    return parser.parse_args(argv)


def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = parse_args(argv)

    if not args.input.exists():
        logger.error(f"Input not found: {args.input}")
        return 1

    if not args.checkpoint.exists():
        logger.error(f"Checkpoint not found: {args.checkpoint}")
        return 1

    config = Config.from_yaml(args.config) if args.config else Config()
    inference = config.inference
    if args.step_size:
        inference.step_size = args.step_size
    if args.mirror:
        inference.use_mirroring = True

    device = torch.device(args.device if torch.cuda.is_available() else "cpu")
    logger.info(f"Using device: {device}")

    # Explicit --patch-size wins, then the plans stored with the model, then the config
    predictor = SlidingWindowPredictor.from_checkpoint(
        args.checkpoint,
        device=device,
        patch_size=tuple(args.patch_size) if args.patch_size else None,
        default_patch_size=inference.patch_size,
        step_size=inference.step_size,
        use_gaussian=inference.use_gaussian,
        use_mirroring=inference.use_mirroring,
        keep_largest_component=inference.keep_largest_component,
    )

    if args.input.is_file():
        output_path = None
        if args.output:
            output_path = args.output / f"{args.input.stem}_prediction.npz"
        result = predictor.predict_file(
            args.input, output_path=output_path, save_probabilities=args.save_probabilities
        )
        logger.info(f"Saved prediction: {result}")
        return 0

    output_dir = args.output if args.output else args.input / "predictions"
    results = predictor.predict_batch(
        args.input,
        output_dir=output_dir,
        save_probabilities=args.save_probabilities,
        show_progress=True,
    )

    logger.info(f"Completed {len(results)} predictions")
    logger.info(f"Saved to: {output_dir}")
    return 0 if results else 1


if __name__ == "__main__":
    raise SystemExit(main())
