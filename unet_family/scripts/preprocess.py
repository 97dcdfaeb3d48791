#!/usr/bin/env python3
"""
Data preprocessing script.

Crops, normalizes and resamples a raw dataset for one planned
configuration, writing training-ready NPZ files.

Usage:
    unet-family-preprocess --input ./Dataset001_Liver --plans ./plans/plans.json --output ./preprocessed/3d_fullres
    unet-family-preprocess --input ./Dataset001_Liver --plans ./plans/plans.json --configuration 2d --output ./preprocessed/2d
"""

import argparse
import logging
from pathlib import Path

from unet_family.data.preprocessing.pipeline import preprocess_dataset
from unet_family.planning.fingerprint import load_raw_cases
from unet_family.planning.plans import Plans

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Preprocess a raw dataset")

    parser.add_argument(
        "--input",
        type=Path,
        required=True,
        help="Raw dataset directory (imagesTr/labelsTr NIfTI or NPZ cases)",
    )
    parser.add_argument(
        "--plans",
        type=Path,
        required=True,
        help="Plans file written by unet-family-plan",
    )
    parser.add_argument(
        "--output",
        type=Path,
        required=True,
        help="Output directory for NPZ files",
    )
    parser.add_argument(
        "--configuration",
        default="3d_fullres",
        help="Planned configuration to preprocess for",
    )

    return parser.parse_args(argv)


def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = parse_args(argv)

    if not args.input.exists():
        logger.error(f"Input directory not found: {args.input}")
        return 1

    plans = Plans.load(args.plans)
    case_ids, cases = load_raw_cases(args.input)

    results = preprocess_dataset(
        case_ids,
        cases,
        args.output,
        plans,
        args.configuration,
    )

    logger.info("Processing complete!")
    logger.info(f"Created {len(results)} NPZ files in: {args.output}")
    return 0 if len(results) == len(cases) else 1


if __name__ == "__main__":
    raise SystemExit(main())
