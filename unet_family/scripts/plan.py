#!/usr/bin/env python3
"""
Experiment planning script.

Fingerprints a raw dataset and writes nnU-Net style plans
(``dataset_fingerprint.json`` and ``plans.json``).

Usage:
    unet-family-plan --input ./Dataset001_Liver --output ./plans --modalities CT
    unet-family-plan --input ./npz_raw --output ./plans --modalities T2 ADC --gpu-memory 11
"""

import argparse
import logging
from pathlib import Path

from unet_family.configs.config import Config
from unet_family.planning.fingerprint import extract_fingerprint_from_directory
from unet_family.planning.planner import ExperimentPlanner

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Plan experiments for a dataset")

    parser.add_argument(
        "--input",
        type=Path,
        required=True,
        help="Raw dataset directory (imagesTr/labelsTr NIfTI or NPZ cases)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        required=True,
        help="Output directory for fingerprint and plans",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="YAML config with a planning section",
    )
    parser.add_argument(
        "--modalities",
        nargs="+",
        help="Modality name per input channel (CT, MRI, ...)",
    )
    parser.add_argument(
        "--gpu-memory",
        type=float,
        help="GPU memory target in GB",
    )
    parser.add_argument(
        "--name",
        help="Dataset name stored in the plans (default: input directory name)",
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

    planning = (Config.from_yaml(args.config) if args.config else Config()).planning
    if args.modalities:
        planning.modalities = tuple(args.modalities)
    if args.gpu_memory:
        planning.gpu_memory_target_gb = args.gpu_memory

    fingerprint = extract_fingerprint_from_directory(
        args.input,
        num_samples=planning.num_foreground_samples,
    )
    if len(planning.modalities) != fingerprint.num_channels:
        logger.error(
            f"{len(planning.modalities)} modalities given but the data has "
            f"{fingerprint.num_channels} channels"
        )
        return 1

    args.output.mkdir(parents=True, exist_ok=True)
    fingerprint.save(args.output / "dataset_fingerprint.json")

    planner = ExperimentPlanner(
        fingerprint,
        modalities=planning.modalities,
        gpu_memory_target_gb=planning.gpu_memory_target_gb,
        anisotropy_threshold=planning.anisotropy_threshold,
        dataset_name=args.name or args.input.name,
    )
    plans = planner.plan()
    plans_path = plans.save(args.output / "plans.json")

    for name, configuration in plans.configurations.items():
        logger.info(
            f"{name}: patch {configuration.patch_size}, batch {configuration.batch_size}, "
            f"spacing {configuration.spacing}, {configuration.num_stages} stages"
        )
    logger.info(f"Plans saved to: {plans_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
