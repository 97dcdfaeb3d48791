#!/usr/bin/env python3
"""
Training script for U-Net family models on preprocessed NPZ cases.

Usage:
    unet-family-train --data-dir ./preprocessed --output-dir ./results
    unet-family-train --config config.yaml --architecture unet_plusplus
"""

import argparse
import csv
import logging
from datetime import datetime
from pathlib import Path

import torch
from torch.utils.data import DataLoader

from unet_family.configs.config import Config
from unet_family.data.datasets.patch_dataset import PatchDataset, create_data_splits
from unet_family.models.factory import ARCHITECTURES, create_model
from unet_family.planning.plans import Plans
from unet_family.training.trainer import Trainer

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Train segmentation model")

    parser.add_argument(
        "--data-dir",
        type=Path,
        help="Directory containing preprocessed NPZ files",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("results"),
        help="Output directory for checkpoints and logs",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to YAML config file",
    )
    parser.add_argument(
        "--architecture",
        choices=ARCHITECTURES,
        help="Network architecture",
    )
    parser.add_argument(
        "--plans",
        type=Path,
        help="Plans file; required for plain_unet, sets patch size and batch size",
    )
    parser.add_argument(
        "--configuration",
        help="Plans configuration (e.g. 2d, 3d_fullres)",
    )
    parser.add_argument(
        "--epochs",
        type=int,
        help="Number of training epochs",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        help="Batch size",
    )
    parser.add_argument(
        "--lr",
        type=float,
        help="Learning rate",
    )
    parser.add_argument(
        "--resume",
        type=Path,
        help="Resume from checkpoint",
    )

    return parser.parse_args(argv)


def apply_overrides(config: Config, args) -> Config:
    """Apply command line overrides on top of a loaded config."""
    if args.data_dir:
        config.data_root = args.data_dir
    if args.architecture:
        config.model.architecture = args.architecture
    if args.plans:
        config.model.plans_path = args.plans
    if args.configuration:
        config.model.plans_configuration = args.configuration
    if args.epochs:
        config.training.epochs = args.epochs
    if args.batch_size:
        config.training.batch_size = args.batch_size
    if args.lr:
        config.training.learning_rate = args.lr

    if config.model.plans_path:
        plans = Plans.load(config.model.plans_path)
        configuration = plans.get_configuration(config.model.plans_configuration)
        config.training.patch_size = tuple(configuration.patch_size)
        config.inference.patch_size = tuple(configuration.patch_size)
        config.model.dims = configuration.dims
        config.model.in_channels = len(plans.modalities)
        config.model.out_channels = plans.num_classes
        if not args.batch_size:
            config.training.batch_size = configuration.batch_size

    return config


def write_split_manifest(path: Path, train_files, val_files, test_files) -> None:
    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["filename", "split"])
        for p in train_files:
            writer.writerow([p.name, "train"])
        for p in val_files:
            writer.writerow([p.name, "validation"])
        for p in test_files:
            writer.writerow([p.name, "test"])


def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = parse_args(argv)

    config = Config.from_yaml(args.config) if args.config else Config()
    config = apply_overrides(config, args)

    if not config.data_root or not config.data_root.exists():
        logger.error(f"Data directory not found: {config.data_root}")
        return 1

    run_name = datetime.now().strftime("run-%Y%m%d_%H%M%S")
    output_dir = args.output_dir / run_name
    output_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Output directory: {output_dir}")

    config.to_yaml(output_dir / "config.yaml")

    data_files = sorted(config.data_root.glob("*.npz"))
    logger.info(f"Found {len(data_files)} training files")

    if not data_files:
        logger.error("No .npz files found")
        return 1

    train_files, val_files, test_files = create_data_splits(
        data_files,
        train_ratio=config.training.train_ratio,
        val_ratio=config.training.val_ratio,
        test_ratio=config.training.test_ratio,
        seed=config.training.split_seed,
    )
    logger.info(f"Split: {len(train_files)} train, {len(val_files)} val, {len(test_files)} test")

    if not train_files or not val_files:
        logger.error("Need at least one training and one validation case")
        return 1

    write_split_manifest(output_dir / "data_split.csv", train_files, val_files, test_files)

    train_ds = PatchDataset(
        train_files,
        patch_size=config.training.patch_size,
        oversample_foreground_percent=config.training.oversample_foreground_percent,
        augment=True,
        aug_params=config.augmentation.to_dict(),
    )
    val_ds = PatchDataset(
        val_files,
        patch_size=config.training.patch_size,
        oversample_foreground_percent=config.training.oversample_foreground_percent,
        augment=False,
    )

    train_loader = DataLoader(
        train_ds,
        batch_size=config.training.batch_size,
        shuffle=True,
        num_workers=config.training.num_workers,
        pin_memory=True,
    )
    val_loader = DataLoader(
        val_ds,
        batch_size=config.training.batch_size,
        shuffle=False,
        num_workers=config.training.num_workers,
        pin_memory=True,
    )

    device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
    logger.info(f"Using device: {device}")

    model = create_model(config.model)

    trainer = Trainer(
        model=model,
        device=device,
        output_dir=output_dir,
        learning_rate=config.training.learning_rate,
        weight_decay=config.training.weight_decay,
        optimizer=config.training.optimizer,
        momentum=config.training.momentum,
        scheduler=config.training.scheduler,
        max_epochs=config.training.epochs,
        poly_exponent=config.training.poly_exponent,
        ce_weight=config.training.ce_weight,
        dice_weight=config.training.dice_weight,
        gradient_clip_norm=config.training.gradient_clip_norm,
        scheduler_factor=config.training.scheduler_factor,
        scheduler_patience=config.training.scheduler_patience,
        scheduler_min_lr=config.training.scheduler_min_lr,
        model_config=config.model.to_dict(),
    )

    start_epoch = 1
    if args.resume:
        start_epoch = trainer.load_checkpoint(args.resume) + 1
        logger.info(f"Resumed from epoch {start_epoch - 1}")

    trainer.fit(
        train_loader,
        val_loader,
        epochs=config.training.epochs,
        start_epoch=start_epoch,
    )

    logger.info("Training complete!")
    logger.info(f"Best val dice: {trainer.best_val_dice:.4f}")
    logger.info(f"Checkpoints saved to: {output_dir / 'checkpoints'}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
