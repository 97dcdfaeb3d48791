"""Training pipeline components."""

from .losses import (
    DeepSupervisionLoss,
    DiceCELoss,
    SoftDiceLoss,
    deep_supervision_weights,
    soft_dice,
)
from .trainer import Trainer, crop_target_to_output, mean_foreground_dice

__all__ = [
    "DeepSupervisionLoss",
    "DiceCELoss",
    "SoftDiceLoss",
    "Trainer",
    "crop_target_to_output",
    "deep_supervision_weights",
    "mean_foreground_dice",
    "soft_dice",
]
