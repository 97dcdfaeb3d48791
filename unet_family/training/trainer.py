"""
Training pipeline for 2D/3D segmentation networks.

Provides training loop with mixed precision, gradient clipping, deep
supervision and logging.
"""

import csv
import logging
import math
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import torch
from torch import nn, optim
from torch.utils.data import DataLoader
from tqdm.auto import tqdm

from ..models.blocks import center_crop
from .losses import DeepSupervisionLoss, DiceCELoss

logger = logging.getLogger(__name__)


def crop_target_to_output(outputs, labels: torch.Tensor) -> torch.Tensor:
    """Centre-crop labels to the first output, which is smaller for valid-convolution nets."""
    first = outputs[0] if isinstance(outputs, (list, tuple)) else outputs
    out_shape = tuple(first.shape[2:])
    if out_shape != tuple(labels.shape[2:]) and all(
        o <= l for o, l in zip(out_shape, labels.shape[2:])
    ):
        labels = center_crop(labels, out_shape)
    return labels


def mean_foreground_dice(logits: torch.Tensor, target: torch.Tensor) -> float:
    """
    Mean hard Dice over foreground classes for one batch.

    Classes absent from both prediction and target are skipped; returns
    1.0 when every class is absent.

    Args:
        logits: Logits (B, C, *spatial).
        target: Integer labels (B, 1, *spatial).
    """
    if logits.shape[1] == 1:
        pred = (logits[:, 0] > 0).long()
        num_classes = 2
    else:
        pred = logits.argmax(dim=1)
        num_classes = logits.shape[1]
    target = target[:, 0] if target.dim() == logits.dim() else target

    scores = []
    for c in range(1, num_classes):
        p = pred == c
        t = target == c
        denom = p.sum() + t.sum()
        if denom == 0:
            continue
        scores.append((2.0 * (p & t).sum() / denom).item())

    return float(sum(scores) / len(scores)) if scores else 1.0


class Trainer:
    """
    Trainer for segmentation models.

    Features:
    - SGD (nesterov) or AdamW
    - Poly or reduce-on-plateau learning rate schedule
    - Mixed precision training (AMP) on CUDA
    - Gradient clipping
    - Deep supervision aware loss
    - Checkpoint saving and CSV metrics log
    """

    def __init__(
        self,
        model: nn.Module,
        device: torch.device,
        output_dir: Path,
        learning_rate: float = 1e-2,
        weight_decay: float = 3e-5,
        optimizer: str = "SGD",
        momentum: float = 0.99,
        scheduler: str = "poly",
        max_epochs: int = 100,
        poly_exponent: float = 0.9,
        ce_weight: float = 1.0,
        dice_weight: float = 1.0,
        gradient_clip_norm: float = 12.0,
        scheduler_factor: float = 0.5,
        scheduler_patience: int = 3,
        scheduler_min_lr: float = 1e-6,
        model_config: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Initialize trainer.

        Args:
            model: Model to train.
            device: Device to train on.
            output_dir: Directory for checkpoints and logs.
            learning_rate: Initial learning rate.
            weight_decay: Weight decay.
            optimizer: "SGD" or "AdamW".
            momentum: SGD momentum.
            scheduler: "poly" or "plateau".
            max_epochs: Epoch count the poly schedule decays over.
            poly_exponent: Exponent of the poly schedule.
            ce_weight: Weight for cross-entropy in the combined loss.
            dice_weight: Weight for Dice in the combined loss.
            gradient_clip_norm: Max norm for gradient clipping (0 to disable).
            scheduler_factor: LR reduction factor (plateau).
            scheduler_patience: Epochs to wait before reducing LR (plateau).
            scheduler_min_lr: Minimum learning rate (plateau).
            model_config: Model description stored in checkpoints so the
                network can be rebuilt for inference.
        """
        self.model = model.to(device)
        self.device = device
        self.output_dir = Path(output_dir)
        self.gradient_clip_norm = gradient_clip_norm
        self.model_config = model_config or {}
        self.use_amp = device.type == "cuda"

        self.checkpoint_dir = self.output_dir / "checkpoints"
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        self.metrics_path = self.output_dir / "metrics.csv"

        self.criterion = DeepSupervisionLoss(
            DiceCELoss(ce_weight=ce_weight, dice_weight=dice_weight)
        )

        if optimizer.lower() == "sgd":
            self.optimizer = optim.SGD(
                model.parameters(),
                lr=learning_rate,
                momentum=momentum,
                weight_decay=weight_decay,
                nesterov=True,
            )
        elif optimizer.lower() == "adamw":
            self.optimizer = optim.AdamW(
                model.parameters(),
                lr=learning_rate,
                weight_decay=weight_decay,
            )
        else:
            raise ValueError(f"Unknown optimizer '{optimizer}'. Use 'SGD' or 'AdamW'")

        self.scheduler_name = scheduler.lower()
        if self.scheduler_name == "poly":
            self.scheduler = optim.lr_scheduler.LambdaLR(
                self.optimizer,
                lambda epoch: max(1 - epoch / max_epochs, 0.0) ** poly_exponent,
            )
        elif self.scheduler_name == "plateau":
            self.scheduler = optim.lr_scheduler.ReduceLROnPlateau(
                self.optimizer,
                mode="min",
                factor=scheduler_factor,
                patience=scheduler_patience,
                min_lr=scheduler_min_lr,
                threshold=0.001,
            )
        else:
            raise ValueError(f"Unknown scheduler '{scheduler}'. Use 'poly' or 'plateau'")

        self.scaler = torch.GradScaler(enabled=self.use_amp)

        self.best_val_dice = -math.inf
        self.current_epoch = 0

    def train_epoch(
        self,
        train_loader: DataLoader,
        epoch: int,
        total_epochs: int,
        show_progress: bool = True,
    ) -> float:
        """
        Train for one epoch.

        Args:
            train_loader: Training data loader.
            epoch: Current epoch number.
            total_epochs: Total number of epochs.
            show_progress: Whether to show progress bar.

        Returns:
            Average training loss.
        """
        self.model.train()
        running_loss = 0.0
        n_samples = 0

        iterator = train_loader
        if show_progress:
            iterator = tqdm(
                train_loader,
                desc=f"Train [{epoch}/{total_epochs}]",
                leave=False,
            )

        for images, labels in iterator:
            images = images.to(self.device, non_blocking=True)
            labels = labels.to(self.device, non_blocking=True)

            self.optimizer.zero_grad(set_to_none=True)

            with torch.autocast(device_type=self.device.type, enabled=self.use_amp):
                outputs = self.model(images)
                labels = crop_target_to_output(outputs, labels)
                loss = self.criterion(outputs, labels)

            self.scaler.scale(loss).backward()

            if self.gradient_clip_norm > 0:
                self.scaler.unscale_(self.optimizer)
                torch.nn.utils.clip_grad_norm_(
                    self.model.parameters(),
                    self.gradient_clip_norm,
                )

            self.scaler.step(self.optimizer)
            self.scaler.update()

            running_loss += loss.item() * images.size(0)
            n_samples += images.size(0)

            if show_progress:
                iterator.set_postfix(loss=f"{running_loss / n_samples:.4f}")

        return running_loss / max(n_samples, 1)

    @torch.no_grad()
    def validate(
        self,
        val_loader: DataLoader,
        show_progress: bool = True,
    ) -> Tuple[float, float]:
        """
        Validate model.

        Args:
            val_loader: Validation data loader.
            show_progress: Whether to show progress bar.

        Returns:
            Tuple of (validation loss, mean foreground dice).
        """
        self.model.eval()
        loss_total = 0.0
        dice_total = 0.0
        n_samples = 0

        iterator = val_loader
        if show_progress:
            iterator = tqdm(val_loader, desc="Valid", leave=False)

        for images, labels in iterator:
            images = images.to(self.device, non_blocking=True)
            labels = labels.to(self.device, non_blocking=True)

            outputs = self.model(images)
            # eval mode returns a single tensor, but be lenient with lists
            if isinstance(outputs, (list, tuple)):
                outputs = outputs[0]
            labels = crop_target_to_output(outputs, labels)
            loss = self.criterion(outputs, labels)
            dice = mean_foreground_dice(outputs, labels)

            batch_size = images.size(0)
            loss_total += loss.item() * batch_size
            dice_total += dice * batch_size
            n_samples += batch_size

            if show_progress:
                iterator.set_postfix(
                    loss=f"{loss_total / n_samples:.4f}",
                    dice=f"{dice_total / n_samples:.4f}",
                )

        if n_samples == 0:
            raise ValueError("Validation loader is empty")

        return loss_total / n_samples, dice_total / n_samples

    def save_checkpoint(
        self,
        epoch: int,
        val_dice: float,
        filename: str = "checkpoint.pt",
    ) -> Path:
        """
        Save model checkpoint.

        Args:
            epoch: Current epoch.
            val_dice: Current validation dice.
            filename: Checkpoint filename.

        Returns:
            Path to saved checkpoint.
        """
        checkpoint = {
            "epoch": epoch,
            "model_state": self.model.state_dict(),
            "optimizer_state": self.optimizer.state_dict(),
            "scheduler_state": self.scheduler.state_dict(),
            "val_dice": val_dice,
            "best_val_dice": self.best_val_dice,
            "model_config": self.model_config,
        }

        path = self.checkpoint_dir / filename
        torch.save(checkpoint, path)
        return path

    def load_checkpoint(self, path: Path) -> int:
        """
        Load model checkpoint.

        The best dice seen so far is restored, and the best.pt next to the
        loaded checkpoint is copied into this run so a resumed run always
        ends with one.

        Args:
            path: Path to checkpoint file.

        Returns:
            Epoch number from checkpoint.
        """
        checkpoint = torch.load(path, map_location=self.device, weights_only=False)

        self.model.load_state_dict(checkpoint["model_state"])
        self.optimizer.load_state_dict(checkpoint["optimizer_state"])

        if "scheduler_state" in checkpoint:
            self.scheduler.load_state_dict(checkpoint["scheduler_state"])

        if "best_val_dice" in checkpoint:
            self.best_val_dice = checkpoint["best_val_dice"]
        elif "val_dice" in checkpoint:
            self.best_val_dice = checkpoint["val_dice"]

        best_path = Path(path).parent / "best.pt"
        target = self.checkpoint_dir / "best.pt"
        if best_path.exists() and best_path.resolve() != target.resolve():
            shutil.copy2(best_path, target)

        return checkpoint.get("epoch", 0)

    def fit(
        self,
        train_loader: DataLoader,
        val_loader: DataLoader,
        epochs: int,
        start_epoch: int = 1,
        show_progress: bool = True,
    ) -> Dict[str, List[float]]:
        """
        Full training loop.

        Args:
            train_loader: Training data loader.
            val_loader: Validation data loader.
            epochs: Number of epochs to train.
            start_epoch: Starting epoch (for resuming).
            show_progress: Whether to show progress bars.

        Returns:
            Dictionary of training history.
        """
        history = {
            "epoch": [],
            "train_loss": [],
            "val_loss": [],
            "val_dice": [],
            "lr": [],
        }

        # Resumed runs append to the existing log
        if start_epoch == 1 or not self.metrics_path.exists():
            with open(self.metrics_path, mode="w", newline="") as f:
                writer = csv.writer(f)
                writer.writerow(["epoch", "train_loss", "val_loss", "val_dice", "lr"])

        epoch_iterator = range(start_epoch, epochs + 1)
        if show_progress:
            epoch_iterator = tqdm(epoch_iterator, desc="Epochs")

        epoch, val_dice = start_epoch, -math.inf
        for epoch in epoch_iterator:
            self.current_epoch = epoch

            train_loss = self.train_epoch(train_loader, epoch, epochs, show_progress)
            val_loss, val_dice = self.validate(val_loader, show_progress)

            current_lr = self.optimizer.param_groups[0]["lr"]
            if self.scheduler_name == "plateau":
                self.scheduler.step(val_loss)
            else:
                self.scheduler.step()

            history["epoch"].append(epoch)
            history["train_loss"].append(train_loss)
            history["val_loss"].append(val_loss)
            history["val_dice"].append(val_dice)
            history["lr"].append(current_lr)

            with open(self.metrics_path, mode="a", newline="") as f:
                writer = csv.writer(f)
                writer.writerow([
                    epoch,
                    f"{train_loss:.6f}",
                    f"{val_loss:.6f}",
                    f"{val_dice:.6f}",
                    f"{current_lr:.8f}",
                ])

            if show_progress:
                epoch_iterator.set_postfix(
                    train_loss=f"{train_loss:.4f}",
                    val_loss=f"{val_loss:.4f}",
                    val_dice=f"{val_dice:.4f}",
                    lr=f"{current_lr:.2e}",
                )

            if val_dice > self.best_val_dice:
                self.best_val_dice = val_dice
                self.save_checkpoint(epoch, val_dice, "best.pt")
                logger.info(f"New best model at epoch {epoch} (val_dice={val_dice:.4f})")

        self.save_checkpoint(epoch, val_dice, "last.pt")

        return history
