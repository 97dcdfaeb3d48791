"""
Loss functions for medical image segmentation.

Soft Dice and Dice + cross-entropy for multiclass outputs, plus a wrapper
that applies a loss to every deep supervision output.
"""

from typing import List, Optional, Sequence, Union

import numpy as np
import torch
from torch import nn
from torch.nn import functional as F


def soft_dice(
    probs: torch.Tensor,
    onehot: torch.Tensor,
    batch_dice: bool = False,
    do_bg: bool = False,
    smooth: float = 1e-5,
) -> torch.Tensor:
    """
    Compute the soft Dice coefficient per class.

    Args:
        probs: Predicted probabilities, shape (B, C, *spatial).
        onehot: One-hot ground truth, same shape as probs.
        batch_dice: Pool the batch into one sample before computing Dice.
        do_bg: Include channel 0 (background).
        smooth: Smoothing constant added to numerator and denominator.

    Returns:
        Dice per class (batch_dice) or per sample and class, in [0, 1].
    """
    dims = tuple(range(2, probs.dim()))
    if batch_dice:
        dims = (0,) + dims

    intersection = (probs * onehot).sum(dims)
    denominator = probs.sum(dims) + onehot.sum(dims)

    dice = (2.0 * intersection + smooth) / (denominator + smooth)

    if not do_bg:
        dice = dice[1:] if batch_dice else dice[:, 1:]
    return dice


def to_onehot(target: torch.Tensor, num_classes: int) -> torch.Tensor:
    """Convert (B, 1, *spatial) or (B, *spatial) integer labels to one-hot."""
    if target.dim() > 1 and target.shape[1] == 1:
        target = target[:, 0]
    onehot = F.one_hot(target.long(), num_classes)
    return onehot.movedim(-1, 1).to(torch.float32)


class SoftDiceLoss(nn.Module):
    """
    Soft Dice loss for multiclass segmentation.

    Loss = -mean Dice over foreground classes. Softmax is applied for
    multichannel logits and sigmoid for a single channel.
    """

    def __init__(
        self,
        batch_dice: bool = False,
        do_bg: bool = False,
        smooth: float = 1e-5,
    ) -> None:
        super().__init__()
        self.batch_dice = batch_dice
        self.do_bg = do_bg
        self.smooth = smooth

    def forward(self, logits: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        """
        Compute Dice loss.

        Args:
            logits: Raw logits, shape (B, C, *spatial).
            target: Integer labels, shape (B, 1, *spatial).

        Returns:
            Scalar loss value.
        """
        if logits.shape[1] == 1:
            probs = torch.sigmoid(logits)
            onehot = (target.view_as(probs) > 0).to(probs.dtype)
            dice = soft_dice(probs, onehot, self.batch_dice, True, self.smooth)
        else:
            probs = torch.softmax(logits, dim=1)
            onehot = to_onehot(target, logits.shape[1]).to(probs.dtype)
            dice = soft_dice(probs, onehot, self.batch_dice, self.do_bg, self.smooth)

        return -dice.mean()


class DiceCELoss(nn.Module):
    """
    Combined cross-entropy and soft Dice loss.

    Loss = ce_weight * CE + dice_weight * Dice
    """

    def __init__(
        self,
        ce_weight: float = 1.0,
        dice_weight: float = 1.0,
        batch_dice: bool = False,
        smooth: float = 1e-5,
    ) -> None:
        """
        Args:
            ce_weight: Weight for the cross-entropy component.
            dice_weight: Weight for the Dice component.
            batch_dice: Compute Dice over the whole batch.
            smooth: Dice smoothing constant.
        """
        super().__init__()
        self.ce_weight = ce_weight
        self.dice_weight = dice_weight
        self.dice = SoftDiceLoss(batch_dice=batch_dice, smooth=smooth)

    def forward(self, logits: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        """
        Compute combined loss.

        Args:
            logits: Raw logits, shape (B, C, *spatial).
            target: Integer labels, shape (B, 1, *spatial).

        Returns:
            Scalar loss value.
        """
        if logits.shape[1] == 1:
            ce = F.binary_cross_entropy_with_logits(
                logits, (target.view_as(logits) > 0).to(logits.dtype)
            )
        else:
            labels = target[:, 0] if target.dim() == logits.dim() else target
            ce = F.cross_entropy(logits, labels.long())

        return self.ce_weight * ce + self.dice_weight * self.dice(logits, target)


def deep_supervision_weights(n: int) -> List[float]:
    """
    Loss weights for ``n`` outputs ordered highest resolution first.

    Weights halve per level, the lowest resolution output is ignored and
    the rest are normalized to sum to one.
    """
    weights = np.array([1 / (2**i) for i in range(n)])
    if n > 1:
        weights[-1] = 0
    weights = weights / weights.sum()
    return weights.tolist()


class DeepSupervisionLoss(nn.Module):
    """
    Apply a loss to a list of outputs and sum the weighted results.

    The target is downsampled with nearest interpolation to each output's
    spatial shape. Without explicit weights, outputs of equal shape (U-Net++
    heads) are weighted equally; multi-scale outputs use
    ``deep_supervision_weights``.
    """

    def __init__(self, loss: nn.Module, weights: Optional[Sequence[float]] = None) -> None:
        super().__init__()
        self.loss = loss
        self.weights = list(weights) if weights is not None else None

    def _weights_for(self, outputs: List[torch.Tensor]) -> List[float]:
        if self.weights is not None:
            if len(self.weights) != len(outputs):
                raise ValueError(
                    f"Got {len(outputs)} outputs but {len(self.weights)} weights"
                )
            return self.weights
        shapes = {tuple(o.shape[2:]) for o in outputs}
        if len(shapes) == 1:
            return [1.0 / len(outputs)] * len(outputs)
        return deep_supervision_weights(len(outputs))

    def forward(
        self,
        outputs: Union[torch.Tensor, List[torch.Tensor]],
        target: torch.Tensor,
    ) -> torch.Tensor:
        """
        Args:
            outputs: One tensor or a list of (B, C, *spatial) logits.
            target: Integer labels at full resolution, (B, 1, *spatial).

        Returns:
            Weighted scalar loss.
        """
        if isinstance(outputs, torch.Tensor):
            return self.loss(outputs, target)

        total = 0.0
        for weight, output in zip(self._weights_for(outputs), outputs):
            if weight == 0:
                continue
            scaled = target
            if tuple(output.shape[2:]) != tuple(target.shape[2:]):
                scaled = F.interpolate(
                    target.float(), size=output.shape[2:], mode="nearest"
                ).long()
            total = total + weight * self.loss(output, scaled)
        return total
