"""
nnU-Net's plain convolutional U-Net.

The topology (number of stages, per-axis kernel sizes and strides,
feature widths) is not fixed here; it is derived by the experiment
planner from the dataset fingerprint and passed in as lists.
"""

from typing import List, Sequence, Union

import torch
from torch import nn

from .blocks import ConvNormAct, get_conv, get_conv_transpose

IntOrList = Union[int, Sequence[int]]


def _as_tuple(value: IntOrList, dims: int) -> tuple:
    if isinstance(value, int):
        return (value,) * dims
    value = tuple(int(v) for v in value)
    if len(value) != dims:
        raise ValueError(f"Expected {dims} values, got {value}")
    return value


def _per_stage(value: IntOrList, n: int, name: str) -> List[int]:
    if isinstance(value, int):
        return [value] * n
    value = list(value)
    if len(value) != n:
        raise ValueError(f"{name} must have {n} entries, got {len(value)}")
    return value


class PlainConvUNet(nn.Module):
    """
    U-Net with strided-conv downsampling, instance norm and LeakyReLU.

    Args:
        in_channels: Number of input channels (modalities).
        num_classes: Number of output classes including background.
        dims: Spatial dimensionality (2 or 3).
        features_per_stage: Channels per resolution stage.
        kernel_sizes: Conv kernel size per stage (scalar or per-axis).
        strides: Downsampling stride per stage; the first is usually 1.
        n_conv_per_stage: Convs per encoder stage.
        n_conv_per_stage_decoder: Convs per decoder stage.
        deep_supervision: Return one output per decoder stage in training.
    """

    def __init__(
        self,
        in_channels: int,
        num_classes: int,
        dims: int,
        features_per_stage: Sequence[int],
        kernel_sizes: Sequence[IntOrList],
        strides: Sequence[IntOrList],
        n_conv_per_stage: IntOrList = 2,
        n_conv_per_stage_decoder: IntOrList = 2,
        deep_supervision: bool = True,
    ) -> None:
        super().__init__()

        n_stages = len(features_per_stage)
        if n_stages < 2:
            raise ValueError("PlainConvUNet needs at least 2 stages")
        if len(kernel_sizes) != n_stages or len(strides) != n_stages:
            raise ValueError(
                f"features_per_stage ({n_stages}), kernel_sizes ({len(kernel_sizes)}) "
                f"and strides ({len(strides)}) must have the same length"
            )

        self.in_channels = in_channels
        self.num_classes = num_classes
        self.dims = dims
        self.deep_supervision = deep_supervision

        kernel_sizes = [_as_tuple(k, dims) for k in kernel_sizes]
        strides = [_as_tuple(s, dims) for s in strides]
        n_conv_enc = _per_stage(n_conv_per_stage, n_stages, "n_conv_per_stage")
        n_conv_dec = _per_stage(
            n_conv_per_stage_decoder, n_stages - 1, "n_conv_per_stage_decoder"
        )
        self.strides = strides

        block_kwargs = {"dims": dims, "norm": "instance", "activation": "leaky_relu", "bias": True}

        # Encoder: first conv of each stage does the downsampling
        self.encoder_stages = nn.ModuleList()
        prev = in_channels
        for s in range(n_stages):
            convs = [
                ConvNormAct(
                    prev,
                    features_per_stage[s],
                    kernel_size=kernel_sizes[s],
                    stride=strides[s],
                    **block_kwargs,
                )
            ]
            for _ in range(n_conv_enc[s] - 1):
                convs.append(
                    ConvNormAct(
                        features_per_stage[s],
                        features_per_stage[s],
                        kernel_size=kernel_sizes[s],
                        **block_kwargs,
                    )
                )
            self.encoder_stages.append(nn.Sequential(*convs))
            prev = features_per_stage[s]

        # Decoder, deepest first
        conv = get_conv(dims)
        transpose = get_conv_transpose(dims)
        self.transpconvs = nn.ModuleList()
        self.decoder_stages = nn.ModuleList()
        self.seg_layers = nn.ModuleList()
        for s in range(1, n_stages):
            below = features_per_stage[-s]
            skip = features_per_stage[-(s + 1)]
            stride = strides[-s]
            kernel = kernel_sizes[-(s + 1)]

            self.transpconvs.append(transpose(below, skip, kernel_size=stride, stride=stride))

            convs = [ConvNormAct(2 * skip, skip, kernel_size=kernel, **block_kwargs)]
            for _ in range(n_conv_dec[-s] - 1):
                convs.append(ConvNormAct(skip, skip, kernel_size=kernel, **block_kwargs))
            self.decoder_stages.append(nn.Sequential(*convs))

            self.seg_layers.append(conv(skip, num_classes, kernel_size=1))

        self._init_weights()

    @classmethod
    def from_plans(
        cls,
        configuration,
        in_channels: int,
        num_classes: int,
        deep_supervision: bool = True,
    ) -> "PlainConvUNet":
        """
        Build the network described by a planner configuration.

        Args:
            configuration: ``planning.Configuration`` (or anything exposing
                patch_size, features_per_stage, conv_kernel_sizes,
                pool_op_kernel_sizes and the n_conv_per_stage fields).
            in_channels: Number of input channels.
            num_classes: Number of output classes.
            deep_supervision: Enable deep supervision outputs.
        """
        return cls(
            in_channels=in_channels,
            num_classes=num_classes,
            dims=len(configuration.patch_size),
            features_per_stage=configuration.features_per_stage,
            kernel_sizes=configuration.conv_kernel_sizes,
            strides=configuration.pool_op_kernel_sizes,
            n_conv_per_stage=configuration.n_conv_per_stage_encoder,
            n_conv_per_stage_decoder=configuration.n_conv_per_stage_decoder,
            deep_supervision=deep_supervision,
        )

    def _init_weights(self) -> None:
        """Kaiming init with LeakyReLU slope, zero bias."""
        for m in self.modules():
            if isinstance(m, (nn.Conv2d, nn.Conv3d, nn.ConvTranspose2d, nn.ConvTranspose3d)):
                nn.init.kaiming_normal_(m.weight, a=1e-2)
                if m.bias is not None:
                    nn.init.constant_(m.bias, 0)

    @property
    def divisibility(self) -> tuple:
        """Per-axis factor every input size must be divisible by."""
        factor = [1] * self.dims
        for stride in self.strides:
            factor = [f * s for f, s in zip(factor, stride)]
        return tuple(factor)

    def forward(self, x: torch.Tensor) -> Union[torch.Tensor, List[torch.Tensor]]:
        """
        Forward pass.

        Args:
            x: Input tensor of shape (B, C_in, *spatial).

        Returns:
            Logits at full resolution, or in training with deep supervision
            a list of logits ordered from highest to lowest resolution.
        """
        if x.dim() != self.dims + 2:
            raise ValueError(
                f"Expected {self.dims + 2}D input (B, C, *spatial), got {x.dim()}D tensor"
            )
        if x.shape[1] != self.in_channels:
            raise ValueError(
                f"Expected {self.in_channels} input channels, got {x.shape[1]}"
            )
        if any(s % f for s, f in zip(x.shape[2:], self.divisibility)):
            raise ValueError(
                f"Spatial shape {tuple(x.shape[2:])} must be divisible by {self.divisibility}"
            )

        skips = []
        for stage in self.encoder_stages:
            x = stage(x)
            skips.append(x)

        return_all = self.deep_supervision and self.training
        n_dec = len(self.decoder_stages)
        lres = skips[-1]
        seg_outputs = []
        for s in range(n_dec):
            x = self.transpconvs[s](lres)
            x = torch.cat((x, skips[-(s + 2)]), dim=1)
            x = self.decoder_stages[s](x)
            if return_all or s == n_dec - 1:
                seg_outputs.append(self.seg_layers[s](x))
            lres = x

        seg_outputs = seg_outputs[::-1]
        if return_all:
            return seg_outputs
        return seg_outputs[0]
