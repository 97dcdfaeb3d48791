"""
Classic U-Net (Ronneberger et al., 2015) for 2D and 3D segmentation.

Supports the original valid-convolution variant with center-cropped
skip connections as well as the common same-padding variant.
"""

from typing import List, Literal, Sequence, Tuple

import torch
from torch import nn
from torch.nn import functional as F

from .blocks import DoubleConv, center_crop, get_conv, get_conv_transpose, get_max_pool


class UNet(nn.Module):
    """
    Encoder-decoder network with skip connections.

    - ``depth`` max-pool stages, channels doubling per stage
    - decoder mirrors the encoder with 2x upsampling
    - skips are concatenated (original) or added

    Args:
        in_channels: Number of input channels.
        out_channels: Number of output classes (logit channels).
        dims: Spatial dimensionality (2 or 3).
        base_channels: Channels of the first stage (64 in the paper).
        depth: Number of downsampling stages.
        norm: Normalization used in every conv block.
        padding: If False, use valid convolutions as in the paper and
            center-crop encoder features to the decoder size.
        skip_mode: "concat" or "additive".
        upsample: "transpose" (learned) or "interpolate" (bilinear/trilinear
            followed by a 1x1 conv).
        dropout: Dropout applied at the bottleneck.
    """

    def __init__(
        self,
        in_channels: int = 1,
        out_channels: int = 2,
        dims: int = 2,
        base_channels: int = 64,
        depth: int = 4,
        norm: str = "batch",
        padding: bool = True,
        skip_mode: Literal["concat", "additive"] = "concat",
        upsample: Literal["transpose", "interpolate"] = "transpose",
        dropout: float = 0.0,
    ) -> None:
        super().__init__()

        if depth < 1:
            raise ValueError(f"depth must be >= 1, got {depth}")
        if skip_mode not in ("concat", "additive"):
            raise ValueError(f"skip_mode must be 'concat' or 'additive', got {skip_mode}")
        if upsample not in ("transpose", "interpolate"):
            raise ValueError(f"upsample must be 'transpose' or 'interpolate', got {upsample}")

        self.in_channels = in_channels
        self.out_channels = out_channels
        self.dims = dims
        self.depth = depth
        self.padding = padding
        self.skip_mode = skip_mode

        conv_padding = 1 if padding else 0
        block_kwargs = {"dims": dims, "norm": norm, "padding": conv_padding}

        # Channel progression: [64, 128, 256, 512, 1024] for base_channels=64
        chs = [base_channels * (2**i) for i in range(depth + 1)]
        self.channels = chs

        # Encoder; the last entry is the bottleneck
        self.encoders = nn.ModuleList()
        self.encoders.append(DoubleConv(in_channels, chs[0], **block_kwargs))
        for i in range(1, depth + 1):
            block_dropout = dropout if i == depth else 0.0
            self.encoders.append(
                DoubleConv(chs[i - 1], chs[i], dropout=block_dropout, **block_kwargs)
            )
        self.pool = get_max_pool(dims)(kernel_size=2, stride=2)

        # Decoder, deepest first
        self.ups = nn.ModuleList()
        self.decoders = nn.ModuleList()
        conv = get_conv(dims)
        interp_mode = "bilinear" if dims == 2 else "trilinear"
        for i in reversed(range(depth)):
            if upsample == "transpose":
                up = get_conv_transpose(dims)(chs[i + 1], chs[i], kernel_size=2, stride=2)
            else:
                up = nn.Sequential(
                    nn.Upsample(scale_factor=2, mode=interp_mode, align_corners=False),
                    conv(chs[i + 1], chs[i], kernel_size=1),
                )
            self.ups.append(up)

            dec_in = chs[i] * 2 if skip_mode == "concat" else chs[i]
            self.decoders.append(DoubleConv(dec_in, chs[i], **block_kwargs))

        # Output layer
        self.final_conv = conv(chs[0], out_channels, kernel_size=1)

        self._init_weights()

    def _init_weights(self) -> None:
        """Initialize weights with Kaiming init for conv layers."""
        for m in self.modules():
            if isinstance(m, (nn.Conv2d, nn.Conv3d, nn.ConvTranspose2d, nn.ConvTranspose3d)):
                nn.init.kaiming_normal_(m.weight, mode="fan_out", nonlinearity="relu")
                if m.bias is not None:
                    nn.init.constant_(m.bias, 0)
            elif isinstance(m, (nn.BatchNorm2d, nn.BatchNorm3d, nn.GroupNorm)):
                nn.init.constant_(m.weight, 1)
                nn.init.constant_(m.bias, 0)

    def output_shape(self, input_shape: Sequence[int]) -> Tuple[int, ...]:
        """
        Compute the spatial output shape for a given spatial input shape.

        With padding the output matches the input. With valid convolutions
        every conv block loses 4 voxels per axis (two 3x3 convs), e.g.
        572x572 -> 388x388 for the paper's depth-4 network.

        Raises:
            ValueError: If a stage collapses or an odd size would be pooled.
        """
        size = [int(s) for s in input_shape]
        if len(size) != self.dims:
            raise ValueError(f"Expected {self.dims} spatial dims, got {len(size)}")
        if self.padding:
            return tuple(size)

        shrink = 4

        def _shrink(values: List[int], where: str) -> List[int]:
            values = [v - shrink for v in values]
            if any(v <= 0 for v in values):
                raise ValueError(
                    f"Input {tuple(input_shape)} too small: feature map vanishes at {where}"
                )
            return values

        for level in range(self.depth):
            size = _shrink(size, f"encoder level {level}")
            if any(v % 2 for v in size):
                raise ValueError(
                    f"Input {tuple(input_shape)} gives odd size {tuple(size)} "
                    f"before pooling at level {level}"
                )
            size = [v // 2 for v in size]

        size = _shrink(size, "bottleneck")

        for level in reversed(range(self.depth)):
            size = _shrink([v * 2 for v in size], f"decoder level {level}")

        return tuple(size)

    def _check_input(self, x: torch.Tensor) -> None:
        if x.dim() != self.dims + 2:
            raise ValueError(
                f"Expected {self.dims + 2}D input (B, C, *spatial), got {x.dim()}D tensor"
            )
        if x.shape[1] != self.in_channels:
            raise ValueError(
                f"Expected {self.in_channels} input channels, got {x.shape[1]}"
            )
        if not self.padding:
            self.output_shape(x.shape[2:])

    def _match_and_combine(
        self,
        upsampled: torch.Tensor,
        encoder_features: torch.Tensor,
    ) -> torch.Tensor:
        """
        Match spatial dimensions and combine features.

        Args:
            upsampled: Upsampled decoder features.
            encoder_features: Encoder skip connection features.

        Returns:
            Combined features.
        """
        if not self.padding:
            encoder_features = center_crop(encoder_features, upsampled.shape[2:])
        elif upsampled.shape[2:] != encoder_features.shape[2:]:
            # Odd input sizes: pooling floors, so resize back to the skip
            upsampled = F.interpolate(
                upsampled,
                size=encoder_features.shape[2:],
                mode="bilinear" if self.dims == 2 else "trilinear",
                align_corners=False,
            )

        if self.skip_mode == "concat":
            return torch.cat([encoder_features, upsampled], dim=1)
        return upsampled + encoder_features

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Forward pass through U-Net.

        Args:
            x: Input tensor of shape (B, C_in, *spatial).

        Returns:
            Output logits of shape (B, C_out, *output_spatial).
        """
        self._check_input(x)

        skips = []
        for encoder in self.encoders[:-1]:
            x = encoder(x)
            skips.append(x)
            x = self.pool(x)

        x = self.encoders[-1](x)

        for up, decoder, skip in zip(self.ups, self.decoders, reversed(skips)):
            x = up(x)
            x = self._match_and_combine(x, skip)
            x = decoder(x)

        return self.final_conv(x)
