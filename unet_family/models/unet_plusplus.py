"""
U-Net++ (Zhou et al., 2018): U-Net with nested, dense skip pathways.

Node X[i][j] sits at resolution level i (0 = full resolution) and column j.
Column 0 is the encoder backbone; every other node fuses all previous
nodes on its level with the upsampled node from the level below:

    X[i][j] = H([X[i][0], ..., X[i][j-1], Up(X[i+1][j-1])])

Each top-row node X[0][j] feeds a 1x1 segmentation head, which enables
deep supervision during training and pruning at inference time.
"""

from typing import Dict, List, Optional, Tuple, Union

import torch
from torch import nn

from .blocks import DoubleConv, get_conv, get_max_pool


class UNetPlusPlus(nn.Module):
    """
    Nested U-Net.

    Args:
        in_channels: Number of input channels.
        out_channels: Number of output classes (logit channels).
        dims: Spatial dimensionality (2 or 3).
        base_channels: Channels on level 0, doubled per level.
        depth: Number of downsampling levels (L in the paper).
        norm: Normalization used in every conv block.
        deep_supervision: Return every head while training and average
            them at eval time.
    """

    def __init__(
        self,
        in_channels: int = 1,
        out_channels: int = 2,
        dims: int = 2,
        base_channels: int = 32,
        depth: int = 4,
        norm: str = "batch",
        deep_supervision: bool = False,
    ) -> None:
        super().__init__()

        if depth < 1:
            raise ValueError(f"depth must be >= 1, got {depth}")

        self.in_channels = in_channels
        self.out_channels = out_channels
        self.dims = dims
        self.depth = depth
        self.deep_supervision = deep_supervision

        chs = [base_channels * (2**i) for i in range(depth + 1)]
        self.channels = chs

        self.pool = get_max_pool(dims)(kernel_size=2, stride=2)
        self.up = nn.Upsample(
            scale_factor=2,
            mode="bilinear" if dims == 2 else "trilinear",
            align_corners=True,
        )

        self.nodes = nn.ModuleDict()
        for i in range(depth + 1):
            for j in range(depth + 1 - i):
                if j == 0:
                    node_in = in_channels if i == 0 else chs[i - 1]
                else:
                    node_in = chs[i] * j + chs[i + 1]
                self.nodes[self._key(i, j)] = DoubleConv(node_in, chs[i], dims=dims, norm=norm)

        conv = get_conv(dims)
        self.heads = nn.ModuleList(
            [conv(chs[0], out_channels, kernel_size=1) for _ in range(depth)]
        )

    @staticmethod
    def _key(i: int, j: int) -> str:
        return f"x_{i}_{j}"

    def _check_input(self, x: torch.Tensor) -> None:
        if x.dim() != self.dims + 2:
            raise ValueError(
                f"Expected {self.dims + 2}D input (B, C, *spatial), got {x.dim()}D tensor"
            )
        if x.shape[1] != self.in_channels:
            raise ValueError(
                f"Expected {self.in_channels} input channels, got {x.shape[1]}"
            )
        factor = 2**self.depth
        if any(s % factor for s in x.shape[2:]):
            raise ValueError(
                f"Spatial shape {tuple(x.shape[2:])} must be divisible by {factor}"
            )

    def compute_nodes(
        self,
        x: torch.Tensor,
        level: int,
    ) -> Dict[Tuple[int, int], torch.Tensor]:
        """
        Evaluate every node needed for X[0][level].

        Only nodes with i + j <= level are computed, which is exactly the
        sub-network kept when the model is pruned to ``level``.
        """
        feats: Dict[Tuple[int, int], torch.Tensor] = {}

        # Backbone
        for i in range(level + 1):
            inp = x if i == 0 else self.pool(feats[(i - 1, 0)])
            feats[(i, 0)] = self.nodes[self._key(i, 0)](inp)

        # Nested skip pathways, column by column
        for j in range(1, level + 1):
            for i in range(level + 1 - j):
                dense = [feats[(i, k)] for k in range(j)]
                dense.append(self.up(feats[(i + 1, j - 1)]))
                feats[(i, j)] = self.nodes[self._key(i, j)](torch.cat(dense, dim=1))

        return feats

    def forward(
        self,
        x: torch.Tensor,
        prune_level: Optional[int] = None,
    ) -> Union[torch.Tensor, List[torch.Tensor]]:
        """
        Forward pass.

        Args:
            x: Input tensor of shape (B, C_in, *spatial).
            prune_level: If given, run only the sub-network ending in
                X[0][prune_level] and return its head.

        Returns:
            Logits (B, C_out, *spatial), or a list of per-head logits
            (shallowest first) when deep supervision is active in training.
        """
        self._check_input(x)

        if prune_level is not None:
            if not 1 <= prune_level <= self.depth:
                raise ValueError(
                    f"prune_level must be in [1, {self.depth}], got {prune_level}"
                )
            feats = self.compute_nodes(x, prune_level)
            return self.heads[prune_level - 1](feats[(0, prune_level)])

        feats = self.compute_nodes(x, self.depth)

        if not self.deep_supervision:
            return self.heads[-1](feats[(0, self.depth)])

        outputs = [self.heads[j - 1](feats[(0, j)]) for j in range(1, self.depth + 1)]
        if self.training:
            return outputs
        return torch.stack(outputs, dim=0).mean(dim=0)
