"""Shared fixtures: small synthetic volumes and seeded RNGs."""

import random

import numpy as np
import pytest
import torch


@pytest.fixture(autouse=True)
def _seed():
    random.seed(0)
    np.random.seed(0)
    torch.manual_seed(0)


def make_sphere_case(shape=(24, 32, 32), radius=6, background=0.0, margin=4):
    """Image with a bright sphere (label 1) inside a nonzero body, zero border."""
    grid = np.indices(shape)
    center = np.array(shape)[:, None, None, None] // 2
    dist = np.sqrt(((grid - center) ** 2).sum(axis=0))

    image = np.full(shape, background, dtype=np.float32)
    body = tuple(slice(margin, s - margin) for s in shape)
    image[body] = 100.0
    seg = np.zeros(shape, dtype=np.int16)
    seg[dist <= radius] = 1
    image[seg == 1] = 300.0
    return image, seg


@pytest.fixture
def sphere_case():
    return make_sphere_case()


@pytest.fixture
def write_cases(tmp_path):
    """Write preprocessed-style NPZ cases and return their paths."""

    def _write(n=3, shape=(24, 32, 32)):
        paths = []
        for i in range(n):
            image, seg = make_sphere_case(shape)
            path = tmp_path / f"case_{i:03d}.npz"
            np.savez_compressed(
                path,
                image=image[None],
                label=seg,
                spacing=np.ones(len(shape), dtype=np.float32),
            )
            paths.append(path)
        return paths

    return _write
