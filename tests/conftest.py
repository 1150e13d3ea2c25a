"""
Pytest configuration and fixtures.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import numpy as np
import pytest
from scipy import ndimage

from luckystack.io import write_image


@pytest.fixture
def blob_frame():
    """Create a dark RGB frame with one bright disk."""
    def _create(height=100, width=100, center=(50, 50), radius=8, value=1.0, background=0.0):
        """
        Create a synthetic planet-like frame.

        center is (x, y); pixels within radius of it get value.
        """
        frame = np.full((height, width, 3), background, dtype=np.float64)
        yy, xx = np.mgrid[0:height, 0:width]
        disk = (xx - center[0]) ** 2 + (yy - center[1]) ** 2 <= radius ** 2
        frame[disk] = value
        return frame

    return _create


@pytest.fixture
def textured_frame():
    """Create a smooth random texture with plenty of corners."""
    def _create(height=200, width=200, seed=42):
        rng = np.random.default_rng(seed)
        texture = ndimage.gaussian_filter(rng.random((height, width)), sigma=1.5)
        texture = (texture - texture.min()) / (texture.max() - texture.min())
        return np.repeat(texture[:, :, np.newaxis], 3, axis=2)

    return _create


@pytest.fixture
def blob_sequence(tmp_path, blob_frame):
    """Write a sequence of PNG frames with a drifting disk; returns the paths."""
    def _create(centers, height=100, width=100, radius=8):
        paths = []
        for i, center in enumerate(centers):
            path = tmp_path / f"frame_{i:03d}.png"
            write_image(path, blob_frame(height, width, center=center, radius=radius))
            paths.append(path)
        return paths

    return _create
