"""
Tests for two-frame visual comparison.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import numpy as np
import pytest

from luckystack.compare import compare_bbox, compare_frames, side_by_side
from luckystack.config import CompareConfig, ConfigurationError
from luckystack.io import read_frame, write_image
from luckystack.processing import split_registration_step


class TestComposites:
    """Tests for composite construction."""

    def test_side_by_side(self):
        a = np.zeros((4, 5, 3))
        b = np.ones((4, 5, 3))
        pane = side_by_side(a, b)
        assert pane.shape == (4, 10, 3)
        assert pane[:, 5:].min() == 1.0

    def test_side_by_side_size_mismatch(self):
        with pytest.raises(ValueError, match="differ in size"):
            side_by_side(np.zeros((4, 5, 3)), np.zeros((4, 6, 3)))

    def test_bbox_drawn_on_both_panes(self, blob_frame):
        step = split_registration_step("bbox:0.5")
        pane = compare_bbox(blob_frame(value=0.6), blob_frame(center=(60, 50), value=0.6), step)
        red = [1.0, 0.0, 0.0]
        np.testing.assert_array_equal(pane[50, 42], red)
        np.testing.assert_array_equal(pane[50, 100 + 52], red)


class TestCompareFrames:
    """Tests for writing comparison images."""

    def test_outputs(self, textured_frame, tmp_path):
        first = textured_frame(height=120, width=120)
        second = np.roll(first, shift=(2, 3), axis=(0, 1))
        write_image(tmp_path / "a.png", first)
        write_image(tmp_path / "b.png", second)

        config = CompareConfig(chains=["orb:0.05", "bbox:0.5", "centroid:0.1"], histogram=True)
        prefix = str(tmp_path / "cmp")
        outputs = compare_frames(tmp_path / "a.png", tmp_path / "b.png", config, prefix)

        assert set(outputs) == {"descriptor", "bbox", "centroid", "orig", "arc-histogram"}
        for name in ("descriptor", "bbox", "centroid", "orig"):
            assert outputs[name].name == f"cmp_{name}.png"
            assert read_frame(outputs[name]).shape == (120, 240, 3)
        assert outputs["arc-histogram"].exists()

    def test_only_configured_strategies(self, blob_frame, tmp_path):
        write_image(tmp_path / "a.png", blob_frame())
        write_image(tmp_path / "b.png", blob_frame(center=(53, 50)))
        config = CompareConfig(chains=["centroid:0.1"])
        outputs = compare_frames(tmp_path / "a.png", tmp_path / "b.png", config, str(tmp_path / "c"))
        assert set(outputs) == {"centroid", "orig"}

    def test_invalid_chain_before_reading(self, tmp_path):
        config = CompareConfig(chains=["blur:1"])
        with pytest.raises(ConfigurationError):
            compare_frames(tmp_path / "missing-a.png", tmp_path / "missing-b.png", config, str(tmp_path / "c"))

    def test_size_mismatch(self, blob_frame, tmp_path):
        write_image(tmp_path / "a.png", blob_frame())
        write_image(tmp_path / "b.png", blob_frame(height=90))
        config = CompareConfig(chains=["bbox:0.5"])
        with pytest.raises(ValueError, match="differ in size"):
            compare_frames(tmp_path / "a.png", tmp_path / "b.png", config, str(tmp_path / "c"))
