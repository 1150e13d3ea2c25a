"""
Tests for the align module.

Tests cover:
- Bounding box and weighted centroid measurement
- ORB feature extraction and descriptor registration
- Per-frame and batch registration

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import random

import numpy as np
import pytest

from luckystack.align import (
    RegistrationPlan,
    extract_features,
    mean_offset,
    measure_bounding_box,
    measure_centroid,
    register_batch,
    register_descriptor,
    register_frame,
    register_frames,
)
from luckystack.config import ConfigurationError, RegisterConfig, RegistrationMethod
from luckystack.io import write_image
from luckystack.matching import Match
from luckystack.registration import BoundingBox, offset


class TestBoundingBox:
    """Tests for bright-region extents."""

    def test_disk_extents(self, blob_frame):
        frame = blob_frame(center=(40, 60), radius=5)
        box = measure_bounding_box(frame, threshold=0.5)
        assert box == BoundingBox(left=35, right=45, top=55, bottom=65)
        assert box.center == (40.0, 60.0)

    def test_threshold_is_inclusive(self, blob_frame):
        frame = blob_frame(value=0.5)
        assert measure_bounding_box(frame, threshold=0.5) is not None
        assert measure_bounding_box(frame, threshold=0.51) is None

    def test_dark_frame_gives_none(self):
        assert measure_bounding_box(np.zeros((20, 20, 3)), threshold=0.1) is None

    def test_uses_channel_mean(self):
        """A pixel bright in one channel only is averaged down."""
        frame = np.zeros((10, 10, 3))
        frame[4, 6, 0] = 0.9
        assert measure_bounding_box(frame, threshold=0.5) is None
        assert measure_bounding_box(frame, threshold=0.3) == BoundingBox(6, 6, 4, 4)


class TestCentroid:
    """Tests for brightness-weighted centroids."""

    def test_symmetric_disk(self, blob_frame):
        centroid = measure_centroid(blob_frame(center=(30, 70)), threshold=0.1)
        assert centroid.x == pytest.approx(30.0)
        assert centroid.y == pytest.approx(70.0)

    def test_weighting(self):
        """Brighter pixels pull the centroid."""
        frame = np.zeros((10, 10, 3))
        frame[5, 2] = 1.0
        frame[5, 8] = 0.5
        centroid = measure_centroid(frame, threshold=0.1)
        assert centroid.x == pytest.approx((2 * 1.0 + 8 * 0.5) / 1.5)
        assert centroid.y == pytest.approx(5.0)

    def test_pixels_below_threshold_ignored(self):
        frame = np.full((10, 10, 3), 0.05)
        frame[3, 3] = 1.0
        centroid = measure_centroid(frame, threshold=0.1)
        assert (centroid.x, centroid.y) == pytest.approx((3.0, 3.0))

    def test_zero_weight_gives_none(self):
        assert measure_centroid(np.zeros((10, 10, 3)), threshold=0.1) is None


class TestDescriptorRegistration:
    """Tests for feature-based registration."""

    def test_flat_frame_has_no_features(self):
        assert len(extract_features(np.full((64, 64, 3), 0.5))) == 0

    def test_identical_frames_zero_offset(self, textured_frame):
        """Two identical frames register at exactly (0, 0)."""
        frame = textured_frame()
        features = extract_features(frame, fast_threshold=0.05, n_keypoints=200)
        assert len(features) > 0

        result = register_descriptor(features, extract_features(frame, 0.05, 200))
        assert not result.rejected
        assert result.n_matches > 0
        assert (result.dx, result.dy) == (0.0, 0.0)

    def test_shifted_frame(self, textured_frame):
        """A frame moved right 5 and down 3 needs (-5, -3) to return."""
        reference = textured_frame()
        moved = np.roll(reference, shift=(3, 5), axis=(0, 1))

        result = register_descriptor(
            extract_features(reference, 0.05, 200),
            extract_features(moved, 0.05, 200),
        )
        assert not result.rejected
        assert result.dx == pytest.approx(-5.0, abs=1.0)
        assert result.dy == pytest.approx(-3.0, abs=1.0)

    def test_no_features_is_rejection(self, textured_frame):
        """No correspondence marks the strategy rejected, it does not raise."""
        features = extract_features(textured_frame(), 0.05, 200)
        empty = extract_features(np.zeros((64, 64, 3)))
        assert register_descriptor(features, empty).rejected

    def test_mean_offset_order_invariant(self):
        rng = np.random.default_rng(7)
        matches = [
            Match(reference=(float(x), float(y)), frame=(float(x) - 1.1, float(y) + 0.3))
            for x, y in rng.uniform(0, 500, (50, 2))
        ]
        shuffled = matches[:]
        random.Random(3).shuffle(shuffled)
        assert mean_offset(matches) == pytest.approx(mean_offset(shuffled), abs=1e-12)


class TestRegisterFrame:
    """Tests for per-frame registration with a plan."""

    def test_strategies_side_by_side(self, blob_frame):
        plan = RegistrationPlan.from_chains(["bbox:0.5", "centroid:0.1"])
        record = register_frame("a.png", blob_frame(center=(52, 47)), plan)

        assert record.descriptor is None
        assert record.bbox.center == (52.0, 47.0)
        assert (record.centroid.x, record.centroid.y) == pytest.approx((52.0, 47.0))

    def test_preprocessing_applies_per_strategy(self, blob_frame):
        """bgone only affects the chain it belongs to."""
        frame = blob_frame(background=0.3)
        plan = RegistrationPlan.from_chains(["bgone:0.5,centroid:0.0", "bbox:0.2"])
        record = register_frame("a.png", frame, plan)

        assert (record.centroid.x, record.centroid.y) == pytest.approx((50.0, 50.0))
        assert record.bbox == BoundingBox(0, 99, 0, 99)

    def test_descriptor_requires_reference(self, textured_frame):
        plan = RegistrationPlan.from_chains(["orb:0.05"])
        with pytest.raises(ValueError, match="reference features"):
            register_frame("a.png", textured_frame(), plan)


class TestRegisterFrames:
    """Tests for batch registration."""

    def test_blob_sequence(self, blob_sequence):
        paths = blob_sequence([(50, 50), (52, 49), (47, 53)])
        plan = RegistrationPlan.from_chains(["bbox:0.5", "centroid:0.1"])
        registration = register_frames(paths, plan, reference_index=0, show_progress=False, workers=1)

        assert len(registration) == 3
        assert [r.path for r in registration.images] == [str(p) for p in paths]
        ref = registration.reference
        assert offset(registration.images[1], ref, RegistrationMethod.BOUNDING_BOX) == (-2.0, 1.0)
        assert offset(registration.images[2], ref, RegistrationMethod.CENTROID) == pytest.approx((3.0, -3.0))

    def test_relative_paths_stored_absolute(self, blob_sequence, tmp_path, monkeypatch):
        paths = blob_sequence([(50, 50), (52, 49)])
        monkeypatch.chdir(tmp_path)
        plan = RegistrationPlan.from_chains(["bbox:0.5"])
        registration = register_frames([p.name for p in paths], plan, show_progress=False, workers=1)
        assert [r.path for r in registration.images] == [str(p) for p in paths]

    def test_reference_index(self, blob_sequence):
        paths = blob_sequence([(50, 50), (52, 49)])
        plan = RegistrationPlan.from_chains(["bbox:0.5"])
        registration = register_frames(paths, plan, reference_index=1, show_progress=False, workers=1)
        assert registration.reference_index == 1
        assert offset(registration.images[0], registration.reference, RegistrationMethod.BOUNDING_BOX) == (2.0, -1.0)

    def test_reference_index_out_of_range(self, blob_sequence):
        paths = blob_sequence([(50, 50)])
        plan = RegistrationPlan.from_chains(["bbox:0.5"])
        with pytest.raises(ValueError, match="out of range"):
            register_frames(paths, plan, reference_index=3, show_progress=False, workers=1)

    def test_dimension_mismatch_aborts(self, blob_sequence, blob_frame, tmp_path):
        paths = blob_sequence([(50, 50), (51, 50)])
        odd = tmp_path / "odd.png"
        write_image(odd, blob_frame(height=80, width=100))
        plan = RegistrationPlan.from_chains(["bbox:0.5"])
        with pytest.raises(ValueError, match="expected 100x100"):
            register_frames(paths + [odd], plan, show_progress=False, workers=1)

    def test_missing_frame_aborts(self, blob_sequence, tmp_path):
        paths = blob_sequence([(50, 50)])
        plan = RegistrationPlan.from_chains(["bbox:0.5"])
        with pytest.raises(OSError):
            register_frames(paths + [tmp_path / "missing.png"], plan, show_progress=False, workers=1)

    def test_register_batch_validates_first(self, tmp_path):
        """A bad terminal operation fails before any frame is read."""
        config = RegisterConfig(chains=["blur:1.0"], workers=1)
        with pytest.raises(ConfigurationError, match="orb, bbox, centroid"):
            register_batch([tmp_path / "never-read.png"], config, show_progress=False)

    def test_dark_frame_recorded_as_absent(self, blob_sequence, tmp_path):
        paths = blob_sequence([(50, 50)])
        dark = tmp_path / "dark.png"
        write_image(dark, np.zeros((100, 100, 3)))
        plan = RegistrationPlan.from_chains(["bbox:0.5", "centroid:0.1"])
        registration = register_frames(paths + [dark], plan, show_progress=False, workers=1)

        assert registration.images[1].bbox is None
        assert registration.images[1].centroid is None
