"""
Tests for the matching module.

Tests cover:
- Hamming distances on boolean and packed descriptors
- Nearest-neighbour matching with the ratio test
- Arc rejection (median angle filter)

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import numpy as np
import pytest

from luckystack.matching import (
    FeatureSet,
    Keypoint,
    Match,
    find_matches,
    hamming_distances,
    match_descriptors,
    reject_by_arc,
)


def _random_features(n=20, n_bits=256, seed=0, offset=(0.0, 0.0)):
    rng = np.random.default_rng(seed)
    descriptors = rng.random((n, n_bits)) < 0.5
    keypoints = [
        Keypoint(x=float(10 + 7 * i) + offset[0], y=float(5 + 3 * i) + offset[1])
        for i in range(n)
    ]
    return FeatureSet(keypoints=keypoints, descriptors=descriptors)


def _match_with_arc(degrees, length=10.0):
    rad = np.radians(degrees)
    return Match(reference=(length * np.cos(rad), length * np.sin(rad)), frame=(0.0, 0.0))


class TestHammingDistances:
    """Tests for pairwise Hamming distances."""

    def test_identical_is_zero(self):
        """A descriptor has distance 0 to itself."""
        d = np.array([[True, False, True, True]])
        assert hamming_distances(d, d)[0, 0] == 0

    def test_known_distance(self):
        """Differing bits are counted."""
        a = np.array([[True, False, True, False]])
        b = np.array([[False, False, True, True], [True, False, True, False]])
        dist = hamming_distances(a, b)
        assert dist.shape == (1, 2)
        assert dist[0, 0] == 2
        assert dist[0, 1] == 0

    def test_packed_equals_unpacked(self):
        """Packed uint8 descriptors give the same distances as unpacked bits."""
        rng = np.random.default_rng(1)
        packed_a = rng.integers(0, 256, (5, 32), dtype=np.uint8)
        packed_b = rng.integers(0, 256, (7, 32), dtype=np.uint8)
        bits_a = np.unpackbits(packed_a, axis=1).astype(bool)
        bits_b = np.unpackbits(packed_b, axis=1).astype(bool)
        np.testing.assert_array_equal(
            hamming_distances(packed_a, packed_b),
            hamming_distances(bits_a, bits_b),
        )

    def test_width_mismatch_raises(self):
        """Descriptors of different widths cannot be compared."""
        with pytest.raises(ValueError, match="widths differ"):
            hamming_distances(np.zeros((1, 8), bool), np.zeros((1, 16), bool))


class TestMatchDescriptors:
    """Tests for ratio-test matching."""

    def test_self_match(self):
        """Every descriptor matches itself when compared against its own set."""
        features = _random_features()
        matches = match_descriptors(features, features)

        assert len(matches) == len(features)
        for m in matches:
            assert m.reference == m.frame
            assert m.dx == 0.0 and m.dy == 0.0

    def test_translated_features(self):
        """Same descriptors at shifted positions give the shift as displacement."""
        reference = _random_features()
        moved = FeatureSet(
            keypoints=[Keypoint(kp.x - 4, kp.y + 2) for kp in reference.keypoints],
            descriptors=reference.descriptors,
        )
        matches = match_descriptors(reference, moved)

        assert len(matches) == len(reference)
        assert all(m.dx == 4 and m.dy == -2 for m in matches)

    def test_ambiguous_match_rejected(self):
        """Two equally good candidates fail the ratio test."""
        d = np.zeros((1, 8), dtype=bool)
        reference = FeatureSet([Keypoint(0, 0)], d)
        frame = FeatureSet([Keypoint(1, 1), Keypoint(2, 2)], np.zeros((2, 8), dtype=bool))
        assert match_descriptors(reference, frame) == []

    def test_ratio_boundary(self):
        """best < 0.8 * second is strict."""
        reference = FeatureSet([Keypoint(0, 0)], np.zeros((1, 10), dtype=bool))
        best = np.zeros(10, dtype=bool)
        best[:4] = True  # distance 4
        second = np.zeros(10, dtype=bool)
        second[:5] = True  # distance 5, 0.8 * 5 == 4
        frame = FeatureSet([Keypoint(1, 1), Keypoint(2, 2)], np.stack([best, second]))

        assert match_descriptors(reference, frame) == []
        assert len(match_descriptors(reference, frame, ratio=0.81)) == 1

    def test_single_candidate_accepted(self):
        """With one frame descriptor there is no second best; the match is kept."""
        reference = _random_features(n=3)
        frame = FeatureSet([Keypoint(1, 1)], reference.descriptors[:1])
        matches = match_descriptors(reference, frame)
        assert len(matches) == 3

    def test_empty_inputs(self):
        """Empty feature sets give no matches, never an error."""
        features = _random_features()
        assert match_descriptors(FeatureSet.empty(), features) == []
        assert match_descriptors(features, FeatureSet.empty()) == []

    def test_keypoint_descriptor_count_mismatch(self):
        """FeatureSet requires one descriptor per keypoint."""
        with pytest.raises(ValueError):
            FeatureSet([Keypoint(0, 0)], np.zeros((2, 8), dtype=bool))


class TestMatch:
    """Tests for derived match quantities."""

    def test_displacement(self):
        m = Match(reference=(10.0, 20.0), frame=(7.0, 24.0))
        assert m.dx == 3.0
        assert m.dy == -4.0

    def test_arc(self):
        assert _match_with_arc(90).arc == pytest.approx(90.0)
        assert _match_with_arc(-45).arc_bucket == -45
        assert Match(reference=(-1.0, 0.0), frame=(0.0, 0.0)).arc == pytest.approx(180.0)


class TestRejectByArc:
    """Tests for median-angle filtering."""

    def test_outlier_removed(self):
        """A match pointing elsewhere is discarded."""
        matches = [_match_with_arc(a) for a in (30, 31, 29, 32, 30, 120)]
        kept = reject_by_arc(matches)
        assert len(kept) == 5
        assert all(abs(m.arc - 30) <= 5 for m in kept)

    def test_tolerance_inclusive(self):
        """A deviation of exactly max_deviation degrees is kept."""
        matches = [_match_with_arc(a) for a in (10, 10, 10, 15, 16)]
        kept = reject_by_arc(matches, max_deviation=5)
        assert sorted(m.arc_bucket for m in kept) == [10, 10, 10, 15]

    def test_idempotent(self):
        """Filtering a filtered list changes nothing."""
        rng = np.random.default_rng(3)
        matches = [_match_with_arc(a) for a in rng.uniform(-180, 180, 60)]
        matches += [_match_with_arc(a) for a in rng.normal(45, 2, 60)]

        once = reject_by_arc(matches)
        twice = reject_by_arc(once)
        assert once == twice

    def test_wraparound(self):
        """Angles either side of 180 degrees are close to each other."""
        matches = [_match_with_arc(a) for a in (179, -179, 178, 180, -178)]
        assert len(reject_by_arc(matches)) == 5

    def test_leftward_drift_with_mismatch(self):
        """A cluster straddling 180 degrees keeps its matches and drops the stray one."""
        true_matches = [
            Match(reference=(90.0, 50.0 + dy), frame=(100.0, 50.0))
            for dy in (0.2, -0.2, 0.3, -0.3, 0.4, -0.4, 0.5, -0.5)
        ]
        stray = Match(reference=(100.0, 50.0), frame=(100.0, 40.0))

        kept = reject_by_arc(true_matches + [stray])
        assert set(kept) == set(true_matches)
        assert np.mean([m.dx for m in kept]) == pytest.approx(-10.0)
        assert np.mean([m.dy for m in kept]) == pytest.approx(0.0, abs=1e-12)

    def test_order_does_not_matter(self):
        """The surviving set is independent of the input order."""
        matches = [_match_with_arc(a) for a in (5, 7, 6, 90, 4, 8)]
        assert set(reject_by_arc(matches)) == set(reject_by_arc(matches[::-1]))

    def test_empty(self):
        assert reject_by_arc([]) == []


class TestFindMatches:
    """Tests for the full matcher."""

    def test_translation_with_noise_descriptor(self):
        """Consistent shifts survive; a spurious correspondence does not."""
        reference = _random_features(n=30, seed=5)
        keypoints = [Keypoint(kp.x + 3, kp.y + 3) for kp in reference.keypoints]
        # Move one keypoint far away in another direction
        keypoints[7] = Keypoint(reference.keypoints[7].x + 40, reference.keypoints[7].y - 60)
        frame = FeatureSet(keypoints, reference.descriptors)

        matches = find_matches(reference, frame)
        assert len(matches) == 29
        assert all(m.dx == -3 and m.dy == -3 for m in matches)
