"""
Correspondence matching between two sets of binary feature descriptors.

Matching is brute force (every reference descriptor against every frame
descriptor, Hamming distance) followed by Lowe's ratio test. Surviving
matches are then filtered by displacement angle: under pure translation all
true correspondences share one displacement vector, so matches whose angle
strays from the median angle are mismatches.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np

from .utils import round_half_away

logger = logging.getLogger(__name__)

DEFAULT_RATIO = 0.8
DEFAULT_MAX_ARC_DEVIATION = 5


@dataclass(frozen=True)
class Keypoint:
    """Detected feature location (pixel coordinates, x = column)."""

    x: float
    y: float
    scale: float = 1.0
    orientation: float = 0.0  # radians


@dataclass(frozen=True, eq=False)
class FeatureSet:
    """Keypoints and their binary descriptors, row-aligned."""

    keypoints: tuple[Keypoint, ...]
    descriptors: np.ndarray  # (N, n_bits) bool

    def __post_init__(self):
        object.__setattr__(self, "keypoints", tuple(self.keypoints))
        descriptors = _as_bits(self.descriptors)
        if descriptors.shape[0] != len(self.keypoints):
            raise ValueError(
                f"{len(self.keypoints)} keypoints but {descriptors.shape[0]} descriptors"
            )
        descriptors.setflags(write=False)
        object.__setattr__(self, "descriptors", descriptors)

    @classmethod
    def empty(cls, n_bits: int = 256) -> FeatureSet:
        return cls(keypoints=(), descriptors=np.zeros((0, n_bits), dtype=bool))

    def __len__(self) -> int:
        return len(self.keypoints)


@dataclass(frozen=True)
class Match:
    """A correspondence between a reference position and a frame position."""

    reference: tuple[float, float]
    frame: tuple[float, float]

    @property
    def dx(self) -> float:
        return self.reference[0] - self.frame[0]

    @property
    def dy(self) -> float:
        return self.reference[1] - self.frame[1]

    @property
    def arc(self) -> float:
        """Displacement angle in degrees, in (-180, 180]."""
        return math.degrees(math.atan2(self.dy, self.dx))

    @property
    def arc_bucket(self) -> int:
        """Displacement angle rounded to whole degrees."""
        return round_half_away(self.arc)


def _as_bits(descriptors: np.ndarray) -> np.ndarray:
    """Return descriptors as a (N, n_bits) boolean array; uint8 input is treated as packed bits."""
    descriptors = np.asarray(descriptors)
    if descriptors.ndim != 2:
        raise ValueError(f"Descriptors must be 2D, got shape {descriptors.shape}")
    if descriptors.dtype == np.uint8:
        return np.unpackbits(descriptors, axis=1).astype(bool)
    return descriptors.astype(bool)


def hamming_distances(first: np.ndarray, second: np.ndarray) -> np.ndarray:
    """
    Pairwise Hamming distances between two descriptor sets.

    Parameters
    ----------
    first : np.ndarray
        (N1, n_bits) boolean descriptors (or packed uint8).
    second : np.ndarray
        (N2, n_bits) boolean descriptors (or packed uint8).

    Returns
    -------
    np.ndarray
        (N1, N2) int64 matrix of differing bit counts.
    """
    a = _as_bits(first).astype(np.int64)
    b = _as_bits(second).astype(np.int64)
    if a.shape[1] != b.shape[1]:
        raise ValueError(f"Descriptor widths differ: {a.shape[1]} vs {b.shape[1]}")
    # Bits set in a but not b, plus bits set in b but not a
    return a @ (1 - b).T + (1 - a) @ b.T


def match_descriptors(
    reference: FeatureSet,
    frame: FeatureSet,
    ratio: float = DEFAULT_RATIO,
) -> list[Match]:
    """
    Nearest-neighbour matching with the ratio test.

    For every reference descriptor the closest frame descriptor is kept only
    if ``best < ratio * second_best``. A frame with a single descriptor has
    no second-best candidate, so its best match is always accepted.

    Parameters
    ----------
    reference : FeatureSet
        Features of the reference frame.
    frame : FeatureSet
        Features of the frame being registered.
    ratio : float, default 0.8
        Ratio test threshold.

    Returns
    -------
    list[Match]
        Accepted matches in reference-keypoint order.
    """
    if len(reference) == 0 or len(frame) == 0:
        return []

    dist = hamming_distances(reference.descriptors, frame.descriptors)
    rows = np.arange(dist.shape[0])

    # Stable sort: ties resolve to the lowest frame index
    order = np.argsort(dist, axis=1, kind="stable")
    best_idx = order[:, 0]
    best = dist[rows, best_idx].astype(np.float64)
    if dist.shape[1] > 1:
        second = dist[rows, order[:, 1]].astype(np.float64)
    else:
        second = np.full(dist.shape[0], np.inf)

    accepted = best < ratio * second

    matches = []
    for i in np.flatnonzero(accepted):
        kp1 = reference.keypoints[i]
        kp2 = frame.keypoints[best_idx[i]]
        matches.append(Match(reference=(kp1.x, kp1.y), frame=(kp2.x, kp2.y)))

    logger.debug(
        "Ratio test kept %d of %d reference descriptors",
        len(matches),
        len(reference),
    )
    return matches


def _angle_difference(a: int, b: int) -> int:
    """Smallest absolute difference between two angles in degrees."""
    d = abs(a - b) % 360
    return min(d, 360 - d)


def _circular_median(angles: list[int]) -> int:
    """Median of sorted angles, with the circle cut at its widest gap."""
    n = len(angles)
    gaps = [angles[i + 1] - angles[i] for i in range(n - 1)]
    gaps.append(angles[0] + 360 - angles[-1])
    start = (gaps.index(max(gaps)) + 1) % n
    rotated = angles[start:] + angles[:start]
    return rotated[n // 2]


def reject_by_arc(
    matches: list[Match],
    max_deviation: int = DEFAULT_MAX_ARC_DEVIATION,
) -> list[Match]:
    """
    Drop matches whose displacement angle deviates from the median angle.

    Matches are sorted by angle and the circle of angles is cut at its widest
    gap, so a cluster straddling +/-180 degrees stays contiguous. The median
    is taken at index ``len // 2`` of that ordering, and matches more than
    ``max_deviation`` degrees away are discarded.
    The filter is repeated until nothing more is removed, so applying it to
    its own output is a no-op.

    Parameters
    ----------
    matches : list[Match]
        Candidate matches.
    max_deviation : int, default 5
        Tolerance in whole degrees.

    Returns
    -------
    list[Match]
        Surviving matches, sorted by angle.
    """
    kept = sorted(matches, key=lambda m: m.arc)

    while kept:
        median = _circular_median([m.arc_bucket for m in kept])
        filtered = [
            m for m in kept
            if _angle_difference(m.arc_bucket, median) <= max_deviation
        ]
        if len(filtered) == len(kept):
            break
        kept = filtered

    if len(kept) < len(matches):
        logger.debug("Arc rejection removed %d of %d matches", len(matches) - len(kept), len(matches))

    return kept


def find_matches(
    reference: FeatureSet,
    frame: FeatureSet,
    ratio: float = DEFAULT_RATIO,
    max_deviation: int = DEFAULT_MAX_ARC_DEVIATION,
) -> list[Match]:
    """Ratio-test matching followed by arc rejection."""
    return reject_by_arc(match_descriptors(reference, frame, ratio=ratio), max_deviation)
