"""
Frame registration against a single reference frame.

Three independent strategies estimate where a frame moved to:

- descriptor: ORB features matched against the reference features, offset
  is the mean displacement of the surviving matches
- bbox: extents of the single bright region (pixels at or above a threshold)
- centroid: brightness-weighted centroid of pixels at or above a threshold

Each strategy has its own preprocessing chain. All results for a frame are
stored side by side in one :class:`ImageRegistration`.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import math
import os
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
from skimage.color import rgb2gray
from skimage.feature import ORB

from .config import RegisterConfig, RegistrationMethod
from .io import read_frame
from .matching import (
    DEFAULT_MAX_ARC_DEVIATION,
    DEFAULT_RATIO,
    FeatureSet,
    Keypoint,
    Match,
    find_matches,
)
from .processing import RegistrationStep, apply_chain, channel_mean, resolve_chains
from .registration import (
    BoundingBox,
    DescriptorRegistration,
    ImageRegistration,
    Registration,
    WeightedCentroid,
)

logger = logging.getLogger(__name__)

# Default number of workers: CPU count - 1 (leave one core for system)
DEFAULT_WORKERS = max(1, os.cpu_count() - 1) if os.cpu_count() else 4

DEFAULT_N_KEYPOINTS = 500


# =============================================================================
# STRATEGIES
# =============================================================================


def extract_features(
    frame: np.ndarray,
    fast_threshold: float = 0.08,
    n_keypoints: int = DEFAULT_N_KEYPOINTS,
) -> FeatureSet:
    """
    Detect ORB keypoints and their binary descriptors.

    Parameters
    ----------
    frame : np.ndarray
        (H, W, 3) frame.
    fast_threshold : float, default 0.08
        FAST corner threshold.
    n_keypoints : int, default 500
        Maximum number of keypoints.

    Returns
    -------
    FeatureSet
        Detected features; empty when the detector finds nothing.
    """
    gray = rgb2gray(np.clip(frame, 0.0, None)) if frame.ndim == 3 else frame
    orb = ORB(n_keypoints=n_keypoints, fast_threshold=fast_threshold)

    try:
        orb.detect_and_extract(gray)
    except RuntimeError as e:
        # Raised by skimage when no corner survives the FAST threshold
        logger.debug("Feature detection found nothing: %s", e)
        return FeatureSet.empty()

    keypoints = [
        Keypoint(x=float(col), y=float(row), scale=float(scale), orientation=float(angle))
        for (row, col), scale, angle in zip(orb.keypoints, orb.scales, orb.orientations)
    ]
    return FeatureSet(keypoints=keypoints, descriptors=orb.descriptors)


def mean_offset(matches: list[Match]) -> tuple[float, float]:
    """Component-wise mean displacement, independent of match order."""
    n = len(matches)
    return (
        math.fsum(m.dx for m in matches) / n,
        math.fsum(m.dy for m in matches) / n,
    )


def register_descriptor(
    reference: FeatureSet,
    features: FeatureSet,
    ratio: float = DEFAULT_RATIO,
    max_deviation: int = DEFAULT_MAX_ARC_DEVIATION,
) -> DescriptorRegistration:
    """
    Estimate the offset of a frame from its features.

    Returns
    -------
    DescriptorRegistration
        Mean displacement (sub-pixel) of the surviving matches, or the
        rejection marker when no match survives.
    """
    matches = find_matches(reference, features, ratio=ratio, max_deviation=max_deviation)
    if not matches:
        return DescriptorRegistration.rejection()

    dx, dy = mean_offset(matches)
    return DescriptorRegistration(dx=dx, dy=dy, n_matches=len(matches))


def measure_bounding_box(frame: np.ndarray, threshold: float) -> BoundingBox | None:
    """
    Bounding box of all pixels whose channel mean is at or above the threshold.

    Returns None when no pixel qualifies.
    """
    mask = channel_mean(frame) >= threshold
    rows = np.flatnonzero(mask.any(axis=1))
    if rows.size == 0:
        return None
    cols = np.flatnonzero(mask.any(axis=0))
    return BoundingBox(
        left=int(cols[0]),
        right=int(cols[-1]),
        top=int(rows[0]),
        bottom=int(rows[-1]),
    )


def measure_centroid(frame: np.ndarray, threshold: float) -> WeightedCentroid | None:
    """
    Brightness-weighted centroid of pixels whose channel mean is at or above
    the threshold.

    Returns None when the total weight is zero.
    """
    value = channel_mean(frame)
    weights = np.where(value >= threshold, value, 0.0)
    total = float(weights.sum())
    if total <= 0.0:
        return None

    height, width = weights.shape
    x = float(weights.sum(axis=0) @ np.arange(width)) / total
    y = float(weights.sum(axis=1) @ np.arange(height)) / total
    return WeightedCentroid(x=x, y=y)


# =============================================================================
# PER-FRAME REGISTRATION
# =============================================================================


@dataclass(frozen=True)
class RegistrationPlan:
    """
    Strategies to run for every frame, resolved once per run.

    Attributes
    ----------
    steps : dict
        Registration step per strategy (at most one each).
    colorspace : str
        Working colour space frames are decoded into.
    n_keypoints : int
        ORB keypoint budget.
    ratio : float
        Ratio test threshold.
    max_arc_deviation : int
        Arc rejection tolerance in degrees.
    """

    steps: dict[RegistrationMethod, RegistrationStep] = field(default_factory=dict)
    colorspace: str = "srgb"
    n_keypoints: int = DEFAULT_N_KEYPOINTS
    ratio: float = DEFAULT_RATIO
    max_arc_deviation: int = DEFAULT_MAX_ARC_DEVIATION

    @classmethod
    def from_chains(cls, chains: list[str], **kwargs) -> RegistrationPlan:
        return cls(steps=resolve_chains(chains), **kwargs)

    @classmethod
    def from_config(cls, config: RegisterConfig) -> RegistrationPlan:
        return cls.from_chains(
            config.chains,
            colorspace=config.colorspace,
            n_keypoints=config.n_keypoints,
            ratio=config.ratio,
            max_arc_deviation=config.max_arc_deviation,
        )

    def features(self, frame: np.ndarray) -> FeatureSet | None:
        """Features of a frame for the descriptor strategy, or None if not planned."""
        step = self.steps.get(RegistrationMethod.DESCRIPTOR)
        if step is None:
            return None
        prepared = apply_chain(frame, step.preprocessing)
        return extract_features(prepared, fast_threshold=step.threshold, n_keypoints=self.n_keypoints)


def register_frame(
    path: str | Path,
    frame: np.ndarray,
    plan: RegistrationPlan,
    reference_features: FeatureSet | None = None,
) -> ImageRegistration:
    """
    Run every planned strategy on one decoded frame.

    Parameters
    ----------
    path : str or Path
        Frame identity stored in the record.
    frame : np.ndarray
        Decoded frame in the working colour space.
    plan : RegistrationPlan
        Strategies to run.
    reference_features : FeatureSet, optional
        Reference features; required when the descriptor strategy is planned.

    Returns
    -------
    ImageRegistration
        Record with one entry per planned strategy.
    """
    descriptor = bbox = centroid = None
    steps = plan.steps

    if RegistrationMethod.DESCRIPTOR in steps:
        if reference_features is None:
            raise ValueError("Descriptor registration requires reference features")
        descriptor = register_descriptor(
            reference_features,
            plan.features(frame),
            ratio=plan.ratio,
            max_deviation=plan.max_arc_deviation,
        )
        if descriptor.rejected:
            logger.debug("%s: no usable correspondence", Path(path).name)

    step = steps.get(RegistrationMethod.BOUNDING_BOX)
    if step is not None:
        bbox = measure_bounding_box(apply_chain(frame, step.preprocessing), step.threshold)
        if bbox is None:
            logger.debug("%s: no pixel above bbox threshold %g", Path(path).name, step.threshold)

    step = steps.get(RegistrationMethod.CENTROID)
    if step is not None:
        centroid = measure_centroid(apply_chain(frame, step.preprocessing), step.threshold)
        if centroid is None:
            logger.debug("%s: zero centroid weight at threshold %g", Path(path).name, step.threshold)

    return ImageRegistration(path=str(path), descriptor=descriptor, bbox=bbox, centroid=centroid)


def load_and_register(
    path: str | Path,
    plan: RegistrationPlan,
    reference_features: FeatureSet | None,
    expected_shape: tuple[int, int] | None = None,
) -> ImageRegistration:
    """
    Decode a frame and register it.

    Raises
    ------
    ValueError
        If the frame size differs from ``expected_shape`` (H, W).
    """
    frame = read_frame(path, plan.colorspace)
    if expected_shape is not None and frame.shape[:2] != tuple(expected_shape):
        raise ValueError(
            f"Frame {Path(path).name} has size {frame.shape[1]}x{frame.shape[0]}, "
            f"expected {expected_shape[1]}x{expected_shape[0]}"
        )
    return register_frame(path, frame, plan, reference_features)


def _register_frame_wrapper(args: tuple) -> tuple[int, ImageRegistration]:
    """
    Wrapper for load_and_register to use with ProcessPoolExecutor.

    Parameters
    ----------
    args : tuple
        (index, path, plan, reference_features, expected_shape) tuple.
    """
    index, path, plan, reference_features, expected_shape = args
    return index, load_and_register(path, plan, reference_features, expected_shape)


def register_frames(
    paths: list[Path],
    plan: RegistrationPlan,
    reference_index: int = 0,
    show_progress: bool = True,
    workers: int | None = None,
) -> Registration:
    """
    Register every frame against the reference frame.

    Parameters
    ----------
    paths : list[Path]
        Ordered frame paths.
    plan : RegistrationPlan
        Strategies to run.
    reference_index : int, default 0
        Index of the reference frame in ``paths``.
    show_progress : bool, default True
        Show progress bar.
    workers : int or None, default None
        Number of parallel workers. None uses auto-detection (CPU count - 1).
        Set to 1 for sequential processing.

    Returns
    -------
    Registration
        Records in the order of ``paths``, with absolute paths.

    Raises
    ------
    ValueError
        If the reference index is out of range or frame sizes differ.
    OSError
        If a frame cannot be read. The first failure aborts the batch.
    """
    from .cli_output import create_progress_bar

    # Stored records carry absolute paths
    paths = [Path(p).absolute() for p in paths]
    n_frames = len(paths)
    if not 0 <= reference_index < n_frames:
        raise ValueError(f"reference_index {reference_index} out of range for {n_frames} frames")

    if workers is None:
        workers = DEFAULT_WORKERS

    reference = read_frame(paths[reference_index], plan.colorspace)
    expected_shape = reference.shape[:2]
    reference_features = plan.features(reference)
    if reference_features is not None:
        logger.info("Reference %s: %d features", Path(paths[reference_index]).name, len(reference_features))

    records: list[ImageRegistration | None] = [None] * n_frames

    # Sequential for small frame counts or single worker
    if workers <= 1 or n_frames < 10:
        pbar = create_progress_bar(total=n_frames, desc="Registering", disable=not show_progress)
        with pbar:
            for i, path in enumerate(paths):
                records[i] = load_and_register(path, plan, reference_features, expected_shape)
                pbar.update(1)
    else:
        logger.info("Parallel registration: %d frames, %d workers", n_frames, workers)
        args_list = [
            (i, path, plan, reference_features, expected_shape)
            for i, path in enumerate(paths)
        ]
        pbar = create_progress_bar(
            total=n_frames,
            desc=f"Registering ({workers} workers)",
            disable=not show_progress,
        )
        with ProcessPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(_register_frame_wrapper, args): args[1] for args in args_list}
            with pbar:
                for future in as_completed(futures):
                    try:
                        index, record = future.result()
                    except Exception as e:
                        logger.error("Registration failed for %s: %s", Path(futures[future]).name, e)
                        executor.shutdown(wait=False, cancel_futures=True)
                        raise
                    records[index] = record
                    pbar.update(1)

    registration = Registration(reference_index=reference_index, images=records)
    _log_summary(registration)
    return registration


def _log_summary(registration: Registration) -> None:
    n = len(registration)
    n_desc = sum(1 for r in registration.images if r.descriptor is not None and not r.descriptor.rejected)
    n_rej = sum(1 for r in registration.images if r.descriptor is not None and r.descriptor.rejected)
    n_bbox = sum(1 for r in registration.images if r.bbox is not None)
    n_cent = sum(1 for r in registration.images if r.centroid is not None)
    logger.info(
        "Registered %d frames: descriptor %d (rejected %d), bbox %d, centroid %d",
        n, n_desc, n_rej, n_bbox, n_cent,
    )


def register_batch(
    paths: list[Path],
    config: RegisterConfig,
    show_progress: bool = True,
) -> Registration:
    """
    Validate the configuration and register a batch of frames.

    Raises
    ------
    ConfigurationError
        If the configuration is invalid; raised before any frame is read.
    """
    config.validate()
    plan = RegistrationPlan.from_config(config)
    return register_frames(
        paths,
        plan,
        reference_index=config.reference_index,
        show_progress=show_progress,
        workers=config.workers,
    )
