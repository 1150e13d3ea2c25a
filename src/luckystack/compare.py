"""
Visual comparison of two frames, one composite image per strategy.

Each composite places the (preprocessed) first frame on the left and the
second frame on the right, then draws what the strategy detected:

- descriptor: keypoints on both panes and a line per surviving match
- bbox: bounding-box extents on both panes
- centroid: a cross on each weighted centroid
- orig: the two decoded frames, nothing drawn

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np

from .align import extract_features, measure_bounding_box, measure_centroid
from .config import CompareConfig, RegistrationMethod
from .io import read_frame, write_image
from .matching import Keypoint, Match, find_matches
from .processing import (
    RegistrationStep,
    apply_chain,
    draw_bounding_box,
    draw_cross,
    draw_keypoint,
    draw_line,
    resolve_chains,
)
from .registration import BoundingBox
from .utils import path_with_suffix

logger = logging.getLogger(__name__)

MATCH_COLOR = (0.0, 1.0, 0.0)
PANE_NAMES = {
    RegistrationMethod.DESCRIPTOR: "descriptor",
    RegistrationMethod.BOUNDING_BOX: "bbox",
    RegistrationMethod.CENTROID: "centroid",
}


def side_by_side(first: np.ndarray, second: np.ndarray) -> np.ndarray:
    """Concatenate two equally sized frames horizontally."""
    if first.shape != second.shape:
        raise ValueError(f"Frames differ in size: {first.shape} vs {second.shape}")
    return np.concatenate([first, second], axis=1)


def compare_descriptor(
    first: np.ndarray,
    second: np.ndarray,
    step: RegistrationStep,
    config: CompareConfig,
) -> tuple[np.ndarray, list[Match]]:
    """Composite with keypoints and surviving matches drawn."""
    a = apply_chain(first, step.preprocessing)
    b = apply_chain(second, step.preprocessing)
    width = a.shape[1]

    features_a = extract_features(a, fast_threshold=step.threshold, n_keypoints=config.n_keypoints)
    features_b = extract_features(b, fast_threshold=step.threshold, n_keypoints=config.n_keypoints)
    matches = find_matches(
        features_a, features_b, ratio=config.ratio, max_deviation=config.max_arc_deviation
    )

    pane = side_by_side(a, b)
    for kp in features_a.keypoints:
        draw_keypoint(pane, kp)
    for kp in features_b.keypoints:
        draw_keypoint(pane, Keypoint(kp.x + width, kp.y, kp.scale, kp.orientation))
    for m in matches:
        draw_line(pane, m.reference, (m.frame[0] + width, m.frame[1]), MATCH_COLOR)

    logger.info(
        "descriptor: %d / %d features, %d matches",
        len(features_a), len(features_b), len(matches),
    )
    return pane, matches


def compare_bbox(first: np.ndarray, second: np.ndarray, step: RegistrationStep) -> np.ndarray:
    """Composite with both bounding boxes drawn."""
    a = apply_chain(first, step.preprocessing)
    b = apply_chain(second, step.preprocessing)
    width = a.shape[1]
    pane = side_by_side(a, b)

    box_a = measure_bounding_box(a, step.threshold)
    box_b = measure_bounding_box(b, step.threshold)
    if box_a is not None:
        draw_bounding_box(pane, box_a)
    if box_b is not None:
        draw_bounding_box(pane, BoundingBox(box_b.left + width, box_b.right + width, box_b.top, box_b.bottom))

    logger.info("bbox: %s vs %s", box_a, box_b)
    return pane


def compare_centroid(first: np.ndarray, second: np.ndarray, step: RegistrationStep) -> np.ndarray:
    """Composite with both weighted centroids marked."""
    a = apply_chain(first, step.preprocessing)
    b = apply_chain(second, step.preprocessing)
    width = a.shape[1]
    pane = side_by_side(a, b)

    c_a = measure_centroid(a, step.threshold)
    c_b = measure_centroid(b, step.threshold)
    if c_a is not None:
        draw_cross(pane, (c_a.x, c_a.y))
    if c_b is not None:
        draw_cross(pane, (c_b.x + width, c_b.y))

    logger.info("centroid: %s vs %s", c_a, c_b)
    return pane


def compare_frames(
    first_path: str | Path,
    second_path: str | Path,
    config: CompareConfig,
    prefix: str,
) -> dict[str, Path]:
    """
    Write one comparison composite per configured strategy plus ``orig``.

    Parameters
    ----------
    first_path, second_path : str or Path
        Frames to compare; the first plays the reference role.
    config : CompareConfig
        Chains and matcher settings.
    prefix : str
        Output prefix; ``_<name>.png`` is appended per composite.

    Returns
    -------
    dict[str, Path]
        Composite name to written path.
    """
    config.validate()
    steps = resolve_chains(config.chains)

    first = read_frame(first_path, config.colorspace)
    second = read_frame(second_path, config.colorspace)
    if first.shape != second.shape:
        raise ValueError(
            f"Frames differ in size: {first.shape[1]}x{first.shape[0]} vs {second.shape[1]}x{second.shape[0]}"
        )

    outputs = {}
    for method, step in steps.items():
        name = PANE_NAMES[method]
        if method is RegistrationMethod.DESCRIPTOR:
            pane, matches = compare_descriptor(first, second, step, config)
            if config.histogram:
                from .report import plot_arc_histogram

                outputs["arc-histogram"] = plot_arc_histogram(
                    matches, path_with_suffix(prefix, "_arc-histogram.png")
                )
        elif method is RegistrationMethod.BOUNDING_BOX:
            pane = compare_bbox(first, second, step)
        else:
            pane = compare_centroid(first, second, step)
        outputs[name] = write_image(path_with_suffix(prefix, f"_{name}.png"), pane, config.colorspace)

    outputs["orig"] = write_image(
        path_with_suffix(prefix, "_orig.png"), side_by_side(first, second), config.colorspace
    )
    return outputs
