"""
Rejection of frames whose registration is inconsistent with their neighbours
or with the reference frame.

Rules operate on the ordered sequence of records (acquisition order) and are
applied as a pipeline: every rule receives the survivors of the previous one.
A rejected record is removed from the sequence.

Rules
-----
average-bbox, average-centroid
    Window of 3 records. The middle value is compared to the window mean;
    the Euclidean deviation is normalized by the frame diagonal.
regression-descriptor, regression-bbox, regression-centroid
    Window of 9 records. A least-squares line is fitted through the offsets;
    the distance from the centre offset to its projection on the line
    (|dx| + |dy|) is normalized by width + height.
size
    Bounding-box width or height compared with the reference bounding box
    (threshold optional, default 0.02).

A record is rejected when its normalized deviation is >= the threshold.
Records at the sequence boundaries, records in windows where a value is
missing, and degenerate fits are not evaluated and pass.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Sequence

import numpy as np

from .config import ConfigurationError, RejectionRule, RuleKind
from .registration import (
    DEFAULT_SIZE_TOLERANCE,
    BoundingBox,
    ImageRegistration,
    Registration,
    bbox_offset,
    centroid_offset,
    descriptor_offset,
)

logger = logging.getLogger(__name__)

AVERAGE_WINDOW = 3
REGRESSION_WINDOW = 9

ValueFn = Callable[[ImageRegistration], "tuple[float, float] | None"]


def _bbox_center(record: ImageRegistration) -> tuple[float, float] | None:
    return record.bbox.center if record.bbox is not None else None


def _centroid(record: ImageRegistration) -> tuple[float, float] | None:
    return (record.centroid.x, record.centroid.y) if record.centroid is not None else None


def reject_average(
    images: Sequence[ImageRegistration],
    threshold: float,
    width: int,
    height: int,
    value_fn: ValueFn,
) -> list[ImageRegistration]:
    """
    Windowed-average rejection (window of 3).

    Parameters
    ----------
    images : sequence of ImageRegistration
        Ordered records.
    threshold : float
        Rejection threshold on the normalized deviation.
    width, height : int
        Frame size; the deviation is divided by the frame diagonal.
    value_fn : callable
        Returns the (x, y) value compared for a record, or None.

    Returns
    -------
    list[ImageRegistration]
        Surviving records, order preserved. The first and last records are
        never evaluated.
    """
    n = len(images)
    if n < AVERAGE_WINDOW:
        return list(images)

    diagonal = math.hypot(width, height)
    values = [value_fn(r) for r in images]
    half = AVERAGE_WINDOW // 2
    kept = []

    for i, record in enumerate(images):
        if i < half or i >= n - half:
            kept.append(record)
            continue

        window = values[i - half:i + half + 1]
        if any(v is None for v in window):
            kept.append(record)
            continue

        mean_x = math.fsum(v[0] for v in window) / AVERAGE_WINDOW
        mean_y = math.fsum(v[1] for v in window) / AVERAGE_WINDOW
        x, y = values[i]
        deviation = math.hypot(x - mean_x, y - mean_y) / diagonal

        if deviation >= threshold:
            logger.debug("Rejected %s (average deviation %.4f)", record.path, deviation)
        else:
            kept.append(record)

    return kept


def perpendicular_deviation(points: np.ndarray, center: tuple[float, float]) -> float | None:
    """
    Manhattan distance from ``center`` to its projection on the least-squares
    line through ``points``.

    Returns None when the fit is degenerate (all x equal) or the result is
    not finite.
    """
    xs = points[:, 0]
    ys = points[:, 1]
    mean_x = xs.mean()
    mean_y = ys.mean()
    sxx = float(np.sum((xs - mean_x) ** 2))
    if sxx == 0.0:
        return None

    slope = float(np.sum((xs - mean_x) * (ys - mean_y))) / sxx
    intercept = mean_y - slope * mean_x

    px, py = center
    # Foot of the perpendicular from (px, py) onto y = slope * x + intercept
    foot_x = (px + slope * (py - intercept)) / (1.0 + slope * slope)
    foot_y = slope * foot_x + intercept

    deviation = abs(px - foot_x) + abs(py - foot_y)
    if not math.isfinite(deviation):
        return None
    return deviation


def reject_regression(
    images: Sequence[ImageRegistration],
    threshold: float,
    width: int,
    height: int,
    offset_fn: ValueFn,
) -> list[ImageRegistration]:
    """
    Windowed-regression rejection (window of 9).

    The first and last four records are never evaluated. A window where one
    offset is missing, or whose fit is degenerate, leaves its centre record
    in place.
    """
    n = len(images)
    if n < REGRESSION_WINDOW:
        return list(images)

    scale = float(width + height)
    values = [offset_fn(r) for r in images]
    half = REGRESSION_WINDOW // 2
    kept = []

    for i, record in enumerate(images):
        if i < half or i >= n - half:
            kept.append(record)
            continue

        window = values[i - half:i + half + 1]
        if any(v is None for v in window):
            kept.append(record)
            continue

        raw = perpendicular_deviation(np.asarray(window, dtype=np.float64), values[i])
        if raw is None:
            logger.debug("Degenerate fit around %s, kept", record.path)
            kept.append(record)
            continue

        deviation = raw / scale
        if deviation >= threshold:
            logger.debug("Rejected %s (regression deviation %.4f)", record.path, deviation)
        else:
            kept.append(record)

    return kept


def reject_size(
    images: Sequence[ImageRegistration],
    threshold: float,
    reference: BoundingBox | None,
) -> list[ImageRegistration]:
    """
    Reject records whose bounding-box width or height deviates from the
    reference by a fraction >= threshold.

    Records without a bounding box pass. Without a reference bounding box
    the rule does not apply.
    """
    if reference is None:
        logger.warning("Reference frame has no bounding box, size rule skipped")
        return list(images)

    kept = []
    for record in images:
        if record.bbox is None:
            kept.append(record)
            continue
        if record.bbox.is_consistent_with(reference, threshold):
            kept.append(record)
        else:
            logger.debug(
                "Rejected %s (size deviation %.4f)", record.path, record.bbox.size_deviation(reference)
            )
    return kept


def apply_rule(
    registration: Registration,
    images: Sequence[ImageRegistration],
    rule: RejectionRule,
    width: int,
    height: int,
) -> list[ImageRegistration]:
    """Apply one rule to the surviving records."""
    reference = registration.reference
    kind = rule.kind

    if kind is RuleKind.AVERAGE_BBOX:
        return reject_average(images, rule.threshold, width, height, _bbox_center)
    elif kind is RuleKind.AVERAGE_CENTROID:
        return reject_average(images, rule.threshold, width, height, _centroid)
    elif kind is RuleKind.REGRESSION_DESCRIPTOR:
        return reject_regression(images, rule.threshold, width, height, descriptor_offset)
    elif kind is RuleKind.REGRESSION_BBOX:
        return reject_regression(
            images, rule.threshold, width, height, lambda r: bbox_offset(r, reference)
        )
    elif kind is RuleKind.REGRESSION_CENTROID:
        return reject_regression(
            images, rule.threshold, width, height, lambda r: centroid_offset(r, reference)
        )
    elif kind is RuleKind.SIZE:
        return reject_size(images, rule.threshold, reference.bbox)

    raise ValueError(f"Unknown rejection rule: {rule}")


def apply_rejections(
    registration: Registration,
    images: Sequence[ImageRegistration] | None,
    rules: Sequence[RejectionRule],
    width: int,
    height: int,
) -> list[ImageRegistration]:
    """
    Run the rejection pipeline.

    Parameters
    ----------
    registration : Registration
        Full registration; supplies the reference record.
    images : sequence of ImageRegistration or None
        Records to filter. None uses every record of the registration.
    rules : sequence of RejectionRule
        Rules in application order.
    width, height : int
        Frame size used for normalization.

    Returns
    -------
    list[ImageRegistration]
        Survivors of every rule, in sequence order.
    """
    survivors = list(registration.images if images is None else images)

    for rule in rules:
        before = len(survivors)
        survivors = apply_rule(registration, survivors, rule, width, height)
        logger.info("Rule %s dropped %d of %d frames", rule, before - len(survivors), before)

    return survivors


def parse_rules(text: str | None) -> list[RejectionRule]:
    """
    Parse a comma-separated rule list.

    >>> [str(r) for r in parse_rules("size:0.05, average-bbox:0.01")]
    ['size:0.05', 'average-bbox:0.01']

    ``size`` without a value uses the 2% default tolerance.

    Raises
    ------
    ConfigurationError
        On unknown rule names and missing, non-numeric or negative thresholds.
    """
    if text is None or not text.strip():
        return []

    allowed = ", ".join(kind.value for kind in RuleKind)
    rules = []
    for item in text.split(","):
        if not item.strip():
            continue
        name, sep, raw = item.strip().partition(":")
        name = name.strip().lower()
        try:
            kind = RuleKind(name)
        except ValueError:
            raise ConfigurationError(
                f"Unknown rejection rule '{name}', expected one of: {allowed}"
            ) from None
        if not raw.strip() and kind is RuleKind.SIZE:
            rules.append(RejectionRule(kind, DEFAULT_SIZE_TOLERANCE))
            continue
        if not sep or not raw.strip():
            raise ConfigurationError(f"Rejection rule '{name}' requires a threshold ('{name}:<value>')")
        try:
            threshold = float(raw)
        except ValueError:
            raise ConfigurationError(
                f"Threshold of '{name}' must be numeric, got '{raw.strip()}'"
            ) from None
        if not math.isfinite(threshold) or threshold < 0:
            raise ConfigurationError(f"Threshold of '{name}' must be a finite value >= 0, got {raw.strip()}")
        rules.append(RejectionRule(kind, threshold))
    return rules
