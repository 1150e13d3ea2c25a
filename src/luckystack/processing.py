"""
Processing chains: a small language of per-frame operations.

A chain is written as a comma-separated list of ``name[:param]`` items, for
example ``"blur:1.5,bgone:0.05,orb:0.08"``. Chains serve three purposes:

- preprocessing a frame before a registration strategy sees it
- selecting the registration strategy (terminal ``orb``, ``bbox`` or ``centroid``)
- post-processing stacked canvases (``average``, ``maxscale``, curves)

When a chain is applied to a single frame (``process`` command), the
registration operations draw their detections as a diagnostic overlay.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np
from scipy import ndimage
from skimage import draw, filters

from .config import ConfigurationError, RegistrationMethod

logger = logging.getLogger(__name__)

OVERLAY_COLOR = (1.0, 0.0, 0.0)


class OperationKind(Enum):
    """Operations understood by the chain language."""

    AVERAGE = "average"
    MAXSCALE = "maxscale"
    MAXSCALE_FIXED = "maxscale-fixed"
    SQRT = "sqrt"
    ASINH = "asinh"
    SOBEL = "sobel"
    BLUR = "blur"
    MEDIAN = "median"
    SHARPEN = "sharpen"
    BGONE = "bgone"
    BLACKWHITE = "blackwhite"
    ORB = "orb"
    BBOX = "bbox"
    CENTROID = "centroid"


# Operations that take a numeric parameter; everything else takes none
_PARAMETRIZED = {
    OperationKind.MAXSCALE_FIXED,
    OperationKind.SOBEL,
    OperationKind.BLUR,
    OperationKind.MEDIAN,
    OperationKind.SHARPEN,
    OperationKind.BGONE,
    OperationKind.BLACKWHITE,
    OperationKind.ORB,
    OperationKind.BBOX,
    OperationKind.CENTROID,
}

REGISTRATION_OPERATIONS = {
    OperationKind.ORB: RegistrationMethod.DESCRIPTOR,
    OperationKind.BBOX: RegistrationMethod.BOUNDING_BOX,
    OperationKind.CENTROID: RegistrationMethod.CENTROID,
}


@dataclass(frozen=True)
class Operation:
    """One step of a processing chain."""

    kind: OperationKind
    param: float | None = None

    def __str__(self) -> str:
        if self.param is None:
            return self.kind.value
        return f"{self.kind.value}:{self.param:g}"


@dataclass(frozen=True)
class RegistrationStep:
    """
    Registration strategy selected by the terminal operation of a chain.

    Resolved once per run; ``preprocessing`` holds the operations that
    precede the terminal step.
    """

    method: RegistrationMethod
    threshold: float
    preprocessing: tuple[Operation, ...] = ()

    def __str__(self) -> str:
        ops = [str(op) for op in self.preprocessing]
        ops.append(f"{_TERMINAL_NAMES[self.method]}:{self.threshold:g}")
        return ",".join(ops)


_TERMINAL_NAMES = {method: kind.value for kind, method in REGISTRATION_OPERATIONS.items()}


def _allowed_names() -> str:
    return ", ".join(kind.value for kind in OperationKind)


def parse_operation(text: str) -> Operation:
    """
    Parse a single ``name[:param]`` item.

    Raises
    ------
    ConfigurationError
        On unknown names, missing or non-numeric parameters.
    """
    name, sep, raw_param = text.strip().partition(":")
    name = name.strip().lower()
    try:
        kind = OperationKind(name)
    except ValueError:
        raise ConfigurationError(
            f"Unknown operation '{name}', expected one of: {_allowed_names()}"
        ) from None

    if kind in _PARAMETRIZED:
        if not sep or not raw_param.strip():
            raise ConfigurationError(f"Operation '{name}' requires a numeric parameter ('{name}:<value>')")
        try:
            param = float(raw_param)
        except ValueError:
            raise ConfigurationError(
                f"Parameter of '{name}' must be numeric, got '{raw_param.strip()}'"
            ) from None
        if not np.isfinite(param):
            raise ConfigurationError(f"Parameter of '{name}' must be finite, got {raw_param.strip()}")
        return Operation(kind, param)

    if sep:
        raise ConfigurationError(f"Operation '{name}' takes no parameter")
    return Operation(kind)


def parse_chain(text: str | None) -> list[Operation]:
    """
    Parse a comma-separated processing chain.

    >>> [str(op) for op in parse_chain("blur:1.5, maxscale")]
    ['blur:1.5', 'maxscale']
    """
    if text is None or not text.strip():
        return []
    return [parse_operation(item) for item in text.split(",") if item.strip()]


def split_registration_step(chain: str | list[Operation]) -> RegistrationStep:
    """
    Resolve the registration strategy from the terminal operation of a chain.

    Parameters
    ----------
    chain : str or list[Operation]
        Chain text or parsed operations.

    Returns
    -------
    RegistrationStep
        Strategy, its threshold and the preprocessing operations.

    Raises
    ------
    ConfigurationError
        If the chain is empty, the terminal operation is not a registration
        operation, or a registration operation appears before the end.
    """
    ops = parse_chain(chain) if isinstance(chain, str) else list(chain)
    allowed = ", ".join(kind.value for kind in REGISTRATION_OPERATIONS)

    if not ops:
        raise ConfigurationError(f"Empty registration chain, it must end with one of: {allowed}")

    terminal = ops[-1]
    if terminal.kind not in REGISTRATION_OPERATIONS:
        raise ConfigurationError(
            f"Registration chain must end with one of: {allowed}; got '{terminal.kind.value}'"
        )
    for op in ops[:-1]:
        if op.kind in REGISTRATION_OPERATIONS:
            raise ConfigurationError(
                f"'{op.kind.value}' may only appear as the terminal step of a registration chain"
            )

    return RegistrationStep(
        method=REGISTRATION_OPERATIONS[terminal.kind],
        threshold=float(terminal.param),
        preprocessing=tuple(ops[:-1]),
    )


def resolve_chains(chains: list[str]) -> dict[RegistrationMethod, RegistrationStep]:
    """
    Resolve several registration chains, at most one per strategy.

    Raises
    ------
    ConfigurationError
        If a chain is invalid or two chains select the same strategy.
    """
    steps: dict[RegistrationMethod, RegistrationStep] = {}
    for chain in chains:
        step = split_registration_step(chain)
        if step.method in steps:
            raise ConfigurationError(
                f"Strategy '{step.method.value}' selected by more than one chain"
            )
        steps[step.method] = step
    return steps


# =============================================================================
# PIXEL OPERATIONS
# =============================================================================


def channel_mean(frame: np.ndarray) -> np.ndarray:
    """Average of the colour channels (H, W)."""
    return frame.mean(axis=2) if frame.ndim == 3 else frame


def max_value(frame: np.ndarray) -> float:
    """Largest channel value of a frame."""
    return float(np.max(frame)) if frame.size else 0.0


def _gray_to_rgb(gray: np.ndarray) -> np.ndarray:
    return np.repeat(gray[:, :, np.newaxis], 3, axis=2)


def sobel(frame: np.ndarray, blur: float) -> np.ndarray:
    """
    Edge magnitude of a blurred greyscale version of the frame.

    The blur sigma scales with the frame area so that the same parameter
    behaves similarly across resolutions.
    """
    height, width = frame.shape[:2]
    sigma = (width * height / 3630000.0) * blur
    gray = channel_mean(frame)
    if sigma > 0:
        gray = filters.gaussian(gray, sigma=sigma, preserve_range=True)
    edges = np.clip(filters.sobel(gray), 0.0, 1.0)
    return _gray_to_rgb(edges)


def background_extract(frame: np.ndarray, threshold: float) -> np.ndarray:
    """Zero every pixel whose channel mean is below the threshold."""
    result = frame.copy()
    result[channel_mean(frame) < threshold] = 0.0
    return result


def black_white(frame: np.ndarray, threshold: float) -> np.ndarray:
    """Binarize on the channel mean."""
    mask = channel_mean(frame) >= threshold
    return _gray_to_rgb(mask.astype(np.float64))


def apply_operation(frame: np.ndarray, op: Operation, n_frames: int = 1) -> np.ndarray:
    """
    Apply one operation, returning a new array.

    Parameters
    ----------
    frame : np.ndarray
        (H, W, 3) float image.
    op : Operation
        Operation to apply.
    n_frames : int, default 1
        Frame count used by ``average``.
    """
    kind = op.kind

    if kind is OperationKind.AVERAGE:
        return frame / max(n_frames, 1)
    elif kind is OperationKind.MAXSCALE:
        peak = max_value(frame)
        return frame / peak if peak > 0 else frame.copy()
    elif kind is OperationKind.MAXSCALE_FIXED:
        return frame / op.param if op.param > 0 else frame.copy()
    elif kind is OperationKind.SQRT:
        return np.sqrt(np.maximum(frame, 0.0))
    elif kind is OperationKind.ASINH:
        return np.arcsinh(frame)
    elif kind is OperationKind.SOBEL:
        return sobel(frame, op.param)
    elif kind is OperationKind.BLUR:
        return ndimage.gaussian_filter(frame, sigma=(op.param, op.param, 0))
    elif kind is OperationKind.MEDIAN:
        size = max(1, int(op.param))
        return ndimage.median_filter(frame, size=(size, size, 1))
    elif kind is OperationKind.SHARPEN:
        return filters.unsharp_mask(
            frame, radius=1.0, amount=op.param, channel_axis=-1, preserve_range=True
        )
    elif kind is OperationKind.BGONE:
        return background_extract(frame, op.param)
    elif kind is OperationKind.BLACKWHITE:
        return black_white(frame, op.param)
    elif kind is OperationKind.ORB:
        return draw_features(frame, op.param)
    elif kind is OperationKind.BBOX:
        return draw_bounding_box_overlay(frame, op.param)
    elif kind is OperationKind.CENTROID:
        return draw_centroid_overlay(frame, op.param)

    raise ValueError(f"Unhandled operation: {op}")


def apply_chain(
    frame: np.ndarray,
    chain: list[Operation] | tuple[Operation, ...],
    n_frames: int = 1,
) -> np.ndarray:
    """
    Apply a chain of operations to a copy of the frame.

    The input frame is never modified.
    """
    result = np.array(frame, dtype=np.float64, copy=True)
    for op in chain:
        result = apply_operation(result, op, n_frames=n_frames)
        logger.debug("Applied %s", op)
    return result


def fix_maxscale(chain: list[Operation], reference: np.ndarray) -> list[Operation]:
    """
    Replace ``maxscale`` by a fixed scale taken from a reference frame.

    Used for video export so brightness does not change from frame to frame.
    """
    peak = max_value(reference)
    return [
        Operation(OperationKind.MAXSCALE_FIXED, peak) if op.kind is OperationKind.MAXSCALE else op
        for op in chain
    ]


# =============================================================================
# DIAGNOSTIC OVERLAYS
# =============================================================================


def draw_line(
    frame: np.ndarray,
    start: tuple[float, float],
    end: tuple[float, float],
    color: tuple[float, float, float] = OVERLAY_COLOR,
) -> None:
    """Draw a line segment in place; points are (x, y), clipped to the frame."""
    height, width = frame.shape[:2]
    rr, cc = draw.line(
        int(round(start[1])), int(round(start[0])),
        int(round(end[1])), int(round(end[0])),
    )
    inside = (rr >= 0) & (rr < height) & (cc >= 0) & (cc < width)
    frame[rr[inside], cc[inside]] = color


def draw_circle(
    frame: np.ndarray,
    center: tuple[float, float],
    radius: float,
    color: tuple[float, float, float] = OVERLAY_COLOR,
) -> None:
    """Draw a hollow circle in place; center is (x, y)."""
    rr, cc = draw.circle_perimeter(
        int(round(center[1])), int(round(center[0])), max(1, int(round(radius))),
        shape=frame.shape[:2],
    )
    frame[rr, cc] = color


def draw_cross(
    frame: np.ndarray,
    center: tuple[float, float],
    size: int = 10,
    color: tuple[float, float, float] = OVERLAY_COLOR,
) -> None:
    """Draw a '+' marker in place."""
    x, y = center
    draw_line(frame, (x - size, y), (x + size, y), color)
    draw_line(frame, (x, y - size), (x, y + size), color)


def draw_bounding_box(frame: np.ndarray, bbox, color=OVERLAY_COLOR) -> None:
    """Draw the horizontal and vertical extents of a bounding box through its centre."""
    cx, cy = bbox.center
    draw_line(frame, (bbox.left, cy), (bbox.right, cy), color)
    draw_line(frame, (cx, bbox.top), (cx, bbox.bottom), color)


def draw_keypoint(frame: np.ndarray, keypoint, color=OVERLAY_COLOR) -> None:
    """Draw a keypoint as a circle sized by its scale with an orientation tick."""
    radius = max(2.0, 3.0 * keypoint.scale)
    draw_circle(frame, (keypoint.x, keypoint.y), radius, color)
    end = (
        keypoint.x + radius * np.cos(keypoint.orientation),
        keypoint.y + radius * np.sin(keypoint.orientation),
    )
    draw_line(frame, (keypoint.x, keypoint.y), end, color)


def draw_features(frame: np.ndarray, threshold: float) -> np.ndarray:
    """Detect ORB keypoints and draw them on a copy of the frame."""
    from .align import extract_features

    result = frame.copy()
    for kp in extract_features(frame, fast_threshold=threshold).keypoints:
        draw_keypoint(result, kp)
    return result


def draw_bounding_box_overlay(frame: np.ndarray, threshold: float) -> np.ndarray:
    """Detect the bright region and draw its extents on a copy of the frame."""
    from .align import measure_bounding_box

    result = frame.copy()
    bbox = measure_bounding_box(frame, threshold)
    if bbox is not None:
        draw_bounding_box(result, bbox)
    return result


def draw_centroid_overlay(frame: np.ndarray, threshold: float) -> np.ndarray:
    """Compute the weighted centroid and mark it on a copy of the frame."""
    from .align import measure_centroid

    result = frame.copy()
    centroid = measure_centroid(frame, threshold)
    if centroid is not None:
        draw_cross(result, (centroid.x, centroid.y))
    return result
