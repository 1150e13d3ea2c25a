"""
Utility functions for the luckystack pipeline.

Includes:
- Version and run metadata
- Integer pixel shifts without interpolation
- Conversions to integer output ranges
- Duration formatting

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import math
import platform
import sys
from datetime import datetime, timezone

import numpy as np

__version__ = "0.4.0-beta"
__version_info__ = {
    "major": 0,
    "minor": 4,
    "patch": 0,
    "status": "beta",
    "date": "2026-10-19",
}


def get_version_banner() -> str:
    """Return a formatted version banner for logging."""
    return f"luckystack v{__version__} | Lucky-imaging registration and stacking"


def get_version() -> str:
    """Return the library version string."""
    return __version__


def get_platform_info() -> str:
    """Return platform information string."""
    return f"{platform.system()} {platform.release()} / Python {sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"


def get_timestamp_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def apply_integer_shift(
    image: np.ndarray,
    dy: int,
    dx: int,
    fill_value: float = 0.0,
) -> np.ndarray:
    """
    Apply integer pixel shift without interpolation.

    Parameters
    ----------
    image : np.ndarray
        Image to shift (2D or 3D).
    dy : int
        Vertical shift (positive = shift down in output).
    dx : int
        Horizontal shift (positive = shift right in output).
    fill_value : float, default 0.0
        Value to fill exposed edges.

    Returns
    -------
    np.ndarray
        Shifted image with same shape as input. Pixels shifted past the
        border are dropped.
    """
    result = np.full_like(image, fill_value)
    height, width = image.shape[:2]

    # Shift larger than the frame leaves nothing to copy
    if abs(dy) >= height or abs(dx) >= width:
        return result

    if dy >= 0:
        src_y = slice(0, height - dy)
        dst_y = slice(dy, height)
    else:
        src_y = slice(-dy, height)
        dst_y = slice(0, height + dy)

    if dx >= 0:
        src_x = slice(0, width - dx)
        dst_x = slice(dx, width)
    else:
        src_x = slice(-dx, width)
        dst_x = slice(0, width + dx)

    result[dst_y, dst_x, ...] = image[src_y, src_x, ...]
    return result


def to_uint8(data: np.ndarray) -> np.ndarray:
    """
    Convert normalized [0,1] float array to uint8 [0,255].

    Parameters
    ----------
    data : np.ndarray
        Input array with values in [0, 1] range.

    Returns
    -------
    np.ndarray
        Output array with dtype uint8.
    """
    return (np.clip(data, 0, 1) * 255).astype(np.uint8)


def to_uint16(data: np.ndarray) -> np.ndarray:
    """
    Convert normalized [0,1] float array to uint16 [0,65535].

    Parameters
    ----------
    data : np.ndarray
        Input array with values in [0, 1] range.

    Returns
    -------
    np.ndarray
        Output array with dtype uint16.
    """
    return (np.clip(data, 0, 1) * 65535).astype(np.uint16)


def path_with_suffix(prefix: str, suffix: str) -> str:
    """
    Append a suffix to the file-name part of an output prefix.

    >>> path_with_suffix("out/jupiter", "_bbox.png")
    'out/jupiter_bbox.png'
    """
    return f"{prefix}{suffix}"


def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable form.

    Parameters
    ----------
    seconds : float
        Duration in seconds.

    Returns
    -------
    str
        Formatted string like "2h 15m 30s" or "45.2s".
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.0f}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = seconds % 60
        return f"{hours}h {minutes}m {secs:.0f}s"


def round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero (2.5 -> 3, -2.5 -> -3)."""
    return int(math.copysign(math.floor(abs(value) + 0.5), value))
