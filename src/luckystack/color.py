"""
Working colour spaces for frame accumulation.

Frames are decoded as sRGB-encoded values in [0, 1] and converted into a
working space before any registration or stacking arithmetic:

- ``srgb``: values are used as decoded
- ``linear``: sRGB transfer function removed (physically additive light)
- ``quadratic``: values squared
- ``sqrt``: square root of values

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import numpy as np

from .config import COLORSPACES, ConfigurationError


def srgb_to_linear(values: np.ndarray) -> np.ndarray:
    """Remove the sRGB transfer function (IEC 61966-2-1)."""
    values = np.asarray(values, dtype=np.float64)
    high = ((np.maximum(values, 0.04045) + 0.055) / 1.055) ** 2.4
    return np.where(values <= 0.04045, values / 12.92, high)


def linear_to_srgb(values: np.ndarray) -> np.ndarray:
    """Apply the sRGB transfer function."""
    values = np.asarray(values, dtype=np.float64)
    high = 1.055 * np.maximum(values, 0.0031308) ** (1.0 / 2.4) - 0.055
    return np.where(values <= 0.0031308, values * 12.92, high)


def _check(colorspace: str) -> None:
    if colorspace not in COLORSPACES:
        raise ConfigurationError(
            f"Unknown colorspace '{colorspace}', expected one of: {', '.join(COLORSPACES)}"
        )


def to_working(frame: np.ndarray, colorspace: str) -> np.ndarray:
    """
    Convert decoded sRGB values into the working colour space.

    Parameters
    ----------
    frame : np.ndarray
        Image with values in [0, 1].
    colorspace : str
        One of 'srgb', 'linear', 'quadratic', 'sqrt'.

    Returns
    -------
    np.ndarray
        New float64 array; the input is never modified.
    """
    _check(colorspace)
    frame = np.asarray(frame, dtype=np.float64)

    if colorspace == "srgb":
        return frame.copy()
    elif colorspace == "linear":
        return srgb_to_linear(frame)
    elif colorspace == "quadratic":
        return frame ** 2
    else:
        return np.sqrt(np.maximum(frame, 0.0))


def from_working(frame: np.ndarray, colorspace: str) -> np.ndarray:
    """
    Convert working colour space values back to sRGB encoding.

    Inverse of :func:`to_working`.
    """
    _check(colorspace)
    frame = np.asarray(frame, dtype=np.float64)

    if colorspace == "srgb":
        return frame.copy()
    elif colorspace == "linear":
        return linear_to_srgb(frame)
    elif colorspace == "quadratic":
        return np.sqrt(np.maximum(frame, 0.0))
    else:
        return frame ** 2
