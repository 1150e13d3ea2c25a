"""
I/O operations for lucky-imaging frame sequences.

Handles:
- Frame discovery (files and directories, sorted by name)
- Frame decoding from PNG/TIFF/JPEG (imageio) and FITS (astropy)
- Image encoding back to the same formats
- Registration file persistence (JSON)

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Sequence, TypeVar

import imageio.v3 as iio
import numpy as np
from astropy.io import fits

from .color import from_working, to_working
from .registration import Registration, registration_from_dict, registration_to_dict
from .utils import to_uint8, to_uint16

logger = logging.getLogger(__name__)

T = TypeVar("T")

RASTER_SUFFIXES = {".png", ".tif", ".tiff", ".jpg", ".jpeg"}
FITS_SUFFIXES = {".fits", ".fit", ".fts"}
FRAME_SUFFIXES = RASTER_SUFFIXES | FITS_SUFFIXES


def list_frames(
    paths: list[str | Path],
    skip: int = 0,
    count: int | None = None,
) -> list[Path]:
    """
    Expand input paths into an ordered list of frame files.

    Parameters
    ----------
    paths : list of str or Path
        Files and/or directories. Directories contribute every file with a
        supported image suffix.
    skip : int, default 0
        Number of leading frames to drop.
    count : int, optional
        Maximum number of frames to keep after skipping.

    Returns
    -------
    list[Path]
        Frames sorted by file name.

    Raises
    ------
    FileNotFoundError
        If a path does not exist.
    """
    frames = []
    for entry in paths:
        path = Path(entry)
        if not path.exists():
            raise FileNotFoundError(f"No such file or directory: {path}")
        if path.is_dir():
            found = [p for p in path.iterdir() if p.is_file() and p.suffix.lower() in FRAME_SUFFIXES]
            logger.debug("Found %d frames in %s", len(found), path)
            frames.extend(found)
        else:
            frames.append(path)

    frames.sort(key=lambda p: (p.name, str(p)))
    selected = select_range(frames, skip, count)

    logger.info("Selected %d of %d frames (skip=%d)", len(selected), len(frames), skip)
    return selected


def select_range(items: Sequence[T], skip: int = 0, count: int | None = None) -> list[T]:
    """
    Drop ``skip`` leading items and keep at most ``count`` of the rest.

    >>> select_range([1, 2, 3, 4], skip=1, count=2)
    [2, 3]
    """
    selected = list(items[skip:])
    if count is not None:
        selected = selected[:count]
    return selected


def _normalize(data: np.ndarray) -> np.ndarray:
    """Scale integer data by its dtype range; float data is kept or divided by its max."""
    if np.issubdtype(data.dtype, np.integer):
        info = np.iinfo(data.dtype)
        return data.astype(np.float64) / float(info.max)
    data = data.astype(np.float64)
    peak = float(np.nanmax(data)) if data.size else 0.0
    if peak > 1.0:
        data = data / peak
    return np.nan_to_num(data)


def _to_rgb(data: np.ndarray) -> np.ndarray:
    """Broadcast greyscale to 3 channels and drop alpha."""
    if data.ndim == 2:
        return np.repeat(data[:, :, np.newaxis], 3, axis=2)
    if data.ndim == 3 and data.shape[2] == 1:
        return np.repeat(data, 3, axis=2)
    if data.ndim == 3 and data.shape[2] >= 3:
        return data[:, :, :3]
    raise ValueError(f"Unsupported image shape: {data.shape}")


def _read_fits_data(path: Path) -> np.ndarray:
    with fits.open(path) as hdul:
        data = hdul[0].data
        if data is None:
            raise ValueError(f"FITS file has no image data: {path}")
        data = np.array(data)

    # Plane-first cubes (3, H, W) are the common FITS layout
    if data.ndim == 3 and data.shape[0] in (3, 4) and data.shape[2] not in (3, 4):
        data = np.moveaxis(data, 0, -1)
    return data


def read_frame(path: str | Path, colorspace: str = "srgb") -> np.ndarray:
    """
    Decode an image into a working-space frame.

    Parameters
    ----------
    path : str or Path
        PNG, TIFF, JPEG or FITS file.
    colorspace : str, default 'srgb'
        Working colour space.

    Returns
    -------
    np.ndarray
        (H, W, 3) float64 frame.
    """
    path = Path(path)
    if path.suffix.lower() in FITS_SUFFIXES:
        data = _read_fits_data(path)
    else:
        data = iio.imread(path)

    frame = _to_rgb(_normalize(np.asarray(data)))
    return to_working(frame, colorspace)


def frame_dimensions(path: str | Path) -> tuple[int, int]:
    """Return (width, height) of an image file."""
    path = Path(path)
    if path.suffix.lower() in FITS_SUFFIXES:
        shape = _read_fits_data(path).shape
    else:
        shape = iio.improps(path).shape
    return shape[1], shape[0]


def write_image(
    path: str | Path,
    frame: np.ndarray,
    colorspace: str = "srgb",
) -> Path:
    """
    Convert a working-space frame back to sRGB and write it.

    PNG and TIFF are written with 16 bits per channel, JPEG with 8 bits,
    FITS as float32 plane-first cube.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    encoded = np.clip(from_working(frame, colorspace), 0.0, 1.0)
    suffix = path.suffix.lower()

    if suffix in FITS_SUFFIXES:
        cube = np.moveaxis(encoded, -1, 0).astype(np.float32)
        fits.PrimaryHDU(data=cube).writeto(path, overwrite=True)
    elif suffix in (".jpg", ".jpeg"):
        iio.imwrite(path, to_uint8(encoded))
    elif suffix in RASTER_SUFFIXES:
        iio.imwrite(path, to_uint16(encoded))
    else:
        raise ValueError(f"Unsupported output format: {path.suffix}")

    logger.info("Wrote image: %s", path)
    return path


def clamp_slice(start: int, length: int, size: int) -> tuple[slice, slice]:
    """
    Clip a 1D placement to ``[0, size)``.

    Placing ``length`` values starting at ``start`` on an axis of ``size``
    cells returns ``(destination, source)`` slices; both are empty when
    the placement falls entirely outside.

    >>> clamp_slice(-2, 5, 10)
    (slice(0, 3, None), slice(2, 5, None))
    """
    lo = max(start, 0)
    hi = min(start + length, size)
    if hi <= lo:
        return slice(0, 0), slice(0, 0)
    return slice(lo, hi), slice(lo - start, hi - start)


def save_registration(registration: Registration, output_path: str | Path) -> Path:
    """
    Save a registration to a JSON file.

    Parameters
    ----------
    registration : Registration
        Registration to save.
    output_path : str or Path
        Output JSON file path.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, "w") as f:
        json.dump(registration_to_dict(registration), f, indent=2)

    logger.info("Saved registration for %d frames to %s", len(registration), output_path)
    return output_path


def load_registration(input_path: str | Path) -> Registration:
    """
    Load a registration from a JSON file.

    Relative frame paths are taken relative to the directory holding the
    JSON file.

    Raises
    ------
    ValueError
        If the file is not a registration document or the reference index
        is out of range.
    """
    with open(input_path, "r") as f:
        data = json.load(f)

    registration = registration_from_dict(data)
    base = Path(input_path).absolute().parent
    registration = Registration(
        registration.reference_index,
        [replace(record, path=str(base / record.path)) for record in registration.images],
    )
    logger.info("Loaded registration for %d frames from %s", len(registration), input_path)
    return registration
