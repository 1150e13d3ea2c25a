"""
MP4 export of a registered batch.

Four videos are written next to the output prefix: the unaligned frames
(``_orig.mp4``) and one aligned video per registration strategy
(``_descriptor.mp4``, ``_bbox.mp4``, ``_centroid.mp4``). Frames whose
strategy result is unusable are left out of that strategy's video.

``maxscale`` in the processing chain is replaced by a fixed scale taken from
the reference frame so brightness stays constant across frames.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import cv2
import numpy as np

from .color import from_working
from .config import RegistrationMethod, VideoConfig
from .io import read_frame
from .processing import apply_chain, fix_maxscale, parse_chain
from .registration import ImageRegistration, Registration, offset, rounded_offset
from .utils import apply_integer_shift, path_with_suffix, to_uint8

logger = logging.getLogger(__name__)

FOURCC = "mp4v"

VIDEO_NAMES = {
    None: "orig",
    RegistrationMethod.DESCRIPTOR: "descriptor",
    RegistrationMethod.BOUNDING_BOX: "bbox",
    RegistrationMethod.CENTROID: "centroid",
}


def open_writer(path: str | Path, width: int, height: int, fps: int) -> cv2.VideoWriter:
    """Open an MP4 writer, raising if the codec is unavailable."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fourcc = cv2.VideoWriter_fourcc(*FOURCC)
    writer = cv2.VideoWriter(str(path), fourcc, fps, (width, height))
    if not writer.isOpened():
        raise RuntimeError(f"Failed to open video writer for {path}")
    return writer


def encode_frame(frame: np.ndarray, colorspace: str) -> np.ndarray:
    """Working-space RGB frame to 8-bit BGR for OpenCV."""
    rgb = to_uint8(from_working(frame, colorspace))
    return np.ascontiguousarray(rgb[:, :, ::-1])


def export_videos(
    registration: Registration,
    images: Sequence[ImageRegistration] | None,
    config: VideoConfig,
    prefix: str,
    show_progress: bool = True,
) -> dict[str, Path]:
    """
    Write the unaligned and per-strategy aligned videos.

    Parameters
    ----------
    registration : Registration
        Registration providing the reference record.
    images : sequence of ImageRegistration or None
        Records to include (after rejection). None uses every record.
    config : VideoConfig
        Colour space, processing chain and frame rate.
    prefix : str
        Output prefix; ``_<name>.mp4`` is appended per video.
    show_progress : bool, default True
        Show progress bar.

    Returns
    -------
    dict[str, Path]
        Video name to written path.
    """
    from .cli_output import create_progress_bar

    records = list(registration.images if images is None else images)
    reference = registration.reference
    reference_frame = read_frame(reference.path, config.colorspace)
    height, width = reference_frame.shape[:2]

    chain = fix_maxscale(parse_chain(config.processing), reference_frame)
    logger.info("Video processing chain: %s", ",".join(str(op) for op in chain) or "(none)")

    paths = {name: Path(path_with_suffix(prefix, f"_{name}.mp4")) for name in VIDEO_NAMES.values()}
    writers = {}
    counts = {name: 0 for name in VIDEO_NAMES.values()}

    try:
        for name, path in paths.items():
            writers[name] = open_writer(path, width, height, config.fps)

        pbar = create_progress_bar(total=len(records), desc="Encoding", disable=not show_progress)
        with pbar:
            for record in records:
                frame = read_frame(record.path, config.colorspace)
                if frame.shape[:2] != (height, width):
                    raise ValueError(
                        f"Frame {Path(record.path).name} has size {frame.shape[1]}x{frame.shape[0]}, "
                        f"expected {width}x{height}"
                    )
                processed = apply_chain(frame, chain)

                for method, name in VIDEO_NAMES.items():
                    if method is None:
                        shifted = processed
                    else:
                        value = offset(record, reference, method)
                        if value is None:
                            continue
                        dx, dy = rounded_offset(value)
                        shifted = apply_integer_shift(processed, dy, dx)
                    writers[name].write(encode_frame(shifted, config.colorspace))
                    counts[name] += 1
                pbar.update(1)
    finally:
        for writer in writers.values():
            writer.release()

    for name, path in paths.items():
        logger.info("Wrote video %s (%d frames): %s", name, counts[name], path)
    return paths
