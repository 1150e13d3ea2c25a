"""
Additive stacking of registered frames.

Every accepted frame is shifted by its rounded offset and added into one
canvas per registration strategy. Addition is associative and commutative,
so frames may be folded into partial canvases in any order and the partial
canvases merged afterwards (fold-then-merge), which is how the parallel
path works.

Normalization (averaging, rescaling, curves) is not done here; it is the
job of the post-processing chain.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

import numpy as np

from .config import RegistrationMethod, StackConfig
from .io import clamp_slice, read_frame
from .registration import ImageRegistration, Registration, offset, rounded_offset

logger = logging.getLogger(__name__)

# Default number of workers: CPU count - 1 (leave one core for system)
DEFAULT_WORKERS = max(1, os.cpu_count() - 1) if os.cpu_count() else 4

METHODS = (
    RegistrationMethod.DESCRIPTOR,
    RegistrationMethod.BOUNDING_BOX,
    RegistrationMethod.CENTROID,
)


def stack_into(
    canvas: np.ndarray,
    frame: np.ndarray,
    dx: int,
    dy: int,
    margin: int = 0,
) -> np.ndarray:
    """
    Add a frame into a canvas at an integer offset, in place.

    Pixel (x, y) of the frame lands on (x + dx + margin, y + dy + margin).
    Pixels falling outside the canvas are dropped.

    Parameters
    ----------
    canvas : np.ndarray
        (H', W', 3) accumulator, modified in place.
    frame : np.ndarray
        (H, W, 3) frame.
    dx, dy : int
        Integer offset.
    margin : int, default 0
        Canvas border on every side.

    Returns
    -------
    np.ndarray
        The canvas.
    """
    height, width = frame.shape[:2]
    dst_y, src_y = clamp_slice(dy + margin, height, canvas.shape[0])
    dst_x, src_x = clamp_slice(dx + margin, width, canvas.shape[1])
    canvas[dst_y, dst_x] += frame[src_y, src_x]
    return canvas


@dataclass
class StackCanvases:
    """
    One accumulator per registration strategy plus contributor counts.

    Attributes
    ----------
    canvases : dict
        (H + 2*margin, W + 2*margin, 3) float64 sums per strategy.
    counts : dict
        Number of frames added to each canvas.
    margin : int
        Canvas border on every side.
    """

    canvases: dict[RegistrationMethod, np.ndarray]
    counts: dict[RegistrationMethod, int] = field(default_factory=dict)
    margin: int = 0

    @classmethod
    def empty(
        cls,
        height: int,
        width: int,
        margin: int = 0,
        methods: Iterable[RegistrationMethod] = METHODS,
    ) -> StackCanvases:
        shape = (height + 2 * margin, width + 2 * margin, 3)
        methods = list(methods)
        return cls(
            canvases={m: np.zeros(shape, dtype=np.float64) for m in methods},
            counts={m: 0 for m in methods},
            margin=margin,
        )

    def add(
        self,
        record: ImageRegistration,
        reference: ImageRegistration,
        frame: np.ndarray,
    ) -> None:
        """Add a frame to every canvas whose strategy has a usable offset for it."""
        for method, canvas in self.canvases.items():
            value = offset(record, reference, method)
            if value is None:
                continue
            dx, dy = rounded_offset(value)
            stack_into(canvas, frame, dx, dy, self.margin)
            self.counts[method] += 1

    def merge(self, other: StackCanvases) -> StackCanvases:
        """Pixel-wise sum of two partial results."""
        if self.margin != other.margin or self.canvases.keys() != other.canvases.keys():
            raise ValueError("Cannot merge canvases with different layouts")
        return StackCanvases(
            canvases={m: c + other.canvases[m] for m, c in self.canvases.items()},
            counts={m: self.counts[m] + other.counts[m] for m in self.canvases},
            margin=self.margin,
        )


def _check_size(record: ImageRegistration, frame: np.ndarray, height: int, width: int) -> None:
    if frame.shape[:2] != (height, width):
        raise ValueError(
            f"Frame {Path(record.path).name} has size {frame.shape[1]}x{frame.shape[0]}, "
            f"expected {width}x{height}"
        )


def stack_frames(
    pairs: Iterable[tuple[ImageRegistration, np.ndarray]],
    reference: ImageRegistration,
    height: int,
    width: int,
    margin: int = 0,
    methods: Iterable[RegistrationMethod] = METHODS,
) -> StackCanvases:
    """
    Fold (record, frame) pairs into fresh canvases.

    Raises
    ------
    ValueError
        If a frame does not have the expected size.
    """
    result = StackCanvases.empty(height, width, margin, methods)
    for record, frame in pairs:
        _check_size(record, frame, height, width)
        result.add(record, reference, frame)
    return result


def _iter_frames(records: Sequence[ImageRegistration], colorspace: str):
    for record in records:
        yield record, read_frame(record.path, colorspace)


def _stack_chunk(args: tuple) -> StackCanvases:
    """
    Worker: load and fold a contiguous chunk of records.

    Parameters
    ----------
    args : tuple
        (records, reference, colorspace, height, width, margin) tuple.
    """
    records, reference, colorspace, height, width, margin = args
    return stack_frames(_iter_frames(records, colorspace), reference, height, width, margin)


def stack_registration(
    registration: Registration,
    images: Sequence[ImageRegistration] | None,
    config: StackConfig,
    show_progress: bool = True,
) -> StackCanvases:
    """
    Load accepted frames and stack them into one canvas per strategy.

    Parameters
    ----------
    registration : Registration
        Registration providing the reference record.
    images : sequence of ImageRegistration or None
        Accepted records (after rejection). None stacks every record.
    config : StackConfig
        Colour space, margin and worker count.
    show_progress : bool, default True
        Show progress bar.

    Returns
    -------
    StackCanvases
        Summed canvases and contributor counts.

    Raises
    ------
    OSError
        If a frame cannot be read.
    ValueError
        If frame sizes differ from the reference frame.
    """
    from .cli_output import create_progress_bar

    records = list(registration.images if images is None else images)
    reference = registration.reference
    height, width = read_frame(reference.path, config.colorspace).shape[:2]
    margin = config.margin

    workers = config.workers if config.workers is not None else DEFAULT_WORKERS
    n_frames = len(records)

    pbar = create_progress_bar(
        total=n_frames,
        desc="Stacking" if workers <= 1 else f"Stacking ({workers} workers)",
        disable=not show_progress,
    )

    # Sequential for small frame counts or single worker
    if workers <= 1 or n_frames < 10:
        result = StackCanvases.empty(height, width, margin)
        with pbar:
            for record, frame in _iter_frames(records, config.colorspace):
                _check_size(record, frame, height, width)
                result.add(record, reference, frame)
                pbar.update(1)
    else:
        chunks = [list(c) for c in np.array_split(np.arange(n_frames), workers) if len(c)]
        args_list = [
            ([records[i] for i in chunk], reference, config.colorspace, height, width, margin)
            for chunk in chunks
        ]
        logger.info("Parallel stacking: %d frames in %d chunks", n_frames, len(chunks))

        result = StackCanvases.empty(height, width, margin)
        with ProcessPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(_stack_chunk, args): len(args[0]) for args in args_list}
            with pbar:
                for future in as_completed(futures):
                    try:
                        partial = future.result()
                    except Exception as e:
                        logger.error("Stacking chunk failed: %s", e)
                        executor.shutdown(wait=False, cancel_futures=True)
                        raise
                    result = result.merge(partial)
                    pbar.update(futures[future])

    logger.info(
        "Stacked %d frames: %s",
        n_frames,
        ", ".join(f"{m.value}={result.counts[m]}" for m in result.canvases),
    )
    return result
