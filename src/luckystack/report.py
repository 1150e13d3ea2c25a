"""
Diagnostics and reports for luckystack runs.

Produces:
- registration statistics (per-strategy counts and offset ranges)
- registration-scatter.png: offsets of every frame, one colour per strategy
- arc histogram of descriptor matches (compare command)
- stack report JSON: machine-readable record of a stacking run

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Sequence

import numpy as np

from .config import RegistrationMethod, StackConfig
from .matching import Match
from .registration import ImageRegistration, Registration, offset
from .utils import get_platform_info, get_timestamp_iso, get_version

logger = logging.getLogger(__name__)

SCATTER_COLORS = {
    RegistrationMethod.DESCRIPTOR: "tab:blue",
    RegistrationMethod.BOUNDING_BOX: "tab:orange",
    RegistrationMethod.CENTROID: "tab:green",
}


def _to_native(obj: Any) -> Any:
    """Convert numpy types to native Python types for JSON serialization."""
    if isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.ndarray):
        return obj.tolist()
    elif isinstance(obj, RegistrationMethod):
        return obj.value
    elif isinstance(obj, Path):
        return str(obj)
    elif isinstance(obj, dict):
        return {_to_native(k): _to_native(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_to_native(v) for v in obj]
    return obj


def strategy_offsets(
    registration: Registration,
    method: RegistrationMethod,
    images: Sequence[ImageRegistration] | None = None,
) -> np.ndarray:
    """(N, 2) array of usable offsets for one strategy."""
    records = registration.images if images is None else images
    reference = registration.reference
    values = [offset(r, reference, method) for r in records]
    values = [v for v in values if v is not None]
    return np.asarray(values, dtype=np.float64).reshape(-1, 2)


def registration_statistics(registration: Registration) -> dict[str, Any]:
    """
    Summarize a registration.

    Returns
    -------
    dict
        ``n_frames``, ``reference`` and, per strategy, the number of usable
        offsets and the min/max/mean of dx and dy.
    """
    stats: dict[str, Any] = {
        "n_frames": len(registration),
        "reference": registration.reference.path,
        "strategies": {},
    }

    for method in RegistrationMethod:
        values = strategy_offsets(registration, method)
        entry: dict[str, Any] = {"usable": len(values)}
        if len(values):
            entry.update(
                dx_min=values[:, 0].min(),
                dx_max=values[:, 0].max(),
                dx_mean=values[:, 0].mean(),
                dy_min=values[:, 1].min(),
                dy_max=values[:, 1].max(),
                dy_mean=values[:, 1].mean(),
            )
        stats["strategies"][method.value] = entry

    rejected = sum(1 for r in registration.images if r.descriptor is not None and r.descriptor.rejected)
    stats["strategies"][RegistrationMethod.DESCRIPTOR.value]["rejected"] = rejected

    return _to_native(stats)


def plot_registration_scatter(registration: Registration, output_path: str | Path) -> Path:
    """
    Scatter plot of the offsets of every frame, one series per strategy.

    Parameters
    ----------
    registration : Registration
        Registration to plot.
    output_path : str or Path
        PNG file to write.
    """
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    fig, ax = plt.subplots(figsize=(8, 8))
    for method in RegistrationMethod:
        values = strategy_offsets(registration, method)
        if len(values):
            ax.scatter(
                values[:, 0], values[:, 1],
                s=8, alpha=0.7, color=SCATTER_COLORS[method],
                label=f"{method.value} ({len(values)})",
            )
    ax.set_xlabel("dx (px)")
    ax.set_ylabel("dy (px)")
    ax.invert_yaxis()
    ax.set_title(f"Registration offsets ({len(registration)} frames)")
    ax.grid(True, alpha=0.3)
    ax.legend(loc="best")
    fig.tight_layout()
    fig.savefig(output_path, dpi=120)
    plt.close(fig)

    logger.info("Wrote registration scatter: %s", output_path)
    return output_path


def plot_arc_histogram(matches: Sequence[Match], output_path: str | Path) -> Path:
    """Histogram of match displacement angles in whole degrees."""
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    buckets = [m.arc_bucket for m in matches]
    fig, ax = plt.subplots(figsize=(10, 4))
    ax.hist(buckets, bins=np.arange(-180, 182) - 0.5, color="tab:blue")
    ax.set_xlim(-180, 180)
    ax.set_xlabel("arc (degrees)")
    ax.set_ylabel("matches")
    ax.set_title(f"Match displacement angles ({len(buckets)} matches)")
    fig.tight_layout()
    fig.savefig(output_path, dpi=120)
    plt.close(fig)

    logger.info("Wrote arc histogram: %s", output_path)
    return output_path


def write_stack_report(
    output_path: str | Path,
    config: StackConfig,
    registration: Registration,
    survivors: Sequence[ImageRegistration],
    counts: dict[RegistrationMethod, int],
    outputs: dict[str, Path],
) -> Path:
    """
    Write the JSON record of a stacking run.

    Parameters
    ----------
    output_path : str or Path
        JSON file to write.
    config : StackConfig
        Configuration used.
    registration : Registration
        Input registration.
    survivors : sequence of ImageRegistration
        Records kept by the rejection pipeline.
    counts : dict
        Frames added to each canvas.
    outputs : dict
        Output name to written path.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    kept = {r.path for r in survivors}
    report = {
        "luckystack_version": get_version(),
        "timestamp": get_timestamp_iso(),
        "platform": get_platform_info(),
        "config": asdict(config),
        "frames": {
            "registered": len(registration),
            "kept": len(survivors),
            "excluded": len(registration) - len(survivors),
        },
        "reference": registration.reference.path,
        "excluded": [r.path for r in registration.images if r.path not in kept],
        "contributors": counts,
        "outputs": outputs,
    }

    with open(output_path, "w") as f:
        json.dump(_to_native(report), f, indent=2)

    logger.info("Wrote report: %s", output_path)
    return output_path
