"""
Registration data model shared by the registration, rejection, stacking and
video stages.

A :class:`Registration` is created once by the registration stage, written to
JSON, and later read back unchanged. Offsets relative to the reference frame
are computed by one pure function per strategy (:func:`offset`), so every
consumer uses the same formula.

Offset convention: ``reference - frame``, i.e. the shift that moves a frame
onto the reference.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from .config import RegistrationMethod
from .utils import round_half_away

FORMAT_NAME = "luckystack-registration"
FORMAT_VERSION = "1.0"
DEFAULT_SIZE_TOLERANCE = 0.02


@dataclass(frozen=True)
class DescriptorRegistration:
    """
    Result of the descriptor-based strategy for one frame.

    ``rejected=True`` means the strategy ran but found no usable
    correspondence; the offset fields are then meaningless.
    """

    dx: float = 0.0
    dy: float = 0.0
    n_matches: int = 0
    rejected: bool = False

    @classmethod
    def rejection(cls) -> DescriptorRegistration:
        """Return the 'ran but unusable' marker."""
        return cls(rejected=True)


@dataclass(frozen=True)
class BoundingBox:
    """Extents of the single bright region of a frame (inclusive pixel indices)."""

    left: int
    right: int
    top: int
    bottom: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    @property
    def center(self) -> tuple[float, float]:
        return (self.left + self.width / 2, self.top + self.height / 2)

    def size_deviation(self, reference: BoundingBox) -> float:
        """
        Largest relative difference of width or height against a reference box.

        Returns ``abs(size - ref_size) / ref_size`` for the worse of the two
        axes. A zero-sized reference axis gives 0.0 when equal, inf otherwise.
        """
        return max(
            _relative_difference(self.width, reference.width),
            _relative_difference(self.height, reference.height),
        )

    def is_consistent_with(self, reference: BoundingBox, tolerance: float = DEFAULT_SIZE_TOLERANCE) -> bool:
        """False when width or height differs from the reference by ``tolerance`` or more."""
        return self.size_deviation(reference) < tolerance


@dataclass(frozen=True)
class WeightedCentroid:
    """Brightness-weighted centroid of a frame."""

    x: float
    y: float


@dataclass(frozen=True)
class ImageRegistration:
    """Per-frame summary; ``None`` means the strategy was not run or produced nothing."""

    path: str
    descriptor: DescriptorRegistration | None = None
    bbox: BoundingBox | None = None
    centroid: WeightedCentroid | None = None


@dataclass(frozen=True)
class Registration:
    """Ordered per-frame records plus the index of the reference frame."""

    reference_index: int
    images: tuple[ImageRegistration, ...]

    def __post_init__(self):
        # Accept any sequence but store an immutable tuple
        object.__setattr__(self, "images", tuple(self.images))
        if not 0 <= self.reference_index < len(self.images):
            raise ValueError(
                f"reference_index {self.reference_index} out of range for "
                f"{len(self.images)} images"
            )

    @property
    def reference(self) -> ImageRegistration:
        return self.images[self.reference_index]

    def __len__(self) -> int:
        return len(self.images)


def _relative_difference(value: float, reference: float) -> float:
    if reference == 0:
        return 0.0 if value == 0 else math.inf
    return abs(value - reference) / reference


# =============================================================================
# OFFSETS (one formula per strategy)
# =============================================================================


def descriptor_offset(record: ImageRegistration) -> tuple[float, float] | None:
    """Descriptor offset of a record, or None if absent or rejected."""
    desc = record.descriptor
    if desc is None or desc.rejected:
        return None
    return (desc.dx, desc.dy)


def bbox_offset(
    record: ImageRegistration,
    reference: ImageRegistration,
) -> tuple[float, float] | None:
    """Difference of bounding-box centres (reference - frame)."""
    if record.bbox is None or reference.bbox is None:
        return None
    rx, ry = reference.bbox.center
    x, y = record.bbox.center
    return (rx - x, ry - y)


def centroid_offset(
    record: ImageRegistration,
    reference: ImageRegistration,
) -> tuple[float, float] | None:
    """Difference of brightness-weighted centroids (reference - frame)."""
    if record.centroid is None or reference.centroid is None:
        return None
    return (
        reference.centroid.x - record.centroid.x,
        reference.centroid.y - record.centroid.y,
    )


def offset(
    record: ImageRegistration,
    reference: ImageRegistration,
    method: RegistrationMethod,
) -> tuple[float, float] | None:
    """
    Reference-relative offset of a record for one strategy.

    Parameters
    ----------
    record : ImageRegistration
        Frame record.
    reference : ImageRegistration
        Reference frame record.
    method : RegistrationMethod
        Strategy whose result is used.

    Returns
    -------
    tuple[float, float] or None
        (dx, dy) sub-pixel offset, or None if the strategy result is
        unusable for this frame or the reference.
    """
    if method is RegistrationMethod.DESCRIPTOR:
        return descriptor_offset(record)
    elif method is RegistrationMethod.BOUNDING_BOX:
        return bbox_offset(record, reference)
    elif method is RegistrationMethod.CENTROID:
        return centroid_offset(record, reference)
    raise ValueError(f"Unknown registration method: {method}")


def rounded_offset(value: tuple[float, float]) -> tuple[int, int]:
    """Round a sub-pixel offset to integer pixels for compositing."""
    return (round_half_away(value[0]), round_half_away(value[1]))


# =============================================================================
# SERIALIZATION
# =============================================================================


def _descriptor_to_dict(desc: DescriptorRegistration | None) -> dict | None:
    if desc is None:
        return None
    if desc.rejected:
        return {"status": "rejected"}
    return {
        "status": "offset",
        "dx": float(desc.dx),
        "dy": float(desc.dy),
        "n_matches": int(desc.n_matches),
    }


def _descriptor_from_dict(d: dict | None) -> DescriptorRegistration | None:
    if d is None:
        return None
    status = d.get("status")
    if status == "rejected":
        return DescriptorRegistration.rejection()
    if status == "offset":
        return DescriptorRegistration(
            dx=float(d["dx"]),
            dy=float(d["dy"]),
            n_matches=int(d.get("n_matches", 0)),
        )
    raise ValueError(f"Unknown descriptor status: {status!r}")


def image_to_dict(record: ImageRegistration) -> dict[str, Any]:
    """Convert an ImageRegistration to a JSON-serializable dict."""
    bbox = None
    if record.bbox is not None:
        bbox = {
            "left": int(record.bbox.left),
            "right": int(record.bbox.right),
            "top": int(record.bbox.top),
            "bottom": int(record.bbox.bottom),
        }
    centroid = None
    if record.centroid is not None:
        centroid = {"x": float(record.centroid.x), "y": float(record.centroid.y)}

    return {
        "path": record.path,
        "descriptor": _descriptor_to_dict(record.descriptor),
        "bbox": bbox,
        "centroid": centroid,
    }


def image_from_dict(d: dict[str, Any]) -> ImageRegistration:
    """Convert a dict back to ImageRegistration."""
    bbox = None
    if d.get("bbox") is not None:
        b = d["bbox"]
        bbox = BoundingBox(
            left=int(b["left"]),
            right=int(b["right"]),
            top=int(b["top"]),
            bottom=int(b["bottom"]),
        )
    centroid = None
    if d.get("centroid") is not None:
        centroid = WeightedCentroid(x=float(d["centroid"]["x"]), y=float(d["centroid"]["y"]))

    return ImageRegistration(
        path=d["path"],
        descriptor=_descriptor_from_dict(d.get("descriptor")),
        bbox=bbox,
        centroid=centroid,
    )


def registration_to_dict(registration: Registration) -> dict[str, Any]:
    """Convert a Registration to a JSON-serializable dict."""
    return {
        "format": FORMAT_NAME,
        "version": FORMAT_VERSION,
        "reference_index": registration.reference_index,
        "images": [image_to_dict(r) for r in registration.images],
    }


def registration_from_dict(d: dict[str, Any]) -> Registration:
    """
    Convert a dict back to a Registration.

    Raises
    ------
    ValueError
        If the document is not a luckystack registration.
    """
    if d.get("format") != FORMAT_NAME:
        raise ValueError(f"Not a registration document (format={d.get('format')!r})")
    return Registration(
        reference_index=int(d["reference_index"]),
        images=tuple(image_from_dict(item) for item in d["images"]),
    )
