"""
Configuration dataclasses and enumerations for the luckystack pipeline.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

COLORSPACES = ("srgb", "linear", "quadratic", "sqrt")


class ConfigurationError(ValueError):
    """Invalid user configuration, raised before any frame is processed."""


class RegistrationMethod(Enum):
    """Registration strategies; each produces its own offset and canvas."""

    DESCRIPTOR = "descriptor"  # Binary feature correspondence (ORB)
    BOUNDING_BOX = "bbox"  # Extents of the single bright region
    CENTROID = "centroid"  # Brightness-weighted centroid


class RuleKind(Enum):
    """Named rejection rules."""

    AVERAGE_BBOX = "average-bbox"
    AVERAGE_CENTROID = "average-centroid"
    REGRESSION_DESCRIPTOR = "regression-descriptor"
    REGRESSION_BBOX = "regression-bbox"
    REGRESSION_CENTROID = "regression-centroid"
    SIZE = "size"


@dataclass(frozen=True)
class RejectionRule:
    """A rejection rule with its threshold."""

    kind: RuleKind
    threshold: float

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.threshold:g}"


@dataclass
class CommonConfig:
    """Options shared by every batch command."""

    colorspace: Literal["srgb", "linear", "quadratic", "sqrt"] = "srgb"
    """Working colour space frames are converted into after decoding."""

    num_files: int | None = None
    """Maximum number of frames to use (None = all)."""

    skip_files: int = 0
    """Number of frames to skip at the start of the sorted sequence."""

    workers: int | None = None
    """Number of parallel workers. None = auto-detect (CPU count - 1)."""

    def validate(self) -> None:
        """Validate configuration parameters."""
        if self.colorspace not in COLORSPACES:
            raise ConfigurationError(
                f"Unknown colorspace '{self.colorspace}', expected one of: {', '.join(COLORSPACES)}"
            )
        if self.num_files is not None and self.num_files < 1:
            raise ConfigurationError(f"num_files must be >= 1, got {self.num_files}")
        if self.skip_files < 0:
            raise ConfigurationError(f"skip_files must be >= 0, got {self.skip_files}")
        if self.workers is not None and self.workers < 1:
            raise ConfigurationError(f"workers must be >= 1, got {self.workers}")


@dataclass
class RegisterConfig(CommonConfig):
    """
    Configuration for batch registration.

    Each chain is a processing-chain string whose terminal operation selects
    the registration strategy (``orb``, ``bbox`` or ``centroid``) and whose
    preceding operations preprocess the frame for that strategy only.
    """

    chains: list[str] = field(
        default_factory=lambda: ["orb:0.08", "bbox:0.5", "centroid:0.1"]
    )
    """Processing chains, at most one per registration strategy."""

    reference_index: int = 0
    """Index of the reference frame within the selected sequence."""

    n_keypoints: int = 500
    """Maximum number of ORB keypoints per frame."""

    ratio: float = 0.8
    """Ratio test: best distance must be below ratio * second-best distance."""

    max_arc_deviation: int = 5
    """Matches whose displacement angle differs from the median by more degrees are dropped."""

    write_scatter: bool = True
    """Write the registration scatter chart next to the registration file."""

    def validate(self) -> None:
        """Validate configuration parameters."""
        from .processing import resolve_chains

        super().validate()
        if self.reference_index < 0:
            raise ConfigurationError(
                f"reference_index must be >= 0, got {self.reference_index}"
            )
        if self.n_keypoints < 1:
            raise ConfigurationError(f"n_keypoints must be >= 1, got {self.n_keypoints}")
        if not 0.0 < self.ratio <= 1.0:
            raise ConfigurationError(f"ratio must be in (0, 1], got {self.ratio}")
        if self.max_arc_deviation < 0:
            raise ConfigurationError(
                f"max_arc_deviation must be >= 0, got {self.max_arc_deviation}"
            )
        if not self.chains:
            raise ConfigurationError("At least one registration chain is required")
        resolve_chains(self.chains)


@dataclass
class StackConfig(CommonConfig):
    """Configuration for stacking a registered batch."""

    rejections: str = ""
    """Comma-separated rejection rules applied in order, e.g. 'size:0.02,average-bbox:0.01'."""

    postprocessing: str = "average"
    """Processing chain applied to each stacked canvas before writing."""

    margin: int = 0
    """Extra canvas border (pixels) on every side so shifted frames are not clipped."""

    def validate(self) -> None:
        """Validate configuration parameters."""
        from .processing import parse_chain
        from .rejection import parse_rules

        super().validate()
        if self.margin < 0:
            raise ConfigurationError(f"margin must be >= 0, got {self.margin}")
        parse_rules(self.rejections)
        parse_chain(self.postprocessing)


@dataclass
class VideoConfig(CommonConfig):
    """Configuration for exporting a registered batch as videos."""

    rejections: str = ""
    """Comma-separated rejection rules applied in order."""

    processing: str = ""
    """Processing chain applied to each frame before encoding."""

    fps: int = 25
    """Frames per second of the output videos."""

    def validate(self) -> None:
        """Validate configuration parameters."""
        from .processing import parse_chain
        from .rejection import parse_rules

        super().validate()
        if self.fps < 1:
            raise ConfigurationError(f"fps must be >= 1, got {self.fps}")
        parse_rules(self.rejections)
        parse_chain(self.processing)


@dataclass
class CompareConfig:
    """Configuration for the visual two-frame comparison."""

    colorspace: Literal["srgb", "linear", "quadratic", "sqrt"] = "srgb"
    """Working colour space."""

    chains: list[str] = field(
        default_factory=lambda: ["orb:0.08", "bbox:0.5", "centroid:0.1"]
    )
    """Processing chains, at most one per registration strategy."""

    n_keypoints: int = 500
    """Maximum number of ORB keypoints per frame."""

    ratio: float = 0.8
    """Ratio test threshold."""

    max_arc_deviation: int = 5
    """Arc rejection tolerance in degrees."""

    histogram: bool = False
    """Also write the arc histogram of the descriptor matches."""

    def validate(self) -> None:
        """Validate configuration parameters."""
        from .processing import resolve_chains

        if self.colorspace not in COLORSPACES:
            raise ConfigurationError(
                f"Unknown colorspace '{self.colorspace}', expected one of: {', '.join(COLORSPACES)}"
            )
        if not 0.0 < self.ratio <= 1.0:
            raise ConfigurationError(f"ratio must be in (0, 1], got {self.ratio}")
        resolve_chains(self.chains)
