"""
luckystack - Registration and stacking of lucky-imaging frame sequences.

Aligns a batch of near-identical frames (planetary or lunar video frames)
against one reference frame using three independent strategies, rejects
frames whose registration is inconsistent with their neighbours, and adds
the surviving frames into one canvas per strategy.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com

Example
-------
>>> from luckystack import RegisterConfig, list_frames, register_batch, save_registration
>>> paths = list_frames(["frames/"])
>>> registration = register_batch(paths, RegisterConfig(chains=["orb:0.08", "bbox:0.5"]))
>>> save_registration(registration, "registration.json")

Example (stacking)
------------------
>>> from luckystack import StackConfig, load_registration, parse_rules
>>> from luckystack import apply_rejections, stack_registration
>>> registration = load_registration("registration.json")
>>> kept = apply_rejections(registration, None, parse_rules("size:0.02"), 640, 480)
>>> result = stack_registration(registration, kept, StackConfig(margin=20))
>>> result.counts
"""

from .config import (
    COLORSPACES,
    CompareConfig,
    ConfigurationError,
    RegisterConfig,
    RegistrationMethod,
    RejectionRule,
    RuleKind,
    StackConfig,
    VideoConfig,
)
from .utils import __version__, __version_info__, get_version_banner

# Data model
from .registration import (
    BoundingBox,
    DescriptorRegistration,
    ImageRegistration,
    Registration,
    WeightedCentroid,
    offset,
    rounded_offset,
)

# I/O functions
from .io import (
    list_frames,
    load_registration,
    read_frame,
    save_registration,
    write_image,
)

# Processing chains
from .processing import apply_chain, parse_chain, resolve_chains, split_registration_step

# Matching and registration
from .matching import FeatureSet, Keypoint, Match, find_matches, match_descriptors, reject_by_arc
from .align import (
    RegistrationPlan,
    extract_features,
    measure_bounding_box,
    measure_centroid,
    register_batch,
    register_descriptor,
    register_frames,
)

# Rejection and stacking
from .rejection import apply_rejections, parse_rules, reject_average, reject_regression, reject_size
from .stack import StackCanvases, stack_frames, stack_into, stack_registration

__all__ = [
    # Version
    "__version__",
    "__version_info__",
    "get_version_banner",
    # Config
    "COLORSPACES",
    "CompareConfig",
    "ConfigurationError",
    "RegisterConfig",
    "RegistrationMethod",
    "RejectionRule",
    "RuleKind",
    "StackConfig",
    "VideoConfig",
    # Data model
    "BoundingBox",
    "DescriptorRegistration",
    "ImageRegistration",
    "Registration",
    "WeightedCentroid",
    "offset",
    "rounded_offset",
    # I/O
    "list_frames",
    "load_registration",
    "read_frame",
    "save_registration",
    "write_image",
    # Processing
    "apply_chain",
    "parse_chain",
    "resolve_chains",
    "split_registration_step",
    # Matching and registration
    "FeatureSet",
    "Keypoint",
    "Match",
    "find_matches",
    "match_descriptors",
    "reject_by_arc",
    "RegistrationPlan",
    "extract_features",
    "measure_bounding_box",
    "measure_centroid",
    "register_batch",
    "register_descriptor",
    "register_frames",
    # Rejection and stacking
    "apply_rejections",
    "parse_rules",
    "reject_average",
    "reject_regression",
    "reject_size",
    "StackCanvases",
    "stack_frames",
    "stack_into",
    "stack_registration",
]
