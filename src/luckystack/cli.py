"""
Command-line interface for the luckystack pipeline.

Usage:
    luckystack process <frame> <output> --processing <chain>
    luckystack register <frames...> -o registration.json [--chain <chain> ...]
    luckystack compare <first> <second> -o <prefix>
    luckystack stack <registration.json> -o <prefix> [--rejection <rules>]
    luckystack video <registration.json> -o <prefix> [--processing <chain>]

Configuration errors (malformed chains, unknown rules, missing inputs) are
reported before any frame is processed and exit with status 2. Failures
while processing exit with status 1.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

from .align import register_batch
from .cli_output import (
    print_banner,
    print_error,
    print_header,
    print_info,
    print_metric,
    print_path,
    print_stage,
    print_success,
    print_summary_box,
    print_warning,
    setup_terminal,
)
from .compare import compare_frames
from .config import (
    COLORSPACES,
    CompareConfig,
    ConfigurationError,
    RegisterConfig,
    StackConfig,
    VideoConfig,
)
from .io import (
    frame_dimensions,
    list_frames,
    load_registration,
    read_frame,
    save_registration,
    select_range,
    write_image,
)
from .processing import apply_chain, parse_chain
from .rejection import apply_rejections, parse_rules
from .report import plot_registration_scatter, registration_statistics, write_stack_report
from .stack import stack_registration
from .utils import format_duration, get_version, path_with_suffix
from .video import export_videos

logger = logging.getLogger(__name__)

DEFAULT_CHAINS = ["orb:0.08", "bbox:0.5", "centroid:0.1"]

EXIT_RUNTIME_ERROR = 1
EXIT_CONFIG_ERROR = 2


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _common_parser() -> argparse.ArgumentParser:
    """Flags shared by every subcommand."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-c", "--colorspace",
        type=str,
        choices=COLORSPACES,
        default="srgb",
        help="Working colour space (default: srgb)",
    )
    common.add_argument(
        "-n", "--num-files",
        type=int,
        default=None,
        help="Maximum number of frames to use (default: all)",
    )
    common.add_argument(
        "--skip-files",
        type=int,
        default=0,
        help="Number of leading frames to skip (default: 0)",
    )
    common.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    common.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress colored output and progress bars (use logging only)",
    )
    return common


def _add_matcher_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--chain",
        dest="chains",
        action="append",
        default=None,
        metavar="CHAIN",
        help="Registration chain ending in orb:<t>, bbox:<t> or centroid:<t>; "
             f"repeat for several strategies (default: {' '.join(DEFAULT_CHAINS)})",
    )
    parser.add_argument(
        "--keypoints",
        type=int,
        default=500,
        help="Maximum ORB keypoints per frame (default: 500)",
    )
    parser.add_argument(
        "--ratio",
        type=float,
        default=0.8,
        help="Ratio test threshold (default: 0.8)",
    )
    parser.add_argument(
        "--max-arc",
        type=int,
        default=5,
        help="Arc rejection tolerance in degrees (default: 5)",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog="luckystack",
        description="Registration and stacking of lucky-imaging frame sequences",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"luckystack {get_version()}",
    )

    common = _common_parser()
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Process command
    process_parser = subparsers.add_parser(
        "process",
        parents=[common],
        help="Apply a processing chain to a single frame",
    )
    process_parser.add_argument("input", type=str, help="Input frame")
    process_parser.add_argument("output", type=str, help="Output image (.png, .tif, .jpg, .fits)")
    process_parser.add_argument(
        "-p", "--processing",
        type=str,
        default="",
        help="Processing chain, e.g. 'blur:1.5,bbox:0.5' (default: none)",
    )

    # Register command
    register_parser = subparsers.add_parser(
        "register",
        parents=[common],
        help="Register a batch of frames against a reference frame",
    )
    register_parser.add_argument("frames", nargs="+", type=str, help="Frame files and/or directories")
    register_parser.add_argument(
        "-o", "--output",
        type=str,
        default="registration.json",
        help="Registration file to write (default: registration.json)",
    )
    register_parser.add_argument(
        "--reference-index",
        type=int,
        default=0,
        help="Index of the reference frame in the selected sequence (default: 0)",
    )
    _add_matcher_arguments(register_parser)
    register_parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of parallel workers (default: auto = CPU count - 1)",
    )
    register_parser.add_argument(
        "--no-scatter",
        action="store_true",
        help="Skip the registration scatter chart",
    )

    # Compare command
    compare_parser = subparsers.add_parser(
        "compare",
        parents=[common],
        help="Compare the registration of two frames visually",
    )
    compare_parser.add_argument("first", type=str, help="Reference frame")
    compare_parser.add_argument("second", type=str, help="Frame to compare")
    compare_parser.add_argument(
        "-o", "--output",
        type=str,
        default="compare",
        help="Output prefix (default: compare)",
    )
    _add_matcher_arguments(compare_parser)
    compare_parser.add_argument(
        "--histogram",
        action="store_true",
        help="Also write the arc histogram of the descriptor matches",
    )

    # Stack command
    stack_parser = subparsers.add_parser(
        "stack",
        parents=[common],
        help="Stack a registered batch, one image per strategy",
    )
    stack_parser.add_argument("registration", type=str, help="Registration file")
    stack_parser.add_argument(
        "-o", "--output",
        type=str,
        default="stack",
        help="Output prefix (default: stack)",
    )
    stack_parser.add_argument(
        "-r", "--rejection",
        type=str,
        default="",
        help="Rejection rules applied in order, e.g. 'size:0.02,average-bbox:0.01'",
    )
    stack_parser.add_argument(
        "-p", "--postprocessing",
        type=str,
        default="average",
        help="Processing chain applied to each stacked image (default: average)",
    )
    stack_parser.add_argument(
        "--margin",
        type=int,
        default=0,
        help="Canvas border in pixels on every side (default: 0)",
    )
    stack_parser.add_argument(
        "--format",
        type=str,
        choices=["png", "tif", "jpg", "fits"],
        default="png",
        help="Output image format (default: png)",
    )
    stack_parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of parallel workers (default: auto = CPU count - 1)",
    )

    # Video command
    video_parser = subparsers.add_parser(
        "video",
        parents=[common],
        help="Export a registered batch as MP4 videos",
    )
    video_parser.add_argument("registration", type=str, help="Registration file")
    video_parser.add_argument(
        "-o", "--output",
        type=str,
        default="video",
        help="Output prefix (default: video)",
    )
    video_parser.add_argument(
        "-r", "--rejection",
        type=str,
        default="",
        help="Rejection rules applied in order",
    )
    video_parser.add_argument(
        "-p", "--processing",
        type=str,
        default="",
        help="Processing chain applied to every frame",
    )
    video_parser.add_argument(
        "--fps",
        type=int,
        default=25,
        help="Frames per second (default: 25)",
    )

    return parser


def _require_file(path: str) -> None:
    if not Path(path).exists():
        raise FileNotFoundError(f"No such file or directory: {path}")


def run_process(args: argparse.Namespace) -> int:
    """Apply a processing chain to one frame."""
    chain = parse_chain(args.processing)
    _require_file(args.input)

    frame = read_frame(args.input, args.colorspace)
    result = apply_chain(frame, chain)
    path = write_image(args.output, result, args.colorspace)

    if not args.quiet:
        print_success(f"Processed {Path(args.input).name}")
        print_path("Output", str(path))
    return 0


def run_register(args: argparse.Namespace) -> int:
    """Register a batch of frames."""
    config = RegisterConfig(
        colorspace=args.colorspace,
        num_files=args.num_files,
        skip_files=args.skip_files,
        workers=args.workers,
        chains=args.chains or list(DEFAULT_CHAINS),
        reference_index=args.reference_index,
        n_keypoints=args.keypoints,
        ratio=args.ratio,
        max_arc_deviation=args.max_arc,
        write_scatter=not args.no_scatter,
    )
    config.validate()

    paths = list_frames(args.frames, skip=config.skip_files, count=config.num_files)
    if not paths:
        raise ConfigurationError("No frames found in the given inputs")
    if config.reference_index >= len(paths):
        raise ConfigurationError(
            f"reference_index {config.reference_index} out of range for {len(paths)} frames"
        )

    if not args.quiet:
        print_header(f"Registering {len(paths)} frames")
        print_metric("Reference", paths[config.reference_index].name)
        print_metric("Chains", " ".join(config.chains))

    registration = register_batch(paths, config, show_progress=not args.quiet)
    output = save_registration(registration, args.output)

    outputs = {"registration": output}
    if config.write_scatter:
        outputs["scatter"] = plot_registration_scatter(
            registration, output.with_name("registration-scatter.png")
        )

    if not args.quiet:
        stats = registration_statistics(registration)
        lines = [f"Frames: {stats['n_frames']}"]
        for name, entry in stats["strategies"].items():
            lines.append(f"{name}: {entry['usable']} usable")
        print_summary_box(lines, title="Registration")
        for name, path in outputs.items():
            print_path(name, str(path))
    return 0


def run_compare(args: argparse.Namespace) -> int:
    """Write side-by-side comparison images of two frames."""
    config = CompareConfig(
        colorspace=args.colorspace,
        chains=args.chains or list(DEFAULT_CHAINS),
        n_keypoints=args.keypoints,
        ratio=args.ratio,
        max_arc_deviation=args.max_arc,
        histogram=args.histogram,
    )
    config.validate()
    _require_file(args.first)
    _require_file(args.second)

    outputs = compare_frames(args.first, args.second, config, args.output)

    if not args.quiet:
        print_success(f"Compared {Path(args.first).name} and {Path(args.second).name}")
        for name, path in outputs.items():
            print_path(name, str(path))
    return 0


def _select_and_reject(args: argparse.Namespace, config, rules):
    """Load the registration, apply frame selection and rejection rules."""
    _require_file(args.registration)
    registration = load_registration(args.registration)
    images = select_range(registration.images, config.skip_files, config.num_files)
    width, height = frame_dimensions(registration.reference.path)
    survivors = apply_rejections(registration, images, rules, width, height)

    if not args.quiet:
        for rule in rules:
            print_info(f"Rule {rule}")
        print_metric("Selected", len(images), "frames")
        print_metric("Kept after rejection", len(survivors), "frames")
    if not survivors:
        print_warning("Every frame was rejected")
    return registration, survivors


def run_stack(args: argparse.Namespace) -> int:
    """Stack a registered batch."""
    start_time = time.time()
    config = StackConfig(
        colorspace=args.colorspace,
        num_files=args.num_files,
        skip_files=args.skip_files,
        workers=args.workers,
        rejections=args.rejection,
        postprocessing=args.postprocessing,
        margin=args.margin,
    )
    config.validate()
    rules = parse_rules(config.rejections)
    postprocessing = parse_chain(config.postprocessing)

    if not args.quiet:
        print_header(f"Stacking {Path(args.registration).name}")
        print_stage("Rejection")
    registration, survivors = _select_and_reject(args, config, rules)

    if not args.quiet:
        print_stage("Accumulation")
    result = stack_registration(registration, survivors, config, show_progress=not args.quiet)

    outputs = {}
    for method, canvas in result.canvases.items():
        count = result.counts[method]
        if count == 0:
            logger.warning("No frame contributed to the %s canvas, skipped", method.value)
            continue
        image = apply_chain(canvas, postprocessing, n_frames=count)
        outputs[method.value] = write_image(
            path_with_suffix(args.output, f"_{method.value}.{args.format}"), image, config.colorspace
        )

    outputs["report"] = write_stack_report(
        path_with_suffix(args.output, "_report.json"),
        config,
        registration,
        survivors,
        result.counts,
        dict(outputs),
    )

    if not args.quiet:
        lines = [f"{m.value}: {n} frames" for m, n in result.counts.items()]
        lines.append(f"Elapsed: {format_duration(time.time() - start_time)}")
        print_summary_box(lines, title="Stack")
        for name, path in outputs.items():
            print_path(name, str(path))
    return 0


def run_video(args: argparse.Namespace) -> int:
    """Export unaligned and aligned videos of a registered batch."""
    config = VideoConfig(
        colorspace=args.colorspace,
        num_files=args.num_files,
        skip_files=args.skip_files,
        rejections=args.rejection,
        processing=args.processing,
        fps=args.fps,
    )
    config.validate()
    rules = parse_rules(config.rejections)

    if not args.quiet:
        print_header(f"Video export {Path(args.registration).name}")
    registration, survivors = _select_and_reject(args, config, rules)
    outputs = export_videos(registration, survivors, config, args.output, show_progress=not args.quiet)

    if not args.quiet:
        for name, path in outputs.items():
            print_path(name, str(path))
    return 0


COMMANDS = {
    "process": run_process,
    "register": run_register,
    "compare": run_compare,
    "stack": run_stack,
    "video": run_video,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_RUNTIME_ERROR

    setup_logging(args.verbose)
    if not args.quiet:
        setup_terminal()
        print_banner(get_version())

    try:
        return COMMANDS[args.command](args)
    except (ConfigurationError, FileNotFoundError) as e:
        print_error(f"Configuration error: {e}")
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG_ERROR
    except Exception as e:
        print_error(f"{args.command.capitalize()} failed: {e}")
        logger.exception("%s failed: %s", args.command, e)
        return EXIT_RUNTIME_ERROR


if __name__ == "__main__":
    sys.exit(main())
