"""
Colored CLI output utilities for luckystack.

Provides styled terminal output with colors, progress bars, and status indicators.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass

from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

# Initialize colorama for cross-platform support
colorama_init(autoreset=True)


class Colors:
    """Color constants for consistent styling."""

    HEADER = Fore.CYAN + Style.BRIGHT
    STAGE = Fore.BLUE + Style.BRIGHT

    SUCCESS = Fore.GREEN + Style.BRIGHT
    WARNING = Fore.YELLOW
    ERROR = Fore.RED + Style.BRIGHT
    INFO = Fore.WHITE

    VALUE = Fore.YELLOW + Style.BRIGHT
    METRIC = Fore.MAGENTA
    PATH = Fore.CYAN

    PROGRESS = Fore.GREEN

    RESET = Style.RESET_ALL


class Symbols:
    """Unicode symbols for status indicators."""

    CHECK = "\u2714"  # check
    CROSS = "\u2718"  # cross
    ARROW = "\u2192"  # arrow
    BULLET = "\u2022"  # bullet
    PLANET = "\U0001FA90"  # 🪐

    @classmethod
    def use_ascii(cls):
        """Switch to ASCII-only fallbacks."""
        cls.CHECK = "[OK]"
        cls.CROSS = "[X]"
        cls.ARROW = "->"
        cls.BULLET = "*"
        cls.PLANET = "[P]"


def print_banner(version: str) -> None:
    """Print the luckystack startup banner."""
    banner = f"""
{Colors.HEADER}╔══════════════════════════════════════════════════════════════╗
║  {Symbols.PLANET}  luckystack                                                ║
║     Lucky-imaging registration and stacking                  ║
║     Version: {version:<20}                            ║
╚══════════════════════════════════════════════════════════════╝{Colors.RESET}
"""
    print(banner)


def print_header(text: str, width: int = 60) -> None:
    """Print a styled section header."""
    line = "═" * width
    print(f"\n{Colors.HEADER}{line}")
    print(f"  {text}")
    print(f"{line}{Colors.RESET}")


def print_stage(text: str) -> None:
    """Print a pipeline step header."""
    print(f"\n{Colors.STAGE}▶ {text}{Colors.RESET}")


def print_success(text: str) -> None:
    """Print a success message."""
    print(f"{Colors.SUCCESS}{Symbols.CHECK} {text}{Colors.RESET}")


def print_warning(text: str) -> None:
    """Print a warning message."""
    print(f"{Colors.WARNING}! {text}{Colors.RESET}")


def print_error(text: str) -> None:
    """Print an error message to stderr."""
    print(f"{Colors.ERROR}{Symbols.CROSS} {text}{Colors.RESET}", file=sys.stderr)


def print_info(text: str) -> None:
    """Print an info message."""
    print(f"{Colors.INFO}{Symbols.BULLET} {text}{Colors.RESET}")


def print_metric(name: str, value: str | int | float, unit: str = "") -> None:
    """Print a metric with value."""
    if unit:
        print(f"  {Colors.METRIC}{name}: {Colors.VALUE}{value}{Colors.RESET} {unit}")
    else:
        print(f"  {Colors.METRIC}{name}: {Colors.VALUE}{value}{Colors.RESET}")


def print_path(label: str, path: str) -> None:
    """Print a file path."""
    print(f"  {Colors.INFO}{label}: {Colors.PATH}{path}{Colors.RESET}")


def print_summary_box(lines: list[str], title: str = "Summary") -> None:
    """Print a summary box with multiple lines."""
    width = max((len(line) for line in lines), default=0) + 4
    width = max(width, len(title) + 4)

    border_top = "╔" + "═" * width + "╗"
    border_mid = "╟" + "─" * width + "╢"
    border_bot = "╚" + "═" * width + "╝"

    print(f"\n{Colors.SUCCESS}{border_top}")
    print(f"║ {title:^{width-2}} ║")
    print(border_mid)
    for line in lines:
        print(f"║  {line:<{width-3}}║")
    print(f"{border_bot}{Colors.RESET}")


@dataclass
class ProgressConfig:
    """Configuration for progress bars."""

    bar_format: str = "{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]"
    ncols: int = 80
    colour: str = "green"
    leave: bool = True


def create_progress_bar(
    total: int,
    desc: str,
    unit: str = "frame",
    config: ProgressConfig | None = None,
    disable: bool = False,
) -> tqdm:
    """
    Create a styled progress bar.

    Parameters
    ----------
    total : int
        Total number of items.
    desc : str
        Description text.
    unit : str, default "frame"
        Unit name for items.
    config : ProgressConfig, optional
        Progress bar configuration.
    disable : bool, default False
        Disable the progress bar.

    Returns
    -------
    tqdm
        Configured progress bar.
    """
    if config is None:
        config = ProgressConfig()

    return tqdm(
        total=total,
        desc=f"{Colors.PROGRESS}{desc}{Colors.RESET}",
        unit=unit,
        bar_format=config.bar_format,
        ncols=config.ncols,
        colour=config.colour,
        leave=config.leave,
        disable=disable,
    )


def setup_terminal() -> None:
    """Fall back to ASCII symbols on terminals without UTF-8 support."""
    encoding = (getattr(sys.stdout, "encoding", None) or "").lower()
    if "utf" not in encoding or os.environ.get("TERM") == "dumb":
        Symbols.use_ascii()
