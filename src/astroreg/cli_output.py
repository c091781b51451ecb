"""
Colored CLI output utilities for astroreg.

Styled terminal output (colors, status lines, metric tables) and the
progress bar shared by batch operations.

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

colorama_init(autoreset=True)


class Colors:
    """Color constants for consistent styling."""

    HEADER = Fore.CYAN + Style.BRIGHT
    SUCCESS = Fore.GREEN + Style.BRIGHT
    WARNING = Fore.YELLOW
    ERROR = Fore.RED + Style.BRIGHT
    INFO = Fore.WHITE
    VALUE = Fore.YELLOW + Style.BRIGHT
    METRIC = Fore.MAGENTA
    PATH = Fore.CYAN
    PROGRESS = Fore.GREEN
    KEEP = Fore.GREEN
    DIM = Style.DIM
    RESET = Style.RESET_ALL


class Symbols:
    """Status symbols, with ASCII fallbacks for limited terminals."""

    CHECK = "✔"
    CROSS = "✘"
    ARROW = "→"
    BULLET = "•"
    STAR = "★"

    @classmethod
    def use_ascii(cls):
        """Switch to ASCII-only fallbacks."""
        cls.CHECK = "[OK]"
        cls.CROSS = "[X]"
        cls.ARROW = "->"
        cls.BULLET = "*"
        cls.STAR = "*"


def print_banner(version: str) -> None:
    """Print the astroreg startup line."""
    print(f"{Colors.HEADER}{Symbols.STAR} astroreg {version}: registration & frame quality{Colors.RESET}")


def print_header(text: str, width: int = 60) -> None:
    """Print a styled section header."""
    line = "═" * width
    print(f"\n{Colors.HEADER}{line}")
    print(f"  {text}")
    print(f"{line}{Colors.RESET}")


def print_success(text: str) -> None:
    print(f"{Colors.SUCCESS}{Symbols.CHECK} {text}{Colors.RESET}")


def print_warning(text: str) -> None:
    print(f"{Colors.WARNING}! {text}{Colors.RESET}")


def print_error(text: str) -> None:
    print(f"{Colors.ERROR}{Symbols.CROSS} {text}{Colors.RESET}", file=sys.stderr)


def print_info(text: str) -> None:
    print(f"{Colors.INFO}{Symbols.BULLET} {text}{Colors.RESET}")


def print_metric(name: str, value: str | int | float, unit: str = "") -> None:
    """Print a metric with value."""
    if unit:
        print(f"  {Colors.METRIC}{name}: {Colors.VALUE}{value}{Colors.RESET} {unit}")
    else:
        print(f"  {Colors.METRIC}{name}: {Colors.VALUE}{value}{Colors.RESET}")


def print_path(label: str, path: str) -> None:
    print(f"  {Colors.INFO}{label}: {Colors.PATH}{path}{Colors.RESET}")


def print_summary_box(lines: list[str], title: str = "Summary") -> None:
    """Print a summary box with multiple lines."""
    width = max([len(line) for line in lines] + [len(title)]) + 4

    print(f"\n{Colors.SUCCESS}╔" + "═" * width + "╗")
    print(f"║ {title:^{width-2}} ║")
    print("╟" + "─" * width + "╢")
    for line in lines:
        print(f"║  {line:<{width-3}}║")
    print("╚" + "═" * width + f"╝{Colors.RESET}")


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


def setup_terminal() -> bool:
    """
    Fall back to ASCII symbols on terminals without UTF-8 output.

    Returns
    -------
    bool
        True when unicode symbols are kept.
    """
    encoding = (getattr(sys.stdout, "encoding", None) or "").lower()
    unicode_ok = "utf" in encoding and os.environ.get("TERM") != "dumb"
    if not unicode_ok:
        Symbols.use_ascii()
    return unicode_ok
