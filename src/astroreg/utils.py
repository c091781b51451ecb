"""
Utility functions for the astroreg engine.

Includes:
- Version info
- Pixel buffer validation
- Small numeric helpers

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import platform
import sys
import time

import numpy as np

__version__ = "0.4.0"
__version_info__ = {
    "major": 0,
    "minor": 4,
    "patch": 0,
    "status": "beta",
    "date": "2026-10-18",
}


def get_version_banner() -> str:
    """Return a formatted version banner for logging."""
    return f"astroreg v{__version__} | Registration & Quality Engine"


def get_version() -> str:
    """Return the library version string."""
    return __version__


def get_platform_info() -> str:
    """Return platform information string."""
    return f"{platform.system()} {platform.release()} / Python {sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"


def now_ms() -> int:
    """Return the current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def as_image(pixels: np.ndarray, width: int, height: int) -> np.ndarray:
    """
    Return a (height, width) float32 view of a pixel buffer.

    Parameters
    ----------
    pixels : np.ndarray
        Flat row-major buffer of ``width * height`` samples, or an array
        already shaped ``(height, width)``.
    width, height : int
        Image geometry.

    Returns
    -------
    np.ndarray
        2D float32 array. No copy is made when the input is already float32.

    Raises
    ------
    ValueError
        If the buffer does not hold exactly ``width * height`` samples.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image geometry: {width}x{height}")
    arr = np.asarray(pixels, dtype=np.float32)
    if arr.size != width * height:
        raise ValueError(
            f"Pixel buffer holds {arr.size} samples, expected {width}x{height}={width * height}"
        )
    return arr.reshape(height, width)


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def round_half_up(value: float) -> float:
    """Round to the nearest integer, halves going up (towards +inf)."""
    return float(np.floor(value + 0.5))


def upper_median(values) -> float:
    """Return the element at index ``n // 2`` of the sorted values (0 if empty)."""
    arr = np.sort(np.asarray(values, dtype=np.float64).ravel())
    if arr.size == 0:
        return 0.0
    return float(arr[arr.size // 2])


def format_duration(seconds: float) -> str:
    """Format a duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    if minutes < 60:
        return f"{minutes}m {secs:.1f}s"
    hours = minutes // 60
    minutes = minutes % 60
    return f"{hours}h {minutes}m {secs:.0f}s"
