"""
Frame I/O for the command line.

Reads single-channel frames from FITS (via astropy, BZERO/BSCALE applied)
or NumPy ``.npy`` files and writes registered frames back in either format.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
from astropy.io import fits

logger = logging.getLogger(__name__)

FITS_SUFFIXES = (".fits", ".fit", ".fts")
FRAME_SUFFIXES = FITS_SUFFIXES + (".npy",)


def read_frame(path: str | Path, dtype: np.dtype = np.float32) -> tuple[np.ndarray, int, int]:
    """
    Read a single-channel frame.

    Parameters
    ----------
    path : str or Path
        ``.fits``/``.fit``/``.fts`` (primary HDU) or ``.npy`` file.
    dtype : np.dtype, default np.float32
        Output data type.

    Returns
    -------
    tuple[np.ndarray, int, int]
        (flat row-major pixels, width, height).

    Raises
    ------
    ValueError
        If the file is not a 2D image or has an unknown suffix.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in FITS_SUFFIXES:
        with fits.open(path) as hdul:
            data = hdul[0].data
            if data is None:
                raise ValueError(f"No image data in primary HDU: {path}")
            data = np.asarray(data, dtype=dtype)
    elif suffix == ".npy":
        data = np.load(path).astype(dtype, copy=False)
    else:
        raise ValueError(f"Unsupported frame format: {path.name}")

    if data.ndim != 2:
        raise ValueError(f"Expected a 2D single-channel frame, got shape {data.shape}: {path}")
    height, width = data.shape
    logger.debug("Read %s (%dx%d)", path.name, width, height)
    return np.ascontiguousarray(data).ravel(), width, height


def write_frame(path: str | Path, pixels: np.ndarray, width: int, height: int, overwrite: bool = False) -> None:
    """Write a flat frame as FITS or ``.npy`` depending on the suffix."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    image = np.asarray(pixels, dtype=np.float32).reshape(height, width)

    if path.suffix.lower() in FITS_SUFFIXES:
        fits.PrimaryHDU(data=image).writeto(path, overwrite=overwrite)
    elif path.suffix.lower() == ".npy":
        if path.exists() and not overwrite:
            raise FileExistsError(f"File exists: {path}")
        np.save(path, image)
    else:
        raise ValueError(f"Unsupported frame format: {path.name}")
    logger.info("Wrote frame: %s", path)


def list_frames(paths: list[str | Path]) -> list[Path]:
    """
    Expand files and directories into a sorted frame list.

    Directories contribute their FITS/``.npy`` files sorted by name; files are
    kept in the order given.
    """
    frames = []
    for entry in paths:
        entry = Path(entry)
        if entry.is_dir():
            found = sorted(p for p in entry.iterdir() if p.suffix.lower() in FRAME_SUFFIXES)
            logger.info("Discovered %d frames in %s", len(found), entry.name)
            frames.extend(found)
        else:
            frames.append(entry)
    return frames
