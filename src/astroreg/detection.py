"""
Star detection and background estimation.

Default implementation of the detector contract used by the alignment engine
and the quality evaluator::

    detect_stars(pixels, width, height, options) -> list[DetectedStar]

Pipeline: mesh background model (sigma-clipped per cell, bilinearly
interpolated), background subtraction, optional Gaussian matched filter,
sigma threshold, connected components, watershed deblending of components
holding several significant peaks, second-moment measurements and
morphological acceptance. Results are sorted by flux, brightest first.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterator

import numpy as np
from astropy.stats import mad_std, sigma_clip
from scipy import ndimage
from skimage.segmentation import watershed

from .config import DetectionOptions, resolve_detection_options
from .runtime import (
    AbortSignal,
    ProgressCallback,
    check_abort,
    report_progress,
    yield_control,
)
from .utils import as_image

logger = logging.getLogger(__name__)

EPS = 1e-8
FWHM_PER_SIGMA = 2.3548
FLAG_DEBLENDED = 1

# Minimum survivors of a clipping pass, as (absolute, fraction of input)
MIN_CLIPPED_COUNT = 8
MIN_CLIPPED_FRACTION = 0.35


@dataclass(frozen=True)
class DetectedStar:
    """A detected point source with its measured shape."""

    cx: float
    cy: float
    flux: float
    peak: float
    area: float
    fwhm: float
    snr: float | None = None
    roundness: float | None = None
    ellipticity: float | None = None
    sharpness: float | None = None
    theta: float | None = None
    flags: int | None = None


@dataclass
class BackgroundModel:
    """Smooth background map (flat, row-major) and global noise sigma."""

    background: np.ndarray
    noise: float


def robust_stats(values: np.ndarray, sigma_clip_iters: int = 2) -> tuple[float, float]:
    """
    Robust (median, sigma) of a sample.

    Sigma is the MAD scaled to a Gaussian standard deviation. Up to
    ``sigma_clip_iters`` 3-sigma clipping passes are applied; a clip that
    would leave fewer than ``max(8, 35%)`` of the values is discarded.

    Parameters
    ----------
    values : np.ndarray
        1D sample (finite values only).
    sigma_clip_iters : int, default 2
        Maximum number of clipping passes.

    Returns
    -------
    tuple[float, float]
        (median, sigma). Both 0 for an empty sample.
    """
    if values.size == 0:
        return 0.0, 0.0
    median = float(np.median(values))
    sigma = float(mad_std(values))
    if sigma_clip_iters <= 0 or sigma <= 0:
        return median, sigma

    clipped = sigma_clip(
        values,
        sigma=3.0,
        maxiters=sigma_clip_iters,
        cenfunc="median",
        stdfunc="mad_std",
        masked=False,
    )
    if clipped.size < max(MIN_CLIPPED_COUNT, int(values.size * MIN_CLIPPED_FRACTION)):
        return median, sigma
    return float(np.median(clipped)), float(mad_std(clipped))


def estimate_background(
    pixels: np.ndarray,
    width: int,
    height: int,
    mesh_size: int = 64,
    sigma_clip_iters: int = 2,
) -> BackgroundModel:
    """
    Estimate a smooth background map and the global noise level.

    The image is divided into ``mesh_size`` cells; each cell gets a robust
    median and sigma from its finite samples. Cell medians are bilinearly
    interpolated at pixel centres. The noise is the median of the positive
    cell sigmas (1.0 if there are none).

    Parameters
    ----------
    pixels : np.ndarray
        Flat row-major buffer (or 2D array). NaN marks invalid samples.
    width, height : int
        Image geometry.
    mesh_size : int, default 64
        Cell size in pixels.
    sigma_clip_iters : int, default 2
        Clipping passes per cell.

    Returns
    -------
    BackgroundModel
        Flat float32 background and scalar noise.
    """
    image = as_image(pixels, width, height)
    mesh = max(1, int(mesh_size))
    nx = max(1, math.ceil(width / mesh))
    ny = max(1, math.ceil(height / mesh))

    medians = np.zeros((ny, nx), dtype=np.float64)
    sigmas = np.zeros((ny, nx), dtype=np.float64)
    for my in range(ny):
        y0, y1 = my * mesh, min(height, (my + 1) * mesh)
        for mx in range(nx):
            x0, x1 = mx * mesh, min(width, (mx + 1) * mesh)
            cell = image[y0:y1, x0:x1]
            medians[my, mx], sigmas[my, mx] = robust_stats(
                cell[np.isfinite(cell)].astype(np.float64), sigma_clip_iters
            )

    fy = (np.arange(height) + 0.5) / mesh - 0.5
    fx = (np.arange(width) + 0.5) / mesh - 0.5
    grid_y, grid_x = np.meshgrid(fy, fx, indexing="ij")
    background = ndimage.map_coordinates(
        medians, [grid_y, grid_x], order=1, mode="nearest"
    ).astype(np.float32)

    positive = sigmas[(sigmas > 0) & np.isfinite(sigmas)]
    noise = float(np.sort(positive)[positive.size // 2]) if positive.size else 1.0
    if not math.isfinite(noise) or noise <= 0:
        noise = 1.0

    return BackgroundModel(background=background.ravel(), noise=noise)


# =============================================================================
# Detection stages
# =============================================================================


def _prepare(
    image: np.ndarray,
    options: DetectionOptions,
) -> tuple[np.ndarray, np.ndarray, float, float]:
    """Background-subtract and filter. Returns (bgsub, detect_image, noise, threshold)."""
    height, width = image.shape
    model = estimate_background(
        image, width, height, options.mesh_size, options.sigma_clip_iters
    )
    bgsub = np.nan_to_num(
        image - model.background.reshape(height, width), nan=0.0, posinf=0.0, neginf=0.0
    )

    if options.apply_matched_filter and options.filter_fwhm > 0:
        sigma = max(0.3, options.filter_fwhm / FWHM_PER_SIGMA)
        detect = ndimage.gaussian_filter(bgsub, sigma=sigma, mode="nearest", truncate=3.0)
    else:
        detect = bgsub

    threshold = options.sigma_threshold * max(model.noise, EPS)
    return bgsub, detect, model.noise, threshold


def _label(detect: np.ndarray, threshold: float, options: DetectionOptions) -> tuple[np.ndarray, int]:
    """Label above-threshold components inside the border window."""
    height, width = detect.shape
    m = options.border_margin
    mask = np.zeros(detect.shape, dtype=bool)
    if height > 2 * m and width > 2 * m:
        inner = detect[m:height - m, m:width - m]
        mask[m:height - m, m:width - m] = inner >= threshold

    rank = 1 if options.connectivity == 4 else 2
    structure = ndimage.generate_binary_structure(2, rank)
    labels, n_labels = ndimage.label(mask, structure=structure)
    return labels, n_labels


def _split_component(
    component: np.ndarray,
    detect: np.ndarray,
    peaks: np.ndarray | None,
    local_flux: np.ndarray | None,
    options: DetectionOptions,
) -> list[tuple[np.ndarray, bool]]:
    """
    Split a component (boolean mask over a window) around its significant peaks.

    Seeds are the brightest local maxima (at most ``deblend_n_levels``) whose
    3x3 neighbourhood carries at least ``deblend_min_contrast`` of the
    component flux. Pixels are assigned to seeds by watershed on the filtered
    image; parts below the contrast limit are dropped. Returns
    ``[(mask, deblended)]``.
    """
    whole = [(component, False)]
    if peaks is None or options.deblend_n_levels <= 1:
        return whole

    positive = np.maximum(detect, 0.0)
    total_flux = float(positive[component].sum())
    if total_flux <= 0:
        return whole

    ys, xs = np.nonzero(component & peaks)
    if ys.size <= 1:
        return whole
    order = np.argsort(-detect[ys, xs], kind="stable")[: options.deblend_n_levels]
    ys, xs = ys[order], xs[order]
    significant = local_flux[ys, xs] >= options.deblend_min_contrast * total_flux
    ys, xs = ys[significant], xs[significant]
    if ys.size <= 1:
        return whole

    markers = np.zeros(component.shape, dtype=np.int32)
    markers[ys, xs] = np.arange(1, ys.size + 1)
    regions = watershed(-detect, markers=markers, mask=component)

    parts = []
    for k in range(1, ys.size + 1):
        part = regions == k
        if positive[part].sum() >= options.deblend_min_contrast * total_flux:
            parts.append((part, True))
    return parts if len(parts) > 1 else whole


def measure_star(
    ys: np.ndarray,
    xs: np.ndarray,
    values: np.ndarray,
    noise: float,
    deblended: bool = False,
) -> DetectedStar | None:
    """
    Measure a star from its pixel coordinates and background-subtracted values.

    Centroid and second moments are flux weighted (negative samples count as
    zero). FWHM uses the mean of the moment eigenvalues; roundness is the
    minor/major sigma ratio.

    Returns
    -------
    DetectedStar or None
        None if the pixel set carries no positive flux.
    """
    if ys.size == 0:
        return None
    v = np.maximum(values, 0.0).astype(np.float64)
    flux = float(v.sum())
    if flux <= 0:
        return None

    cx = float((xs * v).sum() / flux)
    cy = float((ys * v).sum() / flux)
    dx = xs - cx
    dy = ys - cy
    sxx = float((dx * dx * v).sum() / flux)
    syy = float((dy * dy * v).sum() / flux)
    sxy = float((dx * dy * v).sum() / flux)

    trace = sxx + syy
    det_term = max(0.0, trace * trace / 4 - (sxx * syy - sxy * sxy))
    lambda1 = max(EPS, trace / 2 + math.sqrt(det_term))
    lambda2 = max(EPS, trace / 2 - math.sqrt(det_term))
    sigma_major = math.sqrt(lambda1)
    sigma_minor = math.sqrt(lambda2)

    fwhm = FWHM_PER_SIGMA * math.sqrt((lambda1 + lambda2) / 2)
    roundness = max(0.0, min(1.0, sigma_minor / (sigma_major + EPS)))
    area = int(ys.size)
    peak = float(v.max())
    mean_flux = flux / max(1, area)

    return DetectedStar(
        cx=cx,
        cy=cy,
        flux=flux,
        peak=peak,
        area=float(area),
        fwhm=fwhm,
        snr=flux / (math.sqrt(area) * max(EPS, noise)),
        roundness=roundness,
        ellipticity=1.0 - roundness,
        sharpness=peak / (mean_flux + EPS),
        theta=0.5 * math.atan2(2 * sxy, sxx - syy),
        flags=FLAG_DEBLENDED if deblended else 0,
    )


def accept_star(star: DetectedStar, options: DetectionOptions, width: int, height: int) -> bool:
    """Morphological and positional acceptance test."""
    if star.area < options.min_area or star.area > options.max_area:
        return False
    if star.fwhm < options.min_fwhm or star.fwhm > options.max_fwhm:
        return False
    if (star.ellipticity or 0.0) > options.max_ellipticity:
        return False
    sharpness = star.sharpness or 0.0
    if sharpness < options.min_sharpness or sharpness > options.max_sharpness:
        return False
    if options.peak_max is not None and star.peak > options.peak_max:
        return False
    if (star.snr or 0.0) < options.snr_min:
        return False
    m = options.border_margin
    if star.cx < m or star.cx >= width - m or star.cy < m or star.cy >= height - m:
        return False
    return True


def _iter_component_stars(
    labels: np.ndarray,
    bgsub: np.ndarray,
    detect: np.ndarray,
    noise: float,
    options: DetectionOptions,
) -> Iterator[DetectedStar | None]:
    """Yield one measured star (or None) per part of each labelled component."""
    peaks = local_flux = None
    if options.deblend_n_levels > 1:
        peaks = detect == ndimage.maximum_filter(detect, size=3, mode="nearest")
        local_flux = ndimage.uniform_filter(
            np.maximum(detect, 0.0), size=3, mode="constant"
        ) * 9.0

    for label_index, window in enumerate(ndimage.find_objects(labels), start=1):
        if window is None:
            continue
        component = labels[window] == label_index
        y_off, x_off = window[0].start, window[1].start
        parts = _split_component(
            component,
            detect[window],
            None if peaks is None else peaks[window],
            None if local_flux is None else local_flux[window],
            options,
        )
        sub_bg = bgsub[window]
        for part, deblended in parts:
            ys, xs = np.nonzero(part)
            yield measure_star(ys + y_off, xs + x_off, sub_bg[ys, xs], noise, deblended)


def _finalize(stars: list[DetectedStar], options: DetectionOptions) -> list[DetectedStar]:
    stars.sort(key=lambda s: s.flux, reverse=True)
    return stars[: options.max_stars]


def detect_stars(
    pixels: np.ndarray,
    width: int,
    height: int,
    options: DetectionOptions | None = None,
) -> list[DetectedStar]:
    """
    Detect stars in a single-channel image.

    Parameters
    ----------
    pixels : np.ndarray
        Flat row-major buffer (or 2D array).
    width, height : int
        Image geometry.
    options : DetectionOptions, optional
        Detector settings. Defaults to the ``legacy`` profile.

    Returns
    -------
    list[DetectedStar]
        Accepted stars, brightest first, at most ``options.max_stars``.
    """
    if options is None:
        options = resolve_detection_options("legacy")
    image = as_image(pixels, width, height)

    bgsub, detect, noise, threshold = _prepare(image, options)
    labels, n_labels = _label(detect, threshold, options)

    stars = [
        star for star in _iter_component_stars(labels, bgsub, detect, noise, options)
        if star is not None and accept_star(star, options, width, height)
    ]
    result = _finalize(stars, options)
    logger.debug(
        "Detected %d stars (%d components, profile=%s, noise=%.3g)",
        len(result), n_labels, options.profile, noise,
    )
    return result


async def detect_stars_async(
    pixels: np.ndarray,
    width: int,
    height: int,
    options: DetectionOptions | None = None,
    signal: AbortSignal | None = None,
    on_progress: ProgressCallback | None = None,
    chunk_components: int = 64,
) -> list[DetectedStar]:
    """
    Cooperative variant of :func:`detect_stars`.

    Defaults to the ``balanced`` profile. Yields to the event loop between
    stages and every ``chunk_components`` components, checking ``signal``
    each time.

    Raises
    ------
    OperationCancelled
        If ``signal`` is aborted.
    """
    if options is None:
        options = resolve_detection_options("balanced")
    image = as_image(pixels, width, height)

    report_progress(on_progress, 0.02, "background")
    check_abort(signal, "background")
    bgsub, detect, noise, threshold = _prepare(image, options)
    await yield_control()

    report_progress(on_progress, 0.4, "label")
    check_abort(signal, "label")
    labels, n_labels = _label(detect, threshold, options)
    await yield_control()

    stars: list[DetectedStar] = []
    for i, star in enumerate(_iter_component_stars(labels, bgsub, detect, noise, options)):
        if star is not None and accept_star(star, options, width, height):
            stars.append(star)
        if (i + 1) % max(1, chunk_components) == 0:
            check_abort(signal, "measure")
            report_progress(on_progress, 0.5 + 0.45 * min(1.0, (i + 1) / max(1, n_labels)), "measure")
            await yield_control()

    result = _finalize(stars, options)
    report_progress(on_progress, 1.0, "done")
    return result
