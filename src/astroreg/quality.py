"""
Frame quality assessment for registration and stacking.

Provides fast, explainable, deterministic quality metrics for frame weighting
and selection. No black-box ML: every sub-score is a transparent function of
the background model and the detected stars.

Score (0-100) = weighted sum of
- FWHM score: 100 at ``fwhm_best``, 0 at ``fwhm_worst`` (50 without stars)
- SNR score: ``20 log10(median_peak / noise)``
- star count score: ``star_count * star_count_scale``
- roundness score: ``100 * (1 - cv(FWHM))`` (needs at least 5 stars)

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import inspect
import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Sequence

import numpy as np

from .config import QualityOptions, ScoringThresholds, ScoringWeights
from .detection import DetectedStar, detect_stars, detect_stars_async, estimate_background
from .runtime import (
    AbortSignal,
    BatchProgressCallback,
    ProgressCallback,
    check_abort,
    report_progress,
    yield_control,
)
from .utils import as_image, clamp, round_half_up, upper_median

logger = logging.getLogger(__name__)

# Background map samples used for the median
BACKGROUND_SAMPLES = 10000
MIN_STARS_FOR_ROUNDNESS = 5


@dataclass
class FrameQualityMetrics:
    """Quality metrics for a single frame."""

    background_median: float
    background_noise: float
    snr: float  # Median star peak over noise
    star_count: int
    median_fwhm: float  # Pixels
    roundness: float  # 0-1, 1 = uniform star profiles
    score: float  # 0-100, higher = better
    stars: list[DetectedStar] = field(default_factory=list, repr=False)


@dataclass
class FrameBuffer:
    """A single-channel frame to evaluate."""

    pixels: np.ndarray
    width: int
    height: int


def compute_score(
    star_count: int,
    median_fwhm: float,
    snr: float,
    roundness: float,
    weights: ScoringWeights | None = None,
    thresholds: ScoringThresholds | None = None,
) -> float:
    """
    Combine the four sub-scores into a 0-100 score (rounded half up).

    Parameters
    ----------
    star_count : int
        Number of detected stars.
    median_fwhm : float
        Median FWHM in pixels (<= 0 means unknown).
    snr : float
        Median peak over noise.
    roundness : float
        Profile uniformity in [0, 1].
    weights : ScoringWeights, optional
        Sub-score weights, normalized here.
    thresholds : ScoringThresholds, optional
        FWHM bounds and star count scale.

    Returns
    -------
    float
        Composite score.
    """
    w = (weights or ScoringWeights()).normalized()
    t = thresholds or ScoringThresholds()

    if median_fwhm > 0:
        fwhm_score = clamp(
            100 * (1 - (median_fwhm - t.fwhm_best) / (t.fwhm_worst - t.fwhm_best)), 0, 100
        )
    else:
        fwhm_score = 50.0
    snr_score = clamp(20 * math.log10(snr), 0, 100) if snr > 0 else 0.0
    star_score = min(100.0, star_count * t.star_count_scale)
    round_score = clamp(roundness * 100, 0, 100)

    return round_half_up(
        fwhm_score * w.fwhm
        + snr_score * w.snr
        + star_score * w.star_count
        + round_score * w.roundness
    )


def build_metrics(
    stars: Sequence[DetectedStar],
    noise: float,
    background: np.ndarray,
    weights: ScoringWeights | None = None,
    thresholds: ScoringThresholds | None = None,
) -> FrameQualityMetrics:
    """Derive frame metrics from the background model and the star list."""
    background = np.asarray(background).ravel()
    step = max(1, background.size // BACKGROUND_SAMPLES)
    background_median = upper_median(background[::step])

    star_count = len(stars)
    fwhms = np.array([s.fwhm for s in stars], dtype=np.float64)
    median_fwhm = upper_median(fwhms)

    snr = 0.0
    if star_count > 0 and noise > 0:
        snr = upper_median([s.peak for s in stars]) / noise

    roundness = 1.0
    if star_count >= MIN_STARS_FOR_ROUNDNESS:
        mean = float(fwhms.mean())
        cv = float(fwhms.std()) / mean if mean > 0 else 0.0
        roundness = clamp(1 - cv, 0.0, 1.0)

    return FrameQualityMetrics(
        background_median=background_median,
        background_noise=float(noise),
        snr=float(snr),
        star_count=star_count,
        median_fwhm=median_fwhm,
        roundness=roundness,
        score=compute_score(star_count, median_fwhm, snr, roundness, weights, thresholds),
        stars=list(stars),
    )


def evaluate_frame_quality(
    pixels: np.ndarray,
    width: int,
    height: int,
    options: QualityOptions | None = None,
) -> FrameQualityMetrics:
    """
    Compute quality metrics for a single frame.

    Parameters
    ----------
    pixels : np.ndarray
        Flat row-major buffer (or 2D array).
    width, height : int
        Image geometry.
    options : QualityOptions, optional
        Detector settings (legacy profile by default), scoring weights and
        thresholds, optional star override and detector.

    Returns
    -------
    FrameQualityMetrics
        Metrics with a score in [0, 100].
    """
    options = options or QualityOptions()
    options.validate()
    as_image(pixels, width, height)
    det = options.detection_options

    model = estimate_background(pixels, width, height, det.mesh_size, det.sigma_clip_iters)
    if options.stars_override:
        stars = list(options.stars_override)
    else:
        detector = options.detector or detect_stars
        stars = detector(pixels, width, height, det)
        if inspect.isawaitable(stars):
            if inspect.iscoroutine(stars):
                stars.close()
            raise TypeError("Asynchronous detector requires evaluate_frame_quality_async()")

    return build_metrics(stars, model.noise, model.background, options.weights, options.thresholds)


async def evaluate_frame_quality_async(
    pixels: np.ndarray,
    width: int,
    height: int,
    options: QualityOptions | None = None,
    signal: AbortSignal | None = None,
    on_progress: ProgressCallback | None = None,
) -> FrameQualityMetrics:
    """
    Cooperative variant of :func:`evaluate_frame_quality`.

    Progress is reported at ``background`` (0.05), ``detect-stars`` (0.25),
    ``score`` (0.95) and ``done`` (1.0); ``signal`` is checked at each of
    these boundaries.

    Raises
    ------
    OperationCancelled
        If ``signal`` is aborted.
    """
    options = options or QualityOptions()
    options.validate()
    as_image(pixels, width, height)
    det = options.detection_options

    check_abort(signal, "background")
    report_progress(on_progress, 0.05, "background")
    model = estimate_background(pixels, width, height, det.mesh_size, det.sigma_clip_iters)
    await yield_control()

    check_abort(signal, "detect-stars")
    report_progress(on_progress, 0.25, "detect-stars")
    if options.stars_override:
        stars = list(options.stars_override)
    elif options.detector is not None:
        stars = options.detector(pixels, width, height, det)
        if inspect.isawaitable(stars):
            stars = await stars
    else:
        stars = await detect_stars_async(pixels, width, height, det, signal=signal)

    check_abort(signal, "score")
    report_progress(on_progress, 0.95, "score")
    metrics = build_metrics(stars, model.noise, model.background, options.weights, options.thresholds)
    report_progress(on_progress, 1.0, "done")
    return metrics


def _frame_args(frame) -> tuple[np.ndarray, int, int]:
    if isinstance(frame, FrameBuffer):
        return frame.pixels, frame.width, frame.height
    pixels, width, height = frame
    return pixels, width, height


def evaluate_frames_batch(
    frames: Sequence[FrameBuffer],
    options: QualityOptions | None = None,
    on_progress: Callable[[int, int], None] | None = None,
    show_progress: bool = True,
) -> list[FrameQualityMetrics]:
    """
    Score frames sequentially, in input order.

    Parameters
    ----------
    frames : sequence of FrameBuffer or (pixels, width, height)
        Frames to evaluate.
    options : QualityOptions, optional
        Shared evaluation options.
    on_progress : callable, optional
        ``on_progress(current, total)`` called before each frame (1-based).
    show_progress : bool, default True
        Show a progress bar.

    Returns
    -------
    list[FrameQualityMetrics]
        One entry per frame, same order as ``frames``.
    """
    from .cli_output import create_progress_bar

    results = []
    total = len(frames)
    pbar = create_progress_bar(
        total=total,
        desc="Scoring frames",
        unit="frame",
        disable=not show_progress,
    )

    with pbar:
        for i, frame in enumerate(frames):
            if on_progress is not None:
                on_progress(i + 1, total)
            results.append(evaluate_frame_quality(*_frame_args(frame), options=options))
            pbar.set_postfix(score=f"{results[-1].score:.0f}")
            pbar.update(1)

    if results:
        scores = [m.score for m in results]
        logger.info(
            "Scored %d frames. Best: %.0f, Worst: %.0f",
            len(results), max(scores), min(scores),
        )
    return results


async def evaluate_frames_batch_async(
    frames: Sequence[FrameBuffer],
    options: QualityOptions | None = None,
    signal: AbortSignal | None = None,
    on_progress: BatchProgressCallback | None = None,
) -> list[FrameQualityMetrics]:
    """
    Cooperative batch scoring, strictly in input order.

    ``on_progress(position, total, stage)`` receives ``i`` with stage
    ``start-frame``, ``i + p`` for the stages of frame ``i``, and ``i + 1``
    with stage ``done-frame``. The signal is checked before each frame and
    control is yielded between frames.

    Raises
    ------
    OperationCancelled
        If ``signal`` is aborted.
    """
    results = []
    total = len(frames)

    def notify(position: float, stage: str) -> None:
        if on_progress is not None:
            on_progress(position, total, stage)

    for i, frame in enumerate(frames):
        check_abort(signal, "start-frame")
        notify(i, "start-frame")
        metrics = await evaluate_frame_quality_async(
            *_frame_args(frame),
            options=options,
            signal=signal,
            on_progress=lambda p, stage, i=i: notify(i + p, stage),
        )
        results.append(metrics)
        notify(i + 1, "done-frame")
        if i + 1 < total:
            await yield_control()

    return results


def quality_to_weights(metrics: Sequence[FrameQualityMetrics]) -> list[float]:
    """
    Stacking weights proportional to the scores, best frame = 1.

    All weights are 1 when every score is 0; an empty input gives [].
    """
    if not metrics:
        return []
    scores = [float(m.score) for m in metrics]
    max_score = max(scores)
    if max_score == 0:
        return [1.0] * len(scores)
    return [s / max_score for s in scores]


def rank_frames(metrics: Sequence[FrameQualityMetrics]) -> list[int]:
    """Frame indices sorted by score, best first (stable for equal scores)."""
    return sorted(range(len(metrics)), key=lambda i: -metrics[i].score)


def select_frames(
    metrics: Sequence[FrameQualityMetrics],
    keep_fraction: float = 0.92,
    min_score: float | None = None,
) -> tuple[list[int], list[int]]:
    """
    Select the best frames.

    Parameters
    ----------
    metrics : sequence of FrameQualityMetrics
        Metrics in frame order.
    keep_fraction : float, default 0.92
        Fraction of frames to keep (at least one when any frame exists).
    min_score : float, optional
        Frames scoring below this are rejected even inside the kept fraction.

    Returns
    -------
    tuple[list[int], list[int]]
        (kept_indices, rejected_indices), both best first.
    """
    if not 0.0 < keep_fraction <= 1.0:
        raise ValueError(f"keep_fraction must be in (0, 1], got {keep_fraction}")

    ranked = rank_frames(metrics)
    n_total = len(ranked)
    n_keep = max(1, int(n_total * keep_fraction)) if n_total else 0

    kept = ranked[:n_keep]
    rejected = ranked[n_keep:]
    if min_score is not None:
        low = [i for i in kept if metrics[i].score < min_score]
        kept = [i for i in kept if metrics[i].score >= min_score]
        rejected = sorted(low + rejected, key=lambda i: -metrics[i].score)

    logger.info(
        "Selected %d/%d frames (%.1f%%), rejected %d",
        len(kept),
        n_total,
        100 * len(kept) / n_total if n_total > 0 else 0,
        len(rejected),
    )
    return kept, rejected
