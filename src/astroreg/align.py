"""
Frame registration/alignment from star detections or control points.

Two automatic estimators are provided:

- :func:`compute_translation`: offset voting over bright star pairs followed
  by one-to-one nearest-neighbour matching (pure translation);
- :func:`compute_full_alignment`: triangle-invariant asterism matching with
  inlier scoring and a least-squares affine refit (rotation, scale, shear,
  translation).

:func:`align_frame` / :func:`align_frame_async` orchestrate detection (or
caller-supplied stars, or manual control points), the estimators and their
fallbacks, and resample the target onto the reference grid. All numeric
failures resolve to the identity transform with an infinite RMS; they never
raise.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import inspect
import json
import logging
import math
from dataclasses import dataclass, field, replace
from itertools import combinations
from pathlib import Path
from typing import Sequence

import numpy as np
from scipy.spatial import cKDTree
from skimage.transform import AffineTransform, warp

from .config import (
    ALIGNMENT_MODES,
    AlignmentMode,
    AlignmentOptions,
    DetectionOptions,
    FallbackUsed,
    ManualControlPoints,
    OverrideUsage,
    resolve_detection_options,
)
from .detection import DetectedStar, detect_stars, detect_stars_async
from .linkage import AnchorPoint, build_manual_transform
from .runtime import AbortSignal, check_abort, yield_control
from .utils import as_image

logger = logging.getLogger(__name__)

Matrix = tuple[float, float, float, float, float, float]
IDENTITY_MATRIX: Matrix = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0)

SINGULAR_DET = 1e-10
MIN_MATCHES = 3
VOTE_STARS = 50  # Brightest stars used for voting and inlier counting
TRIANGLE_STARS = 30  # Brightest stars used to build triangles
MIN_TRIANGLE_SIDE = 10.0
VOTE_BOX = 2.0  # Half-width of the offset clustering box (pixels)
VOTE_RANGE_FACTOR = 10.0  # Offsets beyond search_radius * factor are ignored


@dataclass
class AlignmentTransform:
    """
    Affine transform mapping reference coordinates to target coordinates.

    ``x' = a*x + b*y + tx``, ``y' = c*x + d*y + ty`` with
    ``matrix = (a, b, tx, c, d, ty)``.
    """

    matrix: Matrix = IDENTITY_MATRIX
    matched_stars: int = 0
    rms_error: float = math.inf
    fallback_used: FallbackUsed = FallbackUsed.NONE
    override_usage: OverrideUsage | None = None
    detection_counts: dict[str, int] | None = None

    @property
    def success(self) -> bool:
        return math.isfinite(self.rms_error)

    @property
    def translation(self) -> tuple[float, float]:
        return self.matrix[2], self.matrix[5]


@dataclass
class AlignmentResult:
    """Aligned target buffer and the transform that produced it."""

    aligned: np.ndarray
    transform: AlignmentTransform = field(default_factory=AlignmentTransform)

    @property
    def success(self) -> bool:
        return self.transform.success


def failed_transform(**kwargs) -> AlignmentTransform:
    """Identity transform with no matches and infinite RMS."""
    return AlignmentTransform(matrix=IDENTITY_MATRIX, matched_stars=0, rms_error=math.inf, **kwargs)


def transform_matrix_3x3(transform: AlignmentTransform | Sequence[float]) -> np.ndarray:
    """Homogeneous 3x3 form of a transform or a 6-element matrix."""
    m = transform.matrix if isinstance(transform, AlignmentTransform) else transform
    a, b, tx, c, d, ty = (float(v) for v in m)
    return np.array([[a, b, tx], [c, d, ty], [0.0, 0.0, 1.0]], dtype=np.float64)


# =============================================================================
# Persistence
# =============================================================================


def transform_to_dict(transform: AlignmentTransform) -> dict:
    """
    Convert AlignmentTransform to a JSON-serializable dict.

    An infinite RMS error is written as ``null``.
    """
    d = {
        "matrix": [float(v) for v in transform.matrix],
        "matchedStars": int(transform.matched_stars),
        "rmsError": float(transform.rms_error) if math.isfinite(transform.rms_error) else None,
        "fallbackUsed": transform.fallback_used.value,
    }
    if transform.override_usage is not None:
        d["overrideUsage"] = transform.override_usage.value
    if transform.detection_counts is not None:
        d["detectionCounts"] = dict(transform.detection_counts)
    return d


def dict_to_transform(d: dict) -> AlignmentTransform:
    """Convert a dict back to AlignmentTransform."""
    matrix = d.get("matrix") or IDENTITY_MATRIX
    if len(matrix) != 6:
        raise ValueError(f"Transform matrix must have 6 elements, got {len(matrix)}")
    rms = d.get("rmsError")
    override = d.get("overrideUsage")
    return AlignmentTransform(
        matrix=tuple(float(v) for v in matrix),
        matched_stars=int(d.get("matchedStars", 0)),
        rms_error=math.inf if rms is None else float(rms),
        fallback_used=FallbackUsed(d.get("fallbackUsed", "none")),
        override_usage=OverrideUsage(override) if override is not None else None,
        detection_counts=d.get("detectionCounts"),
    )


def save_transforms(
    transforms: list[AlignmentTransform],
    output_path: str | Path,
    metadata: dict | None = None,
) -> None:
    """
    Save alignment transforms to a JSON file.

    Parameters
    ----------
    transforms : list[AlignmentTransform]
        Transforms to save, in layer/frame order.
    output_path : str or Path
        Output JSON file path.
    metadata : dict, optional
        Additional metadata to include.
    """
    output_path = Path(output_path)
    n_successful = sum(1 for t in transforms if t.success)

    data = {
        "version": "1.0",
        "n_transforms": len(transforms),
        "n_successful": n_successful,
        "metadata": metadata or {},
        "transforms": [transform_to_dict(t) for t in transforms],
    }

    with open(output_path, "w") as f:
        json.dump(data, f, indent=2)

    logger.info(
        "Saved %d transforms (%d successful) to %s",
        len(transforms),
        n_successful,
        output_path,
    )


def load_transforms(input_path: str | Path) -> tuple[list[AlignmentTransform], dict]:
    """
    Load alignment transforms from a JSON file.

    Returns
    -------
    tuple
        (transforms, metadata)
    """
    input_path = Path(input_path)

    with open(input_path) as f:
        data = json.load(f)

    transforms = [dict_to_transform(d) for d in data["transforms"]]
    logger.info("Loaded %d transforms from %s", len(transforms), input_path)
    return transforms, data.get("metadata", {})


# =============================================================================
# Star geometry helpers
# =============================================================================


def _by_flux(stars: Sequence[DetectedStar]) -> list[DetectedStar]:
    return sorted(stars, key=lambda s: s.flux, reverse=True)


def _xy(stars: Sequence[DetectedStar]) -> np.ndarray:
    if not stars:
        return np.empty((0, 2), dtype=np.float64)
    return np.array([(s.cx, s.cy) for s in stars], dtype=np.float64)


def _apply_matrix(matrix: Sequence[float], xy: np.ndarray) -> np.ndarray:
    a, b, tx, c, d, ty = matrix
    return np.column_stack([
        a * xy[:, 0] + b * xy[:, 1] + tx,
        c * xy[:, 0] + d * xy[:, 1] + ty,
    ])


def _one_to_one_pairs(
    source_xy: np.ndarray,
    target_xy: np.ndarray,
    radius: float,
    strict: bool = False,
) -> list[tuple[float, int, int]]:
    """
    Greedy one-to-one matching of points within ``radius``.

    Candidate pairs are accepted by increasing distance, ties resolved by
    source index then target index. Returns ``[(distance, i_source, j_target)]``.
    """
    if len(source_xy) == 0 or len(target_xy) == 0:
        return []
    tree = cKDTree(target_xy)
    candidates = []
    for i, neighbours in enumerate(tree.query_ball_point(source_xy, r=radius)):
        for j in neighbours:
            dist = float(np.hypot(*(target_xy[j] - source_xy[i])))
            if strict and dist >= radius:
                continue
            candidates.append((dist, i, j))
    candidates.sort()

    used_i: set[int] = set()
    used_j: set[int] = set()
    pairs = []
    for dist, i, j in candidates:
        if i in used_i or j in used_j:
            continue
        used_i.add(i)
        used_j.add(j)
        pairs.append((dist, i, j))
    return pairs


def fit_affine(src: np.ndarray, dst: np.ndarray) -> Matrix | None:
    """
    Least-squares affine fit ``dst ~ M(src)`` over >= 3 point pairs.

    Returns None when the source points do not span the plane.
    """
    if len(src) < MIN_MATCHES:
        return None
    design = np.column_stack([src, np.ones(len(src))])
    coeffs, _, rank, _ = np.linalg.lstsq(design, dst, rcond=None)
    if rank < 3:
        return None
    (a, c), (b, d), (tx, ty) = coeffs
    return (float(a), float(b), float(tx), float(c), float(d), float(ty))


def _rms(src: np.ndarray, dst: np.ndarray, matrix: Matrix) -> float:
    residuals = dst - _apply_matrix(matrix, src)
    return float(np.sqrt(np.mean(np.sum(residuals ** 2, axis=1))))


# =============================================================================
# Translation-only alignment
# =============================================================================


def _vote_offset(ref_xy: np.ndarray, target_xy: np.ndarray, search_radius: float) -> np.ndarray | None:
    """Dominant (dx, dy) among pairwise offsets of the brightest stars."""
    offsets = (target_xy[None, :VOTE_STARS, :] - ref_xy[:VOTE_STARS, None, :]).reshape(-1, 2)
    limit = search_radius * VOTE_RANGE_FACTOR
    offsets = offsets[(np.abs(offsets) < limit).all(axis=1)]
    if len(offsets) == 0:
        return None

    # Chebyshev ball strictly inside the clustering box
    box = np.nextafter(VOTE_BOX, 0.0)
    tree = cKDTree(offsets)
    counts = [len(n) for n in tree.query_ball_point(offsets, r=box, p=np.inf)]
    best = offsets[int(np.argmax(counts))]
    cluster = offsets[(np.abs(offsets - best) < VOTE_BOX).all(axis=1)]
    return cluster.mean(axis=0)


def compute_translation(
    ref_stars: Sequence[DetectedStar],
    target_stars: Sequence[DetectedStar],
    search_radius: float = 20.0,
) -> AlignmentTransform:
    """
    Estimate a pure translation between two star lists.

    Parameters
    ----------
    ref_stars, target_stars : sequence of DetectedStar
        Stars of the reference and target frames.
    search_radius : float, default 20.0
        Maximum distance in pixels between a target star and the predicted
        position of its reference star.

    Returns
    -------
    AlignmentTransform
        Translation ``(1, 0, tx, 0, 1, ty)`` with the number of matched pairs
        and the RMS of the matched offsets about their mean. Identity with
        ``matched_stars=0`` and ``rms_error=inf`` when fewer than 3 pairs match.

    Notes
    -----
    A coarse offset is first voted from all pairwise offsets of the 50
    brightest stars on each side (2 px clustering box), so shifts larger than
    ``search_radius`` are recovered. Stars are then paired one to one around
    that prediction, closest pairs first, ties broken by the order of the
    input lists.
    """
    if len(ref_stars) < MIN_MATCHES or len(target_stars) < MIN_MATCHES:
        return failed_transform()

    ref_xy = _xy(ref_stars)
    target_xy = _xy(target_stars)

    seed = _vote_offset(_xy(_by_flux(ref_stars)), _xy(_by_flux(target_stars)), search_radius)
    if seed is None:
        return failed_transform()

    pairs = _one_to_one_pairs(ref_xy + seed, target_xy, search_radius, strict=True)
    if len(pairs) < MIN_MATCHES:
        logger.debug("Translation: only %d matches within %.1f px", len(pairs), search_radius)
        return failed_transform()

    idx_ref = [i for _, i, _ in pairs]
    idx_target = [j for _, _, j in pairs]
    offsets = target_xy[idx_target] - ref_xy[idx_ref]
    mean = offsets.mean(axis=0)
    rms = float(np.sqrt(np.mean(np.sum((offsets - mean) ** 2, axis=1))))

    return AlignmentTransform(
        matrix=(1.0, 0.0, float(mean[0]), 0.0, 1.0, float(mean[1])),
        matched_stars=len(pairs),
        rms_error=rms,
    )


# =============================================================================
# Full (affine) alignment
# =============================================================================


def build_triangles(xy: np.ndarray, max_triangles: int = 500) -> tuple[np.ndarray, np.ndarray]:
    """
    Build scale/rotation invariant triangle descriptors.

    Parameters
    ----------
    xy : np.ndarray
        (N, 2) star positions, brightest first. Only the first 30 are used.
    max_triangles : int, default 500
        Maximum number of triangles kept (in lexicographic vertex order).

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        ``vertices`` (M, 3) star indices ordered by the length of the opposite
        side (shortest first) and ``invariants`` (M, 2) side ratios
        ``(shortest/longest, middle/longest)``. Triangles whose longest side
        is under 10 px are skipped.
    """
    n = min(len(xy), TRIANGLE_STARS)
    if n < 3:
        return np.empty((0, 3), dtype=np.intp), np.empty((0, 2))

    combos = np.array(list(combinations(range(n), 3)), dtype=np.intp)
    p = xy[combos]  # (M, 3, 2)
    # Side opposite each vertex: 0 <-> (1,2), 1 <-> (0,2), 2 <-> (0,1)
    opposite = np.stack([
        np.hypot(*(p[:, 1] - p[:, 2]).T),
        np.hypot(*(p[:, 0] - p[:, 2]).T),
        np.hypot(*(p[:, 0] - p[:, 1]).T),
    ], axis=1)
    order = np.argsort(opposite, axis=1, kind="stable")
    sides = np.take_along_axis(opposite, order, axis=1)

    keep = sides[:, 2] >= MIN_TRIANGLE_SIDE
    combos, order, sides = combos[keep], order[keep], sides[keep]
    combos, order, sides = combos[:max_triangles], order[:max_triangles], sides[:max_triangles]

    vertices = np.take_along_axis(combos, order, axis=1)
    invariants = sides[:, :2] / sides[:, 2:3]
    return vertices, invariants


def _count_inliers(
    matrix: Matrix,
    ref_xy: np.ndarray,
    target_tree: cKDTree,
    threshold: float,
) -> tuple[int, float]:
    dist, _ = target_tree.query(_apply_matrix(matrix, ref_xy), k=1)
    inliers = dist < threshold
    return int(inliers.sum()), float(np.sum(dist[inliers] ** 2))


def compute_full_alignment(
    ref_stars: Sequence[DetectedStar],
    target_stars: Sequence[DetectedStar],
    tolerance: float = 0.01,
    max_ransac_iterations: int = 100,
    inlier_threshold: float = 3.0,
    max_triangles: int = 500,
) -> AlignmentTransform:
    """
    Estimate an affine transform by triangle asterism matching.

    Parameters
    ----------
    ref_stars, target_stars : sequence of DetectedStar
        Stars of the reference and target frames.
    tolerance : float, default 0.01
        Maximum L1 distance between triangle invariants of a match.
    max_ransac_iterations : int, default 100
        Number of best triangle matches tried as hypotheses.
    inlier_threshold : float, default 3.0
        Residual in pixels under which a star counts as an inlier.
    max_triangles : int, default 500
        Maximum triangles built per frame.

    Returns
    -------
    AlignmentTransform
        Refined affine transform, number of one-to-one inliers and their RMS
        residual. Identity with ``matched_stars=0`` and ``rms_error=inf`` when
        fewer than 3 consistent correspondences are found.

    Notes
    -----
    Each triangle match gives a vertex correspondence (vertices ordered by
    opposite side length) and thus an exact affine hypothesis. Hypotheses are
    scored by the number of the 50 brightest reference stars landing within
    ``inlier_threshold`` of a target star (ties: smaller squared residual).
    The winner is refit by least squares over its one-to-one inliers.
    """
    if len(ref_stars) < MIN_MATCHES or len(target_stars) < MIN_MATCHES:
        return failed_transform()

    ref_xy = _xy(_by_flux(ref_stars))
    target_xy = _xy(_by_flux(target_stars))

    ref_vertices, ref_inv = build_triangles(ref_xy, max_triangles)
    target_vertices, target_inv = build_triangles(target_xy, max_triangles)
    if len(ref_inv) == 0 or len(target_inv) == 0:
        return failed_transform()

    inv_tree = cKDTree(target_inv)
    matches = []
    for i, neighbours in enumerate(inv_tree.query_ball_point(ref_inv, r=tolerance, p=1)):
        for j in neighbours:
            diff = float(np.abs(ref_inv[i] - target_inv[j]).sum())
            if diff < tolerance:
                matches.append((diff, i, j))
    if not matches:
        logger.debug("Full alignment: no matching triangles (tolerance=%g)", tolerance)
        return failed_transform()
    matches.sort()

    ref_top = ref_xy[:VOTE_STARS]
    target_top = target_xy[:VOTE_STARS]
    target_tree = cKDTree(target_top)

    best_matrix: Matrix | None = None
    best_inliers = 0
    best_err = math.inf
    for diff, i, j in matches[: max(0, max_ransac_iterations)]:
        matrix = fit_affine(ref_xy[ref_vertices[i]], target_xy[target_vertices[j]])
        if matrix is None:
            continue
        inliers, sq_err = _count_inliers(matrix, ref_top, target_tree, inlier_threshold)
        if inliers > best_inliers or (inliers == best_inliers and inliers > 0 and sq_err < best_err):
            best_matrix, best_inliers, best_err = matrix, inliers, sq_err

    if best_matrix is None or best_inliers < MIN_MATCHES:
        logger.debug("Full alignment: best hypothesis has %d inliers", best_inliers)
        return failed_transform()

    pairs = _one_to_one_pairs(
        _apply_matrix(best_matrix, ref_top), target_top, inlier_threshold, strict=True
    )
    if len(pairs) < MIN_MATCHES:
        return failed_transform()

    src = ref_top[[i for _, i, _ in pairs]]
    dst = target_top[[j for _, _, j in pairs]]
    refined = fit_affine(src, dst)
    if refined is None:
        return failed_transform()

    return AlignmentTransform(
        matrix=refined,
        matched_stars=len(pairs),
        rms_error=_rms(src, dst, refined),
    )


# =============================================================================
# Resampling
# =============================================================================


def apply_transform(
    pixels: np.ndarray,
    width: int,
    height: int,
    transform: AlignmentTransform | Sequence[float],
) -> np.ndarray:
    """
    Resample a buffer through a transform.

    Each destination pixel samples the source at the inverse-mapped position
    (nearest sample); positions outside the source give 0.

    Parameters
    ----------
    pixels : np.ndarray
        Flat row-major buffer (or 2D array).
    width, height : int
        Image geometry.
    transform : AlignmentTransform or sequence of 6 floats
        Transform to apply.

    Returns
    -------
    np.ndarray
        New float32 buffer shaped like ``pixels`` (flat in, flat out), or
        ``pixels`` itself (no copy) when the matrix is the identity or
        singular (``|det| < 1e-10``).
    """
    image = as_image(pixels, width, height)
    m = transform.matrix if isinstance(transform, AlignmentTransform) else tuple(transform)
    a, b, _, c, d, _ = m
    if tuple(float(v) for v in m) == IDENTITY_MATRIX or abs(a * d - b * c) < SINGULAR_DET:
        return pixels

    inverse_affine = AffineTransform(matrix=transform_matrix_3x3(m)).inverse
    warped = warp(
        image,
        inverse_affine,
        output_shape=(height, width),
        order=0,
        mode="constant",
        cval=0.0,
        clip=False,
        preserve_range=True,
    )
    return warped.astype(np.float32).reshape(np.shape(pixels))


# =============================================================================
# Orchestration
# =============================================================================


def _detection_options(options: AlignmentOptions) -> DetectionOptions:
    return options.detection_options or resolve_detection_options("legacy")


def _manual_transform(
    manual: ManualControlPoints,
) -> AlignmentTransform | None:
    """Solve the manual registration, or None if it is degenerate."""
    n_pairs = min(len(manual.ref), len(manual.target), 3)
    ref_anchors = [
        AnchorPoint(id=f"ref_{k}", x=float(x), y=float(y), anchor_index=k + 1)
        for k, (x, y) in enumerate(manual.ref[:n_pairs])
    ]
    target_anchors = [
        AnchorPoint(id=f"target_{k}", x=float(x), y=float(y), anchor_index=k + 1)
        for k, (x, y) in enumerate(manual.target[:n_pairs])
    ]
    matrix = build_manual_transform(ref_anchors, target_anchors, manual.mode)
    if matrix is None:
        logger.warning(
            "Manual %s registration is degenerate (%d pairs), using automatic matching",
            manual.mode, n_pairs,
        )
        return None
    used = {"one_star": 1, "two_star": 2, "three_star": 3}[manual.mode]
    return AlignmentTransform(
        matrix=matrix,
        matched_stars=min(used, n_pairs),
        rms_error=0.0,
        fallback_used=FallbackUsed.for_manual_mode(manual.mode),
    )


def _estimate(
    ref_stars: Sequence[DetectedStar],
    target_stars: Sequence[DetectedStar],
    mode: str,
    options: AlignmentOptions,
    override_usage: OverrideUsage,
) -> AlignmentTransform:
    """Run the estimator of ``mode`` with its fallback and tag the result."""
    fallback = FallbackUsed.NONE
    if mode == "translation":
        transform = compute_translation(ref_stars, target_stars, options.search_radius)
    else:
        transform = compute_full_alignment(
            ref_stars,
            target_stars,
            tolerance=options.tolerance,
            max_ransac_iterations=options.max_ransac_iterations,
            inlier_threshold=options.inlier_threshold,
            max_triangles=options.max_triangles,
        )
        if transform.matched_stars < MIN_MATCHES and bool(options.fallback_to_translation):
            logger.info("Full alignment failed, retrying with translation only")
            transform = compute_translation(ref_stars, target_stars, options.search_radius)
            fallback = FallbackUsed.TRANSLATION

    counts = {"ref": len(ref_stars), "target": len(target_stars)}
    if transform.matched_stars < MIN_MATCHES:
        return failed_transform(override_usage=override_usage, detection_counts=counts)

    if fallback is FallbackUsed.NONE and override_usage is not OverrideUsage.NONE:
        fallback = FallbackUsed.ANNOTATED_STARS
    return replace(
        transform,
        fallback_used=fallback,
        override_usage=override_usage,
        detection_counts=counts,
    )


def _validate_request(mode: str, options: AlignmentOptions) -> None:
    if mode not in ALIGNMENT_MODES:
        raise ValueError(f"Unknown alignment mode: {mode!r} (expected one of {ALIGNMENT_MODES})")
    options.validate()


def _finish(
    target_pixels: np.ndarray,
    width: int,
    height: int,
    transform: AlignmentTransform,
) -> AlignmentResult:
    if not transform.success:
        logger.warning("Alignment failed, target left unaligned")
        return AlignmentResult(aligned=target_pixels, transform=transform)
    logger.info(
        "Aligned frame: %d matches, rms=%.3f px, fallback=%s",
        transform.matched_stars, transform.rms_error, transform.fallback_used.value,
    )
    return AlignmentResult(
        aligned=apply_transform(target_pixels, width, height, transform),
        transform=transform,
    )


def align_frame(
    ref_pixels: np.ndarray,
    target_pixels: np.ndarray,
    width: int,
    height: int,
    mode: AlignmentMode = "full",
    options: AlignmentOptions | None = None,
) -> AlignmentResult:
    """
    Align a target frame onto a reference frame.

    Parameters
    ----------
    ref_pixels, target_pixels : np.ndarray
        Flat row-major buffers (or 2D arrays) of identical geometry.
    width, height : int
        Image geometry.
    mode : {"none", "translation", "full"}, default "full"
        ``none`` returns the target untouched with the identity transform.
    options : AlignmentOptions, optional
        Estimator settings, star overrides, manual control points and
        detector.

    Returns
    -------
    AlignmentResult
        Aligned buffer and transform. On failure the target is returned
        unchanged with the identity transform and an infinite RMS.

    Raises
    ------
    ValueError
        On an unknown mode, invalid options or buffer size mismatch.
    TypeError
        If the configured detector is a coroutine function.
    """
    options = options or AlignmentOptions()
    _validate_request(mode, options)
    as_image(ref_pixels, width, height)
    as_image(target_pixels, width, height)

    if mode == "none":
        return AlignmentResult(aligned=target_pixels, transform=AlignmentTransform(rms_error=0.0))

    if options.manual_control_points is not None:
        manual = _manual_transform(options.manual_control_points)
        if manual is not None:
            return _finish(target_pixels, width, height, manual)

    detect_opts = _detection_options(options)
    detector = options.detector or detect_stars

    def gather(override, pixels):
        if override:
            return list(override)
        stars = detector(pixels, width, height, detect_opts)
        if inspect.isawaitable(stars):
            if inspect.iscoroutine(stars):
                stars.close()
            raise TypeError("Asynchronous detector requires align_frame_async()")
        return list(stars)

    ref_stars = gather(options.ref_stars_override, ref_pixels)
    target_stars = gather(options.target_stars_override, target_pixels)
    usage = OverrideUsage.from_flags(
        bool(options.ref_stars_override), bool(options.target_stars_override)
    )

    transform = _estimate(ref_stars, target_stars, mode, options, usage)
    return _finish(target_pixels, width, height, transform)


async def align_frame_async(
    ref_pixels: np.ndarray,
    target_pixels: np.ndarray,
    width: int,
    height: int,
    mode: AlignmentMode = "full",
    options: AlignmentOptions | None = None,
    signal: AbortSignal | None = None,
) -> AlignmentResult:
    """
    Cooperative variant of :func:`align_frame`.

    The detector may be synchronous or return an awaitable. Control is
    yielded to the event loop around each detection and before resampling;
    ``signal`` is checked at the same points.

    Raises
    ------
    OperationCancelled
        If ``signal`` is aborted.
    """
    options = options or AlignmentOptions()
    _validate_request(mode, options)
    as_image(ref_pixels, width, height)
    as_image(target_pixels, width, height)

    if mode == "none":
        return AlignmentResult(aligned=target_pixels, transform=AlignmentTransform(rms_error=0.0))

    if options.manual_control_points is not None:
        manual = _manual_transform(options.manual_control_points)
        if manual is not None:
            check_abort(signal, "transform")
            return _finish(target_pixels, width, height, manual)

    detect_opts = _detection_options(options)

    async def gather(override, pixels, side):
        if override:
            return list(override)
        check_abort(signal, f"detect-{side}")
        if options.detector is None:
            stars = await detect_stars_async(pixels, width, height, detect_opts, signal=signal)
        else:
            stars = options.detector(pixels, width, height, detect_opts)
            if inspect.isawaitable(stars):
                stars = await stars
        await yield_control()
        return list(stars)

    ref_stars = await gather(options.ref_stars_override, ref_pixels, "ref")
    target_stars = await gather(options.target_stars_override, target_pixels, "target")
    usage = OverrideUsage.from_flags(
        bool(options.ref_stars_override), bool(options.target_stars_override)
    )

    transform = _estimate(ref_stars, target_stars, mode, options, usage)
    check_abort(signal, "transform")
    return _finish(target_pixels, width, height, transform)
