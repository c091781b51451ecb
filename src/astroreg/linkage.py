"""
Star annotation linkage.

Keeps user-curated star annotations stable across repeated automatic
re-detection, and turns annotations into inputs of the alignment engine:

- :func:`merge_detected_with_manual` reconciles a fresh detection with the
  previous points (manual points untouched, disabled/anchor state carried
  over by proximity);
- :func:`pick_anchor_points`, :func:`build_anchor_pairs`,
  :func:`resolve_registration_mode` and :func:`build_manual_transform` solve
  1-, 2- or 3-star manual registrations;
- :func:`to_detected_stars` converts annotations into detector output;
- :func:`sanitize_star_annotations` repairs any persisted bundle and
  :func:`evaluate_star_annotation_usability` decides whether it can drive
  registration.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import math
import secrets
import string
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Literal, Mapping, Sequence

import numpy as np

from .config import (
    ManualMode,
    MergePolicy,
    SanitizeOptions,
    ToDetectedStarsOptions,
    UsabilityOptions,
)
from .detection import DetectedStar
from .schema import (
    ImageGeometry,
    StarAnnotationBundle,
    StarAnnotationPoint,
    StarMetrics,
    bundle_from_dict,
    snapshot_from_dict,
    snapshot_to_dict,
)
from .utils import now_ms

logger = logging.getLogger(__name__)

EPS = 1e-8
ANCHOR_REMATCH_FACTOR = 1.5
_ID_ALPHABET = string.ascii_lowercase + string.digits

Matrix = tuple[float, float, float, float, float, float]
PixelSampler = Callable[[float, float], "float | None"]
UsabilityReason = Literal["missing", "stale", "dimension-mismatch", "insufficient-points"]


@dataclass(frozen=True)
class AnchorPoint:
    id: str
    x: float
    y: float
    anchor_index: int


@dataclass(frozen=True)
class AnchorPair:
    anchor_index: int
    ref: AnchorPoint
    target: AnchorPoint


@dataclass
class AnnotationUsability:
    usable: bool
    reason: UsabilityReason | None
    enabled_points: int


# =============================================================================
# Point helpers
# =============================================================================


def create_point_id(prefix: str, x: float, y: float) -> str:
    """Return ``{prefix}_{round(100x)}_{round(100y)}_{6 random chars}``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"{prefix}_{math.floor(x * 100 + 0.5)}_{math.floor(y * 100 + 0.5)}_{suffix}"


def create_manual_point(x: float, y: float, anchor_index: int | None = None) -> StarAnnotationPoint:
    """Create an enabled manual point, optionally holding an anchor slot."""
    return StarAnnotationPoint(
        id=create_point_id("m", x, y),
        x=float(x),
        y=float(y),
        enabled=True,
        source="manual",
        anchor_index=anchor_index,
    )


def _is_finite_point(point) -> bool:
    return math.isfinite(point.x) and math.isfinite(point.y)


def _find_nearest_index(
    point,
    candidates: Sequence,
    used: set[int],
    max_radius: float,
) -> int:
    """
    Index of the nearest unused candidate within ``max_radius`` (-1 if none).

    Ties keep the lowest index.
    """
    max_d2 = max_radius * max_radius
    best_index = -1
    best_d2 = math.inf
    for i, candidate in enumerate(candidates):
        if i in used:
            continue
        d2 = (point.x - candidate.x) ** 2 + (point.y - candidate.y) ** 2
        if d2 <= max_d2 and d2 < best_d2:
            best_d2 = d2
            best_index = i
    return best_index


def ensure_unique_anchors(points: Iterable[StarAnnotationPoint]) -> list[StarAnnotationPoint]:
    """Clear the anchor of every point after the first claimant of each slot."""
    owners: dict[int, str] = {}
    result = []
    for point in points:
        index = point.anchor_index
        if index is not None:
            owner = owners.get(index)
            if owner is None:
                owners[index] = point.id
            elif owner != point.id:
                point = replace(point, anchor_index=None)
        result.append(point)
    return result


def _metrics_from_star(star: DetectedStar) -> StarMetrics:
    return StarMetrics(
        flux=star.flux,
        peak=star.peak,
        area=star.area,
        fwhm=star.fwhm,
        snr=star.snr,
        roundness=star.roundness,
        ellipticity=star.ellipticity,
        sharpness=star.sharpness,
        theta=star.theta,
        flags=star.flags,
    )


# =============================================================================
# Reconciliation
# =============================================================================


def merge_detected_with_manual(
    prev_points: Sequence[StarAnnotationPoint],
    detected_stars: Sequence[DetectedStar],
    policy: MergePolicy | None = None,
) -> list[StarAnnotationPoint]:
    """
    Reconcile a fresh detection with previously curated points.

    Parameters
    ----------
    prev_points : sequence of StarAnnotationPoint
        Points before re-detection. Manual points are kept verbatim.
    detected_stars : sequence of DetectedStar
        Fresh detector output.
    policy : MergePolicy, optional
        Cap on detected points, match radius and whether disabled state is
        carried over.

    Returns
    -------
    list[StarAnnotationPoint]
        Manual points followed by the regenerated detected points.

    Notes
    -----
    Fresh stars are sorted by flux (brightest first) and capped. Each
    previously disabled detected point then claims the nearest unclaimed
    fresh point within ``match_radius_px``; the claimed point is disabled.
    Each previously anchored detected point whose slot no manual point holds
    re-matches the nearest unclaimed fresh point within 1.5 times the radius
    and transfers its anchor. Anchor slots stay unique, manual first.
    """
    policy = (policy or MergePolicy()).resolved()

    manual = [p for p in prev_points if p.source == "manual"]
    prev_detected = [p for p in prev_points if p.source == "detected"]
    prev_disabled = (
        [p for p in prev_detected if not p.enabled]
        if policy.preserve_detected_disabled
        else []
    )
    prev_anchored = [p for p in prev_detected if p.anchor_index is not None]

    candidates = sorted(detected_stars, key=lambda s: s.flux, reverse=True)
    candidates = candidates[: policy.max_detected_points]
    fresh = [
        StarAnnotationPoint(
            id=create_point_id("d", star.cx, star.cy),
            x=float(star.cx),
            y=float(star.cy),
            enabled=True,
            source="detected",
            metrics=_metrics_from_star(star),
        )
        for star in candidates
    ]

    claimed_disabled: set[int] = set()
    for old in prev_disabled:
        idx = _find_nearest_index(old, fresh, claimed_disabled, policy.match_radius_px)
        if idx >= 0:
            fresh[idx] = replace(fresh[idx], enabled=False)
            claimed_disabled.add(idx)

    taken_slots = {p.anchor_index for p in manual if p.anchor_index is not None}
    claimed_anchor: set[int] = set()
    for old in prev_anchored:
        if old.anchor_index in taken_slots:
            continue
        idx = _find_nearest_index(
            old, fresh, claimed_anchor, policy.match_radius_px * ANCHOR_REMATCH_FACTOR
        )
        if idx >= 0:
            fresh[idx] = replace(fresh[idx], anchor_index=old.anchor_index)
            claimed_anchor.add(idx)
            taken_slots.add(old.anchor_index)

    logger.debug(
        "Merged %d manual + %d detected points (%d disabled carried, %d anchors carried)",
        len(manual), len(fresh), len(claimed_disabled), len(claimed_anchor),
    )
    return ensure_unique_anchors([*manual, *fresh])


# =============================================================================
# Manual registration
# =============================================================================


def pick_anchor_points(points: Iterable[StarAnnotationPoint]) -> list[AnchorPoint]:
    """Enabled, finite, anchored points sorted by anchor slot."""
    anchors = [
        AnchorPoint(id=p.id, x=p.x, y=p.y, anchor_index=p.anchor_index)
        for p in points
        if p.anchor_index is not None and p.enabled and _is_finite_point(p)
    ]
    anchors.sort(key=lambda a: a.anchor_index)
    return anchors


def build_anchor_pairs(
    ref_anchors: Sequence[AnchorPoint],
    target_anchors: Sequence[AnchorPoint],
) -> list[AnchorPair]:
    """Pair reference and target anchors sharing a slot, sorted by slot."""
    ref_by_slot = {a.anchor_index: a for a in ref_anchors}
    pairs = [
        AnchorPair(anchor_index=t.anchor_index, ref=ref_by_slot[t.anchor_index], target=t)
        for t in target_anchors
        if t.anchor_index in ref_by_slot
    ]
    pairs.sort(key=lambda p: p.anchor_index)
    return pairs


def resolve_registration_mode(
    ref_anchors: Sequence[AnchorPoint],
    target_anchors: Sequence[AnchorPoint],
) -> ManualMode | None:
    n_pairs = len(build_anchor_pairs(ref_anchors, target_anchors))
    if n_pairs >= 3:
        return "three_star"
    if n_pairs == 2:
        return "two_star"
    if n_pairs == 1:
        return "one_star"
    return None


def solve_linear_3x3(a: Sequence[Sequence[float]], b: Sequence[float]) -> list[float] | None:
    """
    Solve a 3x3 linear system by Gauss-Jordan elimination with partial pivoting.

    Returns None when a pivot magnitude falls below 1e-8.
    """
    m = [[float(a[r][0]), float(a[r][1]), float(a[r][2]), float(b[r])] for r in range(3)]
    for col in range(3):
        pivot = col
        for row in range(col + 1, 3):
            if abs(m[row][col]) > abs(m[pivot][col]):
                pivot = row
        if abs(m[pivot][col]) < EPS:
            return None
        if pivot != col:
            m[pivot], m[col] = m[col], m[pivot]
        div = m[col][col]
        for k in range(col, 4):
            m[col][k] /= div
        for row in range(3):
            if row == col:
                continue
            factor = m[row][col]
            for k in range(col, 4):
                m[row][k] -= factor * m[col][k]
    return [m[0][3], m[1][3], m[2][3]]


def _solve_affine_from_pairs(pairs: Sequence[AnchorPair]) -> Matrix | None:
    if len(pairs) < 3:
        return None
    basis = [[p.ref.x, p.ref.y, 1.0] for p in pairs[:3]]
    coeff_x = solve_linear_3x3(basis, [p.target.x for p in pairs[:3]])
    coeff_y = solve_linear_3x3(basis, [p.target.y for p in pairs[:3]])
    if coeff_x is None or coeff_y is None:
        return None
    a, b, tx = coeff_x
    c, d, ty = coeff_y
    return (a, b, tx, c, d, ty)


def build_manual_transform(
    ref_anchors: Sequence[AnchorPoint],
    target_anchors: Sequence[AnchorPoint],
    mode: ManualMode,
) -> Matrix | None:
    """
    Solve a reference -> target transform from anchor pairs.

    Parameters
    ----------
    ref_anchors, target_anchors : sequence of AnchorPoint
        Anchors of both images; pairs are formed by slot.
    mode : {"one_star", "two_star", "three_star"}
        ``one_star`` is a pure translation, ``two_star`` a similarity
        (rotation, uniform scale, translation) and ``three_star`` a full
        affine transform.

    Returns
    -------
    tuple or None
        Matrix ``(a, b, tx, c, d, ty)``, or None when there are too few pairs
        or the configuration is degenerate.
    """
    pairs = build_anchor_pairs(ref_anchors, target_anchors)

    if mode == "one_star":
        if not pairs:
            return None
        p = pairs[0]
        return (1.0, 0.0, p.target.x - p.ref.x, 0.0, 1.0, p.target.y - p.ref.y)

    if mode == "two_star":
        if len(pairs) < 2:
            return None
        p1, p2 = pairs[0], pairs[1]
        rvx, rvy = p2.ref.x - p1.ref.x, p2.ref.y - p1.ref.y
        tvx, tvy = p2.target.x - p1.target.x, p2.target.y - p1.target.y
        r_norm = math.hypot(rvx, rvy)
        t_norm = math.hypot(tvx, tvy)
        if r_norm < EPS or t_norm < EPS:
            return None
        scale = t_norm / r_norm
        theta = math.atan2(tvy, tvx) - math.atan2(rvy, rvx)
        a = scale * math.cos(theta)
        b = -scale * math.sin(theta)
        c = scale * math.sin(theta)
        d = scale * math.cos(theta)
        tx = p1.target.x - (a * p1.ref.x + b * p1.ref.y)
        ty = p1.target.y - (c * p1.ref.x + d * p1.ref.y)
        return (a, b, tx, c, d, ty)

    return _solve_affine_from_pairs(pairs)


# =============================================================================
# Annotations as detector output
# =============================================================================


def make_pixel_sampler(pixels: np.ndarray, width: int, height: int) -> PixelSampler:
    """
    Nearest-sample reader over a pixel buffer.

    The sampler returns None outside the image or on a non-finite sample.
    """
    image = np.asarray(pixels, dtype=np.float32).reshape(height, width)

    def sample(x: float, y: float) -> float | None:
        ix = math.floor(x + 0.5)
        iy = math.floor(y + 0.5)
        if ix < 0 or iy < 0 or ix >= width or iy >= height:
            return None
        value = float(image[iy, ix])
        return value if math.isfinite(value) else None

    return sample


def to_detected_stars(
    points: Iterable[StarAnnotationPoint],
    pixel_sampler: PixelSampler | None = None,
    options: ToDetectedStarsOptions | None = None,
) -> list[DetectedStar]:
    """
    Convert enabled annotation points into detector-style stars.

    Missing metrics are filled in: ``peak`` from ``pixel_sampler`` (0 when
    unavailable), ``area`` from ``default_area`` (at least 1), ``flux`` as
    ``max(peak * area, peak, 1)`` and ``fwhm`` from ``default_fwhm``.

    Returns
    -------
    list[DetectedStar]
        Brightest first, at most ``options.max_count``.
    """
    options = (options or ToDetectedStarsOptions()).resolved()
    stars = []
    for point in points:
        if not point.enabled or not _is_finite_point(point):
            continue
        metrics = point.metrics or StarMetrics()
        peak = metrics.peak
        if peak is None:
            sampled = pixel_sampler(point.x, point.y) if pixel_sampler is not None else None
            peak = sampled if sampled is not None else 0.0
        area = max(1.0, metrics.area if metrics.area is not None else options.default_area)
        flux = metrics.flux if metrics.flux is not None else max(peak * area, peak, 1.0)
        stars.append(DetectedStar(
            cx=point.x,
            cy=point.y,
            flux=flux,
            peak=peak,
            area=area,
            fwhm=metrics.fwhm if metrics.fwhm is not None else options.default_fwhm,
            snr=metrics.snr,
            roundness=metrics.roundness,
            ellipticity=metrics.ellipticity,
            sharpness=metrics.sharpness,
            theta=metrics.theta,
            flags=metrics.flags,
        ))

    stars.sort(key=lambda s: s.flux, reverse=True)
    return stars[: options.max_count]


# =============================================================================
# Sanitization and usability
# =============================================================================


def _as_bundle(raw: StarAnnotationBundle | Mapping | None) -> StarAnnotationBundle | None:
    if raw is None:
        return None
    if isinstance(raw, StarAnnotationBundle):
        return raw
    return bundle_from_dict(raw)


def _dedupe(points: list[StarAnnotationPoint], radius: float) -> list[StarAnnotationPoint]:
    """Drop points within ``radius`` of an earlier kept point of the same source."""
    r2 = radius * radius
    cell = radius if radius > 0 else 1.0
    grid: dict[tuple[str, int, int], list[StarAnnotationPoint]] = {}
    kept: list[StarAnnotationPoint] = []
    for point in points:
        gx, gy = math.floor(point.x / cell), math.floor(point.y / cell)
        duplicate = any(
            (point.x - other.x) ** 2 + (point.y - other.y) ** 2 <= r2
            for dx in (-1, 0, 1)
            for dy in (-1, 0, 1)
            for other in grid.get((point.source, gx + dx, gy + dy), ())
        )
        if duplicate:
            continue
        grid.setdefault((point.source, gx, gy), []).append(point)
        kept.append(point)
    return kept


def sanitize_star_annotations(
    raw: StarAnnotationBundle | Mapping | None,
    options: SanitizeOptions | None = None,
) -> StarAnnotationBundle:
    """
    Repair a bundle of any version into a consistent version 2 bundle.

    Parameters
    ----------
    raw : StarAnnotationBundle, Mapping or None
        In-memory bundle, decoded JSON payload (version 1 or 2), or nothing.
    options : SanitizeOptions, optional
        Current image size, dedupe radius and point cap.

    Returns
    -------
    StarAnnotationBundle
        Bundle whose points are finite, clamped into the image when its size
        is supplied or stored, deduplicated per source, capped, and
        anchor-unique. The detection snapshot is completed from the balanced
        defaults. Geometry comes from the options, else from the payload,
        else from the point extents; an inferred canvas contains every point
        and clamps none. Applying the function twice gives the same bundle.
    """
    options = (options or SanitizeOptions()).resolved()
    bundle = _as_bundle(raw)

    points = [
        p for p in (bundle.points if bundle is not None else [])
        if isinstance(p.id, str) and _is_finite_point(p)
    ]

    if options.image_width is not None and options.image_height is not None:
        geometry = ImageGeometry(int(options.image_width), int(options.image_height))
    elif bundle is not None and bundle.image_geometry is not None:
        geometry = bundle.image_geometry
    else:
        geometry = None
    clamp = geometry is not None
    if geometry is None and points:
        # inferred canvas holds every point, nothing is clamped against it
        geometry = ImageGeometry(
            max(1, math.ceil(max(p.x for p in points)) + 1),
            max(1, math.ceil(max(p.y for p in points)) + 1),
        )

    cleaned: list[StarAnnotationPoint] = []
    for point in points:
        x, y = point.x, point.y
        if clamp:
            x = min(max(x, 0.0), geometry.width - 1)
            y = min(max(y, 0.0), geometry.height - 1)
        point_id = point.id or create_point_id("m" if point.source == "manual" else "d", x, y)
        cleaned.append(replace(point, id=point_id, x=float(x), y=float(y)))

    points = _dedupe(cleaned, options.dedupe_radius)[: options.max_points]

    if bundle is not None:
        snapshot = snapshot_from_dict(snapshot_to_dict(bundle.detection_snapshot))
        updated_at = max(0, int(bundle.updated_at))
        stale, stale_reason = bool(bundle.stale), bundle.stale_reason
    else:
        snapshot = snapshot_from_dict(None)
        updated_at = now_ms()
        stale, stale_reason = False, None

    return StarAnnotationBundle(
        updated_at=updated_at,
        detection_snapshot=snapshot,
        points=ensure_unique_anchors(points),
        stale=stale,
        stale_reason=stale_reason,
        image_geometry=geometry,
    )


def evaluate_star_annotation_usability(
    raw: StarAnnotationBundle | Mapping | None,
    options: UsabilityOptions | None = None,
) -> AnnotationUsability:
    """
    Decide whether annotations can drive registration for the current image.

    Reasons, checked in order: ``missing`` (no bundle), ``stale`` (persisted
    flag set), ``dimension-mismatch`` (stored geometry differs from the
    current size), ``insufficient-points`` (fewer enabled points than
    ``min_enabled_points``). The bundle is not modified.
    """
    options = options or UsabilityOptions()
    bundle = _as_bundle(raw)
    if bundle is None:
        return AnnotationUsability(usable=False, reason="missing", enabled_points=0)

    enabled = sum(1 for p in bundle.points if p.enabled and _is_finite_point(p))
    if bundle.stale:
        return AnnotationUsability(usable=False, reason="stale", enabled_points=enabled)

    geometry = bundle.image_geometry
    if (
        geometry is not None
        and options.image_width is not None
        and options.image_height is not None
        and (geometry.width != options.image_width or geometry.height != options.image_height)
    ):
        return AnnotationUsability(usable=False, reason="dimension-mismatch", enabled_points=enabled)

    if enabled < max(1, options.min_enabled_points):
        return AnnotationUsability(usable=False, reason="insufficient-points", enabled_points=enabled)

    return AnnotationUsability(usable=True, reason=None, enabled_points=enabled)
