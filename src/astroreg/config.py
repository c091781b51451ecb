"""
Configuration dataclasses for the astroreg registration engine.

Every tunable of the detector, the alignment engine, the quality evaluator
and the annotation linkage layer lives here with its default value. Option
records expose a ``validate()`` method that raises ``ValueError`` on values
the engine cannot honour.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Union

DetectionProfile = Literal["legacy", "fast", "balanced", "accurate"]
AlignmentMode = Literal["none", "translation", "full"]
ManualMode = Literal["one_star", "two_star", "three_star"]
FramingMode = Literal["none", "first", "min", "cog"]

ALIGNMENT_MODES = ("none", "translation", "full")
MANUAL_MODES = ("one_star", "two_star", "three_star")
FRAMING_MODES = ("none", "first", "min", "cog")
DETECTION_PROFILES = ("legacy", "fast", "balanced", "accurate")


class FallbackUsed(Enum):
    """Which path produced an alignment transform."""

    NONE = "none"  # Primary algorithm of the requested mode
    TRANSLATION = "translation"  # Full alignment failed, translation used
    MANUAL_1STAR = "manual-1star"
    MANUAL_2STAR = "manual-2star"
    MANUAL_3STAR = "manual-3star"
    ANNOTATED_STARS = "annotated-stars"  # Stars came from annotations

    @classmethod
    def for_manual_mode(cls, mode: str) -> "FallbackUsed":
        return {
            "one_star": cls.MANUAL_1STAR,
            "two_star": cls.MANUAL_2STAR,
            "three_star": cls.MANUAL_3STAR,
        }[mode]


class OverrideUsage(Enum):
    """Which side of an alignment used caller-supplied stars."""

    NONE = "none"
    REF = "ref"
    TARGET = "target"
    BOTH = "both"

    @classmethod
    def from_flags(cls, ref: bool, target: bool) -> "OverrideUsage":
        if ref and target:
            return cls.BOTH
        if ref:
            return cls.REF
        if target:
            return cls.TARGET
        return cls.NONE


class StaleReason(Enum):
    """Reason an annotation bundle no longer matches its image."""

    UNSUPPORTED_TRANSFORM = "unsupported-transform"


# =============================================================================
# Star detection
# =============================================================================


@dataclass
class DetectionOptions:
    """
    Star detector settings.

    The same record is persisted as the ``detection_snapshot`` of an
    annotation bundle, so field names map one to one onto the camelCase keys
    of the JSON schema (see :func:`astroreg.schema.snapshot_to_dict`).
    """

    profile: DetectionProfile = "balanced"
    sigma_threshold: float = 5.0
    """Detection threshold in units of the background noise sigma."""

    max_stars: int = 220
    min_area: int = 3
    max_area: int = 600
    border_margin: int = 10
    """Stars whose centroid lies closer than this to an edge are dropped."""

    mesh_size: int = 64
    """Background mesh cell size in pixels."""

    sigma_clip_iters: int = 2
    apply_matched_filter: bool = True
    filter_fwhm: float = 2.2
    deblend_n_levels: int = 16
    deblend_min_contrast: float = 0.08
    connectivity: Literal[4, 8] = 8
    min_fwhm: float = 0.6
    max_fwhm: float = 11.0
    max_ellipticity: float = 0.65
    min_sharpness: float = 0.25
    max_sharpness: float = 18.0
    peak_max: float | None = None
    """Reject stars brighter than this peak (saturation guard)."""

    snr_min: float = 2.0

    def validate(self) -> None:
        """Validate detection parameters."""
        if self.profile not in DETECTION_PROFILES:
            raise ValueError(f"Unknown detection profile: {self.profile!r}")
        if self.sigma_threshold <= 0:
            raise ValueError(f"sigma_threshold must be > 0, got {self.sigma_threshold}")
        if self.max_stars < 1:
            raise ValueError(f"max_stars must be >= 1, got {self.max_stars}")
        if self.min_area < 1 or self.max_area < self.min_area:
            raise ValueError(
                f"Invalid area bounds: min_area={self.min_area}, max_area={self.max_area}"
            )
        if self.mesh_size < 1:
            raise ValueError(f"mesh_size must be >= 1, got {self.mesh_size}")
        if self.sigma_clip_iters < 0:
            raise ValueError(f"sigma_clip_iters must be >= 0, got {self.sigma_clip_iters}")
        if self.connectivity not in (4, 8):
            raise ValueError(f"connectivity must be 4 or 8, got {self.connectivity}")
        if self.border_margin < 0:
            raise ValueError(f"border_margin must be >= 0, got {self.border_margin}")


PROFILE_PRESETS: dict[str, DetectionOptions] = {
    "legacy": DetectionOptions(
        profile="legacy",
        sigma_threshold=5.0,
        max_stars=200,
        min_area=3,
        max_area=500,
        border_margin=10,
        mesh_size=64,
        sigma_clip_iters=0,
        apply_matched_filter=False,
        filter_fwhm=2.2,
        deblend_n_levels=1,
        deblend_min_contrast=0.2,
        connectivity=4,
        min_fwhm=0.3,
        max_fwhm=20.0,
        max_ellipticity=1.0,
        min_sharpness=0.0,
        max_sharpness=1e9,
        snr_min=0.0,
    ),
    "fast": DetectionOptions(
        profile="fast",
        sigma_threshold=6.0,
        max_stars=160,
        min_area=4,
        max_area=550,
        border_margin=12,
        mesh_size=96,
        sigma_clip_iters=1,
        apply_matched_filter=False,
        filter_fwhm=2.4,
        deblend_n_levels=8,
        deblend_min_contrast=0.12,
        connectivity=8,
        min_fwhm=0.7,
        max_fwhm=12.0,
        max_ellipticity=0.7,
        min_sharpness=0.3,
        max_sharpness=12.0,
        snr_min=2.5,
    ),
    "balanced": DetectionOptions(),
    "accurate": DetectionOptions(
        profile="accurate",
        sigma_threshold=4.5,
        max_stars=320,
        min_area=3,
        max_area=800,
        border_margin=8,
        mesh_size=48,
        sigma_clip_iters=3,
        apply_matched_filter=True,
        filter_fwhm=2.0,
        deblend_n_levels=32,
        deblend_min_contrast=0.05,
        connectivity=8,
        min_fwhm=0.5,
        max_fwhm=10.0,
        max_ellipticity=0.55,
        min_sharpness=0.2,
        max_sharpness=24.0,
        snr_min=1.8,
    ),
}


def resolve_detection_options(
    profile: str | None = None,
    fallback_profile: str = "balanced",
    **overrides: Any,
) -> DetectionOptions:
    """
    Build detection options from a profile preset plus explicit overrides.

    Parameters
    ----------
    profile : str, optional
        Preset name. Unknown or missing names use ``fallback_profile``.
    fallback_profile : str, default "balanced"
        Preset used when ``profile`` is not given.
    **overrides
        Field values replacing the preset's. ``None`` values are ignored,
        except for ``peak_max`` where ``None`` means "no limit".

    Returns
    -------
    DetectionOptions
        Fully populated options.
    """
    name = profile if profile in PROFILE_PRESETS else fallback_profile
    known = {f.name for f in fields(DetectionOptions)}
    changes = {
        k: v for k, v in overrides.items()
        if k in known and k != "profile" and (v is not None or k == "peak_max")
    }
    return replace(PROFILE_PRESETS[name], profile=name, **changes)


# =============================================================================
# Alignment
# =============================================================================


@dataclass
class ManualControlPoints:
    """User-placed control points, paired by position in the two lists."""

    ref: list[tuple[float, float]]
    target: list[tuple[float, float]]
    mode: ManualMode = "three_star"

    def validate(self) -> None:
        if self.mode not in MANUAL_MODES:
            raise ValueError(f"Unknown manual mode: {self.mode!r}")


DetectorFn = Callable[..., Union[list, Awaitable[list]]]


@dataclass
class AlignmentOptions:
    """Settings for :func:`astroreg.align.align_frame`."""

    search_radius: float = 20.0
    """Matching radius in pixels for translation-only alignment."""

    tolerance: float = 0.01
    """Triangle invariant tolerance (L1 distance of side ratios)."""

    max_ransac_iterations: int = 100
    """Maximum number of triangle hypotheses evaluated."""

    inlier_threshold: float = 3.0
    """Residual in pixels below which a correspondence counts as inlier."""

    max_triangles: int = 500
    fallback_to_translation: bool | None = None
    """Retry with translation when full alignment fails; ``None`` lets the caller decide
    (off for single frames, on for composites)."""

    ref_stars_override: list | None = None
    target_stars_override: list | None = None
    manual_control_points: ManualControlPoints | None = None
    detection_options: DetectionOptions | None = None
    """Detector settings; ``None`` uses the legacy profile."""

    detector: DetectorFn | None = None
    """Replacement detector ``(pixels, width, height, options) -> stars``."""

    def validate(self) -> None:
        """Validate alignment parameters."""
        if self.search_radius <= 0:
            raise ValueError(f"search_radius must be > 0, got {self.search_radius}")
        if self.tolerance <= 0:
            raise ValueError(f"tolerance must be > 0, got {self.tolerance}")
        if self.max_ransac_iterations < 0:
            raise ValueError(
                f"max_ransac_iterations must be >= 0, got {self.max_ransac_iterations}"
            )
        if self.inlier_threshold <= 0:
            raise ValueError(f"inlier_threshold must be > 0, got {self.inlier_threshold}")
        if self.manual_control_points is not None:
            self.manual_control_points.validate()
        if self.detection_options is not None:
            self.detection_options.validate()


# =============================================================================
# Frame quality
# =============================================================================


@dataclass
class ScoringWeights:
    """Relative weights of the four sub-scores of the quality score."""

    fwhm: float = 0.4
    snr: float = 0.3
    star_count: float = 0.15
    roundness: float = 0.15

    def normalized(self) -> "ScoringWeights":
        """Return weights rescaled to sum to 1 (defaults if the sum is not positive)."""
        total = self.fwhm + self.snr + self.star_count + self.roundness
        if not math.isfinite(total) or total <= 0:
            return ScoringWeights()
        return ScoringWeights(
            fwhm=self.fwhm / total,
            snr=self.snr / total,
            star_count=self.star_count / total,
            roundness=self.roundness / total,
        )


@dataclass
class ScoringThresholds:
    fwhm_best: float = 1.5
    fwhm_worst: float = 7.5
    star_count_scale: float = 2.0

    def validate(self) -> None:
        if self.fwhm_worst <= self.fwhm_best:
            raise ValueError(
                f"fwhm_worst ({self.fwhm_worst}) must exceed fwhm_best ({self.fwhm_best})"
            )
        if self.star_count_scale < 0:
            raise ValueError(f"star_count_scale must be >= 0, got {self.star_count_scale}")


def default_quality_detection() -> DetectionOptions:
    return resolve_detection_options("legacy", sigma_threshold=5.0, min_area=3, max_stars=200)


@dataclass
class QualityOptions:
    """Settings for :func:`astroreg.quality.evaluate_frame_quality`."""

    detection_options: DetectionOptions = field(default_factory=default_quality_detection)
    stars_override: list | None = None
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    thresholds: ScoringThresholds = field(default_factory=ScoringThresholds)
    detector: DetectorFn | None = None

    def validate(self) -> None:
        self.detection_options.validate()
        self.thresholds.validate()


# =============================================================================
# Star annotation linkage
# =============================================================================


@dataclass
class MergePolicy:
    """Reconciliation policy for :func:`astroreg.linkage.merge_detected_with_manual`."""

    max_detected_points: int = 50
    match_radius_px: float = 4.0
    preserve_detected_disabled: bool = True

    def resolved(self) -> "MergePolicy":
        """Return a copy with out-of-range values clamped."""
        return MergePolicy(
            max_detected_points=int(min(2000, max(1, self.max_detected_points))),
            match_radius_px=max(0.5, float(self.match_radius_px)),
            preserve_detected_disabled=self.preserve_detected_disabled,
        )


@dataclass
class ToDetectedStarsOptions:
    max_count: int = 50
    default_fwhm: float = 2.5
    default_area: float = 3.0

    def resolved(self) -> "ToDetectedStarsOptions":
        return ToDetectedStarsOptions(
            max_count=int(min(2000, max(1, self.max_count))),
            default_fwhm=self.default_fwhm,
            default_area=self.default_area,
        )


@dataclass
class SanitizeOptions:
    """Options for :func:`astroreg.linkage.sanitize_star_annotations`."""

    image_width: int | None = None
    image_height: int | None = None
    dedupe_radius: float = 0.5
    max_points: int = 3000

    def resolved(self) -> "SanitizeOptions":
        return SanitizeOptions(
            image_width=self.image_width,
            image_height=self.image_height,
            dedupe_radius=max(0.0, float(self.dedupe_radius)),
            max_points=int(min(10000, max(1, self.max_points))),
        )


@dataclass
class UsabilityOptions:
    image_width: int | None = None
    image_height: int | None = None
    min_enabled_points: int = 3
