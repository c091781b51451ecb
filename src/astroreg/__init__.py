"""
astroreg - Registration & quality engine for astronomical frames.

Star detection, frame alignment (translation / full affine / manual control
points), frame quality scoring, persisted star annotations and multi-layer
composite registration for single-channel astronomical images.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com

Example
-------
>>> from astroreg import align_frame, AlignmentOptions
>>> result = align_frame(ref, target, width, height, "full",
...                      AlignmentOptions(fallback_to_translation=True))
>>> result.transform.translation

Example (frame selection)
-------------------------
>>> from astroreg import evaluate_frames_batch, select_frames
>>> metrics = evaluate_frames_batch(frames)
>>> kept, rejected = select_frames(metrics, keep_fraction=0.92)
"""

from .config import (
    AlignmentOptions,
    DetectionOptions,
    FallbackUsed,
    ManualControlPoints,
    MergePolicy,
    OverrideUsage,
    PROFILE_PRESETS,
    QualityOptions,
    SanitizeOptions,
    ScoringThresholds,
    ScoringWeights,
    StaleReason,
    ToDetectedStarsOptions,
    UsabilityOptions,
    resolve_detection_options,
)
from .utils import __version__, __version_info__, get_version_banner

# Cooperative runtime
from .runtime import AbortSignal, OperationCancelled

# Detection
from .detection import (
    BackgroundModel,
    DetectedStar,
    detect_stars,
    detect_stars_async,
    estimate_background,
)

# Alignment
from .align import (
    AlignmentResult,
    AlignmentTransform,
    align_frame,
    align_frame_async,
    apply_transform,
    compute_full_alignment,
    compute_translation,
    load_transforms,
    save_transforms,
)

# Quality assessment
from .quality import (
    FrameBuffer,
    FrameQualityMetrics,
    evaluate_frame_quality,
    evaluate_frame_quality_async,
    evaluate_frames_batch,
    evaluate_frames_batch_async,
    quality_to_weights,
    rank_frames,
    select_frames,
)

# Star annotations
from .schema import (
    ImageGeometry,
    StarAnnotationBundle,
    StarAnnotationPoint,
    StarMetrics,
    bundle_from_dict,
    bundle_to_dict,
    load_bundle,
    save_bundle,
)
from .linkage import (
    AnchorPair,
    AnchorPoint,
    AnnotationUsability,
    build_anchor_pairs,
    build_manual_transform,
    create_manual_point,
    ensure_unique_anchors,
    evaluate_star_annotation_usability,
    make_pixel_sampler,
    merge_detected_with_manual,
    pick_anchor_points,
    resolve_registration_mode,
    sanitize_star_annotations,
    solve_linear_3x3,
    to_detected_stars,
)
from .geometry import ImageEdit, apply_edit_to_bundle, transform_star_annotation_points

# Composite registration
from .composite import CompositeRequest, CompositeResult, CropBox, register_composite_layers

__all__ = [
    # Version
    "__version__",
    "__version_info__",
    "get_version_banner",
    # Config
    "AlignmentOptions",
    "DetectionOptions",
    "FallbackUsed",
    "ManualControlPoints",
    "MergePolicy",
    "OverrideUsage",
    "PROFILE_PRESETS",
    "QualityOptions",
    "SanitizeOptions",
    "ScoringThresholds",
    "ScoringWeights",
    "StaleReason",
    "ToDetectedStarsOptions",
    "UsabilityOptions",
    "resolve_detection_options",
    # Runtime
    "AbortSignal",
    "OperationCancelled",
    # Detection
    "BackgroundModel",
    "DetectedStar",
    "detect_stars",
    "detect_stars_async",
    "estimate_background",
    # Alignment
    "AlignmentResult",
    "AlignmentTransform",
    "align_frame",
    "align_frame_async",
    "apply_transform",
    "compute_full_alignment",
    "compute_translation",
    "load_transforms",
    "save_transforms",
    # Quality
    "FrameBuffer",
    "FrameQualityMetrics",
    "evaluate_frame_quality",
    "evaluate_frame_quality_async",
    "evaluate_frames_batch",
    "evaluate_frames_batch_async",
    "quality_to_weights",
    "rank_frames",
    "select_frames",
    # Annotations
    "ImageGeometry",
    "StarAnnotationBundle",
    "StarAnnotationPoint",
    "StarMetrics",
    "bundle_from_dict",
    "bundle_to_dict",
    "load_bundle",
    "save_bundle",
    "AnchorPair",
    "AnchorPoint",
    "AnnotationUsability",
    "build_anchor_pairs",
    "build_manual_transform",
    "create_manual_point",
    "ensure_unique_anchors",
    "evaluate_star_annotation_usability",
    "make_pixel_sampler",
    "merge_detected_with_manual",
    "pick_anchor_points",
    "resolve_registration_mode",
    "sanitize_star_annotations",
    "solve_linear_3x3",
    "to_detected_stars",
    "ImageEdit",
    "apply_edit_to_bundle",
    "transform_star_annotation_points",
    # Composite
    "CompositeRequest",
    "CompositeResult",
    "CropBox",
    "register_composite_layers",
]
