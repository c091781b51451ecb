"""
Multi-layer composite registration.

Aligns N single-channel layers onto layer 0 and frames them on a common
canvas, ready for composite stacking (e.g. L/R/G/B or narrowband channels).

Framing policies:
- ``none`` / ``first``: keep the full canvas
- ``min``: bounding box of pixels valid (finite, > 0) in every layer
- ``cog``: window sized like the ``min`` box, centred on the flux-weighted
  centroid of pixels valid in at least 60% of the layers

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Callable, Sequence

import numpy as np

from .align import AlignmentTransform, align_frame_async
from .config import (
    ALIGNMENT_MODES,
    FRAMING_MODES,
    AlignmentMode,
    AlignmentOptions,
    FramingMode,
    ManualControlPoints,
)
from .runtime import AbortSignal, check_abort, yield_control
from .utils import as_image

logger = logging.getLogger(__name__)

COG_COVERAGE = 0.6  # Fraction of layers a pixel must be valid in
MIN_COG_SIZE = 16


@dataclass(frozen=True)
class CropBox:
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def full(cls, width: int, height: int) -> "CropBox":
        return cls(0, 0, width, height)


@dataclass
class CompositeRequest:
    """Layers to register (layer 0 is the reference) and how to frame them."""

    layers: Sequence[np.ndarray]
    width: int
    height: int
    mode: AlignmentMode = "full"
    framing: FramingMode = "none"
    manual_control_points: ManualControlPoints | None = None
    alignment_options: AlignmentOptions | None = None
    """Forwarded to every alignment. The translation fallback stays on unless
    ``fallback_to_translation`` is explicitly ``False``."""


@dataclass
class CompositeResult:
    layers: list[np.ndarray]
    width: int
    height: int
    transforms: list[AlignmentTransform] = field(default_factory=list)
    crop: CropBox | None = None


def _identity() -> AlignmentTransform:
    return AlignmentTransform(rms_error=0.0)


def _valid_mask(stack: np.ndarray) -> np.ndarray:
    return np.isfinite(stack) & (stack > 0)


def common_mask_crop(layers: Sequence[np.ndarray], width: int, height: int) -> CropBox:
    """
    Bounding box of pixels finite and > 0 in every layer.

    Returns the full canvas when no pixel qualifies.
    """
    stack = np.stack([as_image(layer, width, height) for layer in layers])
    valid = _valid_mask(stack).all(axis=0)
    rows = np.any(valid, axis=1)
    cols = np.any(valid, axis=0)
    if not rows.any():
        return CropBox.full(width, height)

    y0 = int(np.argmax(rows))
    y1 = height - int(np.argmax(rows[::-1]))
    x0 = int(np.argmax(cols))
    x1 = width - int(np.argmax(cols[::-1]))
    return CropBox(x0, y0, x1 - x0, y1 - y0)


def cog_crop(layers: Sequence[np.ndarray], width: int, height: int) -> CropBox:
    """
    Window sized like :func:`common_mask_crop`, centred on the flux centroid.

    The centroid weights each pixel valid in at least 60% of the layers by
    its summed valid flux. The window is at least 16x16, at most the canvas,
    and is shifted to stay inside it. Falls back to :func:`common_mask_crop`
    when no pixel qualifies.
    """
    stack = np.stack([as_image(layer, width, height) for layer in layers])
    valid = _valid_mask(stack)
    threshold = max(1, math.ceil(len(layers) * COG_COVERAGE))
    covered = valid.sum(axis=0) >= threshold

    flux = np.where(valid, stack, 0.0).sum(axis=0, dtype=np.float64)
    flux = np.where(covered, flux, 0.0)
    total = float(flux.sum())
    min_crop = common_mask_crop(layers, width, height)
    if total <= 0 or not np.isfinite(total):
        return min_crop

    yy, xx = np.indices((height, width))
    center_x = math.floor(float((xx * flux).sum()) / total + 0.5)
    center_y = math.floor(float((yy * flux).sum()) / total + 0.5)

    target_w = min(max(MIN_COG_SIZE, min_crop.width), width)
    target_h = min(max(MIN_COG_SIZE, min_crop.height), height)
    x = min(max(0, center_x - target_w // 2), width - target_w)
    y = min(max(0, center_y - target_h // 2), height - target_h)
    return CropBox(x, y, target_w, target_h)


def crop_layer(layer: np.ndarray, width: int, height: int, crop: CropBox) -> np.ndarray:
    """Flat copy of the crop window, or the layer itself for a full-canvas crop."""
    if crop == CropBox.full(width, height):
        return layer
    image = as_image(layer, width, height)
    return image[crop.y:crop.y + crop.height, crop.x:crop.x + crop.width].copy().ravel()


def apply_framing(
    layers: Sequence[np.ndarray],
    width: int,
    height: int,
    framing: FramingMode,
) -> tuple[list[np.ndarray], CropBox]:
    """Crop every layer with the window chosen by ``framing``."""
    if framing == "min":
        crop = common_mask_crop(layers, width, height)
    elif framing == "cog":
        crop = cog_crop(layers, width, height)
    else:
        crop = CropBox.full(width, height)

    if crop.width <= 0 or crop.height <= 0:
        logger.warning("Degenerate %s crop, keeping full canvas", framing)
        crop = CropBox.full(width, height)

    if crop != CropBox.full(width, height):
        logger.info(
            "Framing '%s': crop %dx%d at (%d, %d)", framing, crop.width, crop.height, crop.x, crop.y
        )
    return [crop_layer(layer, width, height, crop) for layer in layers], crop


async def register_composite_layers(
    request: CompositeRequest,
    signal: AbortSignal | None = None,
    on_progress: Callable[[int, int, str], None] | None = None,
) -> CompositeResult:
    """
    Align layers onto layer 0 sequentially, then frame them identically.

    Parameters
    ----------
    request : CompositeRequest
        Layers, geometry, registration mode and framing policy.
    signal : AbortSignal, optional
        Checked before each layer and inside each alignment.
    on_progress : callable, optional
        ``on_progress(layer_index, n_layers, stage)``.

    Returns
    -------
    CompositeResult
        Framed layers, their common size, one transform per layer (identity
        for the reference) and the crop window.

    Raises
    ------
    ValueError
        On unknown mode/framing or layers whose size differs from
        ``width * height``.
    OperationCancelled
        If ``signal`` is aborted.
    """
    width, height = request.width, request.height
    if request.mode not in ALIGNMENT_MODES:
        raise ValueError(f"Unknown registration mode: {request.mode!r}")
    if request.framing not in FRAMING_MODES:
        raise ValueError(f"Unknown framing mode: {request.framing!r}")

    layers = list(request.layers)
    if not layers:
        return CompositeResult(layers=[], width=width, height=height, transforms=[],
                               crop=CropBox.full(width, height))
    for layer in layers:
        as_image(layer, width, height)

    if request.mode == "none" or len(layers) == 1:
        framed, crop = apply_framing(layers, width, height, request.framing)
        return CompositeResult(
            layers=framed,
            width=crop.width,
            height=crop.height,
            transforms=[_identity() for _ in layers],
            crop=crop,
        )

    options = request.alignment_options or AlignmentOptions()
    if options.fallback_to_translation is None:
        options = replace(options, fallback_to_translation=True)
    if request.manual_control_points is not None and options.manual_control_points is None:
        options = replace(options, manual_control_points=request.manual_control_points)

    reference = layers[0]
    aligned = [reference]
    transforms = [_identity()]
    for i in range(1, len(layers)):
        check_abort(signal, "align-layer")
        if on_progress is not None:
            on_progress(i, len(layers), "align-layer")
        result = await align_frame_async(
            reference, layers[i], width, height, request.mode, options, signal=signal
        )
        aligned.append(result.aligned)
        transforms.append(result.transform)
        if not result.success:
            logger.warning("Layer %d could not be aligned, kept unregistered", i)
        await yield_control()

    framed, crop = apply_framing(aligned, width, height, request.framing)
    if on_progress is not None:
        on_progress(len(layers), len(layers), "done")
    return CompositeResult(
        layers=framed,
        width=crop.width,
        height=crop.height,
        transforms=transforms,
        crop=crop,
    )
