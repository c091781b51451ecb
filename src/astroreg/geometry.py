"""
Star annotation geometry under image edits.

When an image is rotated, flipped, cropped or rotated by an arbitrary angle,
its annotation points are mapped into the edited pixel grid. Points falling
outside the new canvas are dropped and anchor slots are re-deduplicated.
Edits without a known point mapping leave the points untouched and mark the
result with :attr:`StaleReason.UNSUPPORTED_TRANSFORM`; the bundle then stops
being usable for registration until annotations are redone.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Callable, Sequence

from .config import StaleReason
from .linkage import ensure_unique_anchors
from .schema import ImageGeometry, StarAnnotationBundle, StarAnnotationPoint
from .utils import now_ms

logger = logging.getLogger(__name__)

SUPPORTED_EDITS = (
    "rotate90cw",
    "rotate90ccw",
    "rotate180",
    "flip_h",
    "flip_v",
    "crop",
    "rotate_arbitrary",
)


@dataclass(frozen=True)
class ImageEdit:
    """
    An image edit operation.

    ``crop`` uses ``x, y, width, height``; ``rotate_arbitrary`` uses
    ``angle`` in degrees (positive = clockwise in image coordinates).
    """

    kind: str
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0
    angle: float = 0.0


@dataclass
class TransformedPoints:
    points: list[StarAnnotationPoint]
    width: int
    height: int
    transformed: bool
    stale_reason: StaleReason | None = None


def parse_edit(text: str) -> ImageEdit:
    """
    Parse a command-line edit description.

    Examples: ``rotate90cw``, ``flip_h``, ``crop:10,20,300,200``,
    ``rotate_arbitrary:12.5``.
    """
    kind, _, args = text.partition(":")
    kind = kind.strip()
    values = [float(v) for v in args.split(",") if v.strip()] if args else []
    if kind == "crop":
        if len(values) != 4:
            raise ValueError(f"crop expects x,y,width,height, got {args!r}")
        return ImageEdit(kind, x=values[0], y=values[1], width=values[2], height=values[3])
    if kind == "rotate_arbitrary":
        if len(values) != 1:
            raise ValueError(f"rotate_arbitrary expects an angle, got {args!r}")
        return ImageEdit(kind, angle=values[0])
    return ImageEdit(kind)


def _map_points(
    points: Sequence[StarAnnotationPoint],
    mapper: Callable[[float, float], tuple[float, float]],
    width: int,
    height: int,
) -> list[StarAnnotationPoint]:
    mapped = []
    for point in points:
        x, y = mapper(point.x, point.y)
        if not (math.isfinite(x) and math.isfinite(y)):
            continue
        if 0 <= x < width and 0 <= y < height:
            mapped.append(replace(point, x=x, y=y))
    return ensure_unique_anchors(mapped)


def transform_star_annotation_points(
    points: Sequence[StarAnnotationPoint],
    width: int,
    height: int,
    edit: ImageEdit,
) -> TransformedPoints:
    """
    Map annotation points through an image edit.

    Parameters
    ----------
    points : sequence of StarAnnotationPoint
        Points in the pre-edit image.
    width, height : int
        Pre-edit image size.
    edit : ImageEdit
        The edit applied to the image.

    Returns
    -------
    TransformedPoints
        Points and size of the edited image. For an unsupported edit the
        points are returned as given, ``transformed`` is False and
        ``stale_reason`` is set.
    """
    w = max(1, int(width))
    h = max(1, int(height))
    kind = edit.kind

    if kind == "rotate90cw":
        nw, nh = h, w
        mapper = lambda x, y: (h - 1 - y, x)
    elif kind == "rotate90ccw":
        nw, nh = h, w
        mapper = lambda x, y: (y, w - 1 - x)
    elif kind == "rotate180":
        nw, nh = w, h
        mapper = lambda x, y: (w - 1 - x, h - 1 - y)
    elif kind == "flip_h":
        nw, nh = w, h
        mapper = lambda x, y: (w - 1 - x, y)
    elif kind == "flip_v":
        nw, nh = w, h
        mapper = lambda x, y: (x, h - 1 - y)
    elif kind == "crop":
        nw, nh = max(1, int(edit.width)), max(1, int(edit.height))
        mapper = lambda x, y: (x - edit.x, y - edit.y)
    elif kind == "rotate_arbitrary":
        rad = math.radians(edit.angle)
        cos, sin = math.cos(rad), math.sin(rad)
        nw = math.ceil(abs(w * cos) + abs(h * sin))
        nh = math.ceil(abs(w * sin) + abs(h * cos))
        cx, cy, ncx, ncy = w / 2, h / 2, nw / 2, nh / 2

        def mapper(x, y):
            sx, sy = x - cx, y - cy
            return cos * sx - sin * sy + ncx, sin * sx + cos * sy + ncy
    else:
        logger.warning("Edit %r has no point mapping, annotations marked stale", kind)
        return TransformedPoints(
            points=list(points),
            width=w,
            height=h,
            transformed=False,
            stale_reason=StaleReason.UNSUPPORTED_TRANSFORM,
        )

    mapped = _map_points(points, mapper, nw, nh)
    if len(mapped) < len(points):
        logger.debug("%s dropped %d points outside the new canvas", kind, len(points) - len(mapped))
    return TransformedPoints(points=mapped, width=nw, height=nh, transformed=True)


def apply_edit_to_bundle(
    bundle: StarAnnotationBundle,
    edit: ImageEdit,
    width: int | None = None,
    height: int | None = None,
) -> StarAnnotationBundle:
    """
    Return the bundle as it should be after ``edit`` is applied to its image.

    The pre-edit size comes from ``width``/``height`` when given, else from
    the bundle geometry. Unsupported edits keep the points and set
    ``stale=True`` with the corresponding reason.

    Raises
    ------
    ValueError
        If the pre-edit image size is unknown.
    """
    if width is None or height is None:
        if bundle.image_geometry is None:
            raise ValueError("Image size required: bundle has no stored geometry")
        width, height = bundle.image_geometry.width, bundle.image_geometry.height

    result = transform_star_annotation_points(bundle.points, width, height, edit)
    if not result.transformed:
        return replace(
            bundle,
            stale=True,
            stale_reason=result.stale_reason,
            updated_at=now_ms(),
        )
    return replace(
        bundle,
        points=result.points,
        image_geometry=ImageGeometry(result.width, result.height),
        updated_at=now_ms(),
    )
