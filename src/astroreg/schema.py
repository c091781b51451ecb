"""
Star annotation records and their persisted JSON schema.

A bundle is stored as camelCase JSON::

    {
      "version": 2,
      "updatedAt": 1739000000000,
      "detectionSnapshot": {"profile": "balanced", "sigmaThreshold": 5, ...},
      "points": [{"id": "m_1200_1400_k3j9a2", "x": 12.0, "y": 14.0,
                  "enabled": true, "source": "manual", "anchorIndex": 1}],
      "stale": false,
      "staleReason": "unsupported-transform",
      "imageGeometry": {"width": 120, "height": 80}
    }

Version 1 payloads lack ``staleReason`` and ``imageGeometry`` and may carry a
partial snapshot. They are read through :func:`bundle_from_dict` and are never
written: :func:`bundle_to_dict` always emits version 2. This module is the only
place where the payload version is inspected.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Literal, Mapping

from .config import DetectionOptions, StaleReason
from .utils import now_ms

logger = logging.getLogger(__name__)

BUNDLE_VERSION = 2
SNAPSHOT_PROFILES = ("balanced", "fast", "accurate")

PointSource = Literal["manual", "detected"]


@dataclass(frozen=True)
class StarMetrics:
    """Measured properties carried by an annotation point (all optional)."""

    flux: float | None = None
    peak: float | None = None
    area: float | None = None
    fwhm: float | None = None
    snr: float | None = None
    roundness: float | None = None
    ellipticity: float | None = None
    sharpness: float | None = None
    theta: float | None = None
    flags: int | None = None


@dataclass(frozen=True)
class StarAnnotationPoint:
    """A user-placed or detector-produced star marker on an image."""

    id: str
    x: float
    y: float
    enabled: bool = True
    source: PointSource = "manual"
    anchor_index: int | None = None
    """1, 2 or 3 when the point is a registration anchor."""

    metrics: StarMetrics | None = None


@dataclass(frozen=True)
class ImageGeometry:
    width: int
    height: int


@dataclass
class StarAnnotationBundle:
    """Per-image annotation state, as persisted (always version 2 in memory)."""

    updated_at: int
    detection_snapshot: DetectionOptions = field(default_factory=DetectionOptions)
    points: list[StarAnnotationPoint] = field(default_factory=list)
    stale: bool = False
    stale_reason: StaleReason | None = None
    image_geometry: ImageGeometry | None = None
    version: int = BUNDLE_VERSION


# =============================================================================
# Field helpers
# =============================================================================


def _to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _finite_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


_SNAPSHOT_KEYS = {_to_camel(f.name): f.name for f in fields(DetectionOptions)}
_METRIC_KEYS = [f.name for f in fields(StarMetrics)]


# =============================================================================
# Detection snapshot
# =============================================================================


def snapshot_from_dict(raw: Mapping[str, Any] | None) -> DetectionOptions:
    """
    Complete a (possibly partial) snapshot from the balanced-profile defaults.

    Profiles other than ``balanced``, ``fast`` and ``accurate`` are replaced
    by ``balanced``. Values of the wrong type are ignored.
    """
    snapshot = DetectionOptions()
    if not raw:
        return snapshot

    changes: dict[str, Any] = {}
    for key, name in _SNAPSHOT_KEYS.items():
        if key not in raw or name == "profile":
            continue
        value = raw[key]
        default = getattr(snapshot, name)
        if name == "peak_max":
            number = _finite_number(value)
            changes[name] = number
        elif isinstance(default, bool):
            if isinstance(value, bool):
                changes[name] = value
        elif name == "connectivity":
            if value in (4, 8):
                changes[name] = int(value)
        else:
            number = _finite_number(value)
            if number is not None:
                changes[name] = int(number) if isinstance(default, int) else number

    profile = raw.get("profile")
    changes["profile"] = profile if profile in SNAPSHOT_PROFILES else "balanced"
    return replace(snapshot, **changes)


def snapshot_to_dict(snapshot: DetectionOptions) -> dict[str, Any]:
    data = {}
    for key, name in _SNAPSHOT_KEYS.items():
        value = getattr(snapshot, name)
        if value is None:
            continue
        data[key] = value
    return data


# =============================================================================
# Points
# =============================================================================


def metrics_from_dict(raw: Any) -> StarMetrics | None:
    if not isinstance(raw, Mapping):
        return None
    values = {}
    for name in _METRIC_KEYS:
        number = _finite_number(raw.get(name))
        if number is not None:
            values[name] = int(number) if name == "flags" else number
    return StarMetrics(**values)


def metrics_to_dict(metrics: StarMetrics) -> dict[str, Any]:
    return {name: getattr(metrics, name) for name in _METRIC_KEYS if getattr(metrics, name) is not None}


def point_from_dict(raw: Any) -> StarAnnotationPoint | None:
    """
    Parse a point, or return None when it has no string id or no finite position.
    """
    if not isinstance(raw, Mapping) or not isinstance(raw.get("id"), str):
        return None
    x = _finite_number(raw.get("x"))
    y = _finite_number(raw.get("y"))
    if x is None or y is None:
        return None
    anchor = raw.get("anchorIndex")
    return StarAnnotationPoint(
        id=raw["id"],
        x=x,
        y=y,
        enabled=raw.get("enabled") is not False,
        source="manual" if raw.get("source") == "manual" else "detected",
        anchor_index=anchor if anchor in (1, 2, 3) and not isinstance(anchor, bool) else None,
        metrics=metrics_from_dict(raw.get("metrics")),
    )


def point_to_dict(point: StarAnnotationPoint) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": point.id,
        "x": point.x,
        "y": point.y,
        "enabled": point.enabled,
        "source": point.source,
    }
    if point.anchor_index is not None:
        data["anchorIndex"] = point.anchor_index
    if point.metrics is not None:
        data["metrics"] = metrics_to_dict(point.metrics)
    return data


# =============================================================================
# Bundles
# =============================================================================


def _geometry_from_dict(raw: Any) -> ImageGeometry | None:
    if not isinstance(raw, Mapping):
        return None
    width = _finite_number(raw.get("width"))
    height = _finite_number(raw.get("height"))
    if width is None or height is None or width < 1 or height < 1:
        return None
    return ImageGeometry(int(width), int(height))


def bundle_from_dict(raw: Mapping[str, Any]) -> StarAnnotationBundle:
    """
    Read a persisted bundle of any known version.

    Version 1 payloads carry no geometry and no stale reason; they come back
    with ``image_geometry=None``. Malformed points are dropped. The result is
    not sanitized (see :func:`astroreg.linkage.sanitize_star_annotations`).

    Parameters
    ----------
    raw : Mapping
        Decoded JSON object.

    Returns
    -------
    StarAnnotationBundle
        In-memory (version 2) bundle.
    """
    version = raw.get("version", 1)
    updated = _finite_number(raw.get("updatedAt"))
    updated_at = max(0, int(updated)) if updated is not None else now_ms()

    raw_points = raw.get("points") or []
    points = [p for p in (point_from_dict(item) for item in raw_points) if p is not None]
    if len(points) < len(raw_points):
        logger.debug("Dropped %d malformed annotation points", len(raw_points) - len(points))

    stale_reason = None
    geometry = None
    if version != 1:
        try:
            stale_reason = StaleReason(raw["staleReason"]) if raw.get("staleReason") else None
        except ValueError:
            logger.warning("Unknown stale reason %r ignored", raw.get("staleReason"))
        geometry = _geometry_from_dict(raw.get("imageGeometry"))

    snapshot = raw.get("detectionSnapshot")
    return StarAnnotationBundle(
        updated_at=updated_at,
        detection_snapshot=snapshot_from_dict(snapshot if isinstance(snapshot, Mapping) else None),
        points=points,
        stale=bool(raw.get("stale", False)),
        stale_reason=stale_reason,
        image_geometry=geometry,
    )


def bundle_to_dict(bundle: StarAnnotationBundle) -> dict[str, Any]:
    """Serialize a bundle as a version 2 JSON-compatible dict."""
    data: dict[str, Any] = {
        "version": BUNDLE_VERSION,
        "updatedAt": int(bundle.updated_at),
        "detectionSnapshot": snapshot_to_dict(bundle.detection_snapshot),
        "points": [point_to_dict(p) for p in bundle.points],
        "stale": bool(bundle.stale),
    }
    if bundle.stale_reason is not None:
        data["staleReason"] = bundle.stale_reason.value
    if bundle.image_geometry is not None:
        data["imageGeometry"] = {
            "width": bundle.image_geometry.width,
            "height": bundle.image_geometry.height,
        }
    return data


def save_bundle(bundle: StarAnnotationBundle, output_path: str | Path) -> None:
    """Write a bundle to a JSON file (version 2)."""
    output_path = Path(output_path)
    with open(output_path, "w") as f:
        json.dump(bundle_to_dict(bundle), f, indent=2)
    logger.info("Saved %d annotation points to %s", len(bundle.points), output_path)


def load_bundle(input_path: str | Path) -> StarAnnotationBundle:
    """Read a bundle JSON file of any known version."""
    input_path = Path(input_path)
    with open(input_path) as f:
        data = json.load(f)
    if not isinstance(data, Mapping):
        raise ValueError(f"{input_path}: expected a JSON object, got {type(data).__name__}")
    bundle = bundle_from_dict(data)
    logger.info(
        "Loaded %d annotation points (version %s) from %s",
        len(bundle.points), data.get("version", 1), input_path,
    )
    return bundle
