"""
Tests for annotation geometry under image edits.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import pytest

from astroreg.config import StaleReason
from astroreg.geometry import (
    ImageEdit,
    apply_edit_to_bundle,
    parse_edit,
    transform_star_annotation_points,
)
from astroreg.schema import ImageGeometry, StarAnnotationBundle, StarAnnotationPoint


def _points():
    return [
        StarAnnotationPoint(id="a", x=1.0, y=2.0, anchor_index=1),
        StarAnnotationPoint(id="b", x=9.0, y=0.0, source="detected"),
    ]


class TestParseEdit:
    """Tests for edit parsing."""

    def test_simple(self):
        assert parse_edit("flip_h") == ImageEdit("flip_h")

    def test_crop(self):
        """Crop takes x, y, width and height."""
        assert parse_edit("crop:1,2,30,40") == ImageEdit("crop", x=1, y=2, width=30, height=40)
        with pytest.raises(ValueError):
            parse_edit("crop:1,2")

    def test_rotate_arbitrary(self):
        assert parse_edit("rotate_arbitrary:12.5").angle == 12.5
        with pytest.raises(ValueError):
            parse_edit("rotate_arbitrary")


class TestTransformPoints:
    """Tests for point mapping on a 10 x 5 image."""

    def test_rotate90cw(self):
        """Rotating clockwise swaps the canvas size."""
        result = transform_star_annotation_points(_points(), 10, 5, ImageEdit("rotate90cw"))
        assert (result.width, result.height) == (5, 10)
        assert [(p.x, p.y) for p in result.points] == [(2.0, 1.0), (4.0, 9.0)]
        assert result.transformed

    def test_rotate90ccw(self):
        result = transform_star_annotation_points(_points(), 10, 5, ImageEdit("rotate90ccw"))
        assert [(p.x, p.y) for p in result.points] == [(2.0, 8.0), (0.0, 0.0)]

    def test_flips_and_rotate180(self):
        """Flips mirror one axis, rotate180 both."""
        flip_h = transform_star_annotation_points(_points(), 10, 5, ImageEdit("flip_h"))
        flip_v = transform_star_annotation_points(_points(), 10, 5, ImageEdit("flip_v"))
        half = transform_star_annotation_points(_points(), 10, 5, ImageEdit("rotate180"))
        assert (flip_h.points[0].x, flip_h.points[0].y) == (8.0, 2.0)
        assert (flip_v.points[0].x, flip_v.points[0].y) == (1.0, 2.0)
        assert (half.points[0].x, half.points[0].y) == (8.0, 2.0)
        assert (half.points[1].x, half.points[1].y) == (0.0, 4.0)

    def test_crop_drops_outside(self):
        """Cropping shifts points and drops those outside the new canvas."""
        edit = ImageEdit("crop", x=0, y=1, width=5, height=4)
        result = transform_star_annotation_points(_points(), 10, 5, edit)
        assert (result.width, result.height) == (5, 4)
        assert [p.id for p in result.points] == ["a"]
        assert (result.points[0].x, result.points[0].y) == (1.0, 1.0)
        assert result.points[0].anchor_index == 1

    def test_rotate_arbitrary_zero(self):
        """A zero-degree rotation keeps points and size."""
        result = transform_star_annotation_points(
            _points(), 10, 5, ImageEdit("rotate_arbitrary", angle=0.0)
        )
        assert (result.width, result.height) == (10, 5)
        assert [(p.x, p.y) for p in result.points] == [(1.0, 2.0), (9.0, 0.0)]

    def test_rotate_arbitrary_grows_canvas(self):
        """Non-right angles enlarge the canvas to hold the rotated image."""
        result = transform_star_annotation_points(
            _points(), 10, 5, ImageEdit("rotate_arbitrary", angle=30.0)
        )
        assert result.width > 10 and result.height > 5
        assert len(result.points) == 2

    def test_unsupported(self):
        """Unknown edits keep points and report a stale reason."""
        points = _points()
        result = transform_star_annotation_points(points, 10, 5, ImageEdit("shear"))
        assert not result.transformed
        assert result.points == points
        assert result.stale_reason is StaleReason.UNSUPPORTED_TRANSFORM


class TestApplyEditToBundle:
    """Tests for bundle-level edits."""

    def test_geometry_follows_edit(self):
        """The stored geometry becomes the edited size."""
        bundle = StarAnnotationBundle(updated_at=1, points=_points(),
                                      image_geometry=ImageGeometry(10, 5))
        edited = apply_edit_to_bundle(bundle, ImageEdit("rotate90cw"))
        assert edited.image_geometry == ImageGeometry(5, 10)
        assert not edited.stale
        assert bundle.image_geometry == ImageGeometry(10, 5)

    def test_unsupported_marks_stale(self):
        bundle = StarAnnotationBundle(updated_at=1, points=_points(),
                                      image_geometry=ImageGeometry(10, 5))
        edited = apply_edit_to_bundle(bundle, ImageEdit("warp"))
        assert edited.stale is True
        assert edited.stale_reason is StaleReason.UNSUPPORTED_TRANSFORM
        assert edited.points == bundle.points

    def test_requires_size(self):
        """Without stored geometry the size must be given."""
        bundle = StarAnnotationBundle(updated_at=1, points=_points())
        with pytest.raises(ValueError):
            apply_edit_to_bundle(bundle, ImageEdit("flip_h"))
        edited = apply_edit_to_bundle(bundle, ImageEdit("flip_h"), 10, 5)
        assert edited.image_geometry == ImageGeometry(10, 5)
