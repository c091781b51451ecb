"""
Tests for the align module.

Tests cover:
- Transform records and JSON persistence
- Translation and full (affine) estimators on synthetic star lists
- Resampling
- align_frame orchestration: modes, fallbacks, overrides, manual control points
- End-to-end alignment of synthetic star fields

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import asyncio
import math

import numpy as np
import pytest

from astroreg.align import (
    IDENTITY_MATRIX,
    AlignmentTransform,
    align_frame,
    align_frame_async,
    apply_transform,
    build_triangles,
    compute_full_alignment,
    compute_translation,
    dict_to_transform,
    fit_affine,
    load_transforms,
    save_transforms,
    transform_to_dict,
)
from astroreg.config import AlignmentOptions, FallbackUsed, ManualControlPoints, OverrideUsage
from astroreg.detection import DetectedStar
from astroreg.runtime import AbortSignal, OperationCancelled


def _affine(positions, matrix):
    a, b, tx, c, d, ty = matrix
    return [(a * x + b * y + tx, c * x + d * y + ty) for x, y in positions]


class TestAlignmentTransform:
    """Tests for AlignmentTransform dataclass."""

    def test_defaults_are_failed_identity(self):
        """Default transform is the identity with no matches."""
        t = AlignmentTransform()
        assert t.matrix == IDENTITY_MATRIX
        assert t.matched_stars == 0
        assert math.isinf(t.rms_error)
        assert t.success is False
        assert t.fallback_used is FallbackUsed.NONE

    def test_translation_property(self):
        """translation exposes (tx, ty)."""
        t = AlignmentTransform(matrix=(1, 0, 3.5, 0, 1, -2.0), matched_stars=4, rms_error=0.1)
        assert t.translation == (3.5, -2.0)
        assert t.success is True


class TestTransformPersistence:
    """Tests for transform JSON persistence."""

    def test_infinite_rms_written_as_null(self):
        """An infinite RMS serializes to None and reads back as inf."""
        d = transform_to_dict(AlignmentTransform())
        assert d["rmsError"] is None
        assert math.isinf(dict_to_transform(d).rms_error)

    def test_save_and_load(self, tmp_path):
        """Saved transforms load back with their metadata."""
        transforms = [
            AlignmentTransform(rms_error=0.0),
            AlignmentTransform(
                matrix=(1.0, 0.0, 2.0, 0.0, 1.0, 1.0),
                matched_stars=5,
                rms_error=0.25,
                fallback_used=FallbackUsed.TRANSLATION,
                override_usage=OverrideUsage.REF,
                detection_counts={"ref": 12, "target": 10},
            ),
        ]
        path = tmp_path / "transforms.json"
        save_transforms(transforms, path, metadata={"mode": "full"})

        loaded, metadata = load_transforms(path)
        assert metadata == {"mode": "full"}
        assert len(loaded) == 2
        assert loaded[1].matrix == (1.0, 0.0, 2.0, 0.0, 1.0, 1.0)
        assert loaded[1].fallback_used is FallbackUsed.TRANSLATION
        assert loaded[1].override_usage is OverrideUsage.REF
        assert loaded[1].detection_counts == {"ref": 12, "target": 10}

    def test_bad_matrix_length(self):
        """A matrix without 6 elements is rejected."""
        with pytest.raises(ValueError):
            dict_to_transform({"matrix": [1, 0, 0, 1]})


class TestComputeTranslation:
    """Tests for translation-only alignment."""

    def test_ties_follow_input_order(self):
        """Equidistant candidates pair in list order, not in flux order."""
        def star(x, y, flux):
            return DetectedStar(cx=x, cy=y, flux=flux, peak=flux, area=9, fwhm=2.5)

        ref = [star(20, 20, 1), star(24, 20, 100),
               star(50, 50, 50), star(50, 80, 40), star(80, 50, 30)]
        target = [star(22, 20, 60), star(50, 50, 50), star(50, 80, 40), star(80, 50, 30)]

        t = compute_translation(ref, target)

        # (20, 20) is listed first and takes the shared neighbour at (22, 20)
        assert t.matched_stars == 4
        assert t.translation == pytest.approx((0.5, 0.0))

    def test_too_few_stars(self, make_stars):
        """Fewer than 3 stars on a side gives the failed identity."""
        t = compute_translation(make_stars([(10, 10), (20, 20)]), make_stars([(11, 11), (21, 21)]))
        assert t.matrix == IDENTITY_MATRIX
        assert t.matched_stars == 0
        assert math.isinf(t.rms_error)

    def test_recovers_known_offset(self, make_stars, star_positions):
        """A pure shift of all stars is recovered exactly."""
        ref = make_stars(star_positions)
        target = make_stars([(x + 7.5, y - 4.25) for x, y in star_positions])

        t = compute_translation(ref, target)

        assert t.matched_stars == len(star_positions)
        assert t.translation == pytest.approx((7.5, -4.25), abs=1e-9)
        assert t.rms_error == pytest.approx(0.0, abs=1e-9)

    def test_offset_larger_than_search_radius(self, make_stars, star_positions):
        """Offset voting finds shifts beyond the matching radius."""
        ref = make_stars(star_positions)
        target = make_stars([(x + 35.0, y + 28.0) for x, y in star_positions])

        t = compute_translation(ref, target, search_radius=5.0)

        assert t.matched_stars >= 3
        assert t.translation == pytest.approx((35.0, 28.0), abs=1e-9)

    def test_unmatched_brightness_order(self, make_stars, star_positions):
        """Matching does not rely on the flux order being identical."""
        ref = make_stars(star_positions)
        shifted = [(x - 3.0, y + 2.0) for x, y in star_positions]
        target = make_stars(list(reversed(shifted)))

        t = compute_translation(ref, target)

        assert t.matched_stars == len(star_positions)
        assert t.translation == pytest.approx((-3.0, 2.0), abs=1e-9)


class TestComputeFullAlignment:
    """Tests for triangle-based affine alignment."""

    def test_triangles_skip_small_asterisms(self):
        """Triangles whose longest side is under 10 px are skipped."""
        xy = np.array([[0.0, 0.0], [3.0, 0.0], [0.0, 4.0]])
        vertices, invariants = build_triangles(xy)
        assert len(vertices) == 0
        assert invariants.shape == (0, 2)

    def test_triangle_invariants(self):
        """A 3-4-5 triangle scaled by 10 has invariants (0.6, 0.8)."""
        xy = np.array([[0.0, 0.0], [30.0, 0.0], [0.0, 40.0]])
        vertices, invariants = build_triangles(xy)
        assert invariants[0] == pytest.approx([0.6, 0.8])
        # Vertex opposite the shortest side (30) is (0, 40), index 2
        assert list(vertices[0]) == [2, 1, 0]

    def test_recovers_rotation_and_shift(self, make_stars, star_positions):
        """A rotation plus translation is recovered from exact star lists."""
        angle = math.radians(4.0)
        matrix = (
            math.cos(angle), -math.sin(angle), 10.0,
            math.sin(angle), math.cos(angle), -6.0,
        )
        ref = make_stars(star_positions)
        target = make_stars(_affine(star_positions, matrix))

        t = compute_full_alignment(ref, target)

        assert t.matched_stars == len(star_positions)
        assert t.matrix == pytest.approx(matrix, abs=1e-6)
        assert t.rms_error < 1e-6

    def test_pure_translation(self, make_stars, star_positions):
        """Full alignment of a shifted list is a translation."""
        ref = make_stars(star_positions)
        target = make_stars([(x + 3.0, y - 2.0) for x, y in star_positions])

        t = compute_full_alignment(ref, target)

        assert t.matched_stars >= 3
        assert t.matrix == pytest.approx((1, 0, 3, 0, 1, -2), abs=1e-6)

    def test_too_few_stars(self, make_stars):
        """Fewer than 3 stars gives the failed identity."""
        t = compute_full_alignment(make_stars([(0, 0), (50, 0)]), make_stars([(0, 0), (50, 0)]))
        assert t.matrix == IDENTITY_MATRIX
        assert math.isinf(t.rms_error)

    def test_fit_affine_rejects_collinear(self):
        """Collinear points do not define an affine transform."""
        src = np.array([[0.0, 0.0], [1.0, 1.0], [2.0, 2.0]])
        assert fit_affine(src, src) is None


class TestApplyTransform:
    """Tests for resampling through a transform."""

    def test_identity_returns_input(self):
        """The identity returns the very same buffer."""
        pixels = np.arange(9, dtype=np.float32)
        assert apply_transform(pixels, 3, 3, IDENTITY_MATRIX) is pixels

    def test_singular_returns_input(self):
        """A singular matrix leaves the buffer untouched."""
        pixels = np.arange(1, 10, dtype=np.float32)
        out = apply_transform(pixels, 3, 3, (1, 2, 0, 2, 4, 0))
        assert out is pixels

    def test_integer_translation(self):
        """Destination pixels sample the source at the inverse-mapped position."""
        pixels = np.arange(1, 10, dtype=np.float32)
        out = apply_transform(pixels, 3, 3, (1, 0, 1, 0, 1, 0))

        assert out.shape == (9,)
        assert out.dtype == np.float32
        np.testing.assert_array_equal(out.reshape(3, 3), [[0, 1, 2], [0, 4, 5], [0, 7, 8]])

    def test_keeps_2d_shape(self):
        """A 2D input gives a 2D output on every path."""
        image = np.arange(1, 10, dtype=np.float32).reshape(3, 3)
        assert apply_transform(image, 3, 3, IDENTITY_MATRIX).shape == (3, 3)
        out = apply_transform(image, 3, 3, (1, 0, 1, 0, 1, 0))
        assert out.shape == (3, 3)
        np.testing.assert_array_equal(out, [[0, 1, 2], [0, 4, 5], [0, 7, 8]])

    def test_size_mismatch(self):
        """Buffers of the wrong length raise ValueError."""
        with pytest.raises(ValueError):
            apply_transform(np.zeros(8, dtype=np.float32), 3, 3, (1, 0, 1, 0, 1, 0))


class TestAlignFrame:
    """Tests for align_frame orchestration."""

    def test_mode_none(self):
        """Mode none returns the target untouched with a zero RMS."""
        ref = np.ones(100, dtype=np.float32)
        target = np.full(100, 2, dtype=np.float32)

        result = align_frame(ref, target, 10, 10, "none")

        assert result.aligned is target
        assert result.transform.rms_error == 0
        assert result.transform.matrix == IDENTITY_MATRIX

    def test_unknown_mode(self):
        """Unknown modes are rejected."""
        pixels = np.zeros(100, dtype=np.float32)
        with pytest.raises(ValueError):
            align_frame(pixels, pixels, 10, 10, "similarity")

    def test_size_mismatch(self):
        """Buffers not matching the geometry are rejected."""
        with pytest.raises(ValueError):
            align_frame(np.zeros(100, np.float32), np.zeros(99, np.float32), 10, 10, "translation")

    def test_failed_matching(self, make_stars, fake_detector):
        """Too few stars leaves the target unaligned with an infinite RMS."""
        ref = np.ones(100, dtype=np.float32)
        target = np.full(100, 2, dtype=np.float32)
        detector = fake_detector({id(ref): make_stars([(1, 1)]), id(target): make_stars([(2, 2)])})

        result = align_frame(ref, target, 10, 10, "translation", AlignmentOptions(detector=detector))

        assert result.aligned is target
        assert math.isinf(result.transform.rms_error)
        assert result.transform.matched_stars == 0
        assert result.transform.detection_counts == {"ref": 1, "target": 1}

    def test_fallback_to_translation(self, make_stars, fake_detector):
        """A compact asterism fails full alignment and falls back to translation."""
        ref = np.zeros(100 * 100, dtype=np.float32)
        target = np.zeros(100 * 100, dtype=np.float32)
        positions = [(50.0, 50.0), (53.0, 50.0), (50.0, 54.0)]
        detector = fake_detector({
            id(ref): make_stars(positions),
            id(target): make_stars([(x + 2, y + 1) for x, y in positions]),
        })

        failed = align_frame(ref, target, 100, 100, "full", AlignmentOptions(detector=detector))
        assert failed.success is False

        result = align_frame(
            ref, target, 100, 100, "full",
            AlignmentOptions(detector=detector, fallback_to_translation=True),
        )
        assert result.success
        assert result.transform.fallback_used is FallbackUsed.TRANSLATION
        assert result.transform.matched_stars == 3
        assert result.transform.translation == pytest.approx((2.0, 1.0))

    def test_star_overrides(self, make_stars, star_positions):
        """Caller-supplied stars replace detection and are reported."""
        pixels = np.zeros(200 * 200, dtype=np.float32)

        def detector(*args):
            raise AssertionError("detector must not run")

        options = AlignmentOptions(
            ref_stars_override=make_stars(star_positions),
            target_stars_override=make_stars([(x + 4, y + 1) for x, y in star_positions]),
            detector=detector,
        )
        result = align_frame(pixels, pixels.copy(), 200, 200, "translation", options)

        assert result.transform.fallback_used is FallbackUsed.ANNOTATED_STARS
        assert result.transform.override_usage is OverrideUsage.BOTH
        assert result.transform.translation == pytest.approx((4.0, 1.0))

    def test_one_sided_override(self, make_stars, star_positions, fake_detector):
        """Only the reference side uses caller-supplied stars."""
        ref = np.zeros(200 * 200, dtype=np.float32)
        target = np.zeros(200 * 200, dtype=np.float32)
        detector = fake_detector({id(target): make_stars([(x - 2, y) for x, y in star_positions])})

        options = AlignmentOptions(ref_stars_override=make_stars(star_positions), detector=detector)
        result = align_frame(ref, target, 200, 200, "translation", options)

        assert result.transform.override_usage is OverrideUsage.REF
        assert result.transform.fallback_used is FallbackUsed.ANNOTATED_STARS

    def test_manual_three_star(self):
        """Manual control points bypass detection."""
        pixels = np.zeros(100, dtype=np.float32)
        calls = []

        def detector(*args):
            calls.append(args)
            return []

        manual = ManualControlPoints(
            ref=[(0, 0), (1, 0), (0, 1)],
            target=[(1, 2), (3, 1), (2, 5)],
            mode="three_star",
        )
        result = align_frame(
            pixels, pixels.copy(), 10, 10, "full",
            AlignmentOptions(manual_control_points=manual, detector=detector),
        )

        assert calls == []
        assert result.transform.fallback_used is FallbackUsed.MANUAL_3STAR
        assert result.transform.matched_stars == 3
        assert result.transform.rms_error == 0
        assert result.transform.matrix == pytest.approx((2, 1, 1, -1, 3, 2))

    def test_manual_degenerate_falls_through(self, make_stars, star_positions, fake_detector):
        """Collinear manual points fall back to automatic matching."""
        ref = np.zeros(200 * 200, dtype=np.float32)
        target = np.zeros(200 * 200, dtype=np.float32)
        detector = fake_detector({
            id(ref): make_stars(star_positions),
            id(target): make_stars([(x + 1, y + 1) for x, y in star_positions]),
        })
        manual = ManualControlPoints(
            ref=[(0, 0), (1, 1), (2, 2)],
            target=[(0, 0), (1, 1), (2, 2)],
        )

        result = align_frame(
            ref, target, 200, 200, "translation",
            AlignmentOptions(manual_control_points=manual, detector=detector),
        )

        assert result.transform.fallback_used is FallbackUsed.NONE
        assert result.transform.translation == pytest.approx((1.0, 1.0))

    def test_async_detector_rejected(self):
        """The synchronous entry point refuses coroutine detectors."""
        pixels = np.zeros(100, dtype=np.float32)

        async def detector(*args):
            return []

        with pytest.raises(TypeError):
            align_frame(pixels, pixels.copy(), 10, 10, "full", AlignmentOptions(detector=detector))


class TestAlignFrameAsync:
    """Tests for the cooperative alignment entry point."""

    def test_async_detector(self, make_stars, star_positions):
        """Awaitable detectors are awaited."""
        ref = np.zeros(200 * 200, dtype=np.float32)
        target = np.zeros(200 * 200, dtype=np.float32)
        lists = {
            id(ref): make_stars(star_positions),
            id(target): make_stars([(x + 5, y - 3) for x, y in star_positions]),
        }

        async def detector(pixels, width, height, options):
            return lists[id(pixels)]

        result = asyncio.run(
            align_frame_async(ref, target, 200, 200, "translation", AlignmentOptions(detector=detector))
        )
        assert result.transform.translation == pytest.approx((5.0, -3.0))

    def test_abort_before_detection(self):
        """An aborted signal cancels the operation."""
        pixels = np.zeros(100, dtype=np.float32)
        signal = AbortSignal()
        signal.abort()

        with pytest.raises(OperationCancelled):
            asyncio.run(align_frame_async(pixels, pixels.copy(), 10, 10, "full", signal=signal))

    def test_mode_none(self):
        """Mode none needs no detection."""
        pixels = np.zeros(100, dtype=np.float32)
        result = asyncio.run(align_frame_async(pixels, pixels, 10, 10, "none"))
        assert result.transform.rms_error == 0


class TestEndToEnd:
    """Alignment of synthetic star fields through the default detector."""

    def test_shifted_field(self, synthetic_star_field, field_stars):
        """Two frames offset by (+3, -2) align to that translation."""
        ref = synthetic_star_field(stars=field_stars, seed=1)
        target = synthetic_star_field(
            stars=[(x + 3, y - 2, amp) for x, y, amp in field_stars], seed=2
        )

        result = align_frame(
            ref.ravel(), target.ravel(), 200, 200, "full",
            AlignmentOptions(fallback_to_translation=True),
        )

        assert result.transform.matched_stars >= 3
        dx, dy = result.transform.translation
        assert dx == pytest.approx(3.0, abs=0.25)
        assert dy == pytest.approx(-2.0, abs=0.25)
        assert result.aligned.shape == (200 * 200,)

    def test_shifted_field_translation_mode(self, synthetic_star_field, field_stars):
        """Translation mode recovers the same offset."""
        ref = synthetic_star_field(stars=field_stars, seed=3)
        target = synthetic_star_field(
            stars=[(x + 3, y - 2, amp) for x, y, amp in field_stars], seed=4
        )

        result = align_frame(ref.ravel(), target.ravel(), 200, 200, "translation")

        assert result.transform.matched_stars == len(field_stars)
        assert result.transform.translation == pytest.approx((3.0, -2.0), abs=0.25)
