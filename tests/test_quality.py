"""
Tests for the quality module.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import asyncio

import numpy as np
import pytest

import astroreg.quality as quality
from astroreg.config import QualityOptions, ScoringWeights
from astroreg.detection import BackgroundModel, DetectedStar
from astroreg.quality import (
    FrameBuffer,
    FrameQualityMetrics,
    compute_score,
    evaluate_frame_quality,
    evaluate_frame_quality_async,
    evaluate_frames_batch,
    evaluate_frames_batch_async,
    quality_to_weights,
    rank_frames,
    select_frames,
)
from astroreg.runtime import AbortSignal, OperationCancelled


def _star(cx, cy, flux, fwhm):
    return DetectedStar(cx=cx, cy=cy, flux=flux, peak=flux, area=3, fwhm=fwhm)


def _metrics(score):
    return FrameQualityMetrics(
        background_median=0.0,
        background_noise=1.0,
        snr=0.0,
        star_count=0,
        median_fwhm=0.0,
        roundness=1.0,
        score=score,
    )


@pytest.fixture
def fixed_background(monkeypatch):
    """Replace the background estimator with a constant model."""
    def _install(value, noise):
        def fake(pixels, width, height, mesh_size=64, sigma_clip_iters=2):
            return BackgroundModel(np.full(width * height, value, dtype=np.float32), noise)

        monkeypatch.setattr(quality, "estimate_background", fake)

    return _install


class TestComputeScore:
    """Tests for the composite score."""

    def test_bounds(self):
        """Scores stay within [0, 100]."""
        assert 0 <= compute_score(0, 0.0, 0.0, 1.0) <= 100
        assert compute_score(1000, 1.5, 1e6, 1.0) == 100

    def test_no_stars(self):
        """Without stars only the neutral FWHM and roundness terms count."""
        # 50 * 0.4 + 100 * 0.15 = 35
        assert compute_score(0, 0.0, 0.0, 1.0) == 35

    def test_weights_are_normalized(self):
        """Weights are rescaled to sum to one."""
        doubled = ScoringWeights(fwhm=0.8, snr=0.6, star_count=0.3, roundness=0.3)
        assert compute_score(20, 3.0, 50.0, 0.9, doubled) == compute_score(20, 3.0, 50.0, 0.9)


class TestEvaluateFrameQuality:
    """Tests for single-frame evaluation."""

    def test_star_metrics(self, fixed_background):
        """Metrics derive from the background model and the star list."""
        fixed_background(10.0, 2.0)
        stars = [
            _star(1, 1, 30, 2.0),
            _star(2, 2, 40, 2.5),
            _star(3, 2, 50, 3.0),
            _star(3, 3, 35, 3.2),
            _star(4, 3, 45, 2.8),
        ]
        options = QualityOptions(detector=lambda *args: stars)

        metrics = evaluate_frame_quality(np.array([1, 2, 3, 4], dtype=np.float32), 2, 2, options)

        assert metrics.background_median == 10
        assert metrics.background_noise == 2
        assert metrics.star_count == 5
        assert metrics.median_fwhm == 2.8
        assert metrics.snr == 20
        assert 0 < metrics.roundness <= 1
        assert 0 < metrics.score <= 100

    def test_no_stars(self, fixed_background):
        """Zero stars gives neutral FWHM, SNR and roundness."""
        fixed_background(1.0, 0.0)
        options = QualityOptions(detector=lambda *args: [])

        metrics = evaluate_frame_quality(np.ones(4, dtype=np.float32), 2, 2, options)

        assert metrics.star_count == 0
        assert metrics.median_fwhm == 0
        assert metrics.snr == 0
        assert metrics.roundness == 1

    def test_stars_override(self, fixed_background):
        """Supplied stars skip detection."""
        fixed_background(0.0, 1.0)

        def detector(*args):
            raise AssertionError("detector must not run")

        options = QualityOptions(stars_override=[_star(1, 1, 10, 2.0)], detector=detector)
        metrics = evaluate_frame_quality(np.zeros(4, dtype=np.float32), 2, 2, options)
        assert metrics.star_count == 1

    def test_size_mismatch(self):
        """Buffers not matching the geometry are rejected."""
        with pytest.raises(ValueError):
            evaluate_frame_quality(np.zeros(5, dtype=np.float32), 2, 2)

    def test_real_detection(self, synthetic_star_field, field_stars):
        """A synthetic field is scored with the default detector."""
        image = synthetic_star_field(stars=field_stars, seed=7)

        metrics = evaluate_frame_quality(image.ravel(), 200, 200)

        assert metrics.star_count == len(field_stars)
        assert metrics.median_fwhm == pytest.approx(2.3548 * 2.0, rel=0.35)
        assert metrics.background_median == pytest.approx(1000, abs=20)
        assert metrics.background_noise == pytest.approx(50, rel=0.2)
        assert 0 < metrics.score <= 100


class TestAsyncEvaluation:
    """Tests for the cooperative evaluation entry points."""

    def test_progress_reporting(self, fixed_background):
        """Progress ends at 1 after the background, detection and score stages."""
        fixed_background(1.0, 2.0)

        async def detector(*args):
            return [_star(1, 1, 20, 2.0), _star(2, 2, 25, 2.4)]

        progress = []
        metrics = asyncio.run(evaluate_frame_quality_async(
            np.arange(4, dtype=np.float32), 2, 2,
            QualityOptions(detector=detector),
            on_progress=lambda p, stage: progress.append((p, stage)),
        ))

        assert metrics.star_count == 2
        assert [stage for _, stage in progress] == ["background", "detect-stars", "score", "done"]
        assert progress[-1][0] == 1

    def test_batch_progress_is_monotonic(self, fixed_background):
        """Batch progress never goes backwards and ends at the frame count."""
        fixed_background(0.0, 1.0)
        calls = []
        frames = [
            FrameBuffer(np.arange(4, dtype=np.float32), 2, 2),
            FrameBuffer(np.arange(4, 8, dtype=np.float32), 2, 2),
        ]

        results = asyncio.run(evaluate_frames_batch_async(
            frames,
            QualityOptions(detector=lambda *args: []),
            on_progress=lambda current, total, stage: calls.append((current, total, stage)),
        ))

        assert len(results) == 2
        assert any(stage == "done-frame" for _, _, stage in calls)
        currents = [c for c, _, _ in calls]
        assert all(b >= a - 1e-9 for a, b in zip(currents, currents[1:]))
        assert currents[-1] >= 2
        assert all(total == 2 for _, total, _ in calls)

    def test_batch_abort(self):
        """An aborted signal cancels the batch."""
        signal = AbortSignal()
        signal.abort()
        with pytest.raises(OperationCancelled):
            asyncio.run(evaluate_frames_batch_async(
                [FrameBuffer(np.zeros(4, dtype=np.float32), 2, 2)], signal=signal
            ))


class TestBatchEvaluation:
    """Tests for sequential batch scoring."""

    def test_progress_callback(self, fixed_background):
        """on_progress receives (current, total) before each frame."""
        fixed_background(0.0, 1.0)
        calls = []
        frames = [
            (np.arange(4, dtype=np.float32), 2, 2),
            FrameBuffer(np.arange(4, 8, dtype=np.float32), 2, 2),
        ]

        results = evaluate_frames_batch(
            frames,
            QualityOptions(detector=lambda *args: []),
            on_progress=lambda current, total: calls.append((current, total)),
            show_progress=False,
        )

        assert len(results) == 2
        assert calls == [(1, 2), (2, 2)]


class TestWeightsAndSelection:
    """Tests for weights, ranking and selection."""

    def test_quality_to_weights(self):
        """Weights are proportional to scores, best frame = 1."""
        assert quality_to_weights([]) == []
        assert quality_to_weights([_metrics(0), _metrics(0)]) == [1, 1]
        assert quality_to_weights([_metrics(50), _metrics(100)]) == [0.5, 1]

    def test_rank_is_stable(self):
        """Equal scores keep their input order."""
        metrics = [_metrics(40), _metrics(80), _metrics(40), _metrics(90)]
        assert rank_frames(metrics) == [3, 1, 0, 2]

    def test_select_keep_fraction(self):
        """The best fraction is kept, the rest rejected."""
        metrics = [_metrics(s) for s in (10, 90, 50, 70, 30)]
        kept, rejected = select_frames(metrics, keep_fraction=0.6)
        assert kept == [1, 3, 2]
        assert rejected == [4, 0]

    def test_select_min_score(self):
        """Frames under min_score are rejected even inside the kept fraction."""
        metrics = [_metrics(s) for s in (10, 90, 50)]
        kept, rejected = select_frames(metrics, keep_fraction=1.0, min_score=40)
        assert kept == [1, 2]
        assert rejected == [0]

    def test_select_keeps_at_least_one(self):
        """A tiny fraction still keeps the best frame."""
        kept, _ = select_frames([_metrics(5), _metrics(6)], keep_fraction=0.01)
        assert kept == [1]

    def test_select_invalid_fraction(self):
        """Fractions outside (0, 1] are rejected."""
        with pytest.raises(ValueError):
            select_frames([_metrics(1)], keep_fraction=0.0)
