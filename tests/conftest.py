"""
Pytest configuration and fixtures.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import numpy as np
import pytest

from astroreg.detection import DetectedStar

# Well separated positions used by the registration tests (x, y, amplitude)
FIELD_STARS = [
    (50.0, 60.0, 30000.0),
    (140.0, 45.0, 24000.0),
    (95.0, 120.0, 20000.0),
    (40.0, 150.0, 16000.0),
    (160.0, 155.0, 12000.0),
]


@pytest.fixture
def synthetic_star_field():
    """Create a synthetic star field with Gaussian stars."""
    def _create(height=200, width=200, n_stars=20, background=1000, seed=42,
                stars=None, sigma=2.0, noise=50.0):
        """
        Create a flat-sky frame with 2D Gaussian stars.

        ``stars`` is a list of (x, y, amplitude); random stars are drawn
        when it is None.
        """
        np.random.seed(seed)

        image = np.full((height, width), background, dtype=np.float32)
        image += np.random.normal(0, noise, (height, width)).astype(np.float32)

        if stars is None:
            stars = [
                (np.random.uniform(15, width - 15),
                 np.random.uniform(15, height - 15),
                 np.random.uniform(5000, 50000))
                for _ in range(n_stars)
            ]

        yy, xx = np.mgrid[0:height, 0:width]
        for x0, y0, amplitude in stars:
            image += amplitude * np.exp(-((xx - x0)**2 + (yy - y0)**2) / (2 * sigma**2))

        return np.clip(image, 0, 65535).astype(np.float32)

    return _create


@pytest.fixture
def make_stars():
    """Build DetectedStar lists from (x, y) positions, brightest first."""
    def _create(positions, flux_start=1000.0, flux_step=10.0, fwhm=2.5):
        return [
            DetectedStar(
                cx=float(x),
                cy=float(y),
                flux=flux_start - k * flux_step,
                peak=(flux_start - k * flux_step) / 4,
                area=9.0,
                fwhm=fwhm,
            )
            for k, (x, y) in enumerate(positions)
        ]

    return _create


@pytest.fixture
def star_positions():
    """Twelve spread-out positions with no regular spacing."""
    return [
        (23.0, 31.0), (87.5, 19.0), (151.0, 42.5), (44.0, 95.0),
        (120.5, 88.0), (176.0, 110.0), (15.0, 160.5), (66.0, 142.0),
        (109.0, 171.5), (160.5, 180.0), (95.0, 55.5), (35.5, 60.0),
    ]


@pytest.fixture
def fake_detector():
    """Detector returning canned star lists keyed by the buffer identity."""
    def _create(lists_by_id, calls=None):
        def detector(pixels, width, height, options):
            if calls is not None:
                calls.append(options)
            return list(lists_by_id.get(id(pixels), []))

        return detector

    return _create


@pytest.fixture
def field_stars():
    return list(FIELD_STARS)
