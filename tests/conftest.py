"""
Pytest configuration and shared fixtures for the antenna calibration tests.

This module provides reusable fixtures for reference layouts, synthetic
observation generation, and metrics isolation.
"""

import sys
import math
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np
import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from acal_core.metrics import reset_metrics
from acal_core.proto import ObservationPoint, Point3D, SignalQuality


# =============================================================================
# Metrics Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Give every test its own global metrics collector."""
    reset_metrics()
    yield
    reset_metrics()


# =============================================================================
# Reference Layout Fixtures
# =============================================================================


@pytest.fixture
def reference_triangle() -> List[Point3D]:
    """
    Three non-collinear reference positions (m).

    Returns:
        [(1, 1), (2, 1), (1.5, 2)]
    """
    return [Point3D(1.0, 1.0), Point3D(2.0, 1.0), Point3D(1.5, 2.0)]


@pytest.fixture
def tag_layout() -> dict:
    """
    Known tag floor positions used by the auto-calibration tests.

    Matches the default TAG_CONFIG.csv layout.
    """
    return {
        "Tag 1": Point3D(14.090, 18.134),
        "Tag 2": Point3D(15.260, 18.090),
        "Tag 3": Point3D(14.592, 16.592),
    }


# =============================================================================
# Observation Generators
# =============================================================================


@pytest.fixture
def good_quality() -> SignalQuality:
    """Strong line-of-sight signal."""
    return SignalQuality(strength=0.9, is_line_of_sight=True, confidence_level=0.9, error_estimate=0.1)


@pytest.fixture
def make_observation(good_quality: SignalQuality) -> Callable[..., ObservationPoint]:
    """
    Factory for single observations.

    Usage:
        obs = make_observation("antenna1", Point3D(1, 1), strength=0.2)
    """

    def _make(
        antenna_id: str,
        position: Point3D,
        strength: Optional[float] = None,
        line_of_sight: bool = True,
        confidence: Optional[float] = None,
        error_estimate: float = 0.1,
        rssi: float = -60.0,
        timestamp: float = 0.0,
    ) -> ObservationPoint:
        quality = SignalQuality(
            strength=good_quality.strength if strength is None else strength,
            is_line_of_sight=line_of_sight,
            confidence_level=good_quality.confidence_level if confidence is None else confidence,
            error_estimate=error_estimate,
        )
        return ObservationPoint(
            antenna_id=antenna_id,
            position=position,
            timestamp=timestamp,
            quality=quality,
            rssi=rssi,
        )

    return _make


@pytest.fixture
def rng() -> np.random.Generator:
    """Seeded generator so noisy tests are deterministic."""
    return np.random.default_rng(20240611)


@pytest.fixture
def noisy_cluster(make_observation, rng) -> Callable[..., List[ObservationPoint]]:
    """
    Factory for a cluster of noisy observations around a center.

    Each coordinate is offset by a uniform draw in [-spread, spread], so
    every sample stays within spread * sqrt(2) of the center horizontally.

    Usage:
        samples = noisy_cluster("antenna1", Point3D(1, 1), count=10, spread=0.1)
    """

    def _cluster(
        antenna_id: str,
        center: Point3D,
        count: int = 10,
        spread: float = 0.1,
        start_time: float = 0.0,
        **quality_kwargs,
    ) -> List[ObservationPoint]:
        offsets = rng.uniform(-spread, spread, size=(count, 2))
        return [
            make_observation(
                antenna_id,
                Point3D(center.x + float(dx), center.y + float(dy), center.z),
                timestamp=start_time + i * 0.1,
                **quality_kwargs,
            )
            for i, (dx, dy) in enumerate(offsets)
        ]

    return _cluster


# =============================================================================
# Helper Functions
# =============================================================================


def rotate_scale_translate(point: Point3D, angle_deg: float, scale: float, offset: Point3D) -> Point3D:
    """
    Apply a similarity transform to a point.

    Args:
        point: Source point
        angle_deg: Rotation (degrees, CCW)
        scale: Uniform scale
        offset: Translation

    Returns:
        Transformed point (z unchanged)
    """
    theta = math.radians(angle_deg)
    cos_t, sin_t = math.cos(theta), math.sin(theta)
    return Point3D(
        scale * (cos_t * point.x - sin_t * point.y) + offset.x,
        scale * (sin_t * point.x + cos_t * point.y) + offset.y,
        point.z,
    )


@pytest.fixture
def similarity() -> Callable[[Point3D, float, float, Point3D], Point3D]:
    """Expose rotate_scale_translate to tests as a fixture."""
    return rotate_scale_translate
