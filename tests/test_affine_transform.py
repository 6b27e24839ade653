"""
Unit tests for the affine transform estimator.

Tests cover:
- Exact fit from three correspondences
- Least-squares fit from noisy over-determined sets
- Insufficient, non-finite and collinear inputs
- Inverse mapping and singular transforms
- Z regression
- Metrics recorded per fit
"""

import math

import numpy as np
import pytest

from acal_core.calibration.affine_transform import (
    AffineFitConfig,
    AffineTransformEstimator,
    create_default_estimator,
    is_collinear,
    reject_duplicates,
)
from acal_core.errors import (
    DegenerateConfigurationError,
    DuplicatePointError,
    GeometryError,
    InputError,
    InsufficientPointsError,
    SingularTransformError,
)
from acal_core.metrics import get_metrics
from acal_core.proto import AffineTransformMatrix, MapCalibrationPoint, Point3D


def make_pairs(sources, targets, antenna_id="antenna1"):
    return [
        MapCalibrationPoint(map_coordinate=s, real_world_coordinate=t, antenna_id=antenna_id, point_index=i)
        for i, (s, t) in enumerate(zip(sources, targets))
    ]


# =============================================================================
# Exact and least-squares fits
# =============================================================================


class TestAffineFit:
    """Tests for fitting accuracy."""

    def test_three_points_exact(self, similarity):
        """Three non-collinear pairs determine the transform exactly."""
        sources = [Point3D(0, 0), Point3D(4, 0), Point3D(0, 3)]
        targets = [similarity(p, 30.0, 1.5, Point3D(10, 5)) for p in sources]

        estimator = create_default_estimator()
        transform = estimator.fit(make_pairs(sources, targets))

        residuals = estimator.calculate_residuals(make_pairs(sources, targets), transform)
        assert max(residuals) < 1e-6
        assert transform.accuracy < 1e-6
        assert transform.rotation_deg == pytest.approx(30.0, abs=1e-6)
        assert transform.scale_factors == pytest.approx((1.5, 1.5))
        assert transform.tx == pytest.approx(10.0)
        assert transform.ty == pytest.approx(5.0)

    def test_noisy_overdetermined_round_trip(self, similarity, rng):
        """Noisy pairs fit within noise; forward then inverse recovers sources."""
        sources = [Point3D(float(x), float(y)) for x, y in rng.uniform(0, 10, size=(8, 2))]
        targets = [
            similarity(p, -45.0, 1.0, Point3D(2, 3)) + Point3D(*rng.normal(0, 0.01, size=2))
            for p in sources
        ]

        estimator = AffineTransformEstimator()
        transform = estimator.fit(make_pairs(sources, targets))

        assert transform.rmse < 0.05
        assert transform.accuracy >= transform.rmse
        assert transform.rotation_deg == pytest.approx(-45.0, abs=1.0)

        point = Point3D(5.0, 5.0)
        back = estimator.real_world_to_map(estimator.map_to_real_world(point, transform), transform)
        assert back.x == pytest.approx(point.x, abs=1e-9)
        assert back.y == pytest.approx(point.y, abs=1e-9)

    def test_general_affine_with_shear(self):
        """A non-similarity affine (shear + anisotropic scale) is recovered."""
        truth = AffineTransformMatrix(a=2.0, b=0.5, c=-0.3, d=1.2, tx=-4.0, ty=7.0)
        sources = [Point3D(0, 0), Point3D(1, 0), Point3D(0, 1), Point3D(3, 2)]
        targets = [truth.apply(p) for p in sources]

        transform = AffineTransformEstimator().fit(make_pairs(sources, targets))

        for name in ('a', 'b', 'c', 'd', 'tx', 'ty'):
            assert getattr(transform, name) == pytest.approx(getattr(truth, name), abs=1e-9)

    def test_z_regression(self):
        """Heights map through an independent scale and offset."""
        sources = [Point3D(0, 0, 0.0), Point3D(4, 0, 1.0), Point3D(0, 3, 2.0)]
        targets = [Point3D(p.x, p.y, 2.0 * p.z + 0.5) for p in sources]

        transform = AffineTransformEstimator().fit(make_pairs(sources, targets))

        assert transform.scale_z == pytest.approx(2.0)
        assert transform.translate_z == pytest.approx(0.5)

    def test_constant_height_offset_only(self):
        sources = [Point3D(0, 0, 1.0), Point3D(4, 0, 1.0), Point3D(0, 3, 1.0)]
        targets = [Point3D(p.x, p.y, 2.5) for p in sources]

        transform = AffineTransformEstimator().fit(make_pairs(sources, targets))

        assert transform.scale_z == 1.0
        assert transform.translate_z == pytest.approx(1.5)


# =============================================================================
# Failure modes
# =============================================================================


class TestAffineFitFailures:
    """Tests for deterministic failures."""

    @pytest.mark.parametrize("count", [0, 1, 2])
    def test_insufficient_points(self, count):
        sources = [Point3D(0, 0), Point3D(1, 0)][:count]
        targets = [Point3D(5, 5), Point3D(6, 5)][:count]

        with pytest.raises(InsufficientPointsError) as excinfo:
            AffineTransformEstimator().fit(make_pairs(sources, targets))

        assert isinstance(excinfo.value, InputError)
        assert excinfo.value.required == 3
        assert excinfo.value.provided == count

    def test_nan_rejected(self):
        sources = [Point3D(0, 0), Point3D(1, 0), Point3D(float('nan'), 1)]
        targets = [Point3D(0, 0), Point3D(1, 0), Point3D(0, 1)]

        with pytest.raises(InputError, match="NaN"):
            AffineTransformEstimator().fit(make_pairs(sources, targets))

    def test_collinear_sources(self):
        sources = [Point3D(0, 0), Point3D(1, 1), Point3D(2, 2), Point3D(3, 3)]
        targets = [Point3D(0, 0), Point3D(1, 0), Point3D(0, 1), Point3D(2, 3)]

        with pytest.raises(GeometryError, match="Map coordinates are collinear"):
            AffineTransformEstimator().fit(make_pairs(sources, targets))

    def test_collinear_targets(self):
        sources = [Point3D(0, 0), Point3D(1, 0), Point3D(0, 1)]
        targets = [Point3D(0, 0), Point3D(1, 0), Point3D(2, 0)]

        with pytest.raises(DegenerateConfigurationError, match="Real-world coordinates are collinear"):
            AffineTransformEstimator().fit(make_pairs(sources, targets))

    def test_coincident_sources(self):
        sources = [Point3D(1, 1)] * 3
        targets = [Point3D(0, 0), Point3D(1, 0), Point3D(0, 1)]

        with pytest.raises(GeometryError):
            AffineTransformEstimator().fit(make_pairs(sources, targets))

    def test_inverse_of_singular_transform(self):
        singular = AffineTransformMatrix(a=1, b=1, c=1, d=1, tx=0, ty=0)

        with pytest.raises(SingularTransformError):
            AffineTransformEstimator.real_world_to_map(Point3D(1, 1), singular)

    def test_forward_map_never_raises(self):
        singular = AffineTransformMatrix(a=0, b=0, c=0, d=0, tx=1, ty=2)

        assert AffineTransformEstimator.map_to_real_world(Point3D(5, 5), singular) == Point3D(1, 2, 0)

    def test_config_validation(self):
        with pytest.raises(ValueError):
            AffineFitConfig(min_points=2)


# =============================================================================
# Helpers and metrics
# =============================================================================


class TestGeometryHelpers:
    """Tests for collinearity and duplicate checks."""

    def test_is_collinear(self):
        assert is_collinear(np.array([[0, 0], [1, 2], [2, 4]], dtype=float))
        assert not is_collinear(np.array([[0, 0], [1, 0], [0, 1]], dtype=float))
        assert is_collinear(np.array([[0, 0], [1, 0]], dtype=float))

    def test_reject_duplicates(self):
        reject_duplicates([Point3D(0, 0), Point3D(1, 0)])

        with pytest.raises(DuplicatePointError) as excinfo:
            reject_duplicates([Point3D(0, 0), Point3D(1, 0), Point3D(0, 0)])

        assert excinfo.value.details['first_index'] == 0
        assert excinfo.value.details['second_index'] == 2


class TestAffineMetrics:
    """Fits and failures are counted."""

    def test_fit_counters(self):
        estimator = AffineTransformEstimator()
        sources = [Point3D(0, 0), Point3D(1, 0), Point3D(0, 1)]

        estimator.fit(make_pairs(sources, sources))
        with pytest.raises(InputError):
            estimator.fit(make_pairs(sources[:2], sources[:2]))

        metrics = get_metrics()
        assert metrics.get_counter('affine_fits') == 1
        assert metrics.get_counter('affine_fit_failures') == 1
        assert metrics.get_histogram_stats('affine_fit_accuracy_m')['count'] == 1

    def test_identity_fit_is_exact(self):
        sources = [Point3D(0, 0), Point3D(1, 0), Point3D(0, 1)]

        transform = AffineTransformEstimator().fit(make_pairs(sources, sources))

        assert transform.a == pytest.approx(1.0)
        assert transform.d == pytest.approx(1.0)
        assert math.isclose(transform.accuracy, 0.0, abs_tol=1e-9)
