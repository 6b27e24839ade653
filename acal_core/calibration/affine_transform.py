"""
Affine Transform Estimator.

Fits the 2D affine mapping from source (map / antenna frame) coordinates to
real-world coordinates from correspondence pairs:

    | x' |   | a  b | | x |   | tx |
    | y' | = | c  d | | y | + | ty |

The six parameters are solved by linear least squares over the design
matrix [x, y, 1] (exact for three pairs, least squares for more). Z is
mapped independently by a 1-D linear regression z' = scale_z * z + translate_z.

Geometry checks, in order:
1. At least three pairs, all coordinates finite (InputError)
2. Source and target layouts are not collinear or coincident (GeometryError)
3. Design matrix has full rank and |det| of the linear part >= epsilon (GeometryError)
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence
import numpy as np

from acal_core.errors import (
    DegenerateConfigurationError,
    DuplicatePointError,
    InputError,
    InsufficientPointsError,
)
from acal_core.metrics import get_metrics
from acal_core.proto.calibration import (
    AffineTransformMatrix,
    MapCalibrationPoint,
    DETERMINANT_EPSILON,
)
from acal_core.proto.geometry import Point3D


logger = logging.getLogger(__name__)


@dataclass
class AffineFitConfig:
    """
    Configuration for affine fitting.

    Attributes:
        min_points: Minimum correspondence pairs (3 determines the 6 parameters)
        determinant_epsilon: |det| below this rejects the fit as singular
        collinearity_tolerance: Ratio of smallest to largest singular value of
            the centered point cloud below which the layout is collinear
    """

    min_points: int = 3
    determinant_epsilon: float = DETERMINANT_EPSILON
    collinearity_tolerance: float = 1e-6

    def __post_init__(self):
        if self.min_points < 3:
            raise ValueError(f"min_points must be >= 3, got {self.min_points}")
        if self.determinant_epsilon <= 0:
            raise ValueError("determinant_epsilon must be positive")
        if self.collinearity_tolerance <= 0:
            raise ValueError("collinearity_tolerance must be positive")


def _as_xy(points: Sequence[Point3D]) -> np.ndarray:
    return np.array([[p.x, p.y] for p in points], dtype=float)


def is_collinear(xy: np.ndarray, tolerance: float = 1e-6) -> bool:
    """
    Check whether 2D points lie on one line (or coincide).

    Uses the singular values of the centered point cloud: a planar spread
    has two significant singular values, a line only one.

    Args:
        xy: (N, 2) array of points
        tolerance: Relative threshold on smallest / largest singular value

    Returns:
        True if the layout cannot determine a 2D affine map
    """
    if len(xy) < 3:
        return True

    centered = xy - xy.mean(axis=0)
    singular_values = np.linalg.svd(centered, compute_uv=False)

    if singular_values[0] <= tolerance:
        # All points coincide
        return True

    return singular_values[-1] <= tolerance * max(1.0, singular_values[0])


def reject_duplicates(points: Sequence[Point3D], tolerance: float = 1e-9):
    """
    Raise if two points share the same (x, y) coordinate.

    Args:
        points: Coordinates to check (typically reference positions)
        tolerance: Distance at which two points count as identical (m)

    Raises:
        DuplicatePointError: On the first duplicate pair found
    """
    for i in range(len(points)):
        for j in range(i + 1, len(points)):
            if points[i].distance_2d_to(points[j]) <= tolerance:
                raise DuplicatePointError(points[i].as_tuple(), i, j)


class AffineTransformEstimator:
    """
    Least-squares affine estimator.

    Pure and thread-safe: no state is kept between fits.

    Usage:
        estimator = AffineTransformEstimator()
        transform = estimator.fit(points)
        real = estimator.map_to_real_world(Point3D(10, 20), transform)
    """

    def __init__(self, config: Optional[AffineFitConfig] = None):
        """
        Initialize estimator.

        Args:
            config: Fit configuration (uses defaults if None)
        """
        self.config = config or AffineFitConfig()
        self.metrics = get_metrics()

    def fit(self, points: Sequence[MapCalibrationPoint]) -> AffineTransformMatrix:
        """
        Fit the affine transform from correspondence pairs.

        Args:
            points: Map/real-world pairs (>= 3, non-collinear)

        Returns:
            AffineTransformMatrix with accuracy (max residual) and rmse

        Raises:
            InsufficientPointsError: Fewer than min_points pairs
            InputError: NaN or infinite coordinate
            DegenerateConfigurationError: Collinear layout or singular fit
        """
        try:
            transform = self._fit(points)
        except (InputError, DegenerateConfigurationError):
            self.metrics.increment('affine_fit_failures')
            raise

        self.metrics.increment('affine_fits')
        self.metrics.record_histogram('affine_fit_accuracy_m', transform.accuracy)
        logger.debug(
            "Affine fit over %d pairs: det=%.6f accuracy=%.4fm",
            len(points), transform.determinant, transform.accuracy,
        )
        return transform

    def _fit(self, points: Sequence[MapCalibrationPoint]) -> AffineTransformMatrix:
        n = len(points)
        if n < self.config.min_points:
            raise InsufficientPointsError(required=self.config.min_points, provided=n)

        for i, p in enumerate(points):
            if not (p.map_coordinate.is_finite and p.real_world_coordinate.is_finite):
                raise InputError(
                    "Correspondence contains NaN or infinite coordinate",
                    {'index': i, 'antenna_id': p.antenna_id},
                )

        src = _as_xy([p.map_coordinate for p in points])
        dst = _as_xy([p.real_world_coordinate for p in points])

        # Check 1: source layout spans the plane
        if is_collinear(src, self.config.collinearity_tolerance):
            raise DegenerateConfigurationError(
                "Map coordinates are collinear; cannot determine affine transform",
                {'points': n},
            )

        # Check 2: target layout spans the plane
        if is_collinear(dst, self.config.collinearity_tolerance):
            raise DegenerateConfigurationError(
                "Real-world coordinates are collinear; cannot determine affine transform",
                {'points': n},
            )

        # Design matrix rows: [x, y, 1]
        design = np.column_stack([src, np.ones(n)])
        params, _, rank, _ = np.linalg.lstsq(design, dst, rcond=None)

        # Check 3: full rank
        if rank < 3:
            raise DegenerateConfigurationError(
                "Correspondence design matrix is rank deficient",
                {'rank': int(rank), 'points': n},
            )

        a, c = params[0]
        b, d = params[1]
        tx, ty = params[2]

        det = a * d - b * c
        # Check 4: invertible linear part
        if abs(det) < self.config.determinant_epsilon:
            raise DegenerateConfigurationError(
                "Fitted transform is singular",
                {'determinant': float(det)},
            )

        scale_z, translate_z = self._fit_z(points)

        transform = AffineTransformMatrix(
            a=float(a), b=float(b), c=float(c), d=float(d),
            tx=float(tx), ty=float(ty),
            scale_z=scale_z, translate_z=translate_z,
        )

        residuals = self.calculate_residuals(points, transform)
        return AffineTransformMatrix(
            **{
                **transform.to_dict(),
                'accuracy': float(np.max(residuals)),
                'rmse': float(np.sqrt(np.mean(np.square(residuals)))),
            }
        )

    def _fit_z(self, points: Sequence[MapCalibrationPoint]):
        """
        Linear regression z' = s * z + t.

        Falls back to a pure offset when source heights do not vary.
        """
        src_z = np.array([p.map_coordinate.z for p in points], dtype=float)
        dst_z = np.array([p.real_world_coordinate.z for p in points], dtype=float)

        src_var = float(np.var(src_z))
        if src_var < 1e-12:
            return 1.0, float(np.mean(dst_z - src_z))

        scale = float(np.mean((src_z - src_z.mean()) * (dst_z - dst_z.mean())) / src_var)
        if abs(scale) < 1e-12:
            return 1.0, float(np.mean(dst_z - src_z))
        return scale, float(dst_z.mean() - scale * src_z.mean())

    @staticmethod
    def calculate_residuals(
        points: Sequence[MapCalibrationPoint],
        transform: AffineTransformMatrix,
    ) -> List[float]:
        """Residual distance (m) of each pair under the transform."""
        return [
            transform.apply(p.map_coordinate).distance_to(p.real_world_coordinate)
            for p in points
        ]

    @staticmethod
    def map_to_real_world(point: Point3D, transform: AffineTransformMatrix) -> Point3D:
        """Forward application. Pure; never raises."""
        return transform.apply(point)

    @staticmethod
    def real_world_to_map(point: Point3D, transform: AffineTransformMatrix) -> Point3D:
        """
        Inverse application.

        Raises:
            SingularTransformError: If the transform is not invertible
        """
        return transform.inverse().apply(point)


def create_default_estimator() -> AffineTransformEstimator:
    """Create estimator with default configuration."""
    return AffineTransformEstimator(AffineFitConfig())
