"""
Antenna pose estimation from tag correspondences.

Given the mean measured tag position in the antenna's local frame (source)
and the true tag position on the floor (target), fit the full 2D affine

    target ~= A * source + t

by least squares over the stacked 2N x 6 system, then decompose A:

- rotation: the proper rotation closest to A, angle = atan2(A21 - A12, A11 + A22),
  shared with AffineTransformMatrix.rotation_deg
- scale: column norms of A (sx, sy)
- position: t (the antenna origin expressed in floor coordinates)
- rmse: root-mean-square residual distance over the tags
"""

import logging
import math
from dataclasses import dataclass, field
from itertools import combinations
from typing import Sequence, Tuple
import numpy as np

from acal_core.errors import (
    DegenerateConfigurationError,
    InputError,
    InsufficientPointsError,
)
from acal_core.metrics import get_metrics
from acal_core.proto.calibration import (
    AffineTransformMatrix,
    DETERMINANT_EPSILON,
    polar_angle_deg,
)
from acal_core.proto.geometry import Point3D


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AntennaPose:
    """
    Fitted antenna pose.

    Attributes:
        position: Antenna origin in floor coordinates (m)
        rotation_deg: Rotation of the antenna frame (degrees, CCW)
        scale_factors: (sx, sy) column norms of the linear part
        rmse: Root-mean-square residual (m)
        transform: Full fitted affine transform
        residuals: Residual distance per correspondence (m)
    """

    position: Point3D
    rotation_deg: float
    scale_factors: Tuple[float, float]
    rmse: float
    transform: AffineTransformMatrix
    residuals: Tuple[float, ...] = field(default_factory=tuple)

    @property
    def rotation_rad(self) -> float:
        return math.radians(self.rotation_deg)

    @property
    def num_correspondences(self) -> int:
        return len(self.residuals)


def max_cross_product(points: np.ndarray) -> float:
    """
    Largest |cross product| over all point triplets.

    Equals twice the area of the largest triangle the layout contains; a
    collinear layout scores ~0.
    """
    best = 0.0
    for i, j, k in combinations(range(len(points)), 3):
        v1 = points[j] - points[i]
        v2 = points[k] - points[i]
        best = max(best, abs(v1[0] * v2[1] - v1[1] * v2[0]))
    return best


def polar_rotation(linear: np.ndarray) -> Tuple[np.ndarray, float]:
    """
    Closest rotation to a 2x2 matrix.

    Args:
        linear: 2x2 linear part

    Returns:
        (R, angle_deg) with det(R) = +1
    """
    angle = polar_angle_deg(
        float(linear[0, 0]), float(linear[0, 1]), float(linear[1, 0]), float(linear[1, 1])
    )
    theta = math.radians(angle)
    rotation = np.array([[math.cos(theta), -math.sin(theta)], [math.sin(theta), math.cos(theta)]])
    return rotation, angle


def fit_antenna_pose(
    sources: Sequence[Point3D],
    targets: Sequence[Point3D],
    collinearity_threshold: float = 0.01,
) -> AntennaPose:
    """
    Fit an antenna pose from measured/true tag position pairs.

    Pure and thread-safe.

    Args:
        sources: Mean measured tag positions (antenna frame, m)
        targets: True tag positions (floor frame, m)
        collinearity_threshold: Minimum largest |cross product| (m^2) a
            layout must reach to count as non-collinear

    Returns:
        AntennaPose

    Raises:
        InputError: Mismatched lengths or non-finite coordinates
        InsufficientPointsError: Fewer than 3 pairs
        DegenerateConfigurationError: Collinear layout or singular fit
    """
    if len(sources) != len(targets):
        raise InputError(
            "Measured and true position counts differ",
            {'measured': len(sources), 'true': len(targets)},
        )

    n = len(sources)
    if n < 3:
        raise InsufficientPointsError(required=3, provided=n, context="tag correspondences")

    if not all(p.is_finite for p in list(sources) + list(targets)):
        raise InputError("Tag correspondence contains NaN or infinite coordinate")

    src = np.array([[p.x, p.y] for p in sources], dtype=float)
    dst = np.array([[p.x, p.y] for p in targets], dtype=float)

    # Check 1: measured layout
    cross = max_cross_product(src)
    if cross < collinearity_threshold:
        raise DegenerateConfigurationError(
            "Measured tag positions are collinear; place tags at non-collinear positions",
            {'cross_product': round(cross, 6), 'threshold': collinearity_threshold},
        )

    # Check 2: true layout
    cross = max_cross_product(dst)
    if cross < collinearity_threshold:
        raise DegenerateConfigurationError(
            "True tag positions are collinear; place tags at non-collinear positions",
            {'cross_product': round(cross, 6), 'threshold': collinearity_threshold},
        )

    # Stacked system, unknowns [a11, a12, a21, a22, tx, ty]
    design = np.zeros((2 * n, 6))
    design[0::2, 0] = src[:, 0]
    design[0::2, 1] = src[:, 1]
    design[0::2, 4] = 1.0
    design[1::2, 2] = src[:, 0]
    design[1::2, 3] = src[:, 1]
    design[1::2, 5] = 1.0
    rhs = dst.reshape(-1)

    params, _, rank, _ = np.linalg.lstsq(design, rhs, rcond=None)
    if rank < 6:
        raise DegenerateConfigurationError(
            "Tag correspondence system is rank deficient", {'rank': int(rank)}
        )

    linear = params[:4].reshape(2, 2)
    translation = params[4:]

    det = float(np.linalg.det(linear))
    if abs(det) < DETERMINANT_EPSILON:
        raise DegenerateConfigurationError("Fitted transform is singular", {'determinant': det})

    _, angle_deg = polar_rotation(linear)
    scale = np.linalg.norm(linear, axis=0)

    predicted = src @ linear.T + translation
    residuals = np.linalg.norm(predicted - dst, axis=1)
    rmse = float(np.sqrt(np.mean(residuals ** 2)))

    transform = AffineTransformMatrix(
        a=float(linear[0, 0]), b=float(linear[0, 1]),
        c=float(linear[1, 0]), d=float(linear[1, 1]),
        tx=float(translation[0]), ty=float(translation[1]),
        accuracy=float(np.max(residuals)),
        rmse=rmse,
    )

    return AntennaPose(
        position=Point3D(float(translation[0]), float(translation[1]), 0.0),
        rotation_deg=angle_deg,
        scale_factors=(float(scale[0]), float(scale[1])),
        rmse=rmse,
        transform=transform,
        residuals=tuple(float(r) for r in residuals),
    )


class AntennaPoseEstimator:
    """
    Pose fitting with metrics and logging.

    Usage:
        estimator = AntennaPoseEstimator()
        pose = estimator.estimate(measured_means, true_positions, antenna_id="antenna1")
    """

    def __init__(self, collinearity_threshold: float = 0.01):
        if collinearity_threshold <= 0:
            raise ValueError("collinearity_threshold must be positive")
        self.collinearity_threshold = collinearity_threshold
        self.metrics = get_metrics()

    def estimate(
        self,
        sources: Sequence[Point3D],
        targets: Sequence[Point3D],
        antenna_id: str = "",
    ) -> AntennaPose:
        try:
            pose = fit_antenna_pose(sources, targets, self.collinearity_threshold)
        except (InputError, DegenerateConfigurationError):
            self.metrics.increment('pose_fit_failures')
            raise

        self.metrics.increment('pose_fits')
        self.metrics.record_histogram('antenna_pose_rmse_m', pose.rmse)
        logger.info(
            "Antenna %s pose: position=(%.3f, %.3f) rotation=%.2fdeg "
            "scale=(%.3f, %.3f) rmse=%.4fm tags=%d",
            antenna_id or "?", pose.position.x, pose.position.y, pose.rotation_deg,
            pose.scale_factors[0], pose.scale_factors[1], pose.rmse, len(sources),
        )
        return pose
