"""
Calibration message schemas.

Correspondence pairs fed to the estimators, the fitted affine matrix, the
per-antenna calibration result, and the records persisted through the
calibration repository.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import math
import time
import uuid

from acal_core.errors import SingularTransformError

from .geometry import Point3D


# Absolute determinant below which a 2x2 linear part is treated as singular
DETERMINANT_EPSILON = 1e-10


def polar_angle_deg(a: float, b: float, c: float, d: float) -> float:
    """
    Angle of the rotation closest to the linear part [[a, b], [c, d]].

    Maximizes trace(R^T M) over proper rotations, so shear and reflection
    do not bias the result toward either column.
    """
    return math.degrees(math.atan2(c - b, a + d))


@dataclass(frozen=True)
class CalibrationPoint:
    """
    Reference/measured correspondence for one antenna.

    Attributes:
        reference_position: Known real-world position (m)
        measured_position: Position reported by the antenna (m, antenna frame)
        antenna_id: Antenna this pair belongs to
        point_index: Ordinal index within the antenna's set
    """

    reference_position: Point3D
    measured_position: Point3D
    antenna_id: str
    point_index: int = 0

    @property
    def error(self) -> float:
        """Distance between reference and measured position (m)."""
        return self.reference_position.distance_to(self.measured_position)


@dataclass(frozen=True)
class MapCalibrationPoint:
    """
    Map/real-world correspondence for one antenna.

    Attributes:
        map_coordinate: Source coordinate (map or antenna frame)
        real_world_coordinate: Target real-world coordinate (m)
        antenna_id: Antenna this pair belongs to
        point_index: Ordinal index within the antenna's set
    """

    map_coordinate: Point3D
    real_world_coordinate: Point3D
    antenna_id: str
    point_index: int = 0


@dataclass(frozen=True)
class AffineTransformMatrix:
    """
    2D affine transform with an independent linear z mapping.

        | x' |   | a  b | | x |   | tx |
        | y' | = | c  d | | y | + | ty |
        z' = scale_z * z + translate_z

    Attributes:
        a, b, c, d: Linear part
        tx, ty: Translation (m)
        scale_z: Z scale
        translate_z: Z offset (m)
        accuracy: Maximum residual distance over the fitted pairs (m)
        rmse: Root-mean-square residual over the fitted pairs (m)
    """

    a: float
    b: float
    c: float
    d: float
    tx: float
    ty: float
    scale_z: float = 1.0
    translate_z: float = 0.0
    accuracy: float = 0.0
    rmse: float = 0.0

    @property
    def determinant(self) -> float:
        return self.a * self.d - self.b * self.c

    @property
    def is_valid(self) -> bool:
        """Finite coefficients and an invertible linear part."""
        values = (self.a, self.b, self.c, self.d, self.tx, self.ty, self.scale_z, self.translate_z)
        return all(math.isfinite(v) for v in values) and abs(self.determinant) > DETERMINANT_EPSILON

    @property
    def rotation_deg(self) -> float:
        """Rotation of the closest proper rotation to the linear part (degrees)."""
        return polar_angle_deg(self.a, self.b, self.c, self.d)

    @property
    def scale_factors(self) -> Tuple[float, float]:
        """Column norms of the linear part (sx, sy)."""
        return (math.hypot(self.a, self.c), math.hypot(self.b, self.d))

    def apply(self, point: Point3D) -> Point3D:
        """Forward application. Pure; never raises."""
        return Point3D(
            self.a * point.x + self.b * point.y + self.tx,
            self.c * point.x + self.d * point.y + self.ty,
            self.scale_z * point.z + self.translate_z,
        )

    def inverse(self) -> "AffineTransformMatrix":
        """
        Compute the inverse transform.

        Returns:
            AffineTransformMatrix mapping target coordinates back to source

        Raises:
            SingularTransformError: If |det| is below DETERMINANT_EPSILON
        """
        det = self.determinant
        if not math.isfinite(det) or abs(det) < DETERMINANT_EPSILON:
            raise SingularTransformError(det)

        inv_a = self.d / det
        inv_b = -self.b / det
        inv_c = -self.c / det
        inv_d = self.a / det

        # z mapping degenerates to identity when scale_z collapses
        if abs(self.scale_z) > DETERMINANT_EPSILON:
            inv_sz = 1.0 / self.scale_z
            inv_tz = -self.translate_z / self.scale_z
        else:
            inv_sz, inv_tz = 1.0, 0.0

        return AffineTransformMatrix(
            a=inv_a,
            b=inv_b,
            c=inv_c,
            d=inv_d,
            tx=-(inv_a * self.tx + inv_b * self.ty),
            ty=-(inv_c * self.tx + inv_d * self.ty),
            scale_z=inv_sz,
            translate_z=inv_tz,
            accuracy=self.accuracy,
            rmse=self.rmse,
        )

    def describe(self) -> str:
        """Multi-line human-readable matrix description."""
        sx, sy = self.scale_factors
        return (
            f"[{self.a:.6f} {self.b:.6f} | {self.tx:.3f}]\n"
            f"[{self.c:.6f} {self.d:.6f} | {self.ty:.3f}]\n"
            f"z' = {self.scale_z:.6f} * z + {self.translate_z:.3f}\n"
            f"rotation={self.rotation_deg:.2f}deg scale=({sx:.4f}, {sy:.4f}) "
            f"det={self.determinant:.6f} accuracy={self.accuracy:.4f}m"
        )

    def to_dict(self) -> dict:
        return {
            'a': self.a, 'b': self.b, 'c': self.c, 'd': self.d,
            'tx': self.tx, 'ty': self.ty,
            'scale_z': self.scale_z, 'translate_z': self.translate_z,
            'accuracy': self.accuracy, 'rmse': self.rmse,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AffineTransformMatrix":
        return cls(**{k: float(v) for k, v in data.items()})

    @classmethod
    def identity(cls) -> "AffineTransformMatrix":
        return cls(a=1.0, b=0.0, c=0.0, d=1.0, tx=0.0, ty=0.0)


@dataclass(frozen=True)
class CalibrationResult:
    """
    Per-antenna calibration output, produced once per run.

    Attributes:
        antenna_id: Calibrated antenna
        success: True if a valid fit was produced
        position: Antenna position in real-world frame (m)
        rotation_deg: Antenna rotation (degrees, CCW from +x)
        rmse: Root-mean-square residual of the fit (m)
        scale_factors: Column norms (sx, sy) of the linear part
        error_message: Failure reason when success is False
        transform: Fitted transform (None on failure)
        num_correspondences: Pairs used for the fit
        timestamp: Creation time
    """

    antenna_id: str
    success: bool
    position: Optional[Point3D] = None
    rotation_deg: float = 0.0
    rmse: float = 0.0
    scale_factors: Tuple[float, float] = (1.0, 1.0)
    error_message: Optional[str] = None
    transform: Optional[AffineTransformMatrix] = None
    num_correspondences: int = 0
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def failure(cls, antenna_id: str, message: str, num_correspondences: int = 0) -> "CalibrationResult":
        """Build a failed result carrying the reason."""
        return cls(
            antenna_id=antenna_id,
            success=False,
            error_message=message,
            num_correspondences=num_correspondences,
        )

    def to_dict(self) -> dict:
        return {
            'antenna_id': self.antenna_id,
            'success': self.success,
            'position': self.position.to_dict() if self.position else None,
            'rotation_deg': self.rotation_deg,
            'rmse': self.rmse,
            'scale_factors': list(self.scale_factors),
            'error_message': self.error_message,
            'transform': self.transform.to_dict() if self.transform else None,
            'num_correspondences': self.num_correspondences,
            'timestamp': self.timestamp,
        }


# =============================================================================
# Persisted records
# =============================================================================


@dataclass
class CalibrationData:
    """Reference/measured calibration set for one antenna."""

    antenna_id: str
    calibration_points: List[CalibrationPoint] = field(default_factory=list)
    transform: Optional[AffineTransformMatrix] = None
    is_active: bool = True
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def is_calibrated(self) -> bool:
        return self.transform is not None and self.transform.is_valid


@dataclass
class MapCalibrationData:
    """Map-based calibration set for one antenna on one floor map."""

    antenna_id: str
    floor_map_id: str
    calibration_points: List[MapCalibrationPoint] = field(default_factory=list)
    affine_transform: Optional[AffineTransformMatrix] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def is_calibrated(self) -> bool:
        return self.affine_transform is not None and self.affine_transform.is_valid


@dataclass
class AntennaPositionData:
    """
    Definitive antenna pose on a floor map.

    Attributes:
        antenna_id: Antenna identifier
        antenna_name: Display name
        position: Real-world position (m)
        rotation_deg: Orientation (degrees)
        floor_map_id: Floor map the pose belongs to
        calibrated_at: Time the pose was committed
        id: Record id
    """

    antenna_id: str
    antenna_name: str
    position: Point3D
    rotation_deg: float = 0.0
    floor_map_id: str = ""
    calibrated_at: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class FloorMapInfo:
    """
    Floor-map descriptor used at the UI boundary.

    The calibration core works only in real-world meters; pixel conversion
    takes the canvas size as an argument and never assumes one. Pixel y
    grows downward while real-world y grows upward.
    """

    id: str
    name: str
    width_m: float
    depth_m: float

    def __post_init__(self):
        if self.width_m <= 0 or self.depth_m <= 0:
            raise ValueError(
                f"Floor map dimensions must be positive: {self.width_m} x {self.depth_m}"
            )

    def pixel_to_real(self, pixel: Point3D, canvas_width_px: float, canvas_height_px: float) -> Point3D:
        """Convert a canvas pixel coordinate to real-world meters."""
        return Point3D(
            pixel.x / canvas_width_px * self.width_m,
            (1.0 - pixel.y / canvas_height_px) * self.depth_m,
            pixel.z,
        )

    def real_to_pixel(self, point: Point3D, canvas_width_px: float, canvas_height_px: float) -> Point3D:
        """Convert real-world meters to a canvas pixel coordinate."""
        return Point3D(
            point.x / self.width_m * canvas_width_px,
            (1.0 - point.y / self.depth_m) * canvas_height_px,
            point.z,
        )
