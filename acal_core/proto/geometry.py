"""
Point3D value type.

Immutable (x, y, z) coordinate. Units (pixels vs meters) are contextual and
never embedded in the type; the calibration core itself only works in
real-world meters.
"""

from dataclasses import dataclass
from typing import Iterable, Tuple
import math


@dataclass(frozen=True)
class Point3D:
    """
    Immutable 3D coordinate.

    Attributes:
        x: X coordinate
        y: Y coordinate
        z: Z coordinate (defaults to 0 for planar work)
    """

    x: float
    y: float
    z: float = 0.0

    def __add__(self, other: "Point3D") -> "Point3D":
        return Point3D(self.x + other.x, self.y + other.y, self.z + other.z)

    def __sub__(self, other: "Point3D") -> "Point3D":
        return Point3D(self.x - other.x, self.y - other.y, self.z - other.z)

    def __mul__(self, scalar: float) -> "Point3D":
        return Point3D(self.x * scalar, self.y * scalar, self.z * scalar)

    __rmul__ = __mul__

    def distance_to(self, other: "Point3D") -> float:
        """Euclidean 3D distance."""
        return math.sqrt(
            (self.x - other.x) ** 2 + (self.y - other.y) ** 2 + (self.z - other.z) ** 2
        )

    def distance_2d_to(self, other: "Point3D") -> float:
        """Horizontal (x, y) distance."""
        return math.hypot(self.x - other.x, self.y - other.y)

    @property
    def is_finite(self) -> bool:
        """True if no component is NaN or infinite."""
        return all(math.isfinite(v) for v in (self.x, self.y, self.z))

    def as_tuple(self) -> Tuple[float, float, float]:
        return (self.x, self.y, self.z)

    def to_dict(self) -> dict:
        return {'x': self.x, 'y': self.y, 'z': self.z}

    @classmethod
    def from_dict(cls, data: dict) -> "Point3D":
        return cls(float(data['x']), float(data['y']), float(data.get('z', 0.0)))

    @classmethod
    def zero(cls) -> "Point3D":
        return cls(0.0, 0.0, 0.0)


def centroid(points: Iterable[Point3D]) -> Point3D:
    """
    Arithmetic mean of a collection of points.

    Args:
        points: Non-empty iterable of Point3D

    Returns:
        Centroid point

    Raises:
        ValueError: If points is empty
    """
    pts = list(points)
    if not pts:
        raise ValueError("Cannot compute centroid of empty point set")

    n = float(len(pts))
    return Point3D(
        sum(p.x for p in pts) / n,
        sum(p.y for p in pts) / n,
        sum(p.z for p in pts) / n,
    )
