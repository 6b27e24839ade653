"""
Observation message schemas.

Defines UWB observation samples produced by the ranging layer and the
per-antenna recording sessions that group them.

An ObservationPoint's position is derived from the antenna's
distance / elevation / azimuth report via spherical -> Cartesian conversion
in the antenna's local frame.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional
import math
import time
import uuid

from .geometry import Point3D


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def spherical_to_cartesian(
    distance_m: float,
    elevation_deg: float,
    azimuth_deg: float,
) -> Point3D:
    """
    Convert an antenna-local spherical measurement to Cartesian.

    Convention: azimuth measured in the x-y plane from +x toward +y,
    elevation measured up from the x-y plane.

        x = d * cos(el) * cos(az)
        y = d * cos(el) * sin(az)
        z = d * sin(el)

    Args:
        distance_m: Range to tag (m)
        elevation_deg: Elevation angle (degrees)
        azimuth_deg: Azimuth angle (degrees)

    Returns:
        Point3D in antenna-local frame (m)
    """
    el = math.radians(elevation_deg)
    az = math.radians(azimuth_deg)
    horizontal = distance_m * math.cos(el)
    return Point3D(
        horizontal * math.cos(az),
        horizontal * math.sin(az),
        distance_m * math.sin(el),
    )


@dataclass(frozen=True)
class SignalQuality:
    """
    Signal quality attached to every observation.

    Attributes:
        strength: Normalized signal strength [0, 1]
        is_line_of_sight: False when the ranging chip flags NLOS
        confidence_level: Measurement confidence [0, 1]
        error_estimate: Expected position error (m, >= 0)

    Notes:
        Out-of-range values are clamped on construction, matching what the
        ranging layer reports at its extremes.
    """

    strength: float
    is_line_of_sight: bool
    confidence_level: float
    error_estimate: float

    def __post_init__(self):
        object.__setattr__(self, 'strength', _clamp(float(self.strength), 0.0, 1.0))
        object.__setattr__(self, 'confidence_level', _clamp(float(self.confidence_level), 0.0, 1.0))
        object.__setattr__(self, 'error_estimate', max(0.0, float(self.error_estimate)))

    @property
    def quality_level(self) -> str:
        """Coarse quality bucket for reports."""
        if self.strength >= 0.8:
            return "excellent"
        if self.strength >= 0.6:
            return "good"
        if self.strength >= 0.4:
            return "fair"
        if self.strength >= 0.2:
            return "poor"
        return "very_poor"

    def to_dict(self) -> dict:
        return {
            'strength': self.strength,
            'is_line_of_sight': self.is_line_of_sight,
            'confidence_level': self.confidence_level,
            'error_estimate': self.error_estimate,
        }


@dataclass(frozen=True)
class ObservationPoint:
    """
    One position sample reported by an antenna.

    Attributes:
        antenna_id: Antenna that produced the sample
        position: Tag position (antenna-local or real-world, contextual)
        timestamp: Wall-clock time of the sample (s since epoch)
        quality: Signal quality metadata
        distance_m: Raw measured range (m)
        rssi: Raw RSSI (dBm)
        session_id: Owning observation session id
        id: Unique sample id
    """

    antenna_id: str
    position: Point3D
    timestamp: float
    quality: SignalQuality
    distance_m: float = 0.0
    rssi: float = 0.0
    session_id: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_spherical(
        cls,
        antenna_id: str,
        distance_m: float,
        elevation_deg: float,
        azimuth_deg: float,
        quality: SignalQuality,
        rssi: float = 0.0,
        session_id: str = "",
        timestamp: Optional[float] = None,
    ) -> "ObservationPoint":
        """Build an observation from a raw distance / elevation / azimuth report."""
        return cls(
            antenna_id=antenna_id,
            position=spherical_to_cartesian(distance_m, elevation_deg, azimuth_deg),
            timestamp=time.time() if timestamp is None else timestamp,
            quality=quality,
            distance_m=distance_m,
            rssi=rssi,
            session_id=session_id,
        )

    def with_position(self, position: Point3D) -> "ObservationPoint":
        """Copy with a replaced position (ids and metadata preserved)."""
        return replace(self, position=position)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'antenna_id': self.antenna_id,
            'position': self.position.to_dict(),
            'timestamp': self.timestamp,
            'quality': self.quality.to_dict(),
            'distance_m': self.distance_m,
            'rssi': self.rssi,
            'session_id': self.session_id,
        }


class ObservationStatus(Enum):
    """Lifecycle of an observation session."""

    RECORDING = "recording"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ObservationQualityStatistics:
    """Aggregate quality of a session's observations."""

    total_points: int
    valid_points: int
    average_quality: float
    line_of_sight_percentage: float
    average_error_estimate: float

    @property
    def quality_assessment(self) -> str:
        if self.average_quality >= 0.8:
            return "excellent"
        if self.average_quality >= 0.6:
            return "good"
        if self.average_quality >= 0.4:
            return "fair"
        if self.average_quality >= 0.2:
            return "poor"
        return "unusable"


@dataclass
class ObservationSession:
    """
    Bounded recording of observations for one antenna.

    Created on collection start (status RECORDING) and closed on stop
    (status COMPLETED). Observations may only be appended while recording.
    """

    antenna_id: str
    name: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    floor_map_id: Optional[str] = None
    observations: List[ObservationPoint] = field(default_factory=list)
    status: ObservationStatus = ObservationStatus.RECORDING
    # Wall-clock time the last sample was appended
    last_received_time: Optional[float] = field(default=None, compare=False)

    # Signal strength above which a sample counts as valid in statistics
    VALID_STRENGTH = 0.3

    @property
    def is_active(self) -> bool:
        """True while the session can still receive samples."""
        return self.status in (ObservationStatus.RECORDING, ObservationStatus.PAUSED)

    @property
    def is_completed(self) -> bool:
        return self.status == ObservationStatus.COMPLETED

    @property
    def duration(self) -> float:
        end = self.end_time if self.end_time is not None else time.time()
        return end - self.start_time

    @property
    def last_observation_time(self) -> Optional[float]:
        if not self.observations:
            return None
        return self.observations[-1].timestamp

    def append(self, observation: ObservationPoint, received_at: Optional[float] = None) -> bool:
        """
        Append a sample if the session is recording.

        Args:
            observation: Sample to record
            received_at: Arrival time (defaults to time.time())

        Returns:
            True if appended, False if the session is paused or closed
        """
        if self.status != ObservationStatus.RECORDING:
            return False
        self.observations.append(observation)
        self.last_received_time = time.time() if received_at is None else received_at
        return True

    def pause(self):
        if self.status == ObservationStatus.RECORDING:
            self.status = ObservationStatus.PAUSED

    def resume(self):
        if self.status == ObservationStatus.PAUSED:
            self.status = ObservationStatus.RECORDING

    def complete(self, end_time: Optional[float] = None):
        """Close the session."""
        self.status = ObservationStatus.COMPLETED
        self.end_time = time.time() if end_time is None else end_time

    def quality_statistics(self) -> ObservationQualityStatistics:
        valid = [o for o in self.observations if o.quality.strength > self.VALID_STRENGTH]
        total = len(self.observations)
        los_count = sum(1 for o in self.observations if o.quality.is_line_of_sight)

        return ObservationQualityStatistics(
            total_points=total,
            valid_points=len(valid),
            average_quality=(
                sum(o.quality.strength for o in valid) / len(valid) if valid else 0.0
            ),
            line_of_sight_percentage=(los_count / total * 100.0) if total else 0.0,
            average_error_estimate=(
                sum(o.quality.error_estimate for o in valid) / len(valid) if valid else 0.0
            ),
        )
