"""
Reference point and observation-mapping schemas.

A ReferencePoint is a known real-world tag position. A
ReferenceObservationMapping pairs one reference with the summarized
observations one antenna recorded near it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Tuple
import time
import uuid

from acal_core.errors import InputError

from .geometry import Point3D
from .observation import ObservationPoint


@dataclass
class ReferencePoint:
    """
    Known real-world position used as calibration ground truth.

    Attributes:
        position: Real-world position (m)
        name: Display name (e.g., "Tag 1")
        tag_id: Tag placed at this position, if any
        is_collected: True once matching observation data exists
        id: Unique reference id
    """

    position: Point3D
    name: str = ""
    tag_id: str = ""
    is_collected: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if not self.position.is_finite:
            raise InputError(f"Reference position must be finite: {self.position}")


@dataclass(frozen=True)
class ReferenceObservationMapping:
    """
    Correspondence between one reference point and one antenna's observations.

    Computed once by the mapper and never modified.

    Attributes:
        reference: Matched reference point
        antenna_id: Antenna whose observations were matched
        observations: Contributing observations (at least one)
        centroid: Mean position of the contributing observations
        position_error: Distance between centroid and reference (m)
        mapping_quality: Quality score in [0, 1]
        created_at: Creation time
    """

    reference: ReferencePoint
    antenna_id: str
    observations: Tuple[ObservationPoint, ...]
    centroid: Point3D
    position_error: float
    mapping_quality: float
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if len(self.observations) < 1:
            raise ValueError("Mapping requires at least one contributing observation")
        if not 0.0 <= self.mapping_quality <= 1.0:
            raise ValueError(f"Mapping quality out of range [0, 1]: {self.mapping_quality}")

    @property
    def observation_count(self) -> int:
        return len(self.observations)

    @property
    def average_confidence(self) -> float:
        return sum(o.quality.confidence_level for o in self.observations) / len(self.observations)

    def to_dict(self) -> dict:
        return {
            'reference_id': self.reference.id,
            'reference_name': self.reference.name,
            'reference_position': self.reference.position.to_dict(),
            'antenna_id': self.antenna_id,
            'observation_count': self.observation_count,
            'centroid': self.centroid.to_dict(),
            'position_error': self.position_error,
            'mapping_quality': self.mapping_quality,
        }


class WorkflowState(Enum):
    """Calibration workflow states, ordered by progression."""

    IDLE = "idle"
    COLLECTING_REFERENCE = "collecting_reference"
    COLLECTING_OBSERVATION = "collecting_observation"
    CALCULATING = "calculating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def order(self) -> int:
        """Rank used to keep transitions forward-only."""
        return _STATE_ORDER[self]

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowState.COMPLETED, WorkflowState.FAILED)


_STATE_ORDER = {
    WorkflowState.IDLE: 0,
    WorkflowState.COLLECTING_REFERENCE: 1,
    WorkflowState.COLLECTING_OBSERVATION: 2,
    WorkflowState.CALCULATING: 3,
    WorkflowState.COMPLETED: 4,
    WorkflowState.FAILED: 4,
}
