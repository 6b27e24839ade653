"""
Protocol Module: Calibration data model.

Value types exchanged between the ranging layer, the estimators, the
workflow and the repository. Everything here works in real-world meters
except FloorMapInfo's pixel helpers.
"""

from .geometry import (
    Point3D,
    centroid,
)
from .observation import (
    SignalQuality,
    ObservationPoint,
    ObservationSession,
    ObservationStatus,
    ObservationQualityStatistics,
    spherical_to_cartesian,
)
from .calibration import (
    CalibrationPoint,
    MapCalibrationPoint,
    AffineTransformMatrix,
    CalibrationResult,
    CalibrationData,
    MapCalibrationData,
    AntennaPositionData,
    FloorMapInfo,
    DETERMINANT_EPSILON,
)
from .reference import (
    ReferencePoint,
    ReferenceObservationMapping,
    WorkflowState,
)

__all__ = [
    # Geometry
    'Point3D',
    'centroid',
    # Observations
    'SignalQuality',
    'ObservationPoint',
    'ObservationSession',
    'ObservationStatus',
    'ObservationQualityStatistics',
    'spherical_to_cartesian',
    # Calibration
    'CalibrationPoint',
    'MapCalibrationPoint',
    'AffineTransformMatrix',
    'CalibrationResult',
    'CalibrationData',
    'MapCalibrationData',
    'AntennaPositionData',
    'FloorMapInfo',
    'DETERMINANT_EPSILON',
    # Workflow
    'ReferencePoint',
    'ReferenceObservationMapping',
    'WorkflowState',
]
