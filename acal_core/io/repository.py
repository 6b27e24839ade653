"""
Calibration repository interface.

Persists calibration sets and committed antenna poses keyed by antenna id
and floor-map id. Storage mechanics are outside the calibration core;
InMemoryCalibrationRepository is the reference implementation used by the
CLI and tests.

Errors (all DataError, always propagated to the caller):
- NotFoundError: requested record does not exist
- DuplicateEntryError: create of an existing key
- InvalidDataError: record failed validation
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Tuple

from acal_core.errors import DuplicateEntryError, InvalidDataError, NotFoundError
from acal_core.proto.calibration import (
    AntennaPositionData,
    CalibrationData,
    MapCalibrationData,
)


logger = logging.getLogger(__name__)


class CalibrationRepository(ABC):
    """Storage capability consumed by the calibration core."""

    # Reference/measured calibration sets

    @abstractmethod
    def save_calibration_data(self, data: CalibrationData) -> None:
        """Create or replace the calibration set for data.antenna_id."""

    @abstractmethod
    def load_calibration_data(self, antenna_id: str) -> CalibrationData:
        """Raises NotFoundError if absent."""

    @abstractmethod
    def load_all_calibration_data(self) -> List[CalibrationData]:
        ...

    @abstractmethod
    def delete_calibration_data(self, antenna_id: str) -> None:
        """Raises NotFoundError if absent."""

    # Map-based calibration sets

    @abstractmethod
    def save_map_calibration_data(self, data: MapCalibrationData) -> None:
        """Create or replace the set for (antenna_id, floor_map_id)."""

    @abstractmethod
    def load_map_calibration_data(self, antenna_id: str, floor_map_id: str) -> MapCalibrationData:
        """Raises NotFoundError if absent."""

    # Committed antenna poses

    @abstractmethod
    def create_antenna_position(self, position: AntennaPositionData) -> None:
        """Raises DuplicateEntryError if (antenna_id, floor_map_id) exists."""

    @abstractmethod
    def update_antenna_position(self, position: AntennaPositionData) -> None:
        """Raises NotFoundError if (antenna_id, floor_map_id) is absent."""

    @abstractmethod
    def load_antenna_position(self, antenna_id: str, floor_map_id: str) -> AntennaPositionData:
        """Raises NotFoundError if absent."""

    @abstractmethod
    def load_antenna_positions(self, floor_map_id: str) -> List[AntennaPositionData]:
        ...

    def has_antenna_position(self, antenna_id: str, floor_map_id: str) -> bool:
        try:
            self.load_antenna_position(antenna_id, floor_map_id)
        except NotFoundError:
            return False
        return True


def _validate_antenna_id(antenna_id: str, kind: str):
    if not antenna_id or not antenna_id.strip():
        raise InvalidDataError(f"{kind} requires a non-empty antenna_id")


class InMemoryCalibrationRepository(CalibrationRepository):
    """
    Thread-safe dictionary-backed repository.

    Records are stored as given (dataclass instances); callers must not
    mutate a record after saving it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._calibration: Dict[str, CalibrationData] = {}
        self._map_calibration: Dict[Tuple[str, str], MapCalibrationData] = {}
        self._positions: Dict[Tuple[str, str], AntennaPositionData] = {}

    def save_calibration_data(self, data: CalibrationData) -> None:
        _validate_antenna_id(data.antenna_id, "CalibrationData")
        with self._lock:
            self._calibration[data.antenna_id] = data

    def load_calibration_data(self, antenna_id: str) -> CalibrationData:
        with self._lock:
            try:
                return self._calibration[antenna_id]
            except KeyError:
                raise NotFoundError(
                    "Calibration data not found", {'antenna_id': antenna_id}
                ) from None

    def load_all_calibration_data(self) -> List[CalibrationData]:
        with self._lock:
            return list(self._calibration.values())

    def delete_calibration_data(self, antenna_id: str) -> None:
        with self._lock:
            if antenna_id not in self._calibration:
                raise NotFoundError("Calibration data not found", {'antenna_id': antenna_id})
            del self._calibration[antenna_id]

    def save_map_calibration_data(self, data: MapCalibrationData) -> None:
        _validate_antenna_id(data.antenna_id, "MapCalibrationData")
        if not data.floor_map_id:
            raise InvalidDataError("MapCalibrationData requires a floor_map_id")
        with self._lock:
            self._map_calibration[(data.antenna_id, data.floor_map_id)] = data

    def load_map_calibration_data(self, antenna_id: str, floor_map_id: str) -> MapCalibrationData:
        with self._lock:
            try:
                return self._map_calibration[(antenna_id, floor_map_id)]
            except KeyError:
                raise NotFoundError(
                    "Map calibration data not found",
                    {'antenna_id': antenna_id, 'floor_map_id': floor_map_id},
                ) from None

    def _validate_position(self, position: AntennaPositionData):
        _validate_antenna_id(position.antenna_id, "AntennaPositionData")
        if not position.position.is_finite:
            raise InvalidDataError(
                f"Antenna position must be finite: {position.position}",
                {'antenna_id': position.antenna_id},
            )

    def create_antenna_position(self, position: AntennaPositionData) -> None:
        self._validate_position(position)
        key = (position.antenna_id, position.floor_map_id)
        with self._lock:
            if key in self._positions:
                raise DuplicateEntryError(
                    "Antenna position already exists",
                    {'antenna_id': position.antenna_id, 'floor_map_id': position.floor_map_id},
                )
            self._positions[key] = position
        logger.debug("Created antenna position %s on '%s'", position.antenna_id, position.floor_map_id)

    def update_antenna_position(self, position: AntennaPositionData) -> None:
        self._validate_position(position)
        key = (position.antenna_id, position.floor_map_id)
        with self._lock:
            if key not in self._positions:
                raise NotFoundError(
                    "Antenna position not found",
                    {'antenna_id': position.antenna_id, 'floor_map_id': position.floor_map_id},
                )
            self._positions[key] = position
        logger.debug("Updated antenna position %s on '%s'", position.antenna_id, position.floor_map_id)

    def load_antenna_position(self, antenna_id: str, floor_map_id: str) -> AntennaPositionData:
        with self._lock:
            try:
                return self._positions[(antenna_id, floor_map_id)]
            except KeyError:
                raise NotFoundError(
                    "Antenna position not found",
                    {'antenna_id': antenna_id, 'floor_map_id': floor_map_id},
                ) from None

    def load_antenna_positions(self, floor_map_id: str) -> List[AntennaPositionData]:
        with self._lock:
            return [p for (_, fm), p in self._positions.items() if fm == floor_map_id]
