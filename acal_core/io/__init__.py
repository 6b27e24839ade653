"""
I/O Module: Ranging data sources, repository, CSV config files.

- RangingDataSource: push-based producer of observation points
- CalibrationRepository: persistence capability (in-memory reference impl)
- csv_loader: TAG_CONFIG.csv / INITIAL_ANTENNA_CONFIG.csv / observation files
"""

from .ranging_source import (
    ConnectionState,
    RangingDataSource,
    ReplayRangingSource,
)
from .repository import (
    CalibrationRepository,
    InMemoryCalibrationRepository,
)
from .csv_loader import (
    InitialAntennaConfig,
    load_tag_config,
    load_initial_antenna_config,
    load_calibration_configs,
    load_observations,
    write_antenna_config,
)

__all__ = [
    # Ranging
    'ConnectionState',
    'RangingDataSource',
    'ReplayRangingSource',
    # Repository
    'CalibrationRepository',
    'InMemoryCalibrationRepository',
    # CSV
    'InitialAntennaConfig',
    'load_tag_config',
    'load_initial_antenna_config',
    'load_calibration_configs',
    'load_observations',
    'write_antenna_config',
]
