"""
Antenna calibration configuration.

Each section maps onto one dataclass config in acal_core (see main.py).
"""

# Logging configuration
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}

# Config files (TAG_CONFIG.csv / INITIAL_ANTENNA_CONFIG.csv)
FILES_CONFIG = {
    "config_dir": ".",
    "floor_map_id": "default",
}

# Per-tag sample conditioning (SensorDataProcessingConfig)
PROCESSING_CONFIG = {
    "first_trim": 20,                   # samples dropped at the start of a series
    "end_trim": 20,                     # samples dropped at the end of a series
    "moving_average_window_size": 10,   # trailing window, 1 disables smoothing
    "filter_nlos": False,
}

# Observation -> reference mapping (MappingConfig)
MAPPING_CONFIG = {
    "min_signal_strength": 0.5,
    "require_line_of_sight": True,
    "max_match_distance_m": 5.0,
    "quality_scale_m": 0.5,
}

# Interactive workflow (WorkflowConfig)
WORKFLOW_CONFIG = {
    "min_reference_points": 3,
    "recommended_reference_points": 5,
    "valid_observation_strength": 0.5,
    "recommended_valid_observations": 10,
    "min_mapping_quality": 0.6,
    "recommended_quality": 0.7,
    "stall_timeout_s": 5.0,
}

# Auto-antenna calibration loop (AutoCalibrationConfig)
AUTO_CALIBRATION_CONFIG = {
    "min_observations_per_tag": 5,
    "min_tags": 3,
    "collinearity_threshold": 0.01,     # m^2, largest |cross product| of the tag layout
}
