"""
Calibration Module: Signal conditioning, mapping, transform fitting, workflows.

Key classes:
- SensorDataProcessor: Trim, moving-average smoothing, NLOS filtering
- DataQualityMonitor: Per-sample quality evaluation and NLOS detection
- ObservationMapper: Cluster session samples onto reference points
- AffineTransformEstimator: Least-squares affine fit (>= 3 correspondences)
- CalibrationWorkflow: Reference -> observation -> mapping -> calibration state machine
- AntennaPoseEstimator: Pose (position, rotation, scale) from tag correspondences
- AutoAntennaCalibration: Multi-antenna, multi-tag calibration loop
- TagPositionCollector: Asynchronous tag-by-tag sample collection
"""

# Signal conditioning
from .sensor_processing import (
    SensorDataProcessor,
    SensorDataProcessingConfig,
    ProcessingStatistics,
    apply_moving_average,
    create_default_processor,
)
from .data_quality import (
    DataQualityMonitor,
    DataQualityConfig,
    DataQualityEvaluation,
    NLOSDetectionResult,
)

# Mapping and affine fitting
from .observation_mapper import (
    ObservationMapper,
    MappingConfig,
    MappingOutcome,
    mapping_quality,
)
from .affine_transform import (
    AffineTransformEstimator,
    AffineFitConfig,
    create_default_estimator,
)

# Workflow
from .workflow import (
    CalibrationWorkflow,
    WorkflowConfig,
    WorkflowResult,
    WorkflowQualityStatistics,
    WorkflowSnapshot,
    ValidationReport,
    create_default_workflow,
)

# Auto calibration
from .antenna_pose import (
    AntennaPose,
    AntennaPoseEstimator,
    fit_antenna_pose,
)
from .auto_calibration import (
    AutoAntennaCalibration,
    AutoCalibrationConfig,
    commit_results,
    create_default_auto_calibration,
)
from .tag_collection import (
    TagPositionCollector,
    CollectionConfig,
    CollectionReport,
)

__all__ = [
    # Signal conditioning
    'SensorDataProcessor',
    'SensorDataProcessingConfig',
    'ProcessingStatistics',
    'apply_moving_average',
    'create_default_processor',
    'DataQualityMonitor',
    'DataQualityConfig',
    'DataQualityEvaluation',
    'NLOSDetectionResult',
    # Mapping and affine fitting
    'ObservationMapper',
    'MappingConfig',
    'MappingOutcome',
    'mapping_quality',
    'AffineTransformEstimator',
    'AffineFitConfig',
    'create_default_estimator',
    # Workflow
    'CalibrationWorkflow',
    'WorkflowConfig',
    'WorkflowResult',
    'WorkflowQualityStatistics',
    'WorkflowSnapshot',
    'ValidationReport',
    'create_default_workflow',
    # Auto calibration
    'AntennaPose',
    'AntennaPoseEstimator',
    'fit_antenna_pose',
    'AutoAntennaCalibration',
    'AutoCalibrationConfig',
    'commit_results',
    'create_default_auto_calibration',
    'TagPositionCollector',
    'CollectionConfig',
    'CollectionReport',
]
