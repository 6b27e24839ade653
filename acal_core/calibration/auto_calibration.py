"""
Auto-Antenna Calibration Loop.

Drives pose fitting across several antennas and known tag positions:

1. Tags are placed at known floor positions (set_true_tag_positions)
2. Each antenna's samples are accumulated per tag (add_measured_data,
   collect_from_session, or TagPositionCollector)
3. For each antenna: condition the samples per tag, keep tags with at least
   min_observations_per_tag samples, average them, and fit the pose
4. Inspect the results, then commit() them to the repository

Failures are isolated per antenna: execute() records a failed result and
continues with the remaining antennas.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

from acal_core.calibration.affine_transform import reject_duplicates
from acal_core.calibration.antenna_pose import AntennaPoseEstimator
from acal_core.calibration.sensor_processing import (
    SensorDataProcessingConfig,
    SensorDataProcessor,
)
from acal_core.errors import (
    CalibrationError,
    InputError,
    InsufficientPointsError,
    NotFoundError,
)
from acal_core.io.repository import CalibrationRepository
from acal_core.metrics import get_metrics
from acal_core.proto.calibration import AntennaPositionData, CalibrationResult
from acal_core.proto.geometry import Point3D, centroid
from acal_core.proto.observation import ObservationPoint, ObservationSession, SignalQuality


logger = logging.getLogger(__name__)


# Quality attached to bare positions fed without ranging metadata
_BARE_POSITION_QUALITY = SignalQuality(
    strength=1.0, is_line_of_sight=True, confidence_level=1.0, error_estimate=0.0
)


@dataclass
class AutoCalibrationConfig:
    """
    Configuration for the auto-calibration loop.

    Attributes:
        min_observations_per_tag: Conditioned samples a tag needs to qualify
        min_tags: Qualifying tags an antenna needs for a pose fit
        collinearity_threshold: Minimum largest |cross product| of the tag layout (m^2)
        processing: Per-tag sample conditioning
    """

    min_observations_per_tag: int = 5
    min_tags: int = 3
    collinearity_threshold: float = 0.01
    processing: SensorDataProcessingConfig = field(default_factory=SensorDataProcessingConfig)

    def __post_init__(self):
        if self.min_observations_per_tag < 1:
            raise ValueError(
                f"min_observations_per_tag must be >= 1, got {self.min_observations_per_tag}"
            )
        if self.min_tags < 3:
            raise ValueError(f"min_tags must be >= 3, got {self.min_tags}")


class AutoAntennaCalibration:
    """
    Multi-antenna, multi-tag pose calibration.

    Usage:
        auto = AutoAntennaCalibration()
        auto.set_true_tag_positions({'Tag 1': Point3D(14.09, 18.13), ...})
        auto.add_measured_data('antenna1', 'Tag 1', observation)
        ...
        results = auto.execute(['antenna1', 'antenna2'])
        auto.commit(results, floor_map_id, repository)
    """

    def __init__(self, config: Optional[AutoCalibrationConfig] = None):
        """
        Initialize calibration loop.

        Args:
            config: Loop configuration (uses defaults if None)
        """
        self.config = config or AutoCalibrationConfig()
        self.processor = SensorDataProcessor(self.config.processing)
        self.pose_estimator = AntennaPoseEstimator(self.config.collinearity_threshold)
        self.metrics = get_metrics()

        self._lock = threading.Lock()
        self._true_positions: Dict[str, Point3D] = {}
        # antenna_id -> tag_id -> samples in arrival order
        self._measured: Dict[str, Dict[str, List[ObservationPoint]]] = {}
        self._results: Dict[str, CalibrationResult] = {}

    # =========================================================================
    # Data input
    # =========================================================================

    @property
    def true_tag_positions(self) -> Dict[str, Point3D]:
        with self._lock:
            return dict(self._true_positions)

    @property
    def results(self) -> Dict[str, CalibrationResult]:
        with self._lock:
            return dict(self._results)

    def set_true_tag_positions(self, positions: Dict[str, Point3D]):
        """
        Replace the known tag positions.

        Raises:
            InputError: Non-finite position
            DuplicatePointError: Two tags share a position
        """
        for tag_id, pos in positions.items():
            if not pos.is_finite:
                raise InputError("Tag position must be finite", {'tag_id': tag_id})
        reject_duplicates(list(positions.values()))

        with self._lock:
            self._true_positions = dict(positions)
        logger.info("True tag positions set: %d tags", len(positions))

    def add_measured_data(
        self,
        antenna_id: str,
        tag_id: str,
        measurement: Union[ObservationPoint, Point3D],
    ):
        """
        Append one sample for (antenna, tag).

        Bare Point3D measurements are wrapped with full line-of-sight quality.
        """
        if isinstance(measurement, Point3D):
            measurement = ObservationPoint(
                antenna_id=antenna_id,
                position=measurement,
                timestamp=0.0,
                quality=_BARE_POSITION_QUALITY,
            )

        if not measurement.position.is_finite:
            self.metrics.increment_drop('non_finite_position')
            return

        with self._lock:
            self._measured.setdefault(antenna_id, {}).setdefault(tag_id, []).append(measurement)

    def add_measured_batch(self, tag_id: str, observations: Sequence[ObservationPoint]) -> int:
        """Append samples for one tag, each under its own antenna id. Returns count."""
        count = 0
        for obs in observations:
            if obs.position.is_finite:
                self.add_measured_data(obs.antenna_id, tag_id, obs)
                count += 1
            else:
                self.metrics.increment_drop('non_finite_position')
        return count

    def collect_from_session(self, session: ObservationSession, tag_id: str) -> int:
        """
        Import every sample of a recorded session as data for tag_id.

        Returns:
            Number of samples imported
        """
        count = self.add_measured_batch(tag_id, session.observations)
        logger.debug(
            "Imported %d samples from session %s for tag %s", count, session.id, tag_id
        )
        return count

    def data_statistics(self) -> Dict[str, Dict[str, int]]:
        """Raw sample count per antenna per tag."""
        with self._lock:
            return {
                antenna_id: {tag_id: len(samples) for tag_id, samples in tags.items()}
                for antenna_id, tags in self._measured.items()
            }

    def clear(self, antenna_id: Optional[str] = None):
        """Discard measured data and results (all antennas, or one)."""
        with self._lock:
            if antenna_id is None:
                self._measured.clear()
                self._results.clear()
            else:
                self._measured.pop(antenna_id, None)
                self._results.pop(antenna_id, None)

    # =========================================================================
    # Compute
    # =========================================================================

    def qualifying_tags(
        self,
        antenna_id: str,
        min_observations_per_tag: Optional[int] = None,
    ) -> Dict[str, Point3D]:
        """
        Conditioned mean measured position of every qualifying tag.

        A tag qualifies if it has a known true position and at least
        min_observations_per_tag samples survive conditioning.
        """
        if min_observations_per_tag is None:
            minimum = self.config.min_observations_per_tag
        else:
            minimum = min_observations_per_tag
        if minimum < 1:
            raise ValueError(f"min_observations_per_tag must be >= 1, got {minimum}")

        with self._lock:
            tags = {tag_id: list(samples) for tag_id, samples in self._measured.get(antenna_id, {}).items()}
            true_positions = dict(self._true_positions)

        means = {}
        for tag_id in sorted(tags):
            if tag_id not in true_positions:
                logger.debug("Antenna %s: tag %s has no true position; skipped", antenna_id, tag_id)
                continue

            conditioned = self.processor.process_observations(tags[tag_id])
            if len(conditioned) < minimum:
                self.metrics.increment_drop('insufficient_tag_samples', len(conditioned))
                logger.info(
                    "Antenna %s: tag %s has %d samples (< %d); skipped",
                    antenna_id, tag_id, len(conditioned), minimum,
                )
                continue

            means[tag_id] = centroid(o.position for o in conditioned)
        return means

    def calibrate_antenna(
        self,
        antenna_id: str,
        min_observations_per_tag: Optional[int] = None,
    ) -> CalibrationResult:
        """
        Fit one antenna's pose. Compute only: nothing is stored or persisted.

        Returns:
            Successful CalibrationResult

        Raises:
            InputError: No true tag positions set
            InsufficientPointsError: Fewer than min_tags qualifying tags
            DegenerateConfigurationError: Collinear tag layout or singular fit
        """
        if not self.true_tag_positions:
            raise InputError("No true tag positions set")

        means = self.qualifying_tags(antenna_id, min_observations_per_tag)
        if len(means) < self.config.min_tags:
            raise InsufficientPointsError(
                required=self.config.min_tags,
                provided=len(means),
                context=f"qualifying tags for antenna {antenna_id}",
            )

        true_positions = self.true_tag_positions
        tag_ids = sorted(means)
        pose = self.pose_estimator.estimate(
            [means[t] for t in tag_ids],
            [true_positions[t] for t in tag_ids],
            antenna_id=antenna_id,
        )

        return CalibrationResult(
            antenna_id=antenna_id,
            success=True,
            position=pose.position,
            rotation_deg=pose.rotation_deg,
            rmse=pose.rmse,
            scale_factors=pose.scale_factors,
            transform=pose.transform,
            num_correspondences=len(tag_ids),
        )

    def execute(
        self,
        antenna_ids: Sequence[str],
        min_observations_per_tag: Optional[int] = None,
    ) -> Dict[str, CalibrationResult]:
        """
        Calibrate every antenna, isolating failures.

        Args:
            antenna_ids: Antennas to calibrate
            min_observations_per_tag: Conditioned samples a tag needs
                (defaults to config.min_observations_per_tag)

        Returns:
            antenna_id -> CalibrationResult (failed results carry the reason)
        """
        logger.info(
            "Auto calibration: %d antenna(s), %d true tag position(s)",
            len(antenna_ids), len(self._true_positions),
        )

        results: Dict[str, CalibrationResult] = {}
        for antenna_id in antenna_ids:
            try:
                results[antenna_id] = self.calibrate_antenna(antenna_id, min_observations_per_tag)
            except CalibrationError as e:
                logger.warning("Antenna %s calibration failed: %s", antenna_id, e)
                results[antenna_id] = CalibrationResult.failure(antenna_id, str(e))

        with self._lock:
            self._results.update(results)

        succeeded = sum(1 for r in results.values() if r.success)
        logger.info("Auto calibration finished: %d/%d succeeded", succeeded, len(results))
        return results

    # =========================================================================
    # Commit
    # =========================================================================

    def commit(
        self,
        results: Dict[str, CalibrationResult],
        floor_map_id: str,
        repository: CalibrationRepository,
    ) -> List[AntennaPositionData]:
        """Persist successful results; see commit_results()."""
        return commit_results(results, floor_map_id, repository)


def commit_results(
    results: Dict[str, CalibrationResult],
    floor_map_id: str,
    repository: CalibrationRepository,
) -> List[AntennaPositionData]:
    """
    Persist successful results as the antennas' definitive poses.

    Existing records are updated in place (id and name kept); new
    antennas get a record named after their id. Failed results are
    skipped. Repository errors propagate.

    Returns:
        The records written
    """
    written = []
    for antenna_id, result in results.items():
        if not result.success or result.position is None:
            logger.info("Skipping commit of failed antenna %s", antenna_id)
            continue

        try:
            existing = repository.load_antenna_position(antenna_id, floor_map_id)
        except NotFoundError:
            existing = None

        record = AntennaPositionData(
            antenna_id=antenna_id,
            antenna_name=existing.antenna_name if existing else antenna_id,
            position=result.position,
            rotation_deg=result.rotation_deg,
            floor_map_id=floor_map_id,
        )

        if existing is None:
            repository.create_antenna_position(record)
        else:
            record.id = existing.id
            repository.update_antenna_position(record)
        written.append(record)

    logger.info("Committed %d antenna pose(s) to floor map '%s'", len(written), floor_map_id)
    return written


def create_default_auto_calibration() -> AutoAntennaCalibration:
    """Create loop with default configuration."""
    return AutoAntennaCalibration(AutoCalibrationConfig())
