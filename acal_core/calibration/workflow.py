"""
Calibration Workflow State Machine.

Sequences one calibration run:

    idle -> collecting_reference -> collecting_observation -> calculating
         -> {completed | failed}

1. Reference collection: known real-world tag positions
2. Observation collection: one recording session per antenna
3. Mapping: conditioned observations paired with references
4. Execution: one affine fit per antenna over its correspondences

Transitions only move forward; reset() is the single way back to idle.
All mutators serialize through one re-entrant lock, so a workflow may be
driven from several threads (e.g., a ranging callback thread recording
samples while the caller stops sessions). validate_current_state() and
snapshot() never mutate.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Optional, Union

from acal_core.calibration.affine_transform import AffineTransformEstimator
from acal_core.calibration.data_quality import DataQualityMonitor
from acal_core.calibration.observation_mapper import MappingConfig, ObservationMapper
from acal_core.calibration.sensor_processing import (
    SensorDataProcessingConfig,
    SensorDataProcessor,
)
from acal_core.errors import CalibrationError, DuplicatePointError, WorkflowError
from acal_core.io.ranging_source import RangingDataSource
from acal_core.metrics import get_metrics
from acal_core.proto.calibration import CalibrationResult, MapCalibrationPoint
from acal_core.proto.geometry import Point3D
from acal_core.proto.observation import ObservationPoint, ObservationSession, ObservationStatus
from acal_core.proto.reference import (
    ReferenceObservationMapping,
    ReferencePoint,
    WorkflowState,
)


logger = logging.getLogger(__name__)


@dataclass
class WorkflowConfig:
    """
    Configuration for the calibration workflow.

    Attributes:
        min_reference_points: References required before calibration can proceed
        recommended_reference_points: Below this, recommend adding references
        valid_observation_strength: Strength above which a sample counts as valid
        recommended_valid_observations: Valid samples per antenna below which an issue is raised
        min_mapping_quality: Average mapping quality below which an issue is raised
        recommended_quality: Session / mapping quality below which a recommendation is made
        stall_timeout_s: Active session without samples for this long is reported as stalled
        duplicate_tolerance_m: References closer than this count as duplicates
    """

    min_reference_points: int = 3
    recommended_reference_points: int = 5
    valid_observation_strength: float = 0.5
    recommended_valid_observations: int = 10
    min_mapping_quality: float = 0.6
    recommended_quality: float = 0.7
    stall_timeout_s: float = 5.0
    duplicate_tolerance_m: float = 1e-6

    def __post_init__(self):
        if self.min_reference_points < 3:
            raise ValueError(f"min_reference_points must be >= 3, got {self.min_reference_points}")
        if self.stall_timeout_s <= 0:
            raise ValueError("stall_timeout_s must be positive")


@dataclass
class WorkflowQualityStatistics:
    """Aggregate data quality of one workflow run."""

    total_observations: int
    valid_observations: int
    average_signal_quality: float
    line_of_sight_percentage: float
    mapping_accuracy: float
    processed_antennas: int

    def to_dict(self) -> dict:
        return {
            'total_observations': self.total_observations,
            'valid_observations': self.valid_observations,
            'average_signal_quality': self.average_signal_quality,
            'line_of_sight_percentage': self.line_of_sight_percentage,
            'mapping_accuracy': self.mapping_accuracy,
            'processed_antennas': self.processed_antennas,
        }


@dataclass
class WorkflowResult:
    """
    Outcome of execute_calibration().

    Attributes:
        success: True only if every processed antenna calibrated
        processed_antennas: Antennas that had observation sessions
        results: Per-antenna CalibrationResult
        quality_statistics: Aggregate data quality
        error_message: Failure summary when success is False
        timestamp: Completion time
    """

    success: bool
    processed_antennas: List[str]
    results: Dict[str, CalibrationResult]
    quality_statistics: WorkflowQualityStatistics
    error_message: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'processed_antennas': list(self.processed_antennas),
            'results': {k: v.to_dict() for k, v in self.results.items()},
            'quality_statistics': self.quality_statistics.to_dict(),
            'error_message': self.error_message,
            'timestamp': self.timestamp,
        }


@dataclass
class ValidationReport:
    """Advisory report from validate_current_state()."""

    can_proceed: bool
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class WorkflowSnapshot:
    """Queryable copy of the workflow's observable state."""

    state: WorkflowState
    progress: float
    reference_progress: float
    reference_count: int
    session_count: int
    active_antennas: tuple
    mapping_count: int
    error_message: Optional[str]
    results: Dict[str, CalibrationResult]


ProgressListener = Callable[[WorkflowSnapshot], None]


def create_workflow_processor() -> SensorDataProcessor:
    """
    Processor used by the workflow before mapping.

    No trim or smoothing: a session usually visits several references in
    turn, and smoothing across visits would drag samples between clusters.
    """
    return SensorDataProcessor(
        SensorDataProcessingConfig(
            first_trim=0,
            end_trim=0,
            moving_average_window_size=1,
            filter_nlos=True,
        )
    )


class CalibrationWorkflow:
    """
    Single-owner calibration workflow.

    Usage:
        workflow = CalibrationWorkflow()
        workflow.collect_reference_points([Point3D(1, 1), Point3D(2, 1), Point3D(1.5, 2)])

        workflow.start_observation_data("antenna1")
        for obs in samples:
            workflow.record_observation(obs)
        workflow.stop_observation_data("antenna1")

        workflow.map_observations_to_references()
        result = workflow.execute_calibration()
    """

    def __init__(
        self,
        config: Optional[WorkflowConfig] = None,
        mapper: Optional[ObservationMapper] = None,
        estimator: Optional[AffineTransformEstimator] = None,
        ranging_source: Optional[RangingDataSource] = None,
        quality_monitor: Optional[DataQualityMonitor] = None,
    ):
        """
        Initialize workflow.

        Args:
            config: Workflow configuration (uses defaults if None)
            mapper: Observation mapper (default mapping config with the
                workflow processor if None)
            estimator: Affine estimator (default if None)
            ranging_source: Optional sample stream polled by poll_ranging_source()
            quality_monitor: NLOS detection used by validate_current_state()
        """
        self.config = config or WorkflowConfig()
        self.mapper = mapper or ObservationMapper(MappingConfig(), create_workflow_processor())
        self.estimator = estimator or AffineTransformEstimator()
        self.ranging_source = ranging_source
        self.quality_monitor = quality_monitor or DataQualityMonitor()
        self.metrics = get_metrics()

        self._lock = threading.RLock()
        self._listeners: List[ProgressListener] = []
        self._clear()

    def _clear(self):
        self._state = WorkflowState.IDLE
        self._references: List[ReferencePoint] = []
        self._sessions: List[ObservationSession] = []
        self._mappings: List[ReferenceObservationMapping] = []
        self._results: Dict[str, CalibrationResult] = {}
        self._last_result: Optional[WorkflowResult] = None
        self._error_message: Optional[str] = None

    # =========================================================================
    # Observable state
    # =========================================================================

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def error_message(self) -> Optional[str]:
        return self._error_message

    @property
    def reference_points(self) -> List[ReferencePoint]:
        with self._lock:
            return list(self._references)

    @property
    def sessions(self) -> List[ObservationSession]:
        with self._lock:
            return list(self._sessions)

    @property
    def mappings(self) -> List[ReferenceObservationMapping]:
        with self._lock:
            return list(self._mappings)

    @property
    def results(self) -> Dict[str, CalibrationResult]:
        with self._lock:
            return dict(self._results)

    @property
    def last_result(self) -> Optional[WorkflowResult]:
        return self._last_result

    @property
    def reference_progress(self) -> float:
        """Collected references over the required minimum, capped at 1."""
        return min(1.0, len(self._references) / self.config.min_reference_points)

    @property
    def workflow_progress(self) -> float:
        """
        Overall progress in [0, 1].

        Three equally weighted stages (references, completed sessions,
        mappings) reach 0.9; completion sets 1.0.
        """
        with self._lock:
            if self._state == WorkflowState.COMPLETED:
                return 1.0

            observation_progress = 0.0
            if self._sessions:
                done = sum(1 for s in self._sessions if s.is_completed)
                observation_progress = done / len(self._sessions)

            mapping_progress = 1.0 if self._mappings else 0.0
            return 0.3 * (self.reference_progress + observation_progress + mapping_progress)

    def active_session(self, antenna_id: str) -> Optional[ObservationSession]:
        with self._lock:
            for session in self._sessions:
                if session.antenna_id == antenna_id and session.is_active:
                    return session
            return None

    def add_progress_listener(self, listener: ProgressListener):
        with self._lock:
            self._listeners.append(listener)

    def remove_progress_listener(self, listener: ProgressListener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def snapshot(self) -> WorkflowSnapshot:
        with self._lock:
            return WorkflowSnapshot(
                state=self._state,
                progress=self.workflow_progress,
                reference_progress=self.reference_progress,
                reference_count=len(self._references),
                session_count=len(self._sessions),
                active_antennas=tuple(s.antenna_id for s in self._sessions if s.is_active),
                mapping_count=len(self._mappings),
                error_message=self._error_message,
                results=dict(self._results),
            )

    def _notify(self):
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("Progress listener raised; continuing")

    def _advance(self, target: WorkflowState):
        """Move forward to target; never moves backward."""
        if target.order > self._state.order:
            logger.info("Workflow state %s -> %s", self._state.value, target.value)
            self._state = target

    def _require_not_terminal(self, operation: str):
        if self._state.is_terminal:
            raise WorkflowError(operation, self._state, "call reset() to start a new run")

    # =========================================================================
    # 1. Reference collection
    # =========================================================================

    def collect_reference_points(
        self,
        points: Iterable[Union[ReferencePoint, Point3D]],
    ) -> List[ReferencePoint]:
        """
        Append known reference positions.

        Args:
            points: ReferencePoints or bare Point3D positions

        Returns:
            The ReferencePoints added

        Raises:
            WorkflowError: If the workflow is calculating or finished
            DuplicatePointError: If a position repeats an existing reference
        """
        with self._lock:
            added = []
            for point in points:
                if isinstance(point, ReferencePoint):
                    ref = point
                else:
                    ref = ReferencePoint(position=point, name=f"Reference {len(self._references) + 1}")
                added.append(self._add_reference(ref))

        self._notify()
        return added

    def add_reference_point(self, position: Point3D, name: str = "", tag_id: str = "") -> ReferencePoint:
        """Append one reference position. Same rules as collect_reference_points()."""
        with self._lock:
            ref = self._add_reference(
                ReferencePoint(
                    position=position,
                    name=name or f"Reference {len(self._references) + 1}",
                    tag_id=tag_id,
                )
            )
        self._notify()
        return ref

    def _add_reference(self, ref: ReferencePoint) -> ReferencePoint:
        self._require_not_terminal("add reference point")
        if self._state == WorkflowState.CALCULATING:
            raise WorkflowError("add reference point", self._state, "mapping already computed")

        for idx, existing in enumerate(self._references):
            if existing.position.distance_2d_to(ref.position) <= self.config.duplicate_tolerance_m:
                raise DuplicatePointError(ref.position.as_tuple(), idx, len(self._references))

        self._references.append(ref)
        self._advance(WorkflowState.COLLECTING_REFERENCE)
        logger.debug("Reference '%s' at (%.3f, %.3f)", ref.name, ref.position.x, ref.position.y)
        return ref

    # =========================================================================
    # 2. Observation collection
    # =========================================================================

    def start_observation_data(self, antenna_id: str, name: Optional[str] = None) -> ObservationSession:
        """
        Open a recording session for one antenna.

        Raises:
            WorkflowError: If calculating/finished or the antenna already
                has an active session
        """
        with self._lock:
            self._require_not_terminal("start observation")
            if self._state == WorkflowState.CALCULATING:
                raise WorkflowError("start observation", self._state, "mapping already computed")
            if self.active_session(antenna_id) is not None:
                raise WorkflowError(
                    f"start observation for '{antenna_id}'", self._state,
                    "antenna already has an active session",
                )

            session = ObservationSession(
                antenna_id=antenna_id,
                name=name or f"calibration_{antenna_id}_{int(time.time())}",
            )
            self._sessions.append(session)
            self._advance(WorkflowState.COLLECTING_OBSERVATION)

            if self.ranging_source is not None:
                self.ranging_source.start(antenna_id, session.id)

            logger.info("Observation started for antenna %s (session %s)", antenna_id, session.id)

        self._notify()
        return session

    def record_observation(self, observation: ObservationPoint) -> bool:
        """
        Append one sample to its antenna's active session.

        Returns:
            True if recorded; False if no recording session exists for the
            antenna or the position is not finite (counted as a drop)
        """
        with self._lock:
            return self._record(observation)

    def record_observations(self, observations: Iterable[ObservationPoint]) -> int:
        """Record several samples; returns how many were accepted."""
        with self._lock:
            count = sum(1 for obs in observations if self._record(obs))
        self._notify()
        return count

    def _record(self, observation: ObservationPoint) -> bool:
        if not observation.position.is_finite:
            self.metrics.increment_drop('non_finite_position')
            return False

        session = self.active_session(observation.antenna_id)
        if session is None:
            self.metrics.increment_drop('session_closed')
            return False

        if observation.session_id != session.id:
            observation = replace(observation, session_id=session.id)

        if not session.append(observation):
            # Paused
            self.metrics.increment_drop('session_closed')
            return False

        self.metrics.increment('observations_recorded')
        return True

    def poll_ranging_source(self) -> int:
        """
        Drain the ranging source into every active session.

        Returns:
            Number of samples recorded
        """
        if self.ranging_source is None:
            return 0

        with self._lock:
            recorded = 0
            for session in [s for s in self._sessions if s.is_active]:
                for obs in self.ranging_source.drain(session.antenna_id, session.id):
                    if self._record(obs):
                        recorded += 1

        if recorded:
            self._notify()
        return recorded

    def pause_observation_data(self, antenna_id: str):
        with self._lock:
            session = self._require_active(antenna_id, "pause observation")
            session.pause()
            if self.ranging_source is not None:
                self.ranging_source.pause(antenna_id, session.id)
        self._notify()

    def resume_observation_data(self, antenna_id: str):
        with self._lock:
            session = self._require_active(antenna_id, "resume observation")
            session.resume()
            if self.ranging_source is not None:
                self.ranging_source.resume(antenna_id, session.id)
        self._notify()

    def stop_observation_data(self, antenna_id: str) -> ObservationSession:
        """
        Close the antenna's active session.

        Pending ranging-source samples are drained before closing.

        Raises:
            WorkflowError: If the antenna has no active session
        """
        with self._lock:
            session = self._require_active(antenna_id, "stop observation")

            if self.ranging_source is not None:
                session.resume()
                self.ranging_source.resume(antenna_id, session.id)
                batch = self.ranging_source.drain(antenna_id, session.id)
                while batch:
                    for obs in batch:
                        self._record(obs)
                    batch = self.ranging_source.drain(antenna_id, session.id)
                self.ranging_source.stop(antenna_id, session.id)

            session.complete()
            logger.info(
                "Observation stopped for antenna %s: %d samples in %.1fs",
                antenna_id, len(session.observations), session.duration,
            )

        self._notify()
        return session

    def _require_active(self, antenna_id: str, operation: str) -> ObservationSession:
        session = self.active_session(antenna_id)
        if session is None:
            raise WorkflowError(
                f"{operation} for '{antenna_id}'", self._state, "no active session"
            )
        return session

    # =========================================================================
    # 3. Mapping
    # =========================================================================

    def map_observations_to_references(self) -> List[ReferenceObservationMapping]:
        """
        Pair completed sessions' observations with reference points.

        No-op (returns the current mappings) if no session has completed.

        Raises:
            WorkflowError: If the workflow has finished
        """
        with self._lock:
            self._require_not_terminal("map observations")

            if not any(s.is_completed for s in self._sessions):
                logger.debug("No completed sessions; mapping skipped")
                return list(self._mappings)

            outcome = self.mapper.map_sessions(self._sessions, self._references)
            self._mappings = outcome.mappings

            matched_ids = {m.reference.id for m in self._mappings}
            for ref in self._references:
                if ref.id in matched_ids:
                    ref.is_collected = True

            self._advance(WorkflowState.CALCULATING)
            mappings = list(self._mappings)

        self._notify()
        return mappings

    # =========================================================================
    # 4. Execution
    # =========================================================================

    def execute_calibration(self) -> WorkflowResult:
        """
        Fit one transform per antenna from the current mappings.

        Each antenna's measured centroids (source) are fitted onto the
        matched reference positions (target). The run completes only if
        every antenna with a session calibrates; otherwise it fails with a
        message naming the failed antennas.

        Returns:
            WorkflowResult (also kept as last_result)

        Raises:
            WorkflowError: If the workflow has already finished
        """
        with self._lock:
            self._require_not_terminal("execute calibration")
            self.metrics.increment('workflow_runs')

            processed = []
            for session in self._sessions:
                if session.antenna_id not in processed:
                    processed.append(session.antenna_id)

            if not self._sessions:
                result = self._fail(processed, "No observation sessions recorded")
            elif not self._mappings:
                result = self._fail(processed, "No reference/observation mappings available")
            else:
                self._advance(WorkflowState.CALCULATING)
                result = self._execute(processed)

        self._notify()
        return result

    def _execute(self, processed: List[str]) -> WorkflowResult:
        results: Dict[str, CalibrationResult] = {}
        for antenna_id in processed:
            results[antenna_id] = self._calibrate_antenna(antenna_id)

        failed = [aid for aid, r in results.items() if not r.success]
        self._results = results

        if failed:
            message = f"Calibration failed for antenna(s): {', '.join(failed)}"
            self._error_message = message
            self._advance(WorkflowState.FAILED)
            logger.warning(message)
        else:
            self._error_message = None
            self._advance(WorkflowState.COMPLETED)
            logger.info("Calibration completed for %d antenna(s)", len(results))

        self._last_result = WorkflowResult(
            success=not failed,
            processed_antennas=processed,
            results=dict(results),
            quality_statistics=self._quality_statistics(),
            error_message=self._error_message,
        )
        return self._last_result

    def _calibrate_antenna(self, antenna_id: str) -> CalibrationResult:
        antenna_mappings = [m for m in self._mappings if m.antenna_id == antenna_id]
        pairs = [
            MapCalibrationPoint(
                map_coordinate=mapping.centroid,
                real_world_coordinate=mapping.reference.position,
                antenna_id=antenna_id,
                point_index=idx,
            )
            for idx, mapping in enumerate(antenna_mappings)
        ]

        try:
            transform = self.estimator.fit(pairs)
        except CalibrationError as e:
            logger.warning("Antenna %s calibration failed: %s", antenna_id, e)
            return CalibrationResult.failure(antenna_id, str(e), len(pairs))

        origin = transform.apply(Point3D.zero())
        logger.info(
            "Antenna %s calibrated: position=(%.3f, %.3f) rotation=%.2fdeg rmse=%.4fm",
            antenna_id, origin.x, origin.y, transform.rotation_deg, transform.rmse,
        )
        return CalibrationResult(
            antenna_id=antenna_id,
            success=True,
            position=origin,
            rotation_deg=transform.rotation_deg,
            rmse=transform.rmse,
            scale_factors=transform.scale_factors,
            transform=transform,
            num_correspondences=len(pairs),
        )

    def _fail(self, processed: List[str], message: str) -> WorkflowResult:
        logger.warning("Calibration failed: %s", message)
        self._error_message = message
        self._results = {}
        self._advance(WorkflowState.FAILED)
        self._last_result = WorkflowResult(
            success=False,
            processed_antennas=processed,
            results={},
            quality_statistics=self._quality_statistics(),
            error_message=message,
        )
        return self._last_result

    def _quality_statistics(self) -> WorkflowQualityStatistics:
        observations = [o for s in self._sessions for o in s.observations]
        valid = [o for o in observations if o.quality.strength > ObservationSession.VALID_STRENGTH]
        total = len(observations)
        los = sum(1 for o in observations if o.quality.is_line_of_sight)

        return WorkflowQualityStatistics(
            total_observations=total,
            valid_observations=len(valid),
            average_signal_quality=(
                sum(o.quality.strength for o in valid) / len(valid) if valid else 0.0
            ),
            line_of_sight_percentage=(los / total * 100.0) if total else 0.0,
            mapping_accuracy=self._average_mapping_quality(self._mappings),
            processed_antennas=len({s.antenna_id for s in self._sessions}),
        )

    @staticmethod
    def _average_mapping_quality(mappings: List[ReferenceObservationMapping]) -> float:
        if not mappings:
            return 0.0
        return sum(m.mapping_quality for m in mappings) / len(mappings)

    # =========================================================================
    # 5. Management
    # =========================================================================

    def reset(self):
        """Return to idle from any state, discarding all collected data."""
        with self._lock:
            if self.ranging_source is not None:
                for session in self._sessions:
                    if session.is_active:
                        self.ranging_source.stop(session.antenna_id, session.id)
            self._clear()
            logger.info("Workflow reset")
        self._notify()

    def validate_current_state(self, now: Optional[float] = None) -> ValidationReport:
        """
        Enumerate deficiencies of the current data without mutating it.

        Args:
            now: Reference time for stall detection (defaults to time.time())

        Returns:
            ValidationReport(can_proceed, issues, recommendations)
        """
        now = time.time() if now is None else now
        with self._lock:
            references = list(self._references)
            sessions = list(self._sessions)
            mappings = list(self._mappings)
            state = self._state
            error_message = self._error_message

        cfg = self.config
        issues = []
        recommendations = []
        can_proceed = True

        if state == WorkflowState.FAILED and error_message:
            issues.append(f"Previous calibration failed: {error_message}")

        # Check 1: references
        if len(references) < cfg.min_reference_points:
            issues.append(
                f"Insufficient reference points: need >= {cfg.min_reference_points}, "
                f"have {len(references)}"
            )
            can_proceed = False

        # Check 2: observation data
        if not sessions:
            issues.append("No observation data recorded")
            can_proceed = False

        for session in sessions:
            antenna_id = session.antenna_id
            if not session.observations:
                issues.append(f"No observation data for antenna {antenna_id}")
                can_proceed = False

            valid = sum(
                1 for o in session.observations
                if o.quality.strength > cfg.valid_observation_strength
            )
            if session.observations and valid < cfg.recommended_valid_observations:
                issues.append(
                    f"Insufficient valid observations for antenna {antenna_id}: "
                    f"recommended >= {cfg.recommended_valid_observations}, have {valid}"
                )

            # Check 3: stalled stream (advisory only, recording sessions)
            if session.status == ObservationStatus.RECORDING:
                last = session.last_received_time
                if last is None:
                    last = session.start_time
                if now - last > cfg.stall_timeout_s:
                    issues.append(
                        f"No observations received for antenna {antenna_id} "
                        f"in {now - last:.1f}s"
                    )

            if session.observations:
                nlos = self.quality_monitor.detect_nlos(session.observations)
                if nlos.is_nlos_detected:
                    issues.append(
                        f"Non-line-of-sight conditions for antenna {antenna_id}: "
                        f"{nlos.line_of_sight_percentage:.0f}% line of sight"
                    )
                    recommendations.append(nlos.recommendation)

            if session.observations and (
                session.quality_statistics().average_quality < cfg.recommended_quality
            ):
                recommendations.append(
                    f"Improve observation conditions for antenna {antenna_id} "
                    f"(remove obstacles, adjust position)"
                )

        if self.ranging_source is not None and not self.ranging_source.is_connected:
            issues.append("Ranging source is disconnected")

        # Check 4: mapping quality
        avg_quality = self._average_mapping_quality(mappings)
        if mappings and avg_quality < cfg.min_mapping_quality:
            issues.append(f"Low mapping quality: average {avg_quality * 100:.1f}%")

        if len(references) < cfg.recommended_reference_points:
            recommendations.append("Adding more reference points improves accuracy")
        if mappings and avg_quality < cfg.recommended_quality:
            recommendations.append("Review the reference/observation correspondences")

        return ValidationReport(
            can_proceed=can_proceed,
            issues=issues,
            recommendations=recommendations,
        )


def create_default_workflow(ranging_source: Optional[RangingDataSource] = None) -> CalibrationWorkflow:
    """Create workflow with default configuration."""
    return CalibrationWorkflow(WorkflowConfig(), ranging_source=ranging_source)
