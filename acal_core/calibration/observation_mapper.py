"""
Observation-Reference Mapper.

Pairs observation summaries with known reference points:

1. Condition each completed session's samples (SensorDataProcessor)
2. Accept samples with strength > min_signal_strength and line of sight
3. Assign each accepted sample to the nearest reference within
   max_match_distance_m
4. Summarize each (antenna, reference) group by its centroid

Mapping quality combines centroid error and mean confidence:

    q = mean_confidence / (1 + position_error / quality_scale_m)

which lies in [0, 1], falls monotonically with position_error and rises
with confidence.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from acal_core.calibration.sensor_processing import SensorDataProcessor
from acal_core.metrics import get_metrics
from acal_core.proto.geometry import centroid
from acal_core.proto.observation import ObservationPoint, ObservationSession
from acal_core.proto.reference import ReferenceObservationMapping, ReferencePoint


logger = logging.getLogger(__name__)


@dataclass
class MappingConfig:
    """
    Configuration for observation-reference mapping.

    Attributes:
        min_signal_strength: Samples at or below this strength are rejected
        require_line_of_sight: Reject samples flagged NLOS
        max_match_distance_m: Samples farther than this from every reference are unmatched
        quality_scale_m: Error at which mapping quality halves (m)
    """

    min_signal_strength: float = 0.5
    require_line_of_sight: bool = True
    max_match_distance_m: float = 5.0
    quality_scale_m: float = 0.5

    def __post_init__(self):
        if not 0.0 <= self.min_signal_strength <= 1.0:
            raise ValueError(f"min_signal_strength must be in [0, 1], got {self.min_signal_strength}")
        if self.max_match_distance_m <= 0:
            raise ValueError("max_match_distance_m must be positive")
        if self.quality_scale_m <= 0:
            raise ValueError("quality_scale_m must be positive")


@dataclass
class MappingOutcome:
    """
    Result of one mapping pass.

    Attributes:
        mappings: One mapping per (antenna, reference) with >= 1 sample
        accepted_count: Samples that passed the quality gate
        rejected_count: Samples that failed the quality gate
        unmatched_count: Accepted samples with no reference in range
    """

    mappings: List[ReferenceObservationMapping] = field(default_factory=list)
    accepted_count: int = 0
    rejected_count: int = 0
    unmatched_count: int = 0

    @property
    def antenna_ids(self) -> List[str]:
        seen = []
        for m in self.mappings:
            if m.antenna_id not in seen:
                seen.append(m.antenna_id)
        return seen


def mapping_quality(position_error: float, mean_confidence: float, scale_m: float = 0.5) -> float:
    """Quality in [0, 1]; decreasing in error, increasing in confidence."""
    confidence = max(0.0, min(1.0, mean_confidence))
    return confidence / (1.0 + max(0.0, position_error) / scale_m)


class ObservationMapper:
    """
    Build reference/observation correspondences from completed sessions.

    Pure with respect to its inputs: sessions and reference points are not
    modified.
    """

    def __init__(
        self,
        config: Optional[MappingConfig] = None,
        processor: Optional[SensorDataProcessor] = None,
    ):
        """
        Initialize mapper.

        Args:
            config: Mapping configuration (uses defaults if None)
            processor: Sample conditioning applied per session (none if None)
        """
        self.config = config or MappingConfig()
        self.processor = processor
        self.metrics = get_metrics()

    def rejection_reason(self, observation: ObservationPoint) -> Optional[str]:
        """Drop reason code if the sample fails the quality gate, else None."""
        quality = observation.quality
        if not observation.position.is_finite:
            return 'non_finite_position'
        if quality.strength <= self.config.min_signal_strength:
            return 'low_signal_strength'
        if self.config.require_line_of_sight and not quality.is_line_of_sight:
            return 'nlos_filtered'
        return None

    def is_acceptable(self, observation: ObservationPoint) -> bool:
        """Quality gate applied before matching."""
        return self.rejection_reason(observation) is None

    def nearest_reference(
        self,
        observation: ObservationPoint,
        references: Sequence[ReferencePoint],
    ) -> Optional[Tuple[int, float]]:
        """
        Find the nearest reference within range.

        Returns:
            (reference index, distance) or None if nothing is within
            max_match_distance_m
        """
        best = None
        for idx, ref in enumerate(references):
            dist = observation.position.distance_to(ref.position)
            if dist <= self.config.max_match_distance_m and (best is None or dist < best[1]):
                best = (idx, dist)
        return best

    def map_sessions(
        self,
        sessions: Sequence[ObservationSession],
        references: Sequence[ReferencePoint],
    ) -> MappingOutcome:
        """
        Map completed sessions onto reference points.

        Args:
            sessions: Observation sessions (non-completed ones are skipped)
            references: Known reference points

        Returns:
            MappingOutcome (empty if no completed session or no reference)
        """
        outcome = MappingOutcome()
        completed = [s for s in sessions if s.is_completed]
        if not completed or not references:
            return outcome

        # (antenna_id, reference index) -> samples, in first-seen order
        groups: Dict[Tuple[str, int], List[ObservationPoint]] = {}

        for session in completed:
            samples = session.observations
            if self.processor is not None:
                samples = self.processor.process_observations(samples)

            for obs in samples:
                reason = self.rejection_reason(obs)
                if reason is not None:
                    outcome.rejected_count += 1
                    self.metrics.increment_drop(reason)
                    continue
                outcome.accepted_count += 1

                match = self.nearest_reference(obs, references)
                if match is None:
                    outcome.unmatched_count += 1
                    continue
                groups.setdefault((session.antenna_id, match[0]), []).append(obs)

        self.metrics.increment_drop('unmatched_observation', outcome.unmatched_count)

        for (antenna_id, ref_idx), samples in groups.items():
            outcome.mappings.append(self._summarize(antenna_id, references[ref_idx], samples))

        self.metrics.increment('mappings_created', len(outcome.mappings))
        logger.info(
            "Mapped %d sessions onto %d references: %d mappings "
            "(accepted=%d, rejected=%d, unmatched=%d)",
            len(completed), len(references), len(outcome.mappings),
            outcome.accepted_count, outcome.rejected_count, outcome.unmatched_count,
        )
        return outcome

    def _summarize(
        self,
        antenna_id: str,
        reference: ReferencePoint,
        samples: List[ObservationPoint],
    ) -> ReferenceObservationMapping:
        center = centroid(o.position for o in samples)
        error = center.distance_to(reference.position)
        mean_conf = sum(o.quality.confidence_level for o in samples) / len(samples)

        return ReferenceObservationMapping(
            reference=reference,
            antenna_id=antenna_id,
            observations=tuple(samples),
            centroid=center,
            position_error=error,
            mapping_quality=mapping_quality(error, mean_conf, self.config.quality_scale_m),
        )
