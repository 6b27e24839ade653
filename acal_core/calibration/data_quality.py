"""
Data Quality Monitor for observation samples.

Per-sample evaluation against fixed thresholds plus NLOS detection over a
batch. Used by the workflow to build quality statistics and by the CLI to
flag poor recordings.

Checks per sample:
- strength < min_strength         -> unacceptable
- confidence < min_confidence     -> unacceptable
- rssi < min_rssi_dbm             -> advisory only
- error_estimate > max_error_m    -> advisory only
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from acal_core.metrics import get_metrics
from acal_core.proto.observation import ObservationPoint


@dataclass
class DataQualityConfig:
    """
    Thresholds for sample evaluation.

    Attributes:
        min_strength: Minimum signal strength for an acceptable sample
        min_confidence: Minimum confidence for an acceptable sample
        min_rssi_dbm: RSSI below this raises an advisory
        max_error_m: Error estimate above this raises an advisory
        min_los_percentage: Batches below this LOS share are flagged NLOS
    """

    min_strength: float = 0.5
    min_confidence: float = 0.6
    min_rssi_dbm: float = -75.0
    max_error_m: float = 3.0
    min_los_percentage: float = 50.0


# Issue codes and the action each one suggests
ISSUE_RECOMMENDATIONS = {
    'low_signal_strength': [
        "Reduce the distance between tag and antenna",
        "Remove obstacles between tag and antenna",
    ],
    'low_rssi': ["Adjust the antenna orientation"],
    'low_confidence': ["Stabilize the measurement environment"],
    'high_error_estimate': [],
}


@dataclass
class DataQualityEvaluation:
    """Evaluation of one sample."""

    is_acceptable: bool
    quality_score: float
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


@dataclass
class NLOSDetectionResult:
    """NLOS assessment of a batch of samples."""

    is_nlos_detected: bool
    line_of_sight_percentage: float
    average_signal_strength: float
    recommendation: str


class DataQualityMonitor:
    """
    Evaluate observation quality.

    Usage:
        monitor = DataQualityMonitor()
        evaluation = monitor.evaluate(obs)
        if not evaluation.is_acceptable:
            ...
        nlos = monitor.detect_nlos(session.observations)
    """

    def __init__(self, config: Optional[DataQualityConfig] = None):
        self.config = config or DataQualityConfig()
        self.metrics = get_metrics()

    def evaluate(self, observation: ObservationPoint) -> DataQualityEvaluation:
        """
        Evaluate one sample.

        Args:
            observation: Sample to evaluate

        Returns:
            DataQualityEvaluation with issue codes and recommendations
        """
        issues = []
        acceptable = True
        quality = observation.quality

        # Check 1: signal strength
        if quality.strength < self.config.min_strength:
            issues.append('low_signal_strength')
            acceptable = False

        # Check 2: RSSI (advisory)
        if observation.rssi < self.config.min_rssi_dbm:
            issues.append('low_rssi')

        # Check 3: confidence
        if quality.confidence_level < self.config.min_confidence:
            issues.append('low_confidence')
            acceptable = False

        # Check 4: error estimate (advisory)
        if quality.error_estimate > self.config.max_error_m:
            issues.append('high_error_estimate')

        if not acceptable:
            self.metrics.increment('quality_rejections')

        recommendations = []
        for issue in issues:
            recommendations.extend(ISSUE_RECOMMENDATIONS.get(issue, []))

        return DataQualityEvaluation(
            is_acceptable=acceptable,
            quality_score=quality.strength,
            issues=issues,
            recommendations=recommendations,
        )

    def detect_nlos(self, observations: Sequence[ObservationPoint]) -> NLOSDetectionResult:
        """
        Flag a batch whose line-of-sight share is below the threshold.

        An empty batch has 0% LOS and is therefore flagged.
        """
        total = len(observations)
        los_count = sum(1 for o in observations if o.quality.is_line_of_sight)
        los_pct = (los_count / total * 100.0) if total else 0.0
        avg_strength = (sum(o.quality.strength for o in observations) / total) if total else 0.0

        detected = los_pct < self.config.min_los_percentage
        return NLOSDetectionResult(
            is_nlos_detected=detected,
            line_of_sight_percentage=los_pct,
            average_signal_strength=avg_strength,
            recommendation=(
                "Remove obstacles or reposition the antenna"
                if detected else "Measurement environment is good"
            ),
        )

    def acceptable_fraction(self, observations: Sequence[ObservationPoint]) -> float:
        """Share of samples that pass evaluation (0 for empty input)."""
        if not observations:
            return 0.0
        return sum(1 for o in observations if self.evaluate(o).is_acceptable) / len(observations)
