"""
Sensor Data Processor.

Conditions a raw observation stream before it is summarized and fitted.
Pipeline, strictly ordered:

1. Trim: drop first_trim head / end_trim tail samples (settling transients)
2. Moving average: trailing window over positions
3. NLOS filter: drop samples flagged non-line-of-sight

Every degenerate configuration degrades to a passthrough; the processor
never raises.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence
import math

from acal_core.metrics import get_metrics
from acal_core.proto.geometry import Point3D
from acal_core.proto.observation import ObservationPoint


logger = logging.getLogger(__name__)


@dataclass
class SensorDataProcessingConfig:
    """
    Configuration for observation conditioning.

    Attributes:
        first_trim: Samples to drop from the head
        end_trim: Samples to drop from the tail
        moving_average_window_size: Trailing window length (<= 1 disables)
        filter_nlos: Drop samples flagged non-line-of-sight

    Notes:
        Negative trims are clamped to 0 rather than rejected.
    """

    first_trim: int = 20
    end_trim: int = 20
    moving_average_window_size: int = 10
    filter_nlos: bool = False

    def __post_init__(self):
        self.first_trim = max(0, int(self.first_trim))
        self.end_trim = max(0, int(self.end_trim))
        self.moving_average_window_size = int(self.moving_average_window_size)


@dataclass
class ProcessingStatistics:
    """
    Before/after statistics of one processing run.

    Attributes:
        original_count: Input samples
        processed_count: Output samples
        trimmed_count: Samples removed by trim and NLOS filter
        original_std_dev: Horizontal position spread of the input (m)
        processed_std_dev: Horizontal position spread of the output (m)
    """

    original_count: int
    processed_count: int
    trimmed_count: int
    original_std_dev: float
    processed_std_dev: float

    @property
    def trim_rate(self) -> float:
        """Fraction of input samples removed."""
        if self.original_count <= 0:
            return 0.0
        return self.trimmed_count / self.original_count

    @property
    def std_dev_improvement(self) -> float:
        """Relative reduction of position spread (positive = tighter)."""
        if self.original_std_dev <= 0:
            return 0.0
        return (self.original_std_dev - self.processed_std_dev) / self.original_std_dev

    def to_dict(self) -> dict:
        return {
            'original_count': self.original_count,
            'processed_count': self.processed_count,
            'trimmed_count': self.trimmed_count,
            'trim_rate': self.trim_rate,
            'original_std_dev': self.original_std_dev,
            'processed_std_dev': self.processed_std_dev,
            'std_dev_improvement': self.std_dev_improvement,
        }


def apply_moving_average(points: Sequence[Point3D], window: int) -> List[Point3D]:
    """
    Trailing moving average over a bare coordinate sequence.

    Index i >= window-1 becomes the mean of points[i-window+1 .. i]; earlier
    indices keep their original value. Passthrough when window <= 1 or
    window > len(points).

    Args:
        points: Coordinate sequence
        window: Window length

    Returns:
        New list of smoothed points (same length as input)
    """
    pts = list(points)
    if window <= 1 or window > len(pts):
        return pts

    result = pts[:window - 1]
    for i in range(window - 1, len(pts)):
        win = pts[i - window + 1:i + 1]
        result.append(Point3D(
            sum(p.x for p in win) / window,
            sum(p.y for p in win) / window,
            sum(p.z for p in win) / window,
        ))

    return result


def position_std_dev(points: Sequence[Point3D]) -> float:
    """Horizontal spread sqrt(sum(dx^2 + dy^2) / (n - 1)); 0 for n < 2."""
    n = len(points)
    if n < 2:
        return 0.0

    mean_x = sum(p.x for p in points) / n
    mean_y = sum(p.y for p in points) / n
    variance = sum((p.x - mean_x) ** 2 + (p.y - mean_y) ** 2 for p in points) / (n - 1)
    return math.sqrt(variance)


class SensorDataProcessor:
    """
    Trim, smooth and NLOS-filter observation sequences.

    Usage:
        processor = SensorDataProcessor(SensorDataProcessingConfig(first_trim=5, end_trim=5))
        cleaned = processor.process_observations(raw)
        stats = processor.calculate_statistics(raw, cleaned)
    """

    def __init__(self, config: Optional[SensorDataProcessingConfig] = None):
        self.config = config or SensorDataProcessingConfig()
        self.metrics = get_metrics()

    def process_observations(self, observations: Sequence[ObservationPoint]) -> List[ObservationPoint]:
        """
        Run the full pipeline: trim -> moving average -> NLOS filter.

        Args:
            observations: Raw samples in arrival order

        Returns:
            Conditioned samples (ids, timestamps and quality preserved)
        """
        trimmed = self.trim(observations)
        smoothed = self.smooth(trimmed)
        filtered = self.filter_nlos(smoothed)

        self.metrics.increment('observations_processed', len(filtered))
        logger.debug(
            "Processed %d -> %d observations (trim %d/%d, window %d, nlos=%s)",
            len(observations), len(filtered),
            self.config.first_trim, self.config.end_trim,
            self.config.moving_average_window_size, self.config.filter_nlos,
        )
        return filtered

    def process_positions(self, points: Sequence[Point3D]) -> List[Point3D]:
        """Trim and smooth a bare coordinate sequence (no quality, no NLOS step)."""
        return apply_moving_average(self._trim_slice(list(points)), self.config.moving_average_window_size)

    def trim(self, observations: Sequence[ObservationPoint]) -> List[ObservationPoint]:
        """Drop head/tail samples; no-op if len <= first_trim + end_trim."""
        items = list(observations)
        result = self._trim_slice(items)
        self.metrics.increment_drop('trimmed', len(items) - len(result))
        return result

    def _trim_slice(self, items: list) -> list:
        total = len(items)
        if total <= self.config.first_trim + self.config.end_trim:
            return items
        return items[self.config.first_trim:total - self.config.end_trim]

    def smooth(self, observations: Sequence[ObservationPoint]) -> List[ObservationPoint]:
        """Replace positions with their trailing moving average."""
        items = list(observations)
        smoothed = apply_moving_average(
            [o.position for o in items], self.config.moving_average_window_size
        )
        return [
            obs if obs.position == pos else obs.with_position(pos)
            for obs, pos in zip(items, smoothed)
        ]

    def filter_nlos(self, observations: Sequence[ObservationPoint]) -> List[ObservationPoint]:
        """Drop NLOS samples if enabled, preserving order; identity otherwise."""
        items = list(observations)
        if not self.config.filter_nlos:
            return items

        result = [o for o in items if o.quality.is_line_of_sight]
        self.metrics.increment_drop('nlos_filtered', len(items) - len(result))
        return result

    def calculate_statistics(
        self,
        original: Sequence[ObservationPoint],
        processed: Sequence[ObservationPoint],
    ) -> ProcessingStatistics:
        """
        Compare input and output of a processing run.

        Args:
            original: Raw samples
            processed: Output of process_observations

        Returns:
            ProcessingStatistics
        """
        return ProcessingStatistics(
            original_count=len(original),
            processed_count=len(processed),
            trimmed_count=len(original) - len(processed),
            original_std_dev=position_std_dev([o.position for o in original]),
            processed_std_dev=position_std_dev([o.position for o in processed]),
        )


def create_default_processor() -> SensorDataProcessor:
    """Create processor with field defaults (trim 20/20, window 10, NLOS off)."""
    return SensorDataProcessor(SensorDataProcessingConfig())
