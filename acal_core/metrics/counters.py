"""
Calibration diagnostics: counters, drop reasons and fit-quality histograms.

Three kinds of bookkeeping:
- Counters for pipeline throughput (observations recorded, mappings, fits)
- Drop reasons, one code per discarded observation, so a calibration run
  can explain where its samples went
- Bounded histograms of fit quality (affine accuracy, pose RMSE)

Fit counters come in pairs (``<kind>_fits`` / ``<kind>_fit_failures``);
the summary reports them together as a success rate.
"""

import logging
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

import numpy as np


logger = logging.getLogger(__name__)

DEFAULT_HISTOGRAM_SAMPLES = 10000

# Fit kinds reported as "<kind>_fits" / "<kind>_fit_failures" pairs
FIT_KINDS = ('affine', 'pose')


@dataclass
class CounterSnapshot:
    """Point-in-time copy of a collector."""

    timestamp: float
    counters: Dict[str, int]
    drop_reasons: Dict[str, int]
    histograms: Dict[str, List[float]]

    def total_dropped(self) -> int:
        return sum(self.drop_reasons.values())

    def drop_rate(self, total_observations: int) -> float:
        """Dropped observations as a percentage of total_observations."""
        if total_observations == 0:
            return 0.0
        return (self.total_dropped() / total_observations) * 100.0

    def fit_success_rate(self, kind: str) -> Optional[float]:
        """Share of successful fits of one kind, None if none were attempted."""
        ok = self.counters.get(f'{kind}_fits', 0)
        failed = self.counters.get(f'{kind}_fit_failures', 0)
        if ok + failed == 0:
            return None
        return ok / (ok + failed)


def summarize_samples(samples) -> Optional[Dict[str, float]]:
    """count / min / max / mean / median / p95 of a sample sequence."""
    if len(samples) == 0:
        return None
    values = np.asarray(samples, dtype=float)
    median, p95 = np.percentile(values, [50.0, 95.0])
    return {
        'count': int(values.size),
        'min': float(values.min()),
        'max': float(values.max()),
        'mean': float(values.mean()),
        'median': float(median),
        'p95': float(p95),
    }


class MetricsCollector:
    """
    Thread-safe calibration metrics.

    Usage:
        metrics = MetricsCollector()
        metrics.increment('observations_recorded')
        metrics.increment_drop('nlos_filtered')
        metrics.record_histogram('affine_fit_accuracy_m', 0.04)
        metrics.log_summary()
    """

    DROP_REASONS = {
        'trimmed': 'Removed by head/tail trim',
        'nlos_filtered': 'Non-line-of-sight sample removed',
        'low_signal_strength': 'Signal strength below acceptance threshold',
        'low_confidence': 'Measurement confidence below acceptance threshold',
        'unmatched_observation': 'No reference point within match distance',
        'insufficient_tag_samples': 'Tag position had too few samples',
        'non_finite_position': 'Position contained NaN or infinity',
        'session_closed': 'Sample arrived without a recording session',
    }

    OBSERVATION_COUNTERS = (
        'observations_recorded',
        'observations_processed',
        'observations_dropped',
        'quality_rejections',
        'mappings_created',
    )

    FIT_COUNTERS = tuple(
        name for kind in FIT_KINDS for name in (f'{kind}_fits', f'{kind}_fit_failures')
    )

    RUN_COUNTERS = ('workflow_runs',)

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Counter = Counter()
        self._drop_reasons: Counter = Counter()
        self._histograms: Dict[str, Deque[float]] = {}
        self._start_time = time.time()
        self._seed()

    def _seed(self):
        """Make every standard key visible at zero."""
        with self._lock:
            for name in self.OBSERVATION_COUNTERS + self.FIT_COUNTERS + self.RUN_COUNTERS:
                self._counters.setdefault(name, 0)
            for reason in self.DROP_REASONS:
                self._drop_reasons.setdefault(reason, 0)

    # =========================================================================
    # Counters and drops
    # =========================================================================

    def increment(self, counter_name: str, value: int = 1):
        with self._lock:
            self._counters[counter_name] += value

    def increment_drop(self, reason: str, value: int = 1):
        """
        Count value discarded observations under a reason code.

        Non-positive values are ignored. Unknown codes are counted but
        reported through the logger.
        """
        if value <= 0:
            return
        if reason not in self.DROP_REASONS:
            logger.warning("Unknown drop reason '%s'", reason)

        with self._lock:
            self._drop_reasons[reason] += value
            self._counters['observations_dropped'] += value

    def get_counter(self, counter_name: str) -> int:
        with self._lock:
            return self._counters.get(counter_name, 0)

    def get_drop_count(self, reason: str) -> int:
        with self._lock:
            return self._drop_reasons.get(reason, 0)

    # =========================================================================
    # Histograms
    # =========================================================================

    def record_histogram(
        self,
        histogram_name: str,
        value: float,
        max_samples: int = DEFAULT_HISTOGRAM_SAMPLES,
    ):
        """
        Record a value, keeping only the newest max_samples values.

        Args:
            histogram_name: Histogram key (e.g. 'antenna_pose_rmse_m')
            value: Sample
            max_samples: Retention bound for this histogram
        """
        with self._lock:
            samples = self._histograms.get(histogram_name)
            if samples is None or samples.maxlen != max_samples:
                samples = deque(samples or (), maxlen=max_samples)
                self._histograms[histogram_name] = samples
            samples.append(float(value))

    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Summary of one histogram.

        Returns:
            Dict with count, min, max, mean, median, p95; None if empty
        """
        with self._lock:
            samples = list(self._histograms.get(histogram_name, ()))
        return summarize_samples(samples)

    # =========================================================================
    # Snapshot / reset
    # =========================================================================

    def snapshot(self) -> CounterSnapshot:
        with self._lock:
            return CounterSnapshot(
                timestamp=time.time(),
                counters=dict(self._counters),
                drop_reasons=dict(self._drop_reasons),
                histograms={name: list(samples) for name, samples in self._histograms.items()},
            )

    def reset(self):
        """Zero everything and restart the uptime clock."""
        with self._lock:
            self._counters = Counter()
            self._drop_reasons = Counter()
            self._histograms = {}
            self._start_time = time.time()
        self._seed()

    def get_uptime(self) -> float:
        return time.time() - self._start_time

    # =========================================================================
    # Reporting
    # =========================================================================

    def format_summary(self) -> str:
        """Human-readable report grouped by pipeline stage."""
        snap = self.snapshot()
        rule = "=" * 70
        lines = [rule, f"  CALIBRATION METRICS (uptime: {self.get_uptime():.1f}s)", rule]

        lines.append("OBSERVATIONS:")
        for name in self.OBSERVATION_COUNTERS:
            lines.append(f"  {name:30s}: {snap.counters.get(name, 0):8d}")

        lines.append("FITS:")
        for kind in FIT_KINDS:
            rate = snap.fit_success_rate(kind)
            ok = snap.counters.get(f'{kind}_fits', 0)
            failed = snap.counters.get(f'{kind}_fit_failures', 0)
            rate_text = "n/a" if rate is None else f"{rate * 100:5.1f}%"
            lines.append(f"  {kind + '_fits':30s}: {ok:8d} ok, {failed} failed ({rate_text})")

        known = set(self.OBSERVATION_COUNTERS + self.FIT_COUNTERS)
        others = sorted(name for name in snap.counters if name not in known)
        if others:
            lines.append("OTHER COUNTERS:")
            for name in others:
                lines.append(f"  {name:30s}: {snap.counters[name]:8d}")

        total_dropped = snap.total_dropped()
        if total_dropped:
            lines.append(f"DROP REASONS ({total_dropped} total):")
            for reason, count in Counter(snap.drop_reasons).most_common():
                if count:
                    lines.append(f"  {reason:30s}: {count:8d} ({count / total_dropped * 100:5.1f}%)")

        if snap.histograms:
            lines.append("FIT QUALITY:")
            for name in sorted(snap.histograms):
                stats = summarize_samples(snap.histograms[name])
                if stats:
                    lines.append(
                        f"  {name}: count={stats['count']}, mean={stats['mean']:.4f}, "
                        f"p95={stats['p95']:.4f}, max={stats['max']:.4f}"
                    )

        lines.append(rule)
        return "\n".join(lines)

    def log_summary(self, level: int = logging.INFO):
        logger.log(level, "\n%s", self.format_summary())
