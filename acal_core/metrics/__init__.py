"""
Calibration diagnostics shared by every pipeline stage.

Components grab the process-wide collector at construction:

    from acal_core.metrics import get_metrics

    metrics = get_metrics()
    metrics.increment('observations_recorded')
    metrics.increment_drop('nlos_filtered')
    metrics.record_histogram('antenna_pose_rmse_m', 0.12)

Tests call reset_metrics() between cases so counts never leak.
"""

import threading
from typing import Optional

from .counters import CounterSnapshot, MetricsCollector, summarize_samples

_collector: Optional[MetricsCollector] = None
_collector_lock = threading.Lock()


def get_metrics() -> MetricsCollector:
    """Process-wide collector, created on first use."""
    global _collector
    with _collector_lock:
        if _collector is None:
            _collector = MetricsCollector()
        return _collector


def reset_metrics() -> MetricsCollector:
    """Replace the process-wide collector with a fresh one and return it."""
    global _collector
    with _collector_lock:
        _collector = MetricsCollector()
        return _collector


__all__ = ['CounterSnapshot', 'MetricsCollector', 'get_metrics', 'reset_metrics', 'summarize_samples']
