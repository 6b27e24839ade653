"""
Asynchronous per-tag data collection for the auto-calibration loop.

For each tag position in turn:

1. Optionally await a prepare(tag_id) hook (operator moves the tag)
2. Start a ranging session per antenna
3. Accumulate samples for a fixed collection window
4. Stop the sessions and hand the accumulated samples to the calibration
5. Wait a settle period before the next tag

The window and settle waits are asyncio suspension points. Cancellation,
either cancel() or cancelling the task, discards only the samples of the
tag currently being collected; tags already handed over stay intact.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from acal_core.calibration.auto_calibration import AutoAntennaCalibration
from acal_core.io.ranging_source import RangingDataSource
from acal_core.proto.observation import ObservationPoint


logger = logging.getLogger(__name__)


@dataclass
class CollectionConfig:
    """
    Timing of tag collection.

    Attributes:
        collection_window_s: Sampling time per tag position (s)
        settle_s: Wait after each tag before the next one (s)
        poll_interval_s: Drain interval during the window (s)
    """

    collection_window_s: float = 10.0
    settle_s: float = 2.0
    poll_interval_s: float = 0.1

    def __post_init__(self):
        if self.collection_window_s <= 0:
            raise ValueError("collection_window_s must be positive")
        if self.settle_s < 0:
            raise ValueError("settle_s must be >= 0")
        if self.poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be positive")


@dataclass
class CollectionReport:
    """
    Outcome of one collect() run.

    Attributes:
        completed_tags: Tags whose samples were handed to the calibration
        samples_per_tag: tag_id -> antenna_id -> sample count
        cancelled: True if the run stopped early
        discarded_tag: Tag whose in-flight samples were dropped on cancel
    """

    completed_tags: List[str] = field(default_factory=list)
    samples_per_tag: Dict[str, Dict[str, int]] = field(default_factory=dict)
    cancelled: bool = False
    discarded_tag: Optional[str] = None


class TagPositionCollector:
    """
    Collect samples tag by tag from a ranging source.

    Usage:
        collector = TagPositionCollector(auto, source, CollectionConfig())
        report = await collector.collect(['Tag 1', 'Tag 2', 'Tag 3'], ['antenna1'])
        results = auto.execute(['antenna1'])
    """

    def __init__(
        self,
        calibration: AutoAntennaCalibration,
        source: RangingDataSource,
        config: Optional[CollectionConfig] = None,
    ):
        self.calibration = calibration
        self.source = source
        self.config = config or CollectionConfig()
        self._cancel_requested = False
        self.current_tag: Optional[str] = None

    def cancel(self):
        """Request cancellation; takes effect at the next suspension point."""
        self._cancel_requested = True

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    async def collect(
        self,
        tag_ids: Sequence[str],
        antenna_ids: Sequence[str],
        prepare: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> CollectionReport:
        """
        Run the collection sequence.

        Args:
            tag_ids: Tag positions in collection order
            antenna_ids: Antennas sampled at every tag position
            prepare: Awaited before each tag's window opens

        Returns:
            CollectionReport (cancelled=True if cancel() stopped the run)

        Raises:
            asyncio.CancelledError: If the task is cancelled; completed
                tags have already been handed over
        """
        self._cancel_requested = False
        report = CollectionReport()

        for index, tag_id in enumerate(tag_ids):
            if self._cancel_requested:
                report.cancelled = True
                break

            if prepare is not None:
                await prepare(tag_id)

            self.current_tag = tag_id
            accumulated = await self._collect_tag(tag_id, antenna_ids)
            self.current_tag = None

            if accumulated is None:
                report.cancelled = True
                report.discarded_tag = tag_id
                logger.info("Collection cancelled during tag %s; in-flight samples discarded", tag_id)
                break

            # Hand over: from here on the tag's data is kept
            report.samples_per_tag[tag_id] = {}
            for antenna_id, samples in accumulated.items():
                self.calibration.add_measured_batch(tag_id, samples)
                report.samples_per_tag[tag_id][antenna_id] = len(samples)
            report.completed_tags.append(tag_id)
            logger.info(
                "Tag %s collected (%d/%d): %s",
                tag_id, index + 1, len(tag_ids), report.samples_per_tag[tag_id],
            )

            if index < len(tag_ids) - 1 and self.config.settle_s > 0:
                await asyncio.sleep(self.config.settle_s)

        return report

    async def _collect_tag(
        self,
        tag_id: str,
        antenna_ids: Sequence[str],
    ) -> Optional[Dict[str, List[ObservationPoint]]]:
        """
        Sample one tag position for the collection window.

        Returns:
            antenna_id -> samples, or None if cancel() was requested
        """
        sessions = {antenna_id: f"{tag_id}-{uuid.uuid4().hex[:8]}" for antenna_id in antenna_ids}
        accumulated: Dict[str, List[ObservationPoint]] = {a: [] for a in antenna_ids}

        for antenna_id, session_id in sessions.items():
            self.source.start(antenna_id, session_id)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.collection_window_s

        try:
            while True:
                self._drain_into(accumulated, sessions)
                if self._cancel_requested:
                    return None

                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(self.config.poll_interval_s, remaining))

            self._drain_into(accumulated, sessions)
        finally:
            for antenna_id, session_id in sessions.items():
                self.source.stop(antenna_id, session_id)

        return accumulated

    def _drain_into(self, accumulated: Dict[str, List[ObservationPoint]], sessions: Dict[str, str]):
        for antenna_id, session_id in sessions.items():
            accumulated[antenna_id].extend(self.source.drain(antenna_id, session_id))
