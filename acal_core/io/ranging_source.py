"""
Ranging data source interface.

The hardware/transport layer streams ObservationPoints per
(antenna_id, session_id). The calibration core polls it with drain();
connectivity is exposed as a two-state flag that the workflow reports as
an advisory when collection stalls.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from acal_core.proto.observation import ObservationPoint


logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class RangingDataSource(ABC):
    """Stream of observation samples for one or more antennas."""

    @property
    @abstractmethod
    def connection_state(self) -> ConnectionState:
        ...

    @abstractmethod
    def start(self, antenna_id: str, session_id: str) -> None:
        """Begin streaming samples for antenna_id, tagged with session_id."""

    @abstractmethod
    def stop(self, antenna_id: str, session_id: str) -> None:
        ...

    @abstractmethod
    def pause(self, antenna_id: str, session_id: str) -> None:
        ...

    @abstractmethod
    def resume(self, antenna_id: str, session_id: str) -> None:
        ...

    @abstractmethod
    def drain(self, antenna_id: str, session_id: str) -> List[ObservationPoint]:
        """Return and remove samples received since the last drain."""

    @property
    def is_connected(self) -> bool:
        return self.connection_state == ConnectionState.CONNECTED


class ReplayRangingSource(RangingDataSource):
    """
    Replay scripted samples as if they arrived from hardware.

    Each start() queues the antenna's script (re-tagged with the session id
    and antenna id). drain() releases up to batch_size queued samples, or
    all of them when batch_size is None. Paused or disconnected streams
    release nothing.

    Usage:
        source = ReplayRangingSource({'antenna1': samples}, batch_size=10)
        source.start('antenna1', session.id)
        batch = source.drain('antenna1', session.id)
    """

    def __init__(
        self,
        scripts: Optional[Dict[str, Iterable[ObservationPoint]]] = None,
        batch_size: Optional[int] = None,
    ):
        self._lock = threading.Lock()
        self._scripts: Dict[str, List[ObservationPoint]] = {
            antenna_id: list(samples) for antenna_id, samples in (scripts or {}).items()
        }
        self._queues: Dict[Tuple[str, str], List[ObservationPoint]] = {}
        self._paused = set()
        self._state = ConnectionState.CONNECTED
        self.batch_size = batch_size

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    def set_script(self, antenna_id: str, samples: Iterable[ObservationPoint]):
        with self._lock:
            self._scripts[antenna_id] = list(samples)

    def connect(self):
        self._state = ConnectionState.CONNECTED

    def disconnect(self):
        logger.warning("Ranging source disconnected")
        self._state = ConnectionState.DISCONNECTED

    def start(self, antenna_id: str, session_id: str) -> None:
        key = (antenna_id, session_id)
        with self._lock:
            queued = [
                replace(sample, antenna_id=antenna_id, session_id=session_id)
                for sample in self._scripts.get(antenna_id, [])
            ]
            self._queues[key] = queued
            self._paused.discard(key)
        logger.debug("Replay started for %s (%d samples)", antenna_id, len(queued))

    def stop(self, antenna_id: str, session_id: str) -> None:
        key = (antenna_id, session_id)
        with self._lock:
            self._queues.pop(key, None)
            self._paused.discard(key)

    def pause(self, antenna_id: str, session_id: str) -> None:
        with self._lock:
            self._paused.add((antenna_id, session_id))

    def resume(self, antenna_id: str, session_id: str) -> None:
        with self._lock:
            self._paused.discard((antenna_id, session_id))

    def drain(self, antenna_id: str, session_id: str) -> List[ObservationPoint]:
        key = (antenna_id, session_id)
        with self._lock:
            if self._state != ConnectionState.CONNECTED or key in self._paused:
                return []
            queue = self._queues.get(key)
            if not queue:
                return []
            count = len(queue) if self.batch_size is None else self.batch_size
            batch, self._queues[key] = queue[:count], queue[count:]
            return batch

    def pending(self, antenna_id: str, session_id: str) -> int:
        with self._lock:
            return len(self._queues.get((antenna_id, session_id), []))
