"""Retention buffer for process usage samples.

Holds the most recent max_records samples (default 10000) in collection
order. The collector appends, socket clients read snapshots; both go
through one lock so readers always see a whole number of appends.
"""

import threading
from collections import deque
from collections.abc import Iterable
from datetime import datetime

import structlog

from powerwatch.collector import ProcessUsage

log = structlog.get_logger()


class RetentionBuffer:
    """Bounded FIFO store of samples, safe for concurrent append and read.

    When full, each append evicts exactly the oldest sample.
    """

    def __init__(self, max_records: int = 10000) -> None:
        if max_records < 1:
            log.warning("max_records_clamped", configured=max_records, using=1)
            max_records = 1
        self._samples: deque[ProcessUsage] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        """Return number of samples in buffer."""
        with self._lock:
            return len(self._samples)

    @property
    def is_empty(self) -> bool:
        """Return True if buffer has no samples."""
        return len(self) == 0

    @property
    def capacity(self) -> int:
        """Return maximum number of samples the buffer can hold."""
        return self._samples.maxlen or 0

    def append(self, sample: ProcessUsage) -> None:
        """Add a sample, evicting the oldest if the buffer is full."""
        with self._lock:
            self._samples.append(sample)

    def extend(self, samples: Iterable[ProcessUsage]) -> None:
        """Add a batch of samples in order under a single lock acquisition."""
        batch = list(samples)
        with self._lock:
            self._samples.extend(batch)

    def snapshot(self, since: datetime) -> list[ProcessUsage]:
        """Return a copy of every sample recorded strictly after `since`.

        The returned list is detached: later appends never change it.
        """
        with self._lock:
            return [s for s in self._samples if s.timestamp > since]

    def freeze(self) -> tuple[ProcessUsage, ...]:
        """Return immutable copy of buffer contents."""
        with self._lock:
            return tuple(self._samples)

    def clear(self) -> None:
        """Empty the buffer."""
        with self._lock:
            self._samples.clear()
