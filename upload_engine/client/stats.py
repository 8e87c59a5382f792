"""Upload progress statistics and throughput estimation."""

import math
import time
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class ProgressEvent:
    """Snapshot of an upload's progress.

    Attributes:
        bytes_acknowledged: Bytes confirmed by the endpoint
        source_size: Total number of bytes to upload
        bytes_per_second: Throughput since the current run started
        eta_seconds: Estimated seconds to completion (``math.inf`` if unknown)
        chunks_completed: Number of chunks successfully appended
        chunks_retried: Number of chunks that needed at least one retry
    """

    bytes_acknowledged: int
    source_size: int
    bytes_per_second: float = 0.0
    eta_seconds: float = math.inf
    chunks_completed: int = 0
    chunks_retried: int = 0

    @property
    def percentage(self) -> float:
        """Progress as percentage (0-100)."""
        if self.source_size > 0:
            return (self.bytes_acknowledged / self.source_size) * 100
        return 100.0

    @property
    def upload_speed_mbps(self) -> float:
        """Throughput in MB/second."""
        return self.bytes_per_second / (1024 * 1024)


@dataclass(frozen=True)
class SpeedSample:
    bytes_per_second: float
    eta_seconds: float


class SpeedEstimator:
    """Derive throughput and time remaining from acknowledged offsets.

    The baseline ``(start_time, start_bytes)`` is captured at the first
    observation after construction or ``reset()``. Samples taken less than
    one second after the baseline report no speed, which keeps near
    simultaneous samples from producing wild estimates.
    """

    MIN_ELAPSED = 1.0

    def __init__(self, total_bytes: int, clock: Callable[[], float] = time.monotonic):
        self.total_bytes = total_bytes
        self.clock = clock
        self._start_time: Optional[float] = None
        self._start_bytes = 0

    def reset(self) -> None:
        """Drop the baseline; the next observation starts a new window."""
        self._start_time = None
        self._start_bytes = 0

    def observe(self, bytes_acknowledged: int, timestamp: Optional[float] = None) -> SpeedSample:
        """Record a confirmed offset and return the current estimate."""
        now = self.clock() if timestamp is None else timestamp
        if self._start_time is None:
            self._start_time = now
            self._start_bytes = bytes_acknowledged
            return SpeedSample(0.0, math.inf)

        elapsed = now - self._start_time
        if elapsed < self.MIN_ELAPSED:
            return SpeedSample(0.0, math.inf)

        speed = (bytes_acknowledged - self._start_bytes) / elapsed
        if speed > 0:
            eta = (self.total_bytes - bytes_acknowledged) / speed
        else:
            eta = math.inf
        return SpeedSample(speed, eta)
