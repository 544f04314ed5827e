"""Resource usage snapshots for recovery decisions."""

from __future__ import annotations

import logging
import time
from typing import Callable

import psutil

from agentloop.recovery.types import ResourceUsage

logger = logging.getLogger(__name__)


class ResourceMonitor:
    """Takes cheap cpu/memory/io snapshots of the host process.

    ``cpu`` and ``memory`` are system-wide fractions; ``memory_bytes`` is the
    current RSS of this process. ``network_latency`` is whatever the host last
    reported via ``record_latency``; the monitor does not probe the network.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._process = psutil.Process()
        self._last_io: tuple[float, int] | None = None
        self._network_latency = 0.0
        # Prime the counter: the first non-blocking call always returns 0.0
        psutil.cpu_percent(interval=None)

    def record_latency(self, seconds: float) -> None:
        self._network_latency = max(0.0, seconds)

    def snapshot(self) -> ResourceUsage:
        try:
            return ResourceUsage(
                cpu=psutil.cpu_percent(interval=None) / 100,
                memory=psutil.virtual_memory().percent / 100,
                memory_bytes=self._process.memory_info().rss,
                io=self._io_rate(),
                network_latency=self._network_latency,
            )
        except psutil.Error as e:
            logger.warning("Failed to sample resource usage: %s", e)
            return ResourceUsage(network_latency=self._network_latency)

    def _io_rate(self) -> float:
        total = self._io_bytes()
        if total is None:
            return 0.0
        now = self._clock()
        previous, self._last_io = self._last_io, (now, total)
        if previous is None or now <= previous[0]:
            return 0.0
        return max(0.0, (total - previous[1]) / (now - previous[0]))

    def _io_bytes(self) -> int | None:
        # Process.io_counters is not available on every platform (macOS)
        if not hasattr(self._process, "io_counters"):
            return None
        try:
            counters = self._process.io_counters()
        except psutil.AccessDenied:
            return None
        return counters.read_bytes + counters.write_bytes
