"""Recovery metrics: per-strategy counters, global totals and rolling windows.

Each strategy type owns one bucket guarded by its own lock, so concurrent
loops updating different strategies never contend. Global totals have a
separate lock.
"""

from __future__ import annotations

import copy
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Callable

from agentloop.recovery.errors import ErrorKind, ErrorSeverity
from agentloop.recovery.types import RecoveryStrategyType, ResourceUsage

HOUR = 3600.0
DAY = 24 * HOUR
WEEK = 7 * DAY


@dataclass
class StrategyMetrics:
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    average_time: float = 0.0
    resource_usage: ResourceUsage = field(default_factory=ResourceUsage)


@dataclass
class WindowMetrics:
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    average_response_time: float = 0.0


@dataclass
class RecoveryMetrics:
    """Aggregated view returned by ``StrategyMetricsTracker.snapshot``."""

    total_attempts: int = 0
    successful_recoveries: int = 0
    failed_recoveries: int = 0
    average_recovery_time: float = 0.0
    recovery_success_rate: float = 0.0
    strategy_metrics: dict[RecoveryStrategyType, StrategyMetrics] = field(default_factory=dict)
    error_distribution: dict[str, float] = field(default_factory=dict)
    severity_distribution: dict[str, float] = field(default_factory=dict)
    time_based: dict[str, WindowMetrics] = field(default_factory=dict)

    @property
    def error_rate(self) -> float:
        if not self.total_attempts:
            return 0.0
        return self.failed_recoveries / self.total_attempts


@dataclass
class _Sample:
    timestamp: float
    successful: bool
    duration: float


def _distribution(counter: Counter) -> dict[str, float]:
    total = sum(counter.values())
    if not total:
        return {}
    return {name: count / total for name, count in counter.items()}


class StrategyMetricsTracker:
    """Thread-safe recovery metrics.

    Usage:
        tracker = StrategyMetricsTracker()
        tracker.record(RecoveryStrategyType.RETRY, True, 0.4, kind, severity)
        metrics = tracker.snapshot()
        metrics.recovery_success_rate  # 1.0
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._buckets: dict[RecoveryStrategyType, StrategyMetrics] = {
            t: StrategyMetrics() for t in RecoveryStrategyType
        }
        self._bucket_locks = {t: threading.Lock() for t in RecoveryStrategyType}
        self._global_lock = threading.Lock()
        self._reset_globals()

    def _reset_globals(self) -> None:
        self._total_attempts = 0
        self._successes = 0
        self._failures = 0
        self._average_time = 0.0
        self._errors: Counter = Counter()
        self._severities: Counter = Counter()
        self._samples: deque[_Sample] = deque()

    def record(
        self,
        strategy_type: RecoveryStrategyType,
        successful: bool,
        duration: float,
        kind: ErrorKind | None = None,
        severity: ErrorSeverity | None = None,
        resource_usage: ResourceUsage | None = None,
    ) -> None:
        """Record one finished recovery."""
        with self._bucket_locks[strategy_type]:
            bucket = self._buckets[strategy_type]
            bucket.attempts += 1
            if successful:
                bucket.successes += 1
            else:
                bucket.failures += 1
            bucket.average_time += (duration - bucket.average_time) / bucket.attempts
            if resource_usage is not None:
                bucket.resource_usage = copy.copy(resource_usage)

        now = self._clock()
        with self._global_lock:
            self._total_attempts += 1
            if successful:
                self._successes += 1
            else:
                self._failures += 1
            self._average_time += (duration - self._average_time) / self._total_attempts
            if kind is not None:
                self._errors[kind.name] += 1
            if severity is not None:
                self._severities[severity.name] += 1
            self._samples.append(_Sample(now, successful, duration))
            self._prune(now)

    def _prune(self, now: float) -> None:
        while self._samples and now - self._samples[0].timestamp > WEEK:
            self._samples.popleft()

    def strategy(self, strategy_type: RecoveryStrategyType) -> StrategyMetrics:
        with self._bucket_locks[strategy_type]:
            return copy.deepcopy(self._buckets[strategy_type])

    def snapshot(self) -> RecoveryMetrics:
        """Deep copy of the current metrics."""
        strategy_metrics = {t: self.strategy(t) for t in RecoveryStrategyType}
        now = self._clock()
        with self._global_lock:
            self._prune(now)
            total = self._total_attempts
            return RecoveryMetrics(
                total_attempts=total,
                successful_recoveries=self._successes,
                failed_recoveries=self._failures,
                average_recovery_time=self._average_time,
                recovery_success_rate=self._successes / total if total else 0.0,
                strategy_metrics=strategy_metrics,
                error_distribution=_distribution(self._errors),
                severity_distribution=_distribution(self._severities),
                time_based={
                    "hourly": self._window(now, HOUR),
                    "daily": self._window(now, DAY),
                    "weekly": self._window(now, WEEK),
                },
            )

    def _window(self, now: float, span: float) -> WindowMetrics:
        samples = [s for s in self._samples if now - s.timestamp <= span]
        window = WindowMetrics(attempts=len(samples))
        if samples:
            window.successes = sum(1 for s in samples if s.successful)
            window.failures = window.attempts - window.successes
            window.average_response_time = sum(s.duration for s in samples) / len(samples)
        return window

    def reset(self) -> None:
        for strategy_type in RecoveryStrategyType:
            with self._bucket_locks[strategy_type]:
                self._buckets[strategy_type] = StrategyMetrics()
        with self._global_lock:
            self._reset_globals()
