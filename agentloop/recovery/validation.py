"""Post-recovery checks run by the manager when validation is enabled.

Only failing ``high`` severity checks invalidate a recovery; the others are
reported in the result metadata.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from agentloop.recovery.types import RecoveryResult, ResourceUsage

MAX_CPU = 0.9
MAX_MEMORY_BYTES = 1_000_000_000
MAX_IO_BYTES_PER_SEC = 100_000_000
MAX_NETWORK_LATENCY = 1.0

MIN_SUCCESS_RATE = 0.9
MAX_ERROR_RATE = 0.1
MAX_LATENCY = 5.0
MIN_THROUGHPUT = 10.0


@dataclass
class PerformanceSnapshot:
    success_rate: float
    error_rate: float
    latency: float
    throughput: float


@dataclass
class ValidationCheck:
    name: str
    passed: bool
    severity: str  # "high" | "medium" | "low"
    detail: str = ""


@dataclass
class ValidationReport:
    checks: list[ValidationCheck] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return all(check.passed for check in self.checks)

    @property
    def invalidates(self) -> bool:
        return any(not check.passed and check.severity == "high" for check in self.checks)

    @property
    def failed(self) -> list[ValidationCheck]:
        return [check for check in self.checks if not check.passed]

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "checks": [
                {"name": c.name, "passed": c.passed, "severity": c.severity, "detail": c.detail}
                for c in self.checks
            ],
        }


def check_resources(usage: ResourceUsage) -> ValidationCheck:
    problems = []
    if usage.cpu > MAX_CPU:
        problems.append(f"cpu {usage.cpu:.2f} > {MAX_CPU}")
    if usage.memory_bytes > MAX_MEMORY_BYTES:
        problems.append(f"memory {usage.memory_bytes} bytes > {MAX_MEMORY_BYTES}")
    if usage.io > MAX_IO_BYTES_PER_SEC:
        problems.append(f"io {usage.io:.0f} B/s > {MAX_IO_BYTES_PER_SEC}")
    if usage.network_latency > MAX_NETWORK_LATENCY:
        problems.append(f"latency {usage.network_latency:.2f}s > {MAX_NETWORK_LATENCY}s")
    return ValidationCheck("Resource Usage", not problems, "high", "; ".join(problems))


def check_performance(perf: PerformanceSnapshot | None) -> ValidationCheck:
    if perf is None:
        return ValidationCheck("Performance Impact", True, "medium", "no performance data")
    problems = []
    if perf.success_rate < MIN_SUCCESS_RATE:
        problems.append(f"success rate {perf.success_rate:.2f} < {MIN_SUCCESS_RATE}")
    if perf.error_rate > MAX_ERROR_RATE:
        problems.append(f"error rate {perf.error_rate:.2f} > {MAX_ERROR_RATE}")
    if perf.latency > MAX_LATENCY:
        problems.append(f"latency {perf.latency:.2f}s > {MAX_LATENCY}s")
    if perf.throughput < MIN_THROUGHPUT:
        problems.append(f"throughput {perf.throughput:.1f} ops/s < {MIN_THROUGHPUT}")
    return ValidationCheck("Performance Impact", not problems, "medium", "; ".join(problems))


def check_duration(result: RecoveryResult) -> ValidationCheck:
    timeout = result.context.timeout if result.context else float("inf")
    passed = result.duration <= timeout
    detail = "" if passed else f"took {result.duration:.2f}s, timeout {timeout:.2f}s"
    return ValidationCheck("Recovery Time", passed, "low", detail)


def validate_recovery(
    result: RecoveryResult,
    usage: ResourceUsage,
    performance: PerformanceSnapshot | None = None,
) -> ValidationReport:
    return ValidationReport(
        [check_resources(usage), check_performance(performance), check_duration(result)]
    )
