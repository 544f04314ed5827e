"""Pytest configuration and shared fakes.

The session hook forces exit after the run: some plugins (e.g. from
pydantic-ai deps) and aiosqlite worker threads can keep the interpreter
alive after all tests pass.
"""

import inspect
import os

import pytest

from agentloop.core.llm import LLMResponse
from agentloop.recovery.errors import (
    ErrorContext,
    ErrorKind,
    ErrorSeverity,
    HandlerResult,
    RecoverableError,
    RecoveryHandler,
)
from agentloop.recovery.resources import ResourceMonitor
from agentloop.recovery.types import RecoveryContext, RecoveryStrategyType, ResourceUsage


def pytest_sessionfinish(session, exitstatus):
    """Exit process immediately after test session to avoid shutdown hang."""
    import sys

    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(exitstatus)


class ScriptedClient:
    """LLMClient replaying a script.

    Each entry is a string (returned as the LM text), an exception (raised),
    or a callable returning either (awaited when it returns an awaitable).
    The last entry repeats once the script runs out.
    """

    def __init__(self, *responses, model_name="test-model"):
        self.responses = list(responses)
        self.model_name = model_name
        self.calls = []
        self.switched_to = []

    @property
    def prompts(self):
        return [prompt for prompt, _, _ in self.calls]

    def switch_model(self, model_name):
        self.switched_to.append(model_name)
        self.model_name = model_name

    async def invoke(self, prompt, history, *, timeout=None, stop_sequences=()):
        self.calls.append((prompt, list(history), tuple(stop_sequences)))
        entry = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if callable(entry) and not isinstance(entry, BaseException):
            entry = entry()
            if inspect.isawaitable(entry):
                entry = await entry
        if isinstance(entry, BaseException):
            raise entry
        return LLMResponse(text=entry, usage={"input_tokens": 10, "output_tokens": 5})


class ScriptedHandler(RecoveryHandler):
    """Recovery handler answering per step from a script.

    ``script`` maps a step name ("" for unlabelled operations) to a list of
    outcomes: bool, HandlerResult, an exception to raise, or an async
    callable returning one of those. Steps without a script entry return
    ``default``.
    """

    def __init__(self, script=None, default=True):
        self.script = {step: list(outcomes) for step, outcomes in (script or {}).items()}
        self.default = default
        self.operations = []
        self.details = []

    def can_handle(self, error):
        return True

    async def handle(self, error, operation, details=None):
        self.operations.append(operation)
        self.details.append(dict(details or {}))
        step = operation.partition(":")[2]
        queue = self.script.get(step)
        outcome = queue.pop(0) if queue else self.default
        if callable(outcome) and not isinstance(outcome, BaseException):
            outcome = await outcome()
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, HandlerResult):
            return outcome
        return HandlerResult(success=bool(outcome), strategy=operation)

    @property
    def steps(self):
        return [op.partition(":")[2] for op in self.operations]


class StaticResourceMonitor(ResourceMonitor):
    """Resource monitor returning a fixed snapshot."""

    def __init__(self, usage=None):
        super().__init__()
        self.usage = usage or ResourceUsage()

    def snapshot(self):
        return ResourceUsage(**self.usage.to_dict())


class EventRecorder:
    """Telemetry sink keeping every event in memory."""

    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def operations(self, component=None):
        return [e.operation for e in self.events if component is None or e.component == component]


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def make_client():
    return ScriptedClient


@pytest.fixture
def make_handler():
    return ScriptedHandler


@pytest.fixture
def static_monitor():
    return StaticResourceMonitor


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def no_sleep():
    """Async sleep replacement recording the requested delays."""

    class _Sleep:
        def __init__(self):
            self.delays = []

        async def __call__(self, seconds):
            self.delays.append(seconds)

    return _Sleep()


@pytest.fixture
def make_context():
    """Build a RecoveryContext around a RecoverableError with the given handler."""

    def _make(
        handler=None,
        strategy_type=RecoveryStrategyType.RETRY,
        max_attempts=3,
        timeout=5.0,
        kind=ErrorKind.NETWORK_ERROR,
        severity=ErrorSeverity.ERROR,
        usage=None,
        component="AgentLoopController",
        **metadata,
    ):
        error = RecoverableError("boom", handler=handler or ScriptedHandler())
        error_context = ErrorContext(
            component=component,
            operation="invoke_llm",
            kind=kind,
            severity=severity,
            metadata=metadata,
        )
        return RecoveryContext(
            error=error,
            error_context=error_context,
            strategy_type=strategy_type,
            max_attempts=max_attempts,
            timeout=timeout,
            metadata={"resource_usage": usage or ResourceUsage()},
        )

    return _make
