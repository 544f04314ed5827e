"""Agent execution loop: bounded think -> act -> observe iterations.

Each iteration:
1. (optionally) replace the outgoing message with a "final answer now" prompt
2. invoke the LM with the outgoing message plus history
3. parse and classify the output
4. final answer -> done; tool call -> run tool; anything else -> feedback
5. append the turn to history and advance the iteration counter

Error policy:
- parse failures, unknown tools and tool errors become feedback
- LM invocation errors go through the RecoveryManager; a successful recovery
  supplies the LM response and the iteration continues, a failed one blocks
  the task and ends the loop
- any other exception goes through the RecoveryManager for bookkeeping and
  always ends the loop

``run`` never raises except ``asyncio.CancelledError``.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import time
from typing import Any, Callable, Iterable, Mapping

from agentloop.core.classifier import classify
from agentloop.core.llm import LLMClient, LLMResponse
from agentloop.core.parser import OutputParser
from agentloop.core.state import (
    SELF_QUESTION_ACTION,
    ActionKind,
    AgentProfile,
    HistoryMessage,
    IterationState,
    LoopConfig,
    LoopResult,
    LoopStatus,
    ParsedOutput,
    Task,
    is_present,
)
from agentloop.core.templates import FeedbackTemplates
from agentloop.core.tools import Tool, ToolRegistry, invoke_tool
from agentloop.recovery.classifier import ErrorClassifier
from agentloop.recovery.errors import (
    AgenticLoopError,
    ErrorKind,
    HandlerResult,
    LLMInvocationError,
    RecoveryHandler,
)
from agentloop.recovery.manager import RecoveryManager
from agentloop.recovery.types import RecoveryResult
from agentloop.telemetry import LoggingTelemetrySink, TelemetryEvent, TelemetrySink, safe_emit

logger = logging.getLogger(__name__)

COMPONENT = "AgentLoopController"

# Handler operations that need no work for a single in-process agent
_NOOP_STEPS = {
    "saveState",
    "restoreState",
    "findTargetAgent",
    "prepareReassignment",
    "prepareModelSwitch",
}
_VERIFY_STEPS = {"healthCheck", "verifyReassignment", "verifyModelSwitch"}


class LLMRetryHandler(RecoveryHandler):
    """Recovers a failed LM call by calling the client again.

    The last successful response is kept in ``response`` so the loop can use
    it once recovery succeeds.
    """

    def __init__(
        self,
        client: LLMClient,
        prompt: str,
        history: list[HistoryMessage],
        timeout: float | None = None,
        stop_sequences: Iterable[str] = (),
        on_latency: Callable[[float], None] | None = None,
    ):
        self.client = client
        self.prompt = prompt
        self.history = list(history)
        self.timeout = timeout
        self.stop_sequences = tuple(stop_sequences)
        self.on_latency = on_latency
        self.response: LLMResponse | None = None
        self.last_error: BaseException | None = None
        self.operations: list[str] = []

    def can_handle(self, error: BaseException) -> bool:
        return isinstance(error, LLMInvocationError)

    async def handle(
        self,
        error: BaseException,
        operation: str,
        details: Mapping[str, Any] | None = None,
    ) -> HandlerResult:
        started = time.monotonic()
        self.operations.append(operation)
        step = operation.partition(":")[2]
        details = details or {}

        if step in _NOOP_STEPS:
            success = True
        elif step == "findFallbackModel":
            success = bool(details.get("fallback_model"))
        elif step == "switchModel":
            success = self._switch_model(details.get("fallback_model"))
        elif step in _VERIFY_STEPS and self.response is not None:
            success = True
        else:
            success = await self._invoke()

        return HandlerResult(
            success=success,
            strategy=operation,
            duration=time.monotonic() - started,
        )

    def _switch_model(self, model_name: str | None) -> bool:
        switch = getattr(self.client, "switch_model", None)
        if not model_name or switch is None:
            return False
        try:
            switch(model_name)
        except Exception as e:
            logger.warning("Could not switch to model %s: %s", model_name, e)
            return False
        self.response = None
        return True

    async def _invoke(self) -> bool:
        started = time.monotonic()
        try:
            call = self.client.invoke(
                self.prompt,
                self.history,
                timeout=self.timeout,
                stop_sequences=self.stop_sequences,
            )
            self.response = await (asyncio.wait_for(call, self.timeout) if self.timeout else call)
        except Exception as e:
            logger.info("LM retry failed: %s", e)
            self.last_error = e
            return False
        finally:
            if self.on_latency is not None:
                self.on_latency(time.monotonic() - started)
        return True


class LoopBookkeepingHandler(RecoveryHandler):
    """Handler for unexpected loop errors. Records the recovery steps run
    for the task; it cannot resume the loop."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        self.operations: list[str] = []

    def can_handle(self, error: BaseException) -> bool:
        return isinstance(error, AgenticLoopError)

    async def handle(
        self,
        error: BaseException,
        operation: str,
        details: Mapping[str, Any] | None = None,
    ) -> HandlerResult:
        self.operations.append(operation)
        logger.info("Task %s: recovery bookkeeping %s", self.task_id, operation)
        return HandlerResult(success=True, strategy=operation)


class _LoopExit(Exception):
    """Internal: carries a terminal LoopResult out of an iteration."""

    def __init__(self, result: LoopResult):
        super().__init__(result.status.value)
        self.result = result


class AgentLoopController:
    """Drives one task's loop at a time.

    Usage:
        controller = AgentLoopController(
            client,
            tools=[FunctionTool("lookupPrice", lookup_price)],
            recovery_manager=build_recovery_manager(),
        )
        result = await controller.run(Task("What does X1 cost?"))
        if result.error:
            ...
    """

    def __init__(
        self,
        client: LLMClient,
        tools: ToolRegistry | Iterable[Tool] = (),
        recovery_manager: RecoveryManager | None = None,
        config: LoopConfig | None = None,
        profile: AgentProfile | None = None,
        templates: FeedbackTemplates | None = None,
        parser: OutputParser | None = None,
        telemetry: TelemetrySink | None = None,
        error_classifier: ErrorClassifier | None = None,
    ):
        self.client = client
        self.tools = tools if isinstance(tools, ToolRegistry) else ToolRegistry(tools)
        self.recovery_manager = recovery_manager
        self.config = config or LoopConfig()
        self.profile = profile or AgentProfile()
        self.templates = templates or FeedbackTemplates()
        self.parser = parser or OutputParser()
        self.telemetry = telemetry if telemetry is not None else LoggingTelemetrySink()
        self.error_classifier = error_classifier or ErrorClassifier()

        self.state: IterationState | None = None
        self.history: list[HistoryMessage] = []
        self._stop_requested = False
        self._recoveries: list[dict[str, Any]] = []
        self._usage = {"input_tokens": 0, "output_tokens": 0, "calls": 0}

    def stop(self) -> None:
        """Ask the loop to end before its next iteration."""
        self._stop_requested = True

    # ============ Run ============

    async def run(self, task: Task) -> LoopResult:
        self._stop_requested = False
        self._recoveries = []
        self._usage = {"input_tokens": 0, "output_tokens": 0, "calls": 0}
        self.history = [
            HistoryMessage("system", self.templates.system_message(self.profile, task, self.tools))
        ]
        self.state = IterationState(
            task_id=task.id,
            max_iterations=self.config.max_iterations,
            last_feedback_message=self.templates.initial_message(self.profile, task),
        )
        logger.info("Task %s started (max %d iterations)", task.id, self.config.max_iterations)
        self._emit("starting", f"task {task.id}: {task.description}")

        try:
            while self.state.iteration < self.state.max_iterations:
                if self._stop_requested:
                    return self._finish(LoopStatus.TASK_ABORTED, error="Task aborted")
                try:
                    self.state = await self._iterate(self.state, task)
                except _LoopExit as done:
                    return done.result
        except asyncio.CancelledError:
            self.state = self.state.advance(status=LoopStatus.TASK_ABORTED)
            self._emit("aborted", "task cancelled", level="warning")
            raise

        return self._finish(
            LoopStatus.MAX_ITERATIONS_ERROR,
            error=(
                f"Task incomplete: reached maximum iterations ({self.state.max_iterations}) "
                "without a final answer."
            ),
            level="warning",
        )

    async def _iterate(self, state: IterationState, task: Task) -> IterationState:
        prompt = self._outgoing_message(state)
        state = state.advance(status=LoopStatus.THINKING, last_feedback_message=prompt)
        self.state = state
        self._emit(
            "thinking",
            f"iteration {state.iteration + 1}/{state.max_iterations}",
            iteration=state.iteration,
        )

        try:
            response = await self._invoke_llm(prompt)
        except LLMInvocationError as err:
            state = state.advance(error_count=state.error_count + 1)
            self.state = state
            recovery = await self._recover(err, "invoke_llm", state, task)
            if recovery is None or not recovery.successful:
                self.state = state.advance(blocked=True)
                raise _LoopExit(
                    self._finish(
                        LoopStatus.AGENTIC_LOOP_ERROR,
                        error=f"Execution stopped due to a critical error: {err.cause or err}",
                        level="error",
                    )
                ) from err
            logger.info("Task %s: LM call recovered", task.id)
            response = err.recovery_handler.response
            if response is None:
                # Recovery succeeded without producing a turn; the iteration is spent
                return state.advance(iteration=state.iteration + 1)

        try:
            return await self._handle_response(state, task, prompt, response)
        except _LoopExit:
            raise
        except Exception as e:
            state = state.advance(error_count=state.error_count + 1)
            self.state = state
            raise _LoopExit(await self._recover_loop_error(e, state, task)) from e

    def _outgoing_message(self, state: IterationState) -> str:
        message = state.last_feedback_message
        if self.config.force_final_answer and state.iteration == state.max_iterations - 2:
            forced = self.templates.force_final_answer(state.iteration, state.max_iterations)
            # Keep the task description when the very first turn is already the forced one
            message = f"{message}\n\n{forced}" if state.iteration == 0 else forced
        return message

    async def _invoke_llm(self, prompt: str) -> LLMResponse:
        timeout = self.config.llm_timeout or None
        history = list(self.history)
        started = time.monotonic()
        try:
            call = self.client.invoke(
                prompt,
                history,
                timeout=timeout,
                stop_sequences=self.config.stop_sequences,
            )
            response = await (asyncio.wait_for(call, timeout) if timeout else call)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("LM invocation failed: %s", e)
            self._record_latency(time.monotonic() - started)
            handler = LLMRetryHandler(
                self.client,
                prompt,
                history,
                timeout,
                self.config.stop_sequences,
                on_latency=self._record_latency,
            )
            raise LLMInvocationError(f"LLM invocation failed: {e}", cause=e, handler=handler) from e
        self._record_latency(time.monotonic() - started)
        return response

    def _record_latency(self, seconds: float) -> None:
        monitor = getattr(self.recovery_manager, "resource_monitor", None)
        if monitor is not None:
            monitor.record_latency(seconds)

    # ============ Dispatch ============

    async def _handle_response(
        self,
        state: IterationState,
        task: Task,
        prompt: str,
        response: LLMResponse,
    ) -> IterationState:
        self._add_usage(response)
        parsed = self.parser.parse(response.text)
        kind = classify(parsed)
        self.history.append(HistoryMessage("human", prompt))
        self.history.append(HistoryMessage("assistant", response.text))
        state = state.advance(iteration=state.iteration + 1, status=kind.status)
        self.state = state

        if kind == ActionKind.FINAL_ANSWER:
            raise _LoopExit(self._complete(state, parsed))

        if kind == ActionKind.EXECUTING_ACTION:
            feedback = await self._execute_action(state, task, parsed)
        else:
            feedback = self._feedback(kind, parsed)

        self._emit(kind.value.lower(), feedback, iteration=state.iteration)
        return state.advance(last_feedback_message=feedback)

    def _feedback(self, kind: ActionKind, parsed: ParsedOutput | None) -> str:
        if kind == ActionKind.ISSUES_PARSING_OUTPUT:
            return self.templates.invalid_json()
        if kind == ActionKind.THOUGHT:
            if parsed.action == SELF_QUESTION_ACTION and is_present(parsed.action_input):
                return self.templates.thought_with_self_question(parsed.thought, parsed.action_input)
            return self.templates.thought(parsed.thought)
        if kind == ActionKind.SELF_QUESTION:
            return self.templates.self_question(parsed.action_input or "")
        if kind == ActionKind.OBSERVATION:
            return self.templates.observation(parsed.observation)
        return self.templates.weird_output()

    async def _execute_action(
        self, state: IterationState, task: Task, parsed: ParsedOutput
    ) -> str:
        tool = self.tools.get(parsed.action)
        if tool is None:
            logger.info("Task %s: unknown tool %s", task.id, parsed.action)
            self._emit("tool_not_found", str(parsed.action), level="warning")
            return self.templates.tool_not_exist(parsed.action)

        outcome = await invoke_tool(
            tool,
            parsed.action_input,
            self.templates,
            sink=self.telemetry,
            timeout=self.config.tool_timeout or None,
            task_id=task.id,
            iteration=state.iteration,
        )
        if outcome.blocked_reason is not None:
            self.state = state.advance(blocked=True)
            raise _LoopExit(
                self._finish(
                    LoopStatus.AGENTIC_LOOP_ERROR,
                    error=outcome.blocked_reason,
                    level="warning",
                )
            )
        return outcome.feedback

    def _complete(self, state: IterationState, parsed: ParsedOutput) -> LoopResult:
        answer = parsed.final_answer
        if not isinstance(answer, str):
            answer = json.dumps(answer, ensure_ascii=False)
        parsed = dataclasses.replace(parsed, final_answer=answer)
        self.state = state.advance(status=LoopStatus.FINAL_ANSWER, final_answer=answer)
        self._emit("final_answer", answer)
        return self._finish(LoopStatus.TASK_COMPLETED, result=parsed)

    # ============ Recovery ============

    async def _recover(
        self, error: BaseException, operation: str, state: IterationState, task: Task
    ) -> RecoveryResult | None:
        if self.recovery_manager is None:
            logger.info("No recovery manager configured; not recovering %s", operation)
            return None
        context = self.error_classifier.build_context(
            error,
            COMPONENT,
            operation,
            retry_count=state.error_count - 1,
            task_id=task.id,
            iteration=state.iteration,
            model=getattr(self.client, "model_name", None),
        )
        if isinstance(error, AgenticLoopError) and context.kind == ErrorKind.RECOVERABLE:
            context.kind = ErrorKind.LOOP_ERROR
        result = await self.recovery_manager.handle(error, context)
        self._recoveries.append(result.to_dict())
        return result

    async def _recover_loop_error(
        self, error: BaseException, state: IterationState, task: Task
    ) -> LoopResult:
        logger.error("Task %s: unexpected loop error: %s", task.id, error, exc_info=True)
        wrapped = AgenticLoopError(
            f"Agentic loop error: {error}",
            cause=error,
            handler=LoopBookkeepingHandler(task.id),
        )
        await self._recover(wrapped, "iteration", state, task)
        return self._finish(
            LoopStatus.AGENTIC_LOOP_ERROR,
            error=f"Execution stopped due to a critical error: {error}",
            level="error",
        )

    # ============ Results and telemetry ============

    def _add_usage(self, response: LLMResponse) -> None:
        self._usage["calls"] += 1
        for key in ("input_tokens", "output_tokens"):
            self._usage[key] += int(response.usage.get(key, 0) or 0)

    def _finish(
        self,
        status: LoopStatus,
        result: ParsedOutput | None = None,
        error: str | None = None,
        level: str = "info",
    ) -> LoopResult:
        self.state = self.state.advance(status=status)
        state = self.state
        metadata: dict[str, Any] = {
            "task_id": state.task_id,
            "iterations": state.iteration,
            "max_iterations": state.max_iterations,
            "error_count": state.error_count,
            "blocked": state.blocked,
            "usage": dict(self._usage),
        }
        if self._recoveries:
            metadata["recovery"] = list(self._recoveries)

        logger.info(
            "Task %s finished: %s after %d iteration(s)", state.task_id, status.value, state.iteration
        )
        self._emit(
            status.value.lower(),
            error or "completed",
            level=level,
            iterations=state.iteration,
        )
        return LoopResult(status=status, result=result, error=error, metadata=metadata)

    def _emit(self, operation: str, message: str, level: str = "info", **metadata: Any) -> None:
        task_id = self.state.task_id if self.state else None
        safe_emit(
            self.telemetry,
            TelemetryEvent(
                component=COMPONENT,
                operation=operation,
                level=level,
                message=message,
                metadata={"task_id": task_id, **metadata},
            ),
        )
