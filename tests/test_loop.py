"""Tests for the agent execution loop."""

import asyncio
import json

import pytest

from agentloop.core.loop import AgentLoopController, LLMRetryHandler
from agentloop.core.state import LoopConfig, LoopStatus, Task
from agentloop.core.templates import FeedbackTemplates
from agentloop.core.tools import FunctionTool
from agentloop.recovery.errors import LLMInvocationError
from agentloop.recovery.manager import RecoveryManager
from agentloop.recovery.resources import ResourceMonitor
from agentloop.recovery.retry import RetryStrategy
from agentloop.recovery.types import RecoveryManagerConfig, RetryConfig
from agentloop.telemetry import NullSink

templates = FeedbackTemplates()


def make_controller(client, tools=(), manager=None, telemetry=None, **config):
    config.setdefault("max_iterations", 5)
    config.setdefault("force_final_answer", False)
    config.setdefault("llm_timeout", 0)
    config.setdefault("tool_timeout", 0)
    return AgentLoopController(
        client,
        tools=tools,
        recovery_manager=manager,
        config=LoopConfig(**config),
        telemetry=telemetry or NullSink(),
    )


def make_manager(max_attempts=3):
    manager = RecoveryManager(
        config=RecoveryManagerConfig(validate_after_recovery=False),
        telemetry=NullSink(),
    )
    manager.register_strategy(
        RetryStrategy(RetryConfig(initial_delay=0, max_delay=0, max_attempts=max_attempts))
    )
    return manager


# ============ Termination Tests ============

@pytest.mark.asyncio
async def test_unparsable_output_ends_with_max_iterations(make_client):
    """Unparsable LM text becomes feedback every turn until the limit."""
    client = make_client("I am not JSON at all")
    controller = make_controller(client, max_iterations=3)

    result = await controller.run(Task("Find the price"))

    assert result.status == LoopStatus.MAX_ITERATIONS_ERROR
    assert result.result is None
    assert "maximum iterations (3)" in result.error
    assert len(client.calls) == 3
    assert client.prompts[1] == templates.invalid_json()
    assert client.prompts[2] == templates.invalid_json()
    assert result.metadata["iterations"] == 3
    assert result.metadata["max_iterations"] == 3
    # Parse failures are not errors
    assert result.metadata["error_count"] == 0
    assert controller.state.status == LoopStatus.MAX_ITERATIONS_ERROR


@pytest.mark.asyncio
async def test_final_answer_object_is_stringified(make_client):
    client = make_client('{"finalAnswer": {"price": 42}}')
    controller = make_controller(client)

    result = await controller.run(Task("Find the price"))

    assert result.status == LoopStatus.TASK_COMPLETED
    assert result.succeeded
    assert result.error is None
    assert result.result.final_answer == json.dumps({"price": 42})
    assert result.metadata["iterations"] == 1
    assert controller.state.final_answer == json.dumps({"price": 42})


@pytest.mark.asyncio
async def test_final_answer_string_kept_as_is(make_client):
    client = make_client('```json\n{"finalAnswer": "42.00"}\n```')
    result = await make_controller(client).run(Task("Find the price"))

    assert result.result.final_answer == "42.00"
    assert result.metadata["usage"] == {"input_tokens": 10, "output_tokens": 5, "calls": 1}


@pytest.mark.asyncio
async def test_never_more_calls_than_max_iterations(make_client):
    client = make_client('{"thought": "thinking", "action": "self_question"}')
    result = await make_controller(client, max_iterations=4).run(Task("Loop"))

    assert result.status == LoopStatus.MAX_ITERATIONS_ERROR
    assert len(client.calls) == 4


# ============ Tool Dispatch Tests ============

@pytest.mark.asyncio
async def test_tool_result_feeds_next_turn(make_client, recorder):
    """A tool call's result is the next feedback and advances the loop by one."""
    seen = []

    def lookup_price(sku):
        seen.append(sku)
        return "42.00"

    client = make_client(
        '{"action": "lookupPrice", "actionInput": {"sku": "X1"}}',
        '{"finalAnswer": "42.00"}',
    )
    controller = make_controller(
        client, tools=[FunctionTool("lookupPrice", lookup_price)], telemetry=recorder
    )

    result = await controller.run(Task("What does X1 cost?"))

    assert seen == ["X1"]
    assert "42.00" in client.prompts[1]
    assert client.prompts[1] == templates.tool_result("42.00")
    action_events = [e for e in recorder.events if e.operation == "executing_action"]
    assert len(action_events) == 1
    assert action_events[0].metadata["iteration"] == 1
    assert result.metadata["iterations"] == 2
    assert "tool_result" in recorder.operations("ToolInvocation")


@pytest.mark.asyncio
async def test_unknown_tool_becomes_feedback(make_client):
    client = make_client('{"action": "lookupprice", "actionInput": {}}', '{"finalAnswer": "n/a"}')
    controller = make_controller(client, tools=[FunctionTool("lookupPrice", lambda sku: "1")])

    result = await controller.run(Task("Price?"))

    # Lookup is case-sensitive
    assert client.prompts[1] == templates.tool_not_exist("lookupprice")
    assert result.succeeded


@pytest.mark.asyncio
async def test_non_string_action_becomes_feedback(make_client):
    """A malformed action name is reported back to the model, not fatal."""
    client = make_client('{"action": ["lookupPrice"], "actionInput": {}}', '{"finalAnswer": "n/a"}')
    controller = make_controller(client, tools=[FunctionTool("lookupPrice", lambda sku: "1")])

    result = await controller.run(Task("Price?"))

    assert client.prompts[1] == templates.tool_not_exist(["lookupPrice"])
    assert result.status == LoopStatus.TASK_COMPLETED


@pytest.mark.asyncio
async def test_plain_string_action_input_reaches_tool(make_client):
    seen = []
    client = make_client('{"action": "echo", "actionInput": "hello"}', '{"finalAnswer": "done"}')
    controller = make_controller(client, tools=[FunctionTool("echo", lambda text: seen.append(text) or text)])

    result = await controller.run(Task("Echo hello"))

    assert seen == ["hello"]
    assert client.prompts[1] == templates.tool_result("hello")
    assert result.succeeded


@pytest.mark.asyncio
async def test_tool_error_becomes_feedback(make_client):
    def broken(sku):
        raise ValueError("unknown sku")

    client = make_client('{"action": "lookupPrice", "actionInput": {"sku": "Z"}}', '{"finalAnswer": "?"}')
    controller = make_controller(client, tools=[FunctionTool("lookupPrice", broken)])

    result = await controller.run(Task("Price?"))

    assert "lookupPrice" in client.prompts[1]
    assert "unknown sku" in client.prompts[1]
    assert result.succeeded
    assert result.metadata["error_count"] == 0


@pytest.mark.asyncio
async def test_blocking_tool_stops_the_task(make_client):
    def needs_approval():
        return {"action": "BLOCK_TASK", "reason": "needs human approval"}

    client = make_client('{"action": "approve", "actionInput": {}}')
    controller = make_controller(client, tools=[FunctionTool("approve", needs_approval)])

    result = await controller.run(Task("Ship it"))

    assert result.status == LoopStatus.AGENTIC_LOOP_ERROR
    assert result.error == "needs human approval"
    assert result.metadata["blocked"] is True
    assert len(client.calls) == 1


# ============ Feedback Tests ============

@pytest.mark.asyncio
async def test_thought_with_self_question_feedback(make_client):
    client = make_client(
        '{"thought": "I need the SKU", "action": "self_question", "actionInput": "Which SKU?"}',
        '{"finalAnswer": "done"}',
    )
    await make_controller(client).run(Task("Price?"))

    assert client.prompts[1] == templates.thought_with_self_question("I need the SKU", "Which SKU?")


@pytest.mark.asyncio
async def test_observation_and_weird_output_feedback(make_client):
    client = make_client(
        '{"observation": "the price is listed", "isFinalAnswerReady": false}',
        '{"unexpected": true}',
        '{"finalAnswer": "done"}',
    )
    result = await make_controller(client).run(Task("Price?"))

    assert client.prompts[1] == templates.observation("the price is listed")
    assert client.prompts[2] == templates.weird_output()
    assert result.metadata["iterations"] == 3


@pytest.mark.asyncio
async def test_history_grows_by_turn(make_client):
    client = make_client('{"thought": "hmm", "action": "self_question"}', '{"finalAnswer": "x"}')
    controller = make_controller(client)
    await controller.run(Task("Task"))

    _, second_history, _ = client.calls[1]
    assert [m.role for m in second_history] == ["system", "human", "assistant"]
    assert [m.role for m in controller.history] == [
        "system",
        "human",
        "assistant",
        "human",
        "assistant",
    ]


@pytest.mark.asyncio
async def test_stop_sequences_passed_to_client(make_client):
    client = make_client('{"finalAnswer": "x"}')
    await make_controller(client, stop_sequences=("Observation:",)).run(Task("Task"))

    assert client.calls[0][2] == ("Observation:",)


# ============ Force Final Answer Tests ============

@pytest.mark.asyncio
async def test_force_final_answer_on_second_to_last_iteration(make_client):
    client = make_client('{"thought": "still thinking", "action": "self_question"}')
    await make_controller(client, max_iterations=3, force_final_answer=True).run(Task("Task"))

    assert client.prompts[1] == templates.force_final_answer(1, 3)
    assert client.prompts[2] != templates.force_final_answer(1, 3)


@pytest.mark.asyncio
async def test_force_final_answer_keeps_task_on_first_turn(make_client):
    client = make_client('{"finalAnswer": "x"}')
    controller = make_controller(client, max_iterations=2, force_final_answer=True)
    task = Task("Summarize the report")

    await controller.run(task)

    assert "Summarize the report" in client.prompts[0]
    assert client.prompts[0].endswith(templates.force_final_answer(0, 2))


# ============ LM Error Recovery Tests ============

@pytest.mark.asyncio
async def test_llm_error_recovered_by_retry(make_client):
    client = make_client(RuntimeError("upstream hiccup"), '{"finalAnswer": "done"}')
    controller = make_controller(client, manager=make_manager())

    result = await controller.run(Task("Task"))

    assert result.succeeded
    assert result.result.final_answer == "done"
    assert len(client.calls) == 2
    assert result.metadata["error_count"] == 1
    assert result.metadata["iterations"] == 1
    recovery = result.metadata["recovery"][0]
    assert recovery["successful"] is True
    assert recovery["strategy"] == "RETRY"
    assert recovery["attempts"] == 1


@pytest.mark.asyncio
async def test_llm_error_unrecovered_blocks_task(make_client):
    client = make_client(RuntimeError("provider down"))
    controller = make_controller(client, manager=make_manager(max_attempts=2))

    result = await controller.run(Task("Task"))

    assert result.status == LoopStatus.AGENTIC_LOOP_ERROR
    assert result.error == "Execution stopped due to a critical error: provider down"
    assert result.metadata["blocked"] is True
    assert result.metadata["recovery"][0]["successful"] is False
    # One original call and two retries
    assert len(client.calls) == 3


@pytest.mark.asyncio
async def test_llm_error_without_manager_aborts(make_client):
    client = make_client(ConnectionError("connection refused"))
    result = await make_controller(client).run(Task("Task"))

    assert result.status == LoopStatus.AGENTIC_LOOP_ERROR
    assert "connection refused" in result.error
    assert "recovery" not in result.metadata


@pytest.mark.asyncio
async def test_llm_latency_reported_to_resource_monitor(make_client):
    async def slow_answer():
        await asyncio.sleep(0.05)
        return '{"finalAnswer": "done"}'

    manager = make_manager()
    controller = make_controller(make_client(slow_answer), manager=manager)

    await controller.run(Task("Task"))

    assert manager.resource_monitor.snapshot().network_latency >= 0.05


@pytest.mark.asyncio
async def test_llm_latency_recorded_for_retried_calls(make_client):
    class LatencyLog(ResourceMonitor):
        def __init__(self):
            super().__init__()
            self.latencies = []

        def record_latency(self, seconds):
            super().record_latency(seconds)
            self.latencies.append(seconds)

    monitor = LatencyLog()
    manager = RecoveryManager(
        config=RecoveryManagerConfig(validate_after_recovery=False),
        resource_monitor=monitor,
        telemetry=NullSink(),
    )
    manager.register_strategy(RetryStrategy(RetryConfig(initial_delay=0, max_delay=0)))
    client = make_client(RuntimeError("upstream hiccup"), '{"finalAnswer": "done"}')

    result = await make_controller(client, manager=manager).run(Task("Task"))

    assert result.succeeded
    # The failed call and the successful retry
    assert len(monitor.latencies) == 2


@pytest.mark.asyncio
async def test_retry_handler_switches_model(make_client):
    client = make_client('{"finalAnswer": "x"}')
    handler = LLMRetryHandler(client, "prompt", [])
    error = LLMInvocationError("failed", handler=handler)

    found = await handler.handle(error, "AgentLoopController:findFallbackModel", {"fallback_model": "small"})
    switched = await handler.handle(error, "AgentLoopController:switchModel", {"fallback_model": "small"})
    verified = await handler.handle(error, "AgentLoopController:verifyModelSwitch", {})

    assert found.success and switched.success and verified.success
    assert client.switched_to == ["small"]
    assert handler.response.text == '{"finalAnswer": "x"}'


# ============ Unexpected Error Tests ============

class ExplodingParser:
    def parse(self, text):
        raise RuntimeError("parser exploded")


@pytest.mark.asyncio
async def test_unexpected_error_always_aborts(make_client):
    client = make_client('{"finalAnswer": "x"}')
    controller = AgentLoopController(
        client,
        recovery_manager=make_manager(),
        config=LoopConfig(max_iterations=5, llm_timeout=0),
        parser=ExplodingParser(),
        telemetry=NullSink(),
    )

    result = await controller.run(Task("Task"))

    assert result.status == LoopStatus.AGENTIC_LOOP_ERROR
    assert "parser exploded" in result.error
    assert result.metadata["error_count"] == 1
    # Recovery only does bookkeeping; the loop still ends
    assert result.metadata["recovery"][0]["successful"] is True
    assert len(client.calls) == 1


# ============ Abort Tests ============

@pytest.mark.asyncio
async def test_stop_aborts_before_next_iteration(make_client):
    controller = None

    def stop_then_think():
        controller.stop()
        return '{"thought": "x", "action": "self_question"}'

    client = make_client(stop_then_think)
    controller = make_controller(client)

    result = await controller.run(Task("Task"))

    assert result.status == LoopStatus.TASK_ABORTED
    assert result.error == "Task aborted"
    assert result.metadata["iterations"] == 1


@pytest.mark.asyncio
async def test_cancellation_propagates(make_client):
    started = asyncio.Event()

    async def hang():
        started.set()
        await asyncio.sleep(3600)

    controller = make_controller(make_client(hang))
    run = asyncio.create_task(controller.run(Task("Task")))
    await started.wait()
    run.cancel()

    with pytest.raises(asyncio.CancelledError):
        await run
    assert controller.state.status == LoopStatus.TASK_ABORTED


# ============ Config Tests ============

def test_loop_config_rejects_zero_iterations():
    with pytest.raises(ValueError):
        LoopConfig(max_iterations=0)
