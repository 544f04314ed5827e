"""CLI interface: run a task, show status, inspect recorded events."""

import argparse
import asyncio
import logging
from datetime import datetime

from agentloop.activity_log import ActivityLogSink
from agentloop.config import (
    FORCE_FINAL_ANSWER,
    LLM_TIMEOUT_SECONDS,
    MAX_ITERATIONS,
    PROVIDER_DEFAULT,
    RECOVERY_ENABLED,
    RECOVERY_MAX_ATTEMPTS,
    RECOVERY_POLICY_FILE,
    RECOVERY_TIMEOUT_SECONDS,
    RECOVERY_VALIDATE,
    TELEMETRY_DB_PATH,
    VERSION,
    get_model_name,
    setup_logging,
)
from agentloop.telemetry import LoggingTelemetrySink, MultiSink
from agentloop.telemetry_db import close_telemetry_db, get_telemetry_db

logger = logging.getLogger(__name__)


def _builtin_status() -> str:
    """Status text for the `status` sub-command. Makes no LLM call."""
    return (
        f"agentloop v{VERSION}\n"
        f"Default provider: {PROVIDER_DEFAULT}\n"
        f"Model: {get_model_name()}\n"
        f"Loop: max {MAX_ITERATIONS} iterations, force final answer: {FORCE_FINAL_ANSWER}, "
        f"LLM timeout {LLM_TIMEOUT_SECONDS:.0f}s\n"
        f"Recovery: {'enabled' if RECOVERY_ENABLED else 'disabled'}, "
        f"max {RECOVERY_MAX_ATTEMPTS} attempts, timeout {RECOVERY_TIMEOUT_SECONDS:.0f}s, "
        f"validation {'on' if RECOVERY_VALIDATE else 'off'}\n"
        f"Recovery policy: {RECOVERY_POLICY_FILE or 'built-in defaults'}\n"
        f"Telemetry store: {TELEMETRY_DB_PATH}\n\n"
        "Usage: python -m agentloop run 'your task' [--provider vllm|openrouter]"
    )


async def _run_task(task: str, provider: str | None = None, max_iterations: int | None = None) -> int:
    """Run one task, print the answer or the error. Returns the exit code."""
    from agentloop.core.runner import run_task

    try:
        store = await get_telemetry_db()
        telemetry = MultiSink([LoggingTelemetrySink(), ActivityLogSink(), store])
        result = await run_task(
            task,
            provider=provider,
            max_iterations=max_iterations,
            telemetry=telemetry,
        )
    finally:
        await close_telemetry_db()

    meta = result.metadata
    if result.error:
        print(f"\n❌ {result.status.value}: {result.error}")
        print(f"   iterations: {meta['iterations']}/{meta['max_iterations']}")
        return 1
    print("\n" + result.result.final_answer)
    print(f"\n✅ {meta['iterations']}/{meta['max_iterations']} iterations, "
          f"{meta['usage']['calls']} LM call(s)")
    return 0


async def _show_events(n: int) -> None:
    """Print the last n telemetry events."""
    try:
        store = await get_telemetry_db()
        events = await store.recent(limit=n)
        if not events:
            print("No events recorded.")
            return
        print(f"--- last {len(events)} events ---")
        for event in events:
            ts = datetime.fromtimestamp(event.timestamp).strftime("%Y-%m-%d %H:%M:%S")
            print(f"{ts} [{event.level}] {event.component}.{event.operation}: {event.message}")
    finally:
        await close_telemetry_db()


def main():
    parser = argparse.ArgumentParser(
        prog="python -m agentloop",
        description=f"agentloop v{VERSION}: bounded agent loop with recovery strategies",
    )
    sub = parser.add_subparsers(dest="command")

    run_parser = sub.add_parser("run", help="Run a task")
    run_parser.add_argument("task", nargs="?", default="", help="Task description")
    run_parser.add_argument("--provider", choices=["vllm", "openrouter"], help="LLM provider")
    run_parser.add_argument("--max-iterations", type=int, help="Override AGENT_MAX_ITERATIONS")

    sub.add_parser("status", help="Show configuration status")

    events_parser = sub.add_parser("events", help="Show recorded telemetry events")
    events_parser.add_argument("n", type=int, nargs="?", default=30, help="Number of events")

    activity_parser = sub.add_parser("activity", help="Show activity log tail")
    activity_parser.add_argument("n", type=int, nargs="?", default=30, help="Number of lines")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    if args.command == "run":
        if not args.task:
            print("Error: Task description required")
            print("Usage: python -m agentloop run 'your task'")
            return
        if args.max_iterations is not None and args.max_iterations < 1:
            parser.error("--max-iterations must be >= 1")
        setup_logging()
        code = asyncio.run(
            _run_task(args.task, provider=args.provider, max_iterations=args.max_iterations)
        )
        raise SystemExit(code)
    elif args.command == "status":
        print(_builtin_status())
    elif args.command == "events":
        asyncio.run(_show_events(args.n))
    elif args.command == "activity":
        print(ActivityLogSink().tail(args.n))
    else:
        parser.print_help()
