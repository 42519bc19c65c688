"""
Debug sub-commands: task lists plus compensating cleanup.

Each entry point deploys the privileged pod on the target node, waits for
it, runs one command, and deletes the pod. When any step fails the pod is
deleted on a best-effort basis before the original error is re-raised.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence

from foren.exec.runner import Task, run_task, run_task_list
from foren.exec.session import ExecOutput, exec_capture, exec_interactive
from foren.exec.terminal import Terminal
from foren.state.context import ExecutionContext
from foren.util.errors import ForenError, StepFailedError
from foren.workload.lifecycle import delete_task, deploy_task, wait_ready_task

NETWORK_COMMAND: tuple[str, ...] = ("ip", "addr")
PROCESS_COMMAND: tuple[str, ...] = ("ps", "aux")
MONITOR_COMMAND: tuple[str, ...] = ("top",)

OutputHandler = Callable[[ExecOutput], None]


def exec_capture_task(
    ctx: ExecutionContext,
    command: Sequence[str],
    *,
    on_output: OutputHandler | None = None,
) -> Task:
    policy = ctx.settings.policy("exec")
    rendered = " ".join(command)

    async def _exec(c: ExecutionContext) -> None:
        output = await exec_capture(c, c.workload, c.container, command)
        if on_output is not None:
            on_output(output)

    return Task(
        name="exec",
        description=f"Execute '{rendered}' inside pod",
        action=_exec,
        max_attempts=policy.max_attempts,
        timeout_sec=policy.timeout_sec,
    )


def exec_interactive_task(
    ctx: ExecutionContext,
    command: Sequence[str],
    *,
    terminal: Terminal | None = None,
    interrupt: asyncio.Event | None = None,
) -> Task:
    policy = ctx.settings.policy("interactive")
    rendered = " ".join(command)

    async def _exec(c: ExecutionContext) -> None:
        await exec_interactive(
            c, c.workload, c.container, command, terminal=terminal, interrupt=interrupt
        )

    return Task(
        name="exec-interactive",
        description=f"Execute '{rendered}' command inside pod",
        action=_exec,
        max_attempts=policy.max_attempts,
        timeout_sec=policy.timeout_sec,
    )


def session_tasks(ctx: ExecutionContext, exec_step: Task) -> list[Task]:
    return [deploy_task(ctx), wait_ready_task(ctx), exec_step, delete_task(ctx)]


async def _compensate(ctx: ExecutionContext) -> None:
    ctx.logger.info("Cleaning up pod %s after failure", ctx.workload)
    try:
        await run_task(delete_task(ctx), ctx)
    except ForenError as exc:
        ctx.logger.error("Failed to clean up pod %s: %s", ctx.workload, exc)


async def run_session(ctx: ExecutionContext, tasks: Sequence[Task]) -> None:
    """Run tasks; on failure delete the pod unless the delete step itself failed."""
    cleanup_op = delete_task(ctx).name
    try:
        await run_task_list(tasks, ctx)
    except StepFailedError as exc:
        if exc.op != cleanup_op:
            await _compensate(ctx)
        raise
    except asyncio.CancelledError:
        await asyncio.shield(_compensate(ctx))
        raise


async def _collect(ctx: ExecutionContext, command: Sequence[str]) -> ExecOutput:
    captured: list[ExecOutput] = []
    step = exec_capture_task(ctx, command, on_output=captured.append)
    await run_session(ctx, session_tasks(ctx, step))
    return captured[-1]


async def collect_network_interfaces(ctx: ExecutionContext) -> ExecOutput:
    ctx.logger.info("Listing the network interfaces on %s", ctx.node)
    return await _collect(ctx, NETWORK_COMMAND)


async def collect_process_list(ctx: ExecutionContext) -> ExecOutput:
    ctx.logger.info("Listing the running processes on %s", ctx.node)
    return await _collect(ctx, PROCESS_COMMAND)


async def open_process_monitor(
    ctx: ExecutionContext,
    command: Sequence[str] = MONITOR_COMMAND,
    *,
    terminal: Terminal | None = None,
    interrupt: asyncio.Event | None = None,
) -> None:
    ctx.logger.info("Opening '%s' on %s", " ".join(command), ctx.node)
    step = exec_interactive_task(ctx, command, terminal=terminal, interrupt=interrupt)
    await run_session(ctx, session_tasks(ctx, step))
