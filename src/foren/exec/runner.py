from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from foren.exec.retry import BackoffSchedule
from foren.exec.timeout import run_with_timeout
from foren.state.context import ExecutionContext
from foren.util.errors import SessionInterrupted, StepFailedError, TaskExhaustedError

Action = Callable[[ExecutionContext], Awaitable[None]]
Predicate = Callable[[ExecutionContext], bool]


@dataclass(frozen=True, slots=True)
class Task:
    name: str
    action: Action
    description: str = ""
    skip_if: Predicate | None = None
    max_attempts: int = 0
    timeout_sec: float = 0.0
    backoff: BackoffSchedule | None = None

    def schedule(self, ctx: ExecutionContext) -> BackoffSchedule:
        return self.backoff or ctx.backoff

    def resolved_attempts(self, ctx: ExecutionContext) -> int:
        """Attempts to make; 0 defers to the backoff schedule."""
        return self.max_attempts if self.max_attempts > 0 else self.schedule(ctx).max_attempts

    def skipped(self, ctx: ExecutionContext) -> bool:
        return self.skip_if is not None and self.skip_if(ctx)


def _render_error(exc: BaseException) -> str:
    return str(exc).replace("\\n", "\n")


async def run_task(task: Task, ctx: ExecutionContext) -> None:
    if task.skipped(ctx):
        return

    max_attempts = task.resolved_attempts(ctx)
    backoff = task.schedule(ctx)
    last_error: Exception | None = None
    attempts_made = 0

    for attempt in range(max_attempts):
        attempts_made = attempt + 1
        if last_error is not None:
            ctx.logger.warning("Retrying task %s...", task.name)
        ctx.logger.debug("Running task %s (attempt %d/%d)", task.name, attempt + 1, max_attempts)
        try:
            await run_with_timeout(task.action(ctx), task.timeout_sec, task=task.name)
        except Exception as exc:
            last_error = exc
            ctx.logger.warning(
                "Task %s failed on attempt %d/%d, error was: %s",
                task.name,
                attempt + 1,
                max_attempts,
                _render_error(exc),
            )
            if isinstance(exc, SessionInterrupted):
                break
            if attempt + 1 < max_attempts:
                await asyncio.sleep(backoff.delay(attempt))
            continue
        return

    assert last_error is not None
    raise TaskExhaustedError(task.name, attempts_made, last_error) from last_error


async def run_task_list(tasks: Sequence[Task], ctx: ExecutionContext) -> None:
    for task in tasks:
        if task.skipped(ctx):
            continue
        ctx.logger.info(task.description or task.name)
        try:
            await run_task(task, ctx)
        except TaskExhaustedError as exc:
            raise StepFailedError(task.name, exc) from exc


def runnable_tasks(tasks: Sequence[Task], ctx: ExecutionContext) -> list[Task]:
    return [task for task in tasks if not task.skipped(ctx)]


def describe_tasks(tasks: Sequence[Task], ctx: ExecutionContext) -> list[str]:
    return [task.description or task.name for task in runnable_tasks(tasks, ctx)]
