"""Application-level error types."""

from __future__ import annotations


class ForenError(Exception):
    """Base error for kubectl-foren."""


class ConfigError(ForenError):
    """Raised when settings loading/validation fails."""


class DeployError(ForenError):
    """Raised when the debug workload create request is rejected."""


class WaitError(ForenError):
    """Raised when the debug workload does not become ready."""


class WaitTimeoutError(WaitError):
    """Raised when the readiness deadline elapses before phase Running."""


class WorkloadTerminatedError(WaitError):
    """Raised when the workload reached a terminal phase while waiting."""


class ExecError(ForenError):
    """Raised when the exec channel cannot be opened or fails."""


class StreamError(ForenError):
    """Raised when an interactive stream fails."""


class SessionInterrupted(ForenError):
    """Raised when an interactive session is cancelled by a signal."""


class DeleteError(ForenError):
    """Raised when the debug workload delete request fails."""


class TaskTimeoutError(ForenError):
    """Raised when a single task attempt exceeds its deadline."""

    def __init__(self, task: str, timeout_sec: float) -> None:
        super().__init__(f"task '{task}' attempt timed out after {timeout_sec:g}s")
        self.task = task
        self.timeout_sec = timeout_sec


class TaskExhaustedError(ForenError):
    """Raised when a task fails on every allowed attempt."""

    def __init__(self, task: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"task '{task}' failed after {attempts} attempt(s): {last_error}")
        self.task = task
        self.attempts = attempts
        self.last_error = last_error


class StepFailedError(ForenError):
    """Raised by a task list when one of its steps fails terminally."""

    def __init__(self, op: str, cause: BaseException) -> None:
        super().__init__(f"{op}: {cause}")
        self.op = op
        self.cause = cause
