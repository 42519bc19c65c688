from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from foren.exec.retry import DEFAULT_BACKOFF, BackoffSchedule

Placement = Literal["node", "workload-name"]
PLACEMENT_VALUES: set[str] = {"node", "workload-name"}
STEP_NAMES: tuple[str, ...] = ("deploy", "wait", "exec", "interactive", "delete")


@dataclass(frozen=True, slots=True)
class TaskPolicy:
    max_attempts: int
    timeout_sec: float


def _default_task_policies() -> dict[str, TaskPolicy]:
    return {
        "deploy": TaskPolicy(max_attempts=3, timeout_sec=30.0),
        "wait": TaskPolicy(max_attempts=5, timeout_sec=65.0),
        "exec": TaskPolicy(max_attempts=1, timeout_sec=30.0),
        "interactive": TaskPolicy(max_attempts=1, timeout_sec=0.0),
        "delete": TaskPolicy(max_attempts=1, timeout_sec=15.0),
    }


@dataclass(frozen=True, slots=True)
class DebugSettings:
    namespace: str = "default"
    image: str = "alpine:3.21.2"
    container_name: str = "disk-access"
    name_prefix: str = "foren"
    placement: Placement = "node"
    term: str = "xterm-256color"
    host_paths: dict[str, str] = field(default_factory=lambda: {"/dev": "/dev"})
    sleep_seconds: int = 3600
    wait_poll_interval_sec: float = 2.0
    wait_timeout_sec: float = 60.0
    backoff: BackoffSchedule = DEFAULT_BACKOFF
    tasks: dict[str, TaskPolicy] = field(default_factory=_default_task_policies)
    kubeconfig: str | None = None
    context: str | None = None

    def policy(self, step: str) -> TaskPolicy:
        return self.tasks[step]
