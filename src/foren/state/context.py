from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from foren.cluster.client import ClusterClient, KubeCluster
from foren.config.schema import DebugSettings
from foren.exec.retry import BackoffSchedule
from foren.util.ids import workload_name


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    """Per-invocation state threaded through every task of a debug session."""

    cluster: ClusterClient
    logger: logging.LoggerAdapter[logging.Logger]
    settings: DebugSettings
    node: str
    workload: str
    verbose: bool = False
    deadline: float | None = None

    @property
    def namespace(self) -> str:
        return self.settings.namespace

    @property
    def container(self) -> str:
        return self.settings.container_name

    @property
    def backoff(self) -> BackoffSchedule:
        return self.settings.backoff

    @property
    def place_on_node(self) -> str:
        if self.settings.placement == "workload-name":
            return self.workload
        return self.node

    def request_timeout(self, budget_sec: float | None = None) -> float | None:
        """Seconds a single API call may block: the budget, clipped to the deadline."""
        remaining = None if self.deadline is None else max(0.0, self.deadline - time.monotonic())
        if budget_sec is None or budget_sec <= 0:
            return remaining
        if remaining is None:
            return budget_sec
        return min(budget_sec, remaining)


def build_context(
    node: str,
    *,
    settings: DebugSettings,
    logger: logging.Logger,
    cluster: ClusterClient | None = None,
    verbose: bool = False,
    timeout_sec: float | None = None,
) -> ExecutionContext:
    """Construct the context once per CLI invocation; cluster defaults to kubeconfig."""
    if cluster is None:
        cluster = KubeCluster.from_kubeconfig(settings.kubeconfig, settings.context)
    name = workload_name(node, settings.name_prefix)
    deadline = None if timeout_sec is None else time.monotonic() + timeout_sec
    return ExecutionContext(
        cluster=cluster,
        logger=logging.LoggerAdapter(logger, {"node": node, "workload": name}),
        settings=settings,
        node=node,
        workload=name,
        verbose=verbose,
        deadline=deadline,
    )
