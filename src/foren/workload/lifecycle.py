"""
Privileged debug pod lifecycle: build, deploy, wait until Running, delete.

The pod is pinned to a node through spec.nodeName, bypassing the scheduler,
so exactly one container lands on the intended host. Scheduler admission
checks (resource pressure, taints) do not apply to such pods; the node must
accept direct assignment.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

from foren.cluster.client import ClusterAPIError, NotFoundError
from foren.config.schema import DebugSettings
from foren.exec.runner import Task
from foren.state.context import ExecutionContext
from foren.util.errors import (
    DeleteError,
    DeployError,
    WaitError,
    WaitTimeoutError,
    WorkloadTerminatedError,
)

APP_NAME = "kubectl-foren"
TARGET_NODE_LABEL = "foren/target-node"
RUNNING = "Running"
TERMINAL_PHASES = {"Succeeded", "Failed"}
_MIN_POLL_REQUEST_SEC = 1.0


def _volume_name(index: int) -> str:
    return "dev-volume" if index == 0 else f"host-path-{index}"


def build_descriptor(
    settings: DebugSettings,
    name: str,
    *,
    node: str,
    place_on_node: str,
) -> dict[str, Any]:
    """Return the pod manifest for a privileged debug workload."""
    mounts = list(settings.host_paths.items())
    volumes = [
        {"name": _volume_name(idx), "hostPath": {"path": host_path}}
        for idx, (host_path, _) in enumerate(mounts)
    ]
    volume_mounts = [
        {"name": _volume_name(idx), "mountPath": container_path}
        for idx, (_, container_path) in enumerate(mounts)
    ]
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": name,
            "namespace": settings.namespace,
            "labels": {
                "app.kubernetes.io/name": APP_NAME,
                "app.kubernetes.io/managed-by": APP_NAME,
                TARGET_NODE_LABEL: node,
            },
        },
        "spec": {
            "hostNetwork": True,
            "hostPID": True,
            "nodeName": place_on_node,
            "restartPolicy": "Never",
            "containers": [
                {
                    "name": settings.container_name,
                    "image": settings.image,
                    "command": ["/bin/sh", "-c", f"sleep {settings.sleep_seconds}"],
                    "securityContext": {"privileged": True},
                    "env": [{"name": "TERM", "value": settings.term}],
                    "volumeMounts": volume_mounts,
                }
            ],
            "volumes": volumes,
        },
    }


async def deploy(
    ctx: ExecutionContext,
    node: str,
    name: str,
    *,
    place_on_node: str | None = None,
) -> None:
    target = place_on_node if place_on_node is not None else ctx.place_on_node
    ctx.logger.debug("Deploying pod %s on node %s", name, target)
    body = build_descriptor(ctx.settings, name, node=node, place_on_node=target)
    try:
        await asyncio.to_thread(
            ctx.cluster.create_pod,
            ctx.namespace,
            body,
            ctx.request_timeout(ctx.settings.policy("deploy").timeout_sec),
        )
    except ClusterAPIError as exc:
        ctx.logger.error("Failed to deploy pod %s: %s", name, exc)
        raise DeployError(f"failed to deploy pod {name} on node {target}: {exc}") from exc
    ctx.logger.debug("Pod deployed successfully %s", name)


async def wait_ready(
    ctx: ExecutionContext,
    name: str,
    *,
    poll_interval_sec: float | None = None,
    timeout_sec: float | None = None,
) -> None:
    settings = ctx.settings
    interval = settings.wait_poll_interval_sec if poll_interval_sec is None else poll_interval_sec
    timeout = settings.wait_timeout_sec if timeout_sec is None else timeout_sec
    ctx.logger.debug("Waiting for pod %s to be running", name)
    started = time.monotonic()

    while True:
        remaining = max(timeout - (time.monotonic() - started), _MIN_POLL_REQUEST_SEC)
        try:
            phase = await asyncio.to_thread(
                ctx.cluster.get_pod_phase, ctx.namespace, name, ctx.request_timeout(remaining)
            )
        except ClusterAPIError as exc:
            ctx.logger.error("Failed to get pod %s status: %s", name, exc)
            raise WaitError(f"failed to get pod {name} status: {exc}") from exc

        if phase == RUNNING:
            ctx.logger.debug("Pod is now running %s", name)
            return
        if phase in TERMINAL_PHASES:
            raise WorkloadTerminatedError(f"pod {name} reached phase {phase} before running")

        elapsed = time.monotonic() - started
        if elapsed >= timeout:
            ctx.logger.error("Timed out waiting for pod %s to be running", name)
            raise WaitTimeoutError(f"timed out waiting for pod {name} to be running")
        ctx.logger.debug("Pod %s not yet running (phase %s), retrying...", name, phase)
        await asyncio.sleep(min(interval, timeout - elapsed))


async def delete(ctx: ExecutionContext, name: str) -> None:
    ctx.logger.debug("Deleting pod %s", name)
    try:
        await asyncio.to_thread(
            ctx.cluster.delete_pod,
            ctx.namespace,
            name,
            ctx.request_timeout(ctx.settings.policy("delete").timeout_sec),
        )
    except NotFoundError:
        ctx.logger.debug("Pod %s already gone", name)
        return
    except ClusterAPIError as exc:
        ctx.logger.error("Failed to delete pod %s: %s", name, exc)
        raise DeleteError(f"failed to delete pod {name}: {exc}") from exc
    ctx.logger.debug("Pod deleted successfully %s", name)


def deploy_task(ctx: ExecutionContext) -> Task:
    policy = ctx.settings.policy("deploy")

    async def _deploy(c: ExecutionContext) -> None:
        await deploy(c, c.node, c.workload)

    return Task(
        name="deploy-pod",
        description=f"Deploy privileged pod on node {ctx.node}",
        action=_deploy,
        max_attempts=policy.max_attempts,
        timeout_sec=policy.timeout_sec,
    )


def wait_ready_task(ctx: ExecutionContext) -> Task:
    policy = ctx.settings.policy("wait")

    async def _wait(c: ExecutionContext) -> None:
        await wait_ready(c, c.workload)

    return Task(
        name="wait-pod-running",
        description="Wait for pod to be running",
        action=_wait,
        max_attempts=policy.max_attempts,
        timeout_sec=policy.timeout_sec,
    )


def delete_task(ctx: ExecutionContext) -> Task:
    policy = ctx.settings.policy("delete")

    async def _delete(c: ExecutionContext) -> None:
        await delete(c, c.workload)

    return Task(
        name="delete-pod",
        description="Delete temporary pod",
        action=_delete,
        max_attempts=policy.max_attempts,
        timeout_sec=policy.timeout_sec,
    )
