from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import pytest

from foren.cluster.client import AlreadyExistsError, NotFoundError
from foren.config.schema import DebugSettings
from foren.exec.retry import BackoffSchedule
from foren.exec.terminal import TerminalSize
from foren.state.context import ExecutionContext, build_context

TEST_LOGGER = "foren-tests"


class FakeChannel:
    def __init__(
        self,
        stdout: bytes = b"",
        stderr: bytes = b"",
        exit_code: int | None = 0,
        *,
        stay_open: bool = False,
        fail_update: Exception | None = None,
        update_delay: float = 0.01,
    ) -> None:
        self._stdout = bytearray(stdout)
        self._stderr = bytearray(stderr)
        self._exit_code = exit_code
        self._open = True
        self.stay_open = stay_open
        self.fail_update = fail_update
        self.update_delay = update_delay
        self.updating = False
        self.closed_during_update = False
        self.stdin = bytearray()
        self.resizes: list[tuple[int, int]] = []
        self.closed = False

    def is_open(self) -> bool:
        return self._open

    def update(self, timeout: float) -> None:
        if self.fail_update is not None:
            raise self.fail_update
        if self.stay_open:
            self.updating = True
            time.sleep(min(timeout, self.update_delay))
            self.updating = False
            return
        self._open = False

    def read_stdout(self) -> bytes:
        data = bytes(self._stdout)
        self._stdout.clear()
        return data

    def read_stderr(self) -> bytes:
        data = bytes(self._stderr)
        self._stderr.clear()
        return data

    def write_stdin(self, data: bytes) -> None:
        self.stdin += data

    def resize(self, rows: int, cols: int) -> None:
        self.resizes.append((rows, cols))

    def finish(self, stdout: bytes = b"") -> None:
        self._stdout += stdout
        self.stay_open = False

    def close(self) -> None:
        self.closed_during_update = self.updating
        self.closed = True
        self._open = False

    @property
    def exit_code(self) -> int | None:
        return None if self._open else self._exit_code


class FakeCluster:
    """In-memory pods keyed by (namespace, name)."""

    def __init__(self) -> None:
        self.pods: dict[tuple[str, str], dict[str, Any]] = {}
        self.phases: dict[str, list[str]] = {}
        self.create_errors: list[Exception] = []
        self.get_errors: list[Exception] = []
        self.delete_errors: list[Exception] = []
        self.exec_errors: list[Exception] = []
        self.outputs: dict[str, FakeChannel] = {}
        self.calls: list[tuple[str, str]] = []
        self.get_timeouts: list[float | None] = []
        self.exec_calls: list[dict[str, Any]] = []

    def create_pod(self, namespace: str, body: dict[str, Any], timeout: float | None) -> None:
        name = body["metadata"]["name"]
        self.calls.append(("create", name))
        if self.create_errors:
            raise self.create_errors.pop(0)
        if (namespace, name) in self.pods:
            raise AlreadyExistsError(f"create pod: 409 pod {name} already exists", 409)
        self.pods[(namespace, name)] = body

    def get_pod_phase(self, namespace: str, name: str, timeout: float | None) -> str:
        self.calls.append(("get", name))
        self.get_timeouts.append(timeout)
        if self.get_errors:
            raise self.get_errors.pop(0)
        if (namespace, name) not in self.pods:
            raise NotFoundError(f"get pod: 404 pod {name} not found", 404)
        script = self.phases.get(name)
        if not script:
            return "Running"
        return script.pop(0) if len(script) > 1 else script[0]

    def delete_pod(self, namespace: str, name: str, timeout: float | None) -> None:
        self.calls.append(("delete", name))
        if self.delete_errors:
            raise self.delete_errors.pop(0)
        if (namespace, name) not in self.pods:
            raise NotFoundError(f"delete pod: 404 pod {name} not found", 404)
        del self.pods[(namespace, name)]

    def open_exec(
        self,
        namespace: str,
        pod: str,
        container: str,
        command: list[str],
        *,
        tty: bool,
        stdin: bool,
    ) -> FakeChannel:
        self.calls.append(("exec", pod))
        self.exec_calls.append(
            {"pod": pod, "container": container, "command": command, "tty": tty, "stdin": stdin}
        )
        if self.exec_errors:
            raise self.exec_errors.pop(0)
        if (namespace, pod) not in self.pods:
            raise NotFoundError(f"open exec channel: 404 pod {pod} not found", 404)
        return self.outputs.get(" ".join(command), FakeChannel())

    def count(self, op: str) -> int:
        return sum(1 for call, _ in self.calls if call == op)


class FakeTerminal:
    def __init__(self, size: TerminalSize | None = TerminalSize(rows=24, cols=80)) -> None:
        self.current_size = size
        self.raw = False
        self.restore_calls = 0
        self.attached = False
        self.sink: Any = None
        self.stdout = bytearray()
        self.stderr = bytearray()

    def make_raw(self) -> None:
        self.raw = True

    def restore(self) -> None:
        self.raw = False
        self.restore_calls += 1

    def size(self) -> TerminalSize | None:
        return self.current_size

    def attach_input(self, loop: asyncio.AbstractEventLoop, sink: Any) -> None:
        self.attached = True
        self.sink = sink

    def detach_input(self, loop: asyncio.AbstractEventLoop) -> None:
        self.attached = False

    def write_stdout(self, data: bytes) -> None:
        self.stdout += data

    def write_stderr(self, data: bytes) -> None:
        self.stderr += data


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def settings() -> DebugSettings:
    return DebugSettings(
        backoff=BackoffSchedule(max_attempts=10, base_delay=0.0, multiplier=2.0),
        wait_poll_interval_sec=0.01,
        wait_timeout_sec=0.2,
    )


def make_ctx(
    cluster: FakeCluster, settings: DebugSettings, node: str = "node1"
) -> ExecutionContext:
    return build_context(
        node,
        settings=settings,
        logger=logging.getLogger(TEST_LOGGER),
        cluster=cluster,
    )


@pytest.fixture
def ctx(cluster: FakeCluster, settings: DebugSettings) -> ExecutionContext:
    return make_ctx(cluster, settings)
