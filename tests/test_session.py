from __future__ import annotations

import asyncio
import logging
import os
import signal

import pytest
from conftest import TEST_LOGGER, FakeChannel, FakeCluster, FakeTerminal

from foren.cluster.client import ChannelError, ClusterAPIError
from foren.exec.session import exec_capture, exec_interactive
from foren.state.context import ExecutionContext
from foren.util.errors import ExecError, SessionInterrupted, StreamError
from foren.workload.lifecycle import build_descriptor


async def _until(predicate: object, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():  # type: ignore[operator]
            await asyncio.sleep(0.005)


@pytest.fixture
def deployed(cluster: FakeCluster, ctx: ExecutionContext) -> ExecutionContext:
    body = build_descriptor(ctx.settings, ctx.workload, node=ctx.node, place_on_node=ctx.node)
    cluster.pods[(ctx.namespace, ctx.workload)] = body
    return ctx


@pytest.mark.asyncio
async def test_exec_capture_collects_both_streams(
    cluster: FakeCluster, deployed: ExecutionContext, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.DEBUG, logger=TEST_LOGGER)
    channel = FakeChannel(b"1: lo\n2: eth0\n", b"warning: partial\n", exit_code=0)
    cluster.outputs["ip addr"] = channel

    output = await exec_capture(deployed, deployed.workload, deployed.container, ["ip", "addr"])

    assert output.stdout == b"1: lo\n2: eth0\n"
    assert output.stderr == b"warning: partial\n"
    assert output.exit_code == 0
    assert channel.closed
    assert cluster.exec_calls[-1] == {
        "pod": "foren-node1",
        "container": "disk-access",
        "command": ["ip", "addr"],
        "tty": False,
        "stdin": False,
    }
    errors = [r.getMessage() for r in caplog.records if r.levelno == logging.ERROR]
    assert errors == ["Error output from 'ip addr': warning: partial"]


@pytest.mark.asyncio
async def test_exec_capture_nonzero_exit_is_not_an_error(
    cluster: FakeCluster, deployed: ExecutionContext
) -> None:
    cluster.outputs["false"] = FakeChannel(exit_code=1)
    output = await exec_capture(deployed, deployed.workload, deployed.container, ["false"])
    assert output.exit_code == 1
    assert output.stdout == b""


@pytest.mark.asyncio
async def test_exec_capture_open_failure_is_exec_error(
    cluster: FakeCluster, ctx: ExecutionContext
) -> None:
    with pytest.raises(ExecError, match="not found"):
        await exec_capture(ctx, "missing", ctx.container, ["ip", "addr"])


@pytest.mark.asyncio
async def test_exec_capture_stream_failure_is_exec_error_and_closes_channel(
    cluster: FakeCluster, deployed: ExecutionContext
) -> None:
    channel = FakeChannel(fail_update=ChannelError("connection reset"))
    cluster.outputs["ps aux"] = channel
    with pytest.raises(ExecError, match="connection reset"):
        await exec_capture(deployed, deployed.workload, deployed.container, ["ps", "aux"])
    assert channel.closed


@pytest.mark.asyncio
async def test_exec_interactive_relays_session(
    cluster: FakeCluster, deployed: ExecutionContext
) -> None:
    channel = FakeChannel(b"top - 10:00:00\n", stay_open=True)
    cluster.outputs["top"] = channel
    terminal = FakeTerminal()

    async def _user() -> None:
        await _until(lambda: terminal.attached and channel.resizes)
        terminal.sink(b"q")
        channel.finish(b"bye\n")

    user = asyncio.create_task(_user())
    await exec_interactive(
        deployed, deployed.workload, deployed.container, ["top"], terminal=terminal, signals=()
    )
    await user

    assert bytes(terminal.stdout) == b"top - 10:00:00\nbye\n"
    assert bytes(channel.stdin) == b"q"
    assert channel.resizes[0] == (24, 80)
    assert channel.closed
    assert terminal.restore_calls == 1
    assert not terminal.raw
    assert not terminal.attached
    assert cluster.exec_calls[-1]["tty"] is True
    assert cluster.exec_calls[-1]["stdin"] is True


@pytest.mark.asyncio
async def test_exec_interactive_without_terminal_size_still_runs(
    cluster: FakeCluster, deployed: ExecutionContext
) -> None:
    channel = FakeChannel(b"ok\n")
    cluster.outputs["top"] = channel
    terminal = FakeTerminal(size=None)

    await exec_interactive(
        deployed, deployed.workload, deployed.container, ["top"], terminal=terminal, signals=()
    )

    assert channel.resizes == []
    assert bytes(terminal.stdout) == b"ok\n"
    assert terminal.restore_calls == 1


@pytest.mark.asyncio
async def test_exec_interactive_interrupt_cancels_and_restores(
    cluster: FakeCluster, deployed: ExecutionContext
) -> None:
    channel = FakeChannel(stay_open=True)
    cluster.outputs["top"] = channel
    terminal = FakeTerminal()
    interrupt = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, interrupt.set)

    with pytest.raises(SessionInterrupted):
        await exec_interactive(
            deployed,
            deployed.workload,
            deployed.container,
            ["top"],
            terminal=terminal,
            interrupt=interrupt,
            signals=(),
        )

    assert channel.closed
    assert terminal.restore_calls == 1
    assert not terminal.attached


@pytest.mark.asyncio
async def test_exec_interactive_signal_sets_interrupt(
    cluster: FakeCluster, deployed: ExecutionContext
) -> None:
    channel = FakeChannel(stay_open=True)
    cluster.outputs["top"] = channel
    terminal = FakeTerminal()

    async def _send_signal() -> None:
        await _until(lambda: terminal.attached)
        os.kill(os.getpid(), signal.SIGUSR1)

    sender = asyncio.create_task(_send_signal())
    with pytest.raises(SessionInterrupted):
        await exec_interactive(
            deployed,
            deployed.workload,
            deployed.container,
            ["top"],
            terminal=terminal,
            signals=(signal.SIGUSR1,),
        )
    await sender

    assert terminal.restore_calls == 1
    assert channel.closed


@pytest.mark.asyncio
async def test_exec_interactive_stream_failure_is_stream_error(
    cluster: FakeCluster, deployed: ExecutionContext
) -> None:
    channel = FakeChannel(fail_update=ChannelError("websocket closed"))
    cluster.outputs["top"] = channel
    terminal = FakeTerminal()

    with pytest.raises(StreamError, match="websocket closed"):
        await exec_interactive(
            deployed, deployed.workload, deployed.container, ["top"], terminal=terminal, signals=()
        )

    assert terminal.restore_calls == 1
    assert channel.closed


@pytest.mark.asyncio
async def test_exec_interactive_open_failure_restores_terminal(
    cluster: FakeCluster, deployed: ExecutionContext
) -> None:
    cluster.exec_errors.append(ClusterAPIError("open exec channel: 403 forbidden", 403))
    terminal = FakeTerminal()

    with pytest.raises(ExecError, match="forbidden"):
        await exec_interactive(
            deployed, deployed.workload, deployed.container, ["top"], terminal=terminal, signals=()
        )

    assert terminal.restore_calls == 1
    assert not terminal.raw
    assert not terminal.attached


@pytest.mark.asyncio
async def test_exec_interactive_closes_channel_only_after_update_returns(
    cluster: FakeCluster, deployed: ExecutionContext
) -> None:
    channel = FakeChannel(stay_open=True, update_delay=0.08)
    cluster.outputs["top"] = channel
    interrupt = asyncio.Event()
    asyncio.get_running_loop().call_later(0.02, interrupt.set)

    with pytest.raises(SessionInterrupted):
        await exec_interactive(
            deployed,
            deployed.workload,
            deployed.container,
            ["top"],
            terminal=FakeTerminal(),
            interrupt=interrupt,
            signals=(),
        )

    assert channel.closed
    assert not channel.closed_during_update
