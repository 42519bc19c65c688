from __future__ import annotations

import asyncio
import signal
from collections.abc import Sequence
from dataclasses import dataclass

from foren.cluster.client import ChannelError, ClusterAPIError, ExecChannel
from foren.exec.terminal import Terminal, TerminalSize
from foren.state.context import ExecutionContext
from foren.util.errors import ExecError, SessionInterrupted, StreamError

INTERRUPT_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)
_UPDATE_TIMEOUT_SEC = 0.1
_RESIZE_POLL_SEC = 0.25


@dataclass(slots=True)
class ExecOutput:
    stdout: bytes
    stderr: bytes
    exit_code: int | None = None


async def _open_channel(
    ctx: ExecutionContext,
    workload: str,
    container: str,
    command: Sequence[str],
    *,
    tty: bool,
    stdin: bool,
) -> ExecChannel:
    try:
        return await asyncio.to_thread(
            ctx.cluster.open_exec,
            ctx.namespace,
            workload,
            container,
            list(command),
            tty=tty,
            stdin=stdin,
        )
    except ClusterAPIError as exc:
        raise ExecError(f"failed to open exec channel in pod {workload}: {exc}") from exc


async def exec_capture(
    ctx: ExecutionContext, workload: str, container: str, command: Sequence[str]
) -> ExecOutput:
    rendered = " ".join(command)
    ctx.logger.debug("Execute '%s' inside pod %s", rendered, workload)
    channel = await _open_channel(ctx, workload, container, command, tty=False, stdin=False)
    stdout = bytearray()
    stderr = bytearray()
    try:
        while channel.is_open():
            await asyncio.to_thread(channel.update, _UPDATE_TIMEOUT_SEC)
            stdout += channel.read_stdout()
            stderr += channel.read_stderr()
        stdout += channel.read_stdout()
        stderr += channel.read_stderr()
        exit_code = channel.exit_code
    except ClusterAPIError as exc:
        ctx.logger.error("Failed to execute '%s' inside pod %s: %s", rendered, workload, exc)
        raise ExecError(f"failed to execute {rendered} in pod {workload}: {exc}") from exc
    finally:
        channel.close()

    if stderr:
        ctx.logger.error(
            "Error output from '%s': %s", rendered, stderr.decode("utf-8", "replace").strip()
        )
    ctx.logger.debug("'%s' finished inside pod %s (exit code %s)", rendered, workload, exit_code)
    return ExecOutput(stdout=bytes(stdout), stderr=bytes(stderr), exit_code=exit_code)


def _flush(channel: ExecChannel, terminal: Terminal) -> None:
    out = channel.read_stdout()
    if out:
        terminal.write_stdout(out)
    err = channel.read_stderr()
    if err:
        terminal.write_stderr(err)


async def _pump(channel: ExecChannel, terminal: Terminal, stop: asyncio.Event) -> None:
    # stop is polled between updates so no update is in flight when the channel closes
    while channel.is_open() and not stop.is_set():
        await asyncio.to_thread(channel.update, _UPDATE_TIMEOUT_SEC)
        _flush(channel, terminal)
    _flush(channel, terminal)


async def _watch_resize(ctx: ExecutionContext, terminal: Terminal, channel: ExecChannel) -> None:
    last: TerminalSize | None = None
    while True:
        size = terminal.size()
        if size is None:
            ctx.logger.debug("Failed to get terminal size, resize propagation stopped")
            return
        if size != last:
            try:
                channel.resize(size.rows, size.cols)
            except ChannelError as exc:
                ctx.logger.debug("Failed to publish terminal size: %s", exc)
                return
            last = size
        await asyncio.sleep(_RESIZE_POLL_SEC)


async def exec_interactive(
    ctx: ExecutionContext,
    workload: str,
    container: str,
    command: Sequence[str],
    *,
    terminal: Terminal | None = None,
    interrupt: asyncio.Event | None = None,
    signals: Sequence[signal.Signals] = INTERRUPT_SIGNALS,
) -> None:
    """
    Run command in a TTY bound to the invoking terminal.

    The terminal is in raw mode for the whole session and restored on every
    exit path. A signal in `signals`, or setting `interrupt`, cancels the
    stream and raises SessionInterrupted.
    """
    term = terminal or Terminal()
    token = interrupt or asyncio.Event()
    loop = asyncio.get_running_loop()
    rendered = " ".join(command)
    ctx.logger.debug("Execute '%s' command inside pod %s", rendered, workload)

    installed: list[signal.Signals] = []
    stop = asyncio.Event()
    owned: list[asyncio.Task[None]] = []
    pump: asyncio.Task[None] | None = None
    channel: ExecChannel | None = None
    input_attached = False

    def _on_signal(sig: signal.Signals) -> None:
        ctx.logger.debug("Received %s, closing session...", sig.name)
        token.set()

    def _forward_input(data: bytes) -> None:
        assert channel is not None
        try:
            channel.write_stdin(data)
        except ChannelError as exc:
            ctx.logger.debug("Dropped terminal input: %s", exc)

    term.make_raw()
    try:
        channel = await _open_channel(ctx, workload, container, command, tty=True, stdin=True)
        for sig in signals:
            loop.add_signal_handler(sig, _on_signal, sig)
            installed.append(sig)
        term.attach_input(loop, _forward_input)
        input_attached = True

        pump = asyncio.create_task(_pump(channel, term, stop))
        interrupted = asyncio.create_task(token.wait())
        owned.extend([asyncio.create_task(_watch_resize(ctx, term, channel)), pump, interrupted])
        await asyncio.wait({pump, interrupted}, return_when=asyncio.FIRST_COMPLETED)

        if token.is_set():
            raise SessionInterrupted(f"session in pod {workload} interrupted")
        try:
            pump.result()
        except Exception as exc:
            raise StreamError(f"stream error: {exc}") from exc
    finally:
        stop.set()
        for task in owned:
            if task is not pump:
                task.cancel()
        await asyncio.gather(*owned, return_exceptions=True)
        if input_attached:
            term.detach_input(loop)
        for sig in installed:
            loop.remove_signal_handler(sig)
        if channel is not None:
            channel.close()
        term.restore()
    ctx.logger.debug("'%s' session inside pod %s ended", rendered, workload)
