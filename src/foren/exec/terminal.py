from __future__ import annotations

import asyncio
import os
import sys
import termios
import tty
from collections.abc import Callable
from contextlib import suppress
from typing import BinaryIO, NamedTuple

from foren.util.errors import ExecError


class TerminalSize(NamedTuple):
    rows: int
    cols: int


class Terminal:
    """The invoking terminal: raw mode, size sampling, and byte-level I/O."""

    def __init__(
        self,
        stdin_fd: int | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
    ) -> None:
        self.stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self._stdout = stdout or sys.stdout.buffer
        self._stderr = stderr or sys.stderr.buffer
        self._saved_mode: list | None = None

    def make_raw(self) -> None:
        try:
            self._saved_mode = termios.tcgetattr(self.stdin_fd)
            tty.setraw(self.stdin_fd)
        except termios.error as exc:
            self._saved_mode = None
            raise ExecError(f"failed to set raw terminal: {exc}") from exc

    def restore(self) -> None:
        saved, self._saved_mode = self._saved_mode, None
        if saved is None:
            return
        with suppress(termios.error):
            termios.tcsetattr(self.stdin_fd, termios.TCSADRAIN, saved)

    def size(self) -> TerminalSize | None:
        try:
            size = os.get_terminal_size(self.stdin_fd)
        except OSError:
            return None
        return TerminalSize(rows=size.lines, cols=size.columns)

    def attach_input(self, loop: asyncio.AbstractEventLoop, sink: Callable[[bytes], None]) -> None:
        loop.add_reader(self.stdin_fd, self._forward_input, loop, sink)

    def detach_input(self, loop: asyncio.AbstractEventLoop) -> None:
        loop.remove_reader(self.stdin_fd)

    def _forward_input(
        self, loop: asyncio.AbstractEventLoop, sink: Callable[[bytes], None]
    ) -> None:
        try:
            data = os.read(self.stdin_fd, 4096)
        except BlockingIOError:
            return
        if not data:
            # EOF: stop watching, the remote side keeps running until it exits
            loop.remove_reader(self.stdin_fd)
            return
        sink(data)

    def write_stdout(self, data: bytes) -> None:
        self._stdout.write(data)
        self._stdout.flush()

    def write_stderr(self, data: bytes) -> None:
        self._stderr.write(data)
        self._stderr.flush()
