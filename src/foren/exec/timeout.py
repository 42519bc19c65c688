from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from foren.util.errors import TaskTimeoutError

T = TypeVar("T")


async def run_with_timeout(awaitable: Awaitable[T], timeout_sec: float, *, task: str) -> T:
    """Await with a hard deadline; timeout_sec <= 0 means unbounded."""
    if timeout_sec <= 0:
        return await awaitable
    deadline = asyncio.timeout(timeout_sec)
    try:
        async with deadline:
            return await awaitable
    except TimeoutError as exc:
        # a TimeoutError raised by the awaitable itself is not ours to rename
        if deadline.expired():
            raise TaskTimeoutError(task, timeout_sec) from exc
        raise
