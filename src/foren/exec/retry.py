from __future__ import annotations

from dataclasses import dataclass

DEFAULT_MAX_ATTEMPTS = 10


@dataclass(frozen=True, slots=True)
class BackoffSchedule:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = 10.0
    multiplier: float = 1.4

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.multiplier <= 1.0:
            raise ValueError("multiplier must be > 1.0")

    def delay(self, attempt: int) -> float:
        """
        Return backoff seconds to wait after the given failed attempt.

        attempt is zero-based: 0 means the wait after the first failure.
        """
        return backoff_for_attempt(attempt, self.base_delay, self.multiplier)


def backoff_for_attempt(attempt_idx: int, base_delay: float, multiplier: float) -> float:
    if attempt_idx < 0:
        raise ValueError("attempt_idx must be >= 0")
    return float(base_delay * multiplier**attempt_idx)


DEFAULT_BACKOFF = BackoffSchedule()
