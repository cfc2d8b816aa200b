"""
Time sources for flag evaluation.

Supplies wall-clock milliseconds to the cache, targeting engines and
analytics so that time can be swapped out in tests.
"""

import time
from datetime import datetime
from typing import Protocol


class TimeSource(Protocol):
    """Anything that can report the current time in epoch milliseconds."""

    def now_ms(self) -> int:
        ...


class SystemTimeSource:
    """Time source backed by the platform clock."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class MockTimeSource:
    """Manually driven time source for deterministic tests.

    Time only moves when `set_time` or `advance` is called.
    """

    def __init__(self, start_ms: int = 0):
        self._current_ms = start_ms

    def now_ms(self) -> int:
        return self._current_ms

    def set_time(self, ms: int) -> None:
        self._current_ms = ms

    def advance(self, ms: int) -> None:
        if ms < 0:
            raise ValueError("cannot move a mock clock backwards")
        self._current_ms += ms


def to_datetime(ms: int) -> datetime:
    """Convert epoch milliseconds to a naive local datetime."""
    return datetime.fromtimestamp(ms / 1000)
