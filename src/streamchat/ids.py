"""Monotonic identifier source for conversations and messages."""

from __future__ import annotations

from collections.abc import Callable, Iterable
import time


class MonotonicIdSource:
    """Issue strictly increasing millisecond-based string ids.

    Ids look like wall-clock milliseconds, but two ids requested within the
    same clock tick (or after the clock moves backwards) still differ: the
    source always issues at least ``last + 1``.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._last = 0

    def next_id(self) -> str:
        candidate = int(self._clock() * 1000)
        if candidate <= self._last:
            candidate = self._last + 1
        self._last = candidate
        return str(candidate)

    def observe(self, ids: Iterable[str]) -> None:
        """Advance past numeric ids loaded from storage so new ids never reuse them."""
        for raw in ids:
            try:
                value = int(raw)
            except (TypeError, ValueError):
                continue
            if value > self._last:
                self._last = value
