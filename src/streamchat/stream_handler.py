"""Fragment accumulator that commits streamed text and measures throughput."""

from __future__ import annotations

from collections.abc import Callable
import time

from .schemas import ResponseStats
from .state import MessageWriter


def count_tokens(text: str) -> int:
    """Approximate tokens as whitespace-delimited non-empty substrings."""
    return len(text.split())


def compute_stats(
    started_at: float,
    finished_at: float,
    first_token_at: float | None,
    total_tokens: int,
    model: str,
) -> ResponseStats:
    """Derive rounded response statistics from raw clock readings (seconds)."""
    total_time = max(0.0, finished_at - started_at)
    time_to_first_token = (
        min(max(0.0, first_token_at - started_at), total_time)
        if first_token_at is not None
        else 0.0
    )
    tokens_per_second = (
        total_tokens / total_time if total_tokens > 0 and total_time > 0 else 0.0
    )
    return ResponseStats(
        tokens_per_second=round(tokens_per_second, 2),
        time_to_first_token=round(time_to_first_token, 3),
        total_time=round(total_time, 3),
        total_tokens=total_tokens,
        model=model,
    )


class StreamHandler:
    """Apply fragments in arrival order to one assistant message.

    Every fragment is appended to the accumulated content and the *full*
    content is committed, so replaying a commit leaves the message unchanged.
    """

    def __init__(
        self,
        writer: MessageWriter,
        clock: Callable[[], float] = time.perf_counter,
        started_at: float | None = None,
    ) -> None:
        self._writer = writer
        self._clock = clock
        self.started_at = clock() if started_at is None else started_at
        self.first_token_at: float | None = None
        self.total_tokens = 0
        self._content = ""

    @property
    def response_started(self) -> bool:
        return self.first_token_at is not None

    @property
    def content(self) -> str:
        return self._content

    async def handle_content(self, text: str) -> None:
        """Process one fragment and commit the accumulated content."""
        if self.first_token_at is None:
            self.first_token_at = self._clock()
        self.total_tokens += count_tokens(text)
        self._content += text
        await self._writer.commit_content(self.content)

    async def finalize(self, model: str) -> ResponseStats:
        """Compute statistics and attach them to the message."""
        stats = compute_stats(
            self.started_at,
            self._clock(),
            self.first_token_at,
            self.total_tokens,
            model,
        )
        await self._writer.attach_stats(stats)
        return stats
