"""Rate-limited schedulers used by the indexer drivers.

``WatermarkScheduler`` advances a block watermark by at most N blocks per
tick, however far behind the chain head it is. ``IntervalThrottle`` lets an
action through at most once per interval. Both take injectable clocks or
heights so they can be driven deterministically.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class BlockRange:
    """Inclusive block range."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"Invalid block range {self.start}..{self.end}")

    @property
    def size(self) -> int:
        return self.end - self.start + 1


class WatermarkScheduler:
    """Bounded-advance block watermark.

    Each ``plan`` proposes the range ``(watermark, watermark + step]`` with
    ``step = min(max_advance_blocks, current_block - watermark)``. The
    watermark only moves on ``commit``, so a failed run is retried from the
    same place. Without a stored watermark the first run starts
    ``max_advance_blocks`` behind the head.
    """

    def __init__(self, *, max_advance_blocks: int, watermark: int | None = None) -> None:
        if max_advance_blocks <= 0:
            raise ValueError("max_advance_blocks must be positive")
        self._max_advance = max_advance_blocks
        self._watermark = watermark

    @property
    def watermark(self) -> int | None:
        return self._watermark

    @property
    def max_advance_blocks(self) -> int:
        return self._max_advance

    def plan(self, current_block: int) -> BlockRange | None:
        last = self._watermark if self._watermark is not None else current_block - self._max_advance
        if current_block <= last:
            return None
        step = min(self._max_advance, current_block - last)
        return BlockRange(start=last + 1, end=last + step)

    def commit(self, block_range: BlockRange) -> None:
        if self._watermark is not None and block_range.end <= self._watermark:
            return
        self._watermark = block_range.end

    def lag(self, current_block: int) -> int:
        if self._watermark is None:
            return 0
        return max(current_block - self._watermark, 0)


class IntervalThrottle:
    """Allows an action at most once per ``interval_seconds``."""

    def __init__(self, interval_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        if interval_seconds < 0:
            raise ValueError("interval_seconds must be >= 0")
        self._interval = interval_seconds
        self._clock = clock
        self._last: float | None = None

    def ready(self) -> bool:
        return self._last is None or self._clock() - self._last >= self._interval

    def mark(self) -> None:
        self._last = self._clock()

    def try_acquire(self) -> bool:
        """Return True and start a new interval when the throttle is open."""
        if not self.ready():
            return False
        self.mark()
        return True
