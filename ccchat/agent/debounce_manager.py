"""Per-sender debounce buffer for bursty human input.

People often type one thought as several quick messages. Instead of
starting a backend call for each, fragments from one sender accumulate
until the sender has been quiet for the whole window, then go out as a
single prompt (fragments joined by newlines, in arrival order).

Each sender has at most one timer task. A fragment arriving while the timer
is armed only moves the "last fragment" timestamp forward; the timer notices
on wake-up and sleeps again for the remainder of the window.
"""

from __future__ import annotations

import asyncio
import time as _time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from loguru import logger

FlushCallback = Callable[[str, str], Awaitable[None]]


@dataclass
class PendingBurst:
    """Fragments waiting for the sender to go quiet."""

    fragments: list[str] = field(default_factory=list)
    last_at: float = field(default_factory=_time.monotonic)

    def combined(self) -> str:
        return "\n".join(self.fragments)


class DebounceManager:
    """Sliding-window debounce keyed by sender."""

    def __init__(self, window_ms: int, on_flush: FlushCallback) -> None:
        self._window = max(window_ms, 0) / 1000.0
        self._on_flush = on_flush
        self._buffers: dict[str, PendingBurst] = {}
        self._timers: dict[str, asyncio.Task] = {}
        # Timer tasks past their window, running the flush callback
        self._flushing: set[asyncio.Task] = set()

    @property
    def window_ms(self) -> int:
        return int(self._window * 1000)

    @property
    def enabled(self) -> bool:
        return self._window > 0

    # ── Intake ────────────────────────────────────────────────────────

    async def on_message(self, sender: str, text: str) -> None:
        """Buffer one fragment, or dispatch it right away when debouncing is off."""
        if not self.enabled:
            await self._on_flush(sender, text)
            return

        burst = self._buffers.setdefault(sender, PendingBurst())
        burst.fragments.append(text)
        burst.last_at = _time.monotonic()

        # Test-and-set: no await between the check and the insert
        if sender in self._timers:
            logger.debug(f"Debounce: extended window for {sender} ({len(burst.fragments)} fragments)")
            return
        self._timers[sender] = asyncio.create_task(self._timer(sender))

    def pending(self, sender: str) -> list[str]:
        burst = self._buffers.get(sender)
        return list(burst.fragments) if burst else []

    # ── Timer ─────────────────────────────────────────────────────────

    async def _timer(self, sender: str) -> None:
        """Wait until the sender has been quiet for the full window, then flush."""
        try:
            while True:
                burst = self._buffers.get(sender)
                if burst is None:
                    return
                remaining = burst.last_at + self._window - _time.monotonic()
                if remaining <= 0:
                    break
                await asyncio.sleep(remaining)
            burst = self._buffers.pop(sender)
        finally:
            if self._timers.get(sender) is asyncio.current_task():
                del self._timers[sender]

        if len(burst.fragments) > 1:
            logger.info(f"Debounce: merged {len(burst.fragments)} fragments from {sender}")
        task = asyncio.current_task()
        self._flushing.add(task)
        try:
            await self._flush(sender, burst)
        finally:
            self._flushing.discard(task)

    async def _flush(self, sender: str, burst: PendingBurst) -> None:
        try:
            await self._on_flush(sender, burst.combined())
        except Exception as e:
            logger.exception(f"Debounce: error dispatching burst from {sender}: {e}")

    # ── Shutdown ──────────────────────────────────────────────────────

    async def close(self) -> None:
        """Cancel timers and in-flight flushes, drop pending fragments."""
        tasks = list(self._timers.values()) + list(self._flushing)
        for task in tasks:
            task.cancel()
        dropped = sum(len(b.fragments) for b in self._buffers.values())
        self._timers.clear()
        self._buffers.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if dropped:
            logger.warning(f"Debounce: dropped {dropped} pending fragments on close")
