# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2025 red1239109-cmd
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from typing import Callable, List, Optional, Tuple

from . import _finite

logger = logging.getLogger(__name__)


class SchedulerError(RuntimeError):
    pass


# -----------------------------
# Timer handles
# -----------------------------
class TimerHandle:
    __slots__ = ("timer_id", "deadline", "interval", "fn", "active", "label")

    def __init__(self, timer_id: int, deadline: float, fn: Callable[[], None],
                 interval: Optional[float] = None, label: str = ""):
        self.timer_id = timer_id
        self.deadline = deadline
        self.interval = interval
        self.fn = fn
        self.active = True
        self.label = label

    @property
    def periodic(self) -> bool:
        return self.interval is not None

    def cancel(self) -> None:
        self.active = False

    def __repr__(self) -> str:
        kind = f"every={self.interval}" if self.periodic else "once"
        return f"TimerHandle(id={self.timer_id}, {kind}, deadline={self.deadline}, active={self.active}, label={self.label!r})"


# -----------------------------
# Scheduler
# -----------------------------
class Scheduler:
    """
    Single-threaded timer wheel on an injectable millisecond clock.

    Without a clock the scheduler runs on virtual time starting at 0 and only
    moves when advance() is called. With a clock (e.g. wall_ms) due timers fire
    from run_pending() or the asyncio driver.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock
        self._virtual_now = 0.0
        self._heap: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count(1)

    @property
    def is_virtual(self) -> bool:
        return self._clock is None

    def now(self) -> float:
        if self._clock is None:
            return self._virtual_now
        return float(self._clock())

    def after(self, ms: float, fn: Callable[[], None], label: str = "") -> TimerHandle:
        delay = max(0.0, _finite(ms))
        return self._push(self.now() + delay, fn, None, label)

    def every(self, ms: float, fn: Callable[[], None], label: str = "") -> TimerHandle:
        interval = max(1.0, _finite(ms, 1.0))
        return self._push(self.now() + interval, fn, interval, label)

    def _push(self, deadline: float, fn, interval, label) -> TimerHandle:
        seq = next(self._seq)
        handle = TimerHandle(seq, deadline, fn, interval=interval, label=label)
        heapq.heappush(self._heap, (deadline, seq, handle))
        return handle

    def pending(self) -> int:
        return sum(1 for _, _, h in self._heap if h.active)

    def next_deadline(self) -> Optional[float]:
        while self._heap and not self._heap[0][2].active:
            heapq.heappop(self._heap)
        return self._heap[0][0] if self._heap else None

    def advance(self, ms: float) -> int:
        """Move virtual time forward by ms, firing due timers in deadline order."""
        if not self.is_virtual:
            raise SchedulerError("advance() requires the virtual clock")
        target = self._virtual_now + max(0.0, _finite(ms))
        fired = self._run_until(target, move_clock=True)
        self._virtual_now = target
        return fired

    def run_pending(self) -> int:
        return self._run_until(self.now(), move_clock=False)

    def _run_until(self, target: float, move_clock: bool) -> int:
        fired = 0
        while True:
            deadline = self.next_deadline()
            if deadline is None or deadline > target:
                break
            _, _, handle = heapq.heappop(self._heap)
            if move_clock:
                self._virtual_now = max(self._virtual_now, deadline)
            if handle.periodic:
                handle.deadline = deadline + handle.interval
                heapq.heappush(self._heap, (handle.deadline, next(self._seq), handle))
            else:
                handle.active = False
            fired += 1
            try:
                handle.fn()
            except Exception:
                logger.exception(f"Timer callback failed: {handle!r}")
        return fired

    def cancel_all(self) -> None:
        for _, _, h in self._heap:
            h.cancel()
        self._heap.clear()

    async def run_forever(self, stop: asyncio.Event, poll_ms: float = 10.0) -> None:
        """Drive timers from an asyncio loop until stop is set."""
        while not stop.is_set():
            delay = poll_ms
            deadline = self.next_deadline()
            if deadline is not None:
                delay = max(0.0, min(deadline - self.now(), poll_ms))
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay / 1000.0)
            except asyncio.TimeoutError:
                pass
            if self.is_virtual:
                self.advance(delay)
            else:
                self.run_pending()


# -----------------------------
# Teardown list
# -----------------------------
class TeardownList:
    """Ordered cleanup callbacks, released LIFO exactly once."""

    def __init__(self, owner: str = ""):
        self.owner = owner
        self._items: List[Tuple[str, Callable[[], None]]] = []
        self.released = False

    def __len__(self) -> int:
        return len(self._items)

    def register(self, cleanup: Callable[[], None], label: str = "") -> None:
        if self.released:
            logger.warning(f"[{self.owner}] registered after release; running cleanup now: {label}")
            self._run(label, cleanup)
            return
        self._items.append((label, cleanup))

    def timer(self, handle: TimerHandle) -> TimerHandle:
        self.register(handle.cancel, label=handle.label or f"timer#{handle.timer_id}")
        return handle

    def release_all(self) -> int:
        count = 0
        while self._items:
            label, cleanup = self._items.pop()
            self._run(label, cleanup)
            count += 1
        self.released = True
        return count

    def _run(self, label: str, cleanup: Callable[[], None]) -> None:
        try:
            cleanup()
        except Exception:
            logger.exception(f"[{self.owner}] cleanup failed: {label}")
