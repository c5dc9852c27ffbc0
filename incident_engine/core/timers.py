#!/usr/bin/env python3
"""
Incident Engine - Timer Queue
Shared time-ordered scheduling structure for escalation level advances,
quiet-hours delays and delivery retry backoffs.

A mutex-guarded min-heap keyed by fire time, serviced by a dispatch loop that
runs each due handler as an independent task on a bounded worker pool.
Cancellation is lazy: cancelled entries stay in the heap and are skipped
when popped.
"""

import asyncio
import heapq
import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Set

import structlog

from .models import utcnow

logger = structlog.get_logger()

TimerHandler = Callable[[], Awaitable[Any]]


# =============================================================================
# CLOCKS
# =============================================================================

class SystemClock:
    """Wall clock in aware UTC."""

    def now(self) -> datetime:
        return utcnow()


class ManualClock:
    """
    Clock that only moves when told to.
    Lets tests and simulations drive escalation timing without sleeping.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or utcnow()

    def now(self) -> datetime:
        return self._now

    def set(self, when: datetime) -> None:
        if when < self._now:
            raise ValueError("ManualClock cannot move backwards")
        self._now = when

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now


# =============================================================================
# TIMER QUEUE
# =============================================================================

@dataclass(order=True)
class _TimerEntry:
    fire_at: datetime
    seq: int
    token: Hashable = field(compare=False)
    handler: TimerHandler = field(compare=False)
    cancelled: bool = field(default=False, compare=False)


class TimerQueue:
    """
    Scheduling port used by the escalation scheduler and the dispatcher.

    Tokens are caller-chosen hashables; at most one live timer exists per
    token, and scheduling an existing token replaces it. The heap is guarded
    by its own lock, independent of the per-incident locks.
    """

    def __init__(self, clock=None, max_workers: int = 10,
                 poll_interval: float = 1.0, compact_threshold: int = 256):
        """
        Initialize the timer queue.

        Args:
            clock: Clock providing now(); defaults to SystemClock
            max_workers: Maximum handlers executing concurrently
            poll_interval: Upper bound on how long the loop sleeps between checks
            compact_threshold: Cancelled entries tolerated in the heap before
                it is rebuilt without them
        """
        self.clock = clock or SystemClock()
        self.max_workers = max_workers
        self.poll_interval = poll_interval
        self.compact_threshold = compact_threshold

        self._heap: List[_TimerEntry] = []
        self._live: Dict[Hashable, _TimerEntry] = {}
        self._mutex = threading.Lock()
        self._seq = itertools.count()
        # Cancelled entries still sitting in the heap
        self._cancelled = 0

        self._workers: Optional[asyncio.Semaphore] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._inflight: Set[asyncio.Task] = set()
        self._running = False

        self.fired_count = 0
        self.failed_count = 0
        self.logger = structlog.get_logger().bind(component="timer_queue")

    # -------------------------------------------------------------------------
    # SCHEDULING PORT
    # -------------------------------------------------------------------------

    def schedule_at(self, when: datetime, token: Hashable, handler: TimerHandler) -> None:
        """
        Schedule ``handler`` to run at ``when``.

        Args:
            when: Fire time; times in the past fire on the next pass
            token: Identity used for cancellation and replacement
            handler: Zero-argument coroutine function to run when due
        """
        with self._mutex:
            previous = self._live.pop(token, None)
            if previous is not None:
                self._mark_cancelled(previous)
            entry = _TimerEntry(fire_at=when, seq=next(self._seq), token=token, handler=handler)
            heapq.heappush(self._heap, entry)
            self._live[token] = entry
            is_earliest = self._heap[0] is entry

        if is_earliest and self._wakeup is not None:
            self._wakeup.set()

    def schedule_after(self, seconds: float, token: Hashable, handler: TimerHandler) -> None:
        self.schedule_at(self.clock.now() + timedelta(seconds=seconds), token, handler)

    def cancel(self, token: Hashable) -> bool:
        """
        Cancel the pending timer for ``token``.

        Safe to call when nothing is pending.

        Returns:
            True if a pending timer was cancelled
        """
        with self._mutex:
            entry = self._live.pop(token, None)
            if entry is None:
                return False
            self._mark_cancelled(entry)
            return True

    def is_scheduled(self, token: Hashable) -> bool:
        with self._mutex:
            return token in self._live

    def fire_time(self, token: Hashable) -> Optional[datetime]:
        with self._mutex:
            entry = self._live.get(token)
            return entry.fire_at if entry else None

    def next_fire_time(self) -> Optional[datetime]:
        with self._mutex:
            self._discard_cancelled_head()
            return self._heap[0].fire_at if self._heap else None

    def pending_count(self) -> int:
        with self._mutex:
            return len(self._live)

    # -------------------------------------------------------------------------
    # DISPATCH
    # -------------------------------------------------------------------------

    def _mark_cancelled(self, entry: _TimerEntry) -> None:
        entry.cancelled = True
        self._cancelled += 1
        if self._cancelled > self.compact_threshold and self._cancelled * 2 > len(self._heap):
            self._heap = [e for e in self._heap if not e.cancelled]
            heapq.heapify(self._heap)
            self._cancelled = 0

    def _discard_cancelled_head(self) -> None:
        while self._heap and self._heap[0].cancelled:
            heapq.heappop(self._heap)
            self._cancelled -= 1

    def _pop_due(self, now: datetime) -> List[_TimerEntry]:
        due = []
        with self._mutex:
            while self._heap:
                self._discard_cancelled_head()
                if not self._heap or self._heap[0].fire_at > now:
                    break
                entry = heapq.heappop(self._heap)
                if self._live.get(entry.token) is entry:
                    del self._live[entry.token]
                due.append(entry)
        return due

    def run_due(self) -> List[asyncio.Task]:
        """
        Start a task for every timer that is due now.

        Returns:
            The tasks started on this pass
        """
        if self._workers is None:
            self._workers = asyncio.Semaphore(self.max_workers)

        tasks = []
        for entry in self._pop_due(self.clock.now()):
            task = asyncio.create_task(self._execute(entry))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            tasks.append(task)
        return tasks

    async def run_until_idle(self) -> None:
        """Fire due timers, including ones they schedule, until none remain."""
        while True:
            self.run_due()
            if not self._inflight:
                return
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _execute(self, entry: _TimerEntry) -> None:
        async with self._workers:
            if entry.cancelled:
                return
            self.fired_count += 1
            try:
                await entry.handler()
            except Exception as e:
                self.failed_count += 1
                self.logger.error("Timer handler failed",
                                  token=str(entry.token), error=str(e), exc_info=True)

    async def run(self) -> None:
        """
        Dispatch loop. Sleeps until the earliest timer is due, or until woken
        by a newly scheduled earlier timer, then fires everything due.
        """
        self._running = True
        self._wakeup = asyncio.Event()
        self.logger.info("Timer dispatch loop started", max_workers=self.max_workers)

        while self._running:
            self.run_due()

            next_fire = self.next_fire_time()
            timeout = self.poll_interval
            if next_fire is not None:
                until_next = (next_fire - self.clock.now()).total_seconds()
                timeout = max(0.0, min(timeout, until_next))

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

        self.logger.info("Timer dispatch loop stopped")

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Stop the dispatch loop and wait briefly for in-flight handlers."""
        self._running = False
        if self._wakeup is not None:
            self._wakeup.set()
        if self._inflight:
            done, pending = await asyncio.wait(list(self._inflight), timeout=drain_timeout)
            for task in pending:
                task.cancel()
