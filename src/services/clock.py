"""Time source and future-callback scheduling.

The escalation engine never reads the wall clock or sleeps directly; it
asks a Clock. ``SchedulerClock`` is backed by the APScheduler instance
that also hosts the interval jobs, ``ManualClock`` is virtual time for
tests.

Callbacks are coroutine functions. Scheduling under a key that already
has a pending callback replaces it, so a key (one per escalation run)
never has more than one outstanding callback.
"""

import heapq
import itertools
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from src.logging_config import get_logger
from src.models.base import utcnow

logger = get_logger(__name__)

Callback = Callable[..., Awaitable[Any]]


class CancelHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    """Current time plus one-shot callbacks at an instant."""

    def now(self) -> datetime: ...

    def schedule_at(
        self,
        when: datetime,
        callback: Callback,
        *args: Any,
        key: str,
    ) -> CancelHandle: ...

    def cancel(self, key: str) -> None: ...


class _KeyHandle:
    """Cancels whatever is currently scheduled under a key."""

    def __init__(self, clock: Clock, key: str):
        self._clock = clock
        self.key = key

    def cancel(self) -> None:
        self._clock.cancel(self.key)


class SchedulerClock:
    """Clock backed by an APScheduler ``AsyncIOScheduler``.

    Each callback becomes a ``DateTrigger`` job whose id is the key.
    Missed deadlines (scheduler paused, event loop busy) still run; the
    callbacks re-check persisted state before acting.
    """

    def __init__(self, scheduler: AsyncIOScheduler):
        self._scheduler = scheduler

    def now(self) -> datetime:
        return utcnow()

    def schedule_at(
        self,
        when: datetime,
        callback: Callback,
        *args: Any,
        key: str,
    ) -> CancelHandle:
        self._scheduler.add_job(
            callback,
            trigger=DateTrigger(run_date=when),
            args=list(args),
            id=key,
            name=key,
            replace_existing=True,
            misfire_grace_time=None,
            coalesce=True,
        )
        logger.debug("Armed timer", key=key, fire_at=when.isoformat())
        return _KeyHandle(self, key)

    def cancel(self, key: str) -> None:
        try:
            self._scheduler.remove_job(key)
        except JobLookupError:
            # Already fired or never armed
            return
        logger.debug("Cancelled timer", key=key)


class ManualClock:
    """Virtual-time clock for tests.

    Time only moves through ``advance``/``advance_to``, which await every
    callback falling due on the way, in deadline order, with ``now()``
    set to each callback's deadline while it runs.

    Example:
        clock = ManualClock(datetime(2024, 1, 1, tzinfo=UTC))
        engine = EscalationEngine(clock=clock, dispatcher=dispatcher)
        await engine.start(db, "alert-1", policy.id, AlertSeverity.MAJOR)
        await clock.advance(timedelta(minutes=30))
    """

    def __init__(self, start: datetime):
        if start.tzinfo is None:
            msg = "ManualClock needs a timezone-aware start"
            raise ValueError(msg)
        self._now = start
        self._queue: list[tuple[datetime, int, str]] = []
        self._entries: dict[str, tuple[int, datetime, Callback, tuple[Any, ...]]] = {}
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._now

    def schedule_at(
        self,
        when: datetime,
        callback: Callback,
        *args: Any,
        key: str,
    ) -> CancelHandle:
        seq = next(self._seq)
        self._entries[key] = (seq, when, callback, args)
        heapq.heappush(self._queue, (when, seq, key))
        return _KeyHandle(self, key)

    def cancel(self, key: str) -> None:
        self._entries.pop(key, None)

    def pending(self) -> dict[str, datetime]:
        """Deadline of every outstanding callback, by key."""
        return {key: entry[1] for key, entry in self._entries.items()}

    def _pop_due(self, until: datetime) -> tuple[datetime, Callback, tuple[Any, ...]] | None:
        while self._queue and self._queue[0][0] <= until:
            when, seq, key = heapq.heappop(self._queue)
            entry = self._entries.get(key)
            # Skip heap entries superseded by a later schedule_at or cancelled
            if entry is None or entry[0] != seq:
                continue
            del self._entries[key]
            return when, entry[2], entry[3]
        return None

    async def advance_to(self, target: datetime) -> None:
        if target < self._now:
            msg = "ManualClock cannot move backwards"
            raise ValueError(msg)
        while (due := self._pop_due(target)) is not None:
            when, callback, args = due
            self._now = max(self._now, when)
            await callback(*args)
        self._now = target

    async def advance(self, delta: timedelta) -> None:
        await self.advance_to(self._now + delta)

    async def run_pending(self) -> None:
        """Run callbacks already due without moving time."""
        await self.advance_to(self._now)
