"""Tests for the Clock implementations."""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.date import DateTrigger

from conftest import T0
from src.services.clock import ManualClock, SchedulerClock


class TestManualClock:
    """Tests for virtual time."""

    def test_requires_aware_start(self):
        with pytest.raises(ValueError, match="timezone-aware"):
            ManualClock(datetime(2024, 1, 1))

    @pytest.mark.asyncio
    async def test_runs_callbacks_in_deadline_order(self):
        clock = ManualClock(T0)
        fired = []

        async def record(label):
            fired.append((label, clock.now()))

        clock.schedule_at(T0 + timedelta(minutes=20), record, "late", key="b")
        clock.schedule_at(T0 + timedelta(minutes=10), record, "early", key="a")

        await clock.advance(timedelta(minutes=30))

        assert fired == [
            ("early", T0 + timedelta(minutes=10)),
            ("late", T0 + timedelta(minutes=20)),
        ]
        assert clock.now() == T0 + timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_same_key_replaces_pending_callback(self):
        clock = ManualClock(T0)
        fired = []

        async def record(label):
            fired.append(label)

        clock.schedule_at(T0 + timedelta(minutes=5), record, "first", key="k")
        clock.schedule_at(T0 + timedelta(minutes=15), record, "second", key="k")

        assert clock.pending() == {"k": T0 + timedelta(minutes=15)}
        await clock.advance(timedelta(minutes=20))
        assert fired == ["second"]

    @pytest.mark.asyncio
    async def test_cancel(self):
        clock = ManualClock(T0)
        fired = []

        async def record(label):
            fired.append(label)

        handle = clock.schedule_at(T0 + timedelta(minutes=5), record, "x", key="k")
        handle.cancel()
        clock.cancel("never-armed")

        await clock.advance(timedelta(minutes=10))
        assert fired == []
        assert clock.pending() == {}

    @pytest.mark.asyncio
    async def test_callback_may_schedule_within_window(self):
        clock = ManualClock(T0)
        fired = []

        async def chain(n):
            fired.append(clock.now())
            if n:
                clock.schedule_at(clock.now() + timedelta(minutes=1), chain, n - 1, key="k")

        clock.schedule_at(T0 + timedelta(minutes=1), chain, 2, key="k")
        await clock.advance(timedelta(minutes=5))

        assert fired == [T0 + timedelta(minutes=m) for m in (1, 2, 3)]

    @pytest.mark.asyncio
    async def test_cannot_move_backwards(self):
        clock = ManualClock(T0)

        with pytest.raises(ValueError):
            await clock.advance_to(T0 - timedelta(seconds=1))

    @pytest.mark.asyncio
    async def test_run_pending_fires_overdue(self):
        clock = ManualClock(T0)
        fired = []

        async def record():
            fired.append(clock.now())

        clock.schedule_at(T0 - timedelta(minutes=1), record, key="k")
        await clock.run_pending()

        assert fired == [T0]


class TestSchedulerClock:
    """Tests for the APScheduler-backed clock."""

    def test_schedule_adds_date_job_keyed_by_name(self):
        scheduler = MagicMock()
        clock = SchedulerClock(scheduler)
        callback = MagicMock()
        when = T0 + timedelta(minutes=30)

        clock.schedule_at(when, callback, "alert-1", when, key="escalation:alert-1")

        scheduler.add_job.assert_called_once()
        args, kwargs = scheduler.add_job.call_args
        assert args == (callback,)
        assert isinstance(kwargs["trigger"], DateTrigger)
        assert kwargs["trigger"].run_date == when
        assert kwargs["args"] == ["alert-1", when]
        assert kwargs["id"] == "escalation:alert-1"
        assert kwargs["replace_existing"] is True
        assert kwargs["misfire_grace_time"] is None

    def test_cancel_removes_job(self):
        scheduler = MagicMock()
        clock = SchedulerClock(scheduler)

        clock.cancel("escalation:alert-1")

        scheduler.remove_job.assert_called_once_with("escalation:alert-1")

    def test_cancel_missing_job_is_ignored(self):
        scheduler = MagicMock()
        scheduler.remove_job.side_effect = JobLookupError("escalation:alert-1")
        clock = SchedulerClock(scheduler)

        clock.cancel("escalation:alert-1")

    def test_now_is_timezone_aware(self):
        assert SchedulerClock(MagicMock()).now().tzinfo is not None
