"""
Tests for the cooperative scheduler - timing, non-reentrancy and failure handling.
"""

import asyncio
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from clinicflow.automations.scheduler import Scheduler, create_scheduler, daily, hourly, weekly
from clinicflow.exceptions import FatalError, JobBusyError, NotFoundError, StoreUnavailable

from conftest import CLINIC_TZ, NOW, FixedClock

TZ = ZoneInfo(CLINIC_TZ)


def local(*args) -> datetime:
    return datetime(*args, tzinfo=TZ)


class TestTiming:
    def test_hourly_is_top_of_next_hour(self):
        assert hourly(TZ)(NOW) == local(2024, 3, 13, 12, 0)

    def test_daily_rolls_to_tomorrow_when_passed(self):
        assert daily(TZ, 10)(NOW) == local(2024, 3, 14, 10, 0)
        assert daily(TZ, 18)(NOW) == local(2024, 3, 13, 18, 0)

    def test_weekly_next_monday(self):
        assert weekly(TZ, 0, 9)(NOW) == local(2024, 3, 18, 9, 0)

    def test_weekly_same_day_later(self):
        assert weekly(TZ, 2, 17)(NOW) == local(2024, 3, 13, 17, 0)

    def test_weekly_same_day_passed(self):
        assert weekly(TZ, 2, 9)(NOW) == local(2024, 3, 20, 9, 0)


class Gate:
    """A job body that blocks until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        self.started.set()
        await self.release.wait()
        return "done"


class TestExecution:
    @pytest.mark.asyncio
    async def test_run_now_returns_result_and_counts(self):
        scheduler = Scheduler(clock=FixedClock())

        async def job():
            return {"sent": 1}

        scheduler.add_job("reminders", job, hourly(TZ))

        assert await scheduler.run_now("reminders") == {"sent": 1}
        status = scheduler.status()["jobs"]["reminders"]
        assert status["runs"] == 1
        assert status["running"] is False

    @pytest.mark.asyncio
    async def test_run_now_while_running_is_busy(self):
        scheduler = Scheduler(clock=FixedClock())
        gate = Gate()
        scheduler.add_job("reminders", gate, hourly(TZ))

        first = asyncio.create_task(scheduler.run_now("reminders"))
        await gate.started.wait()

        with pytest.raises(JobBusyError):
            await scheduler.run_now("reminders")

        gate.release.set()
        assert await first == "done"
        assert gate.calls == 1

    @pytest.mark.asyncio
    async def test_tick_while_running_is_skipped(self):
        scheduler = Scheduler(clock=FixedClock())
        gate = Gate()
        scheduler.add_job("weekly_report", gate, weekly(TZ, 0, 9))

        first = asyncio.create_task(scheduler.tick("weekly_report"))
        await gate.started.wait()
        await scheduler.tick("weekly_report")
        gate.release.set()
        await first

        assert gate.calls == 1
        assert scheduler.jobs["weekly_report"].skipped == 1

    @pytest.mark.asyncio
    async def test_tick_swallows_failure_and_calls_hook(self):
        seen = []

        async def on_failure(name, error):
            seen.append((name, type(error)))

        async def broken():
            raise StoreUnavailable("workbook locked")

        scheduler = Scheduler(clock=FixedClock(), on_failure=on_failure)
        scheduler.add_job("reminders", broken, hourly(TZ))

        await scheduler.tick("reminders")

        job = scheduler.jobs["reminders"]
        assert job.failures == 1
        assert job.running is False
        assert "workbook locked" in job.last_error
        assert seen == [("reminders", StoreUnavailable)]

    @pytest.mark.asyncio
    async def test_run_now_propagates_failure(self):
        async def broken():
            raise StoreUnavailable("down")

        scheduler = Scheduler(clock=FixedClock())
        scheduler.add_job("reminders", broken, hourly(TZ))

        with pytest.raises(StoreUnavailable):
            await scheduler.run_now("reminders")

    @pytest.mark.asyncio
    async def test_unknown_job(self):
        with pytest.raises(NotFoundError):
            await Scheduler().run_now("nope")

    def test_duplicate_job_name(self):
        scheduler = Scheduler()

        async def job():
            return None

        scheduler.add_job("reminders", job, hourly(TZ))
        with pytest.raises(ValueError):
            scheduler.add_job("reminders", job, hourly(TZ))


class TestLoop:
    @pytest.mark.asyncio
    async def test_loop_sleeps_until_next_run_and_stops(self):
        delays = []
        parked = asyncio.Event()

        async def fake_sleep(delay):
            delays.append(delay)
            parked.set()
            await asyncio.Event().wait()

        async def job():
            return None

        scheduler = Scheduler(clock=FixedClock(), sleep=fake_sleep)
        scheduler.add_job("reminders", job, hourly(TZ))
        scheduler.start()
        await parked.wait()

        assert delays == [3600.0]
        assert scheduler.status()["started"] is True
        assert scheduler.jobs["reminders"].next_run == local(2024, 3, 13, 12, 0)

        await scheduler.stop()

        assert scheduler.status()["started"] is False
        assert scheduler.jobs["reminders"].task is None


class TestRegisteredJobs:
    class Sweeps:
        def __init__(self, error=None):
            self.error = error

        async def run_reminder_sweep(self):
            if self.error:
                raise self.error

        async def run_follow_up_sweep(self):
            return None

    class Reports:
        async def generate_weekly(self):
            return None

    class Alerts:
        def __init__(self):
            self.sent = []

        async def send_error_alert(self, error_type, message, context=None):
            self.sent.append(error_type)

    def test_jobs_registered(self, settings):
        scheduler = create_scheduler(settings, self.Sweeps(), self.Reports(), self.Alerts())
        assert set(scheduler.jobs) == {"reminders", "follow_ups", "weekly_report"}

    @pytest.mark.asyncio
    async def test_fatal_error_alerts_admin(self, settings):
        alerts = self.Alerts()
        scheduler = create_scheduler(settings, self.Sweeps(FatalError("bad row")), self.Reports(), alerts)

        await scheduler.tick("reminders")

        assert alerts.sent == ["fatal_error"]

    @pytest.mark.asyncio
    async def test_transient_error_does_not_alert(self, settings):
        alerts = self.Alerts()
        scheduler = create_scheduler(settings, self.Sweeps(StoreUnavailable("busy")), self.Reports(), alerts)

        await scheduler.tick("reminders")

        assert alerts.sent == []
