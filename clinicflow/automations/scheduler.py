"""
Cooperative scheduler: one asyncio task per periodic job.

Each job is guarded by a non-reentrant flag. A timer tick that finds its job
still running is skipped; a manual trigger that finds it running raises
JobBusyError. Job failures are logged and never end the job's loop.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from loguru import logger

from clinicflow.config import Settings
from clinicflow.exceptions import FatalError, JobBusyError, NotFoundError

NextRun = Callable[[datetime], datetime]
FailureHook = Callable[[str, Exception], Awaitable[None]]


def hourly(tz: ZoneInfo, minute: int = 0) -> NextRun:
    def next_run(now: datetime) -> datetime:
        local = now.astimezone(tz)
        candidate = local.replace(minute=minute, second=0, microsecond=0)
        if candidate <= local:
            candidate += timedelta(hours=1)
        return candidate
    return next_run


def daily(tz: ZoneInfo, hour: int, minute: int = 0) -> NextRun:
    def next_run(now: datetime) -> datetime:
        local = now.astimezone(tz)
        candidate = local.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= local:
            candidate += timedelta(days=1)
        return candidate
    return next_run


def weekly(tz: ZoneInfo, weekday: int, hour: int, minute: int = 0) -> NextRun:
    """weekday: 0 = Monday."""
    def next_run(now: datetime) -> datetime:
        local = now.astimezone(tz)
        candidate = local.replace(hour=hour, minute=minute, second=0, microsecond=0)
        candidate += timedelta(days=(weekday - local.weekday()) % 7)
        if candidate <= local:
            candidate += timedelta(days=7)
        return candidate
    return next_run


@dataclass
class Job:
    name: str
    func: Callable[[], Awaitable[Any]]
    next_run_after: NextRun
    running: bool = False
    runs: int = 0
    failures: int = 0
    skipped: int = 0
    next_run: Optional[datetime] = None
    last_started: Optional[datetime] = None
    last_finished: Optional[datetime] = None
    last_error: Optional[str] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "runs": self.runs,
            "failures": self.failures,
            "skipped": self.skipped,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_started": self.last_started.isoformat() if self.last_started else None,
            "last_finished": self.last_finished.isoformat() if self.last_finished else None,
            "last_error": self.last_error,
        }


class Scheduler:
    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_failure: Optional[FailureHook] = None,
    ):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._on_failure = on_failure
        self.jobs: Dict[str, Job] = {}
        self._started = False

    def add_job(self, name: str, func: Callable[[], Awaitable[Any]], next_run_after: NextRun) -> Job:
        if name in self.jobs:
            raise ValueError(f"Job '{name}' already registered")
        job = Job(name=name, func=func, next_run_after=next_run_after)
        self.jobs[name] = job
        return job

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        if self._started:
            return
        for job in self.jobs.values():
            job.task = asyncio.create_task(self._loop(job), name=f"scheduler:{job.name}")
        self._started = True
        logger.info(f"Scheduler started with jobs: {', '.join(self.jobs) or 'none'}")

    async def stop(self) -> None:
        tasks = [job.task for job in self.jobs.values() if job.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for job in self.jobs.values():
            job.task = None
        self._started = False
        logger.info("Scheduler stopped")

    async def _loop(self, job: Job) -> None:
        while True:
            now = self._clock()
            job.next_run = job.next_run_after(now)
            delay = max(0.0, (job.next_run - now).total_seconds())
            logger.debug(f"Job '{job.name}' next run at {job.next_run.isoformat()}")
            await self._sleep(delay)
            await self.tick(job.name)

    async def tick(self, name: str) -> None:
        """Timer-driven run: skipped with a warning if the job is still running."""
        job = self._job(name)
        if job.running:
            job.skipped += 1
            logger.warning(f"Job '{name}' is still running, skipping this tick")
            return
        try:
            await self._execute(job)
        except Exception as e:
            if self._on_failure is not None:
                try:
                    await self._on_failure(name, e)
                except Exception as hook_error:
                    logger.error(f"Failure hook for job '{name}' failed: {hook_error}")

    async def run_now(self, name: str) -> Any:
        """Manual trigger. Raises JobBusyError if the job is already running."""
        job = self._job(name)
        if job.running:
            raise JobBusyError(f"Job '{name}' is already running")
        return await self._execute(job)

    async def _execute(self, job: Job) -> Any:
        job.running = True
        job.last_started = self._clock()
        try:
            with logger.contextualize(job=job.name):
                logger.info(f"Job '{job.name}' started")
                result = await job.func()
                logger.info(f"Job '{job.name}' finished")
        except Exception as e:
            job.failures += 1
            job.last_error = f"{type(e).__name__}: {e}"
            logger.error(f"Job '{job.name}' failed: {e}")
            raise
        else:
            job.runs += 1
            job.last_error = None
            return result
        finally:
            job.running = False
            job.last_finished = self._clock()

    def _job(self, name: str) -> Job:
        job = self.jobs.get(name)
        if job is None:
            raise NotFoundError(f"Unknown job '{name}'")
        return job

    def status(self) -> Dict[str, Any]:
        return {
            "started": self._started,
            "jobs": {name: job.status() for name, job in self.jobs.items()},
        }


def create_scheduler(settings: Settings, reminders, reports, notifier) -> Scheduler:
    """Scheduler with the reminder, follow-up and weekly report jobs registered."""

    async def on_failure(job_name: str, error: Exception) -> None:
        if isinstance(error, FatalError):
            await notifier.send_error_alert(
                error_type="fatal_error",
                message=f"Scheduled job '{job_name}' hit a fatal error: {error}",
                context={"Job": job_name},
            )

    tz = settings.tz
    scheduler = Scheduler(on_failure=on_failure)
    scheduler.add_job("reminders", reminders.run_reminder_sweep, hourly(tz))
    follow_up_timing = hourly(tz) if settings.follow_up_schedule == "hourly" else daily(tz, settings.follow_up_hour)
    scheduler.add_job("follow_ups", reminders.run_follow_up_sweep, follow_up_timing)
    scheduler.add_job(
        "weekly_report",
        reports.generate_weekly,
        weekly(tz, settings.weekly_report_weekday, settings.weekly_report_hour),
    )
    return scheduler
