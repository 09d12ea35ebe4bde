#!/usr/bin/env python3
"""
Periodic job scheduler.

Runs the two recurring jobs of the engine on fixed cadences:

- ``fetch``: the ingestion pipeline, every FETCH_INTERVAL_MINUTES
- ``queue``: the re-embargo pass before queue processing, every QUEUE_INTERVAL_MINUTES

Jobs never overlap: when both are due, the fetch runs first so the queue pass
sees the freshest items.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from config import config, get_logger
from telemetry import init_telemetry, trace_span
from utils import format_duration

logger = get_logger("scheduler")
init_telemetry("feed-campaigns-scheduler")

JOB_FETCH = 'fetch'
JOB_QUEUE = 'queue'


class IntervalJob:
    """A job that runs every ``interval_minutes`` after its previous run."""

    def __init__(self, name: str, interval_minutes: int):
        if interval_minutes <= 0:
            raise ValueError(f"Interval for job '{name}' must be positive, got: {interval_minutes}")
        self.name = name
        self.interval = timedelta(minutes=interval_minutes)
        self.last_run: Optional[datetime] = None

    def next_occurrence(self, from_time: Optional[datetime] = None) -> datetime:
        """Next run time in UTC; a job that never ran is due immediately."""
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        if self.last_run is None:
            return from_time
        return self.last_run + self.interval

    def __repr__(self) -> str:
        return f"IntervalJob({self.name}, every {self.interval})"


class CampaignScheduler:
    """Interval scheduler for the fetch and queue jobs."""

    def __init__(self, fetch_interval_minutes: Optional[int] = None, queue_interval_minutes: Optional[int] = None):
        self.jobs: List[IntervalJob] = [
            IntervalJob(JOB_FETCH, fetch_interval_minutes or config.FETCH_INTERVAL_MINUTES),
            IntervalJob(JOB_QUEUE, queue_interval_minutes or config.QUEUE_INTERVAL_MINUTES),
        ]

    def get_next_run_event(self, from_time: Optional[datetime] = None) -> Tuple[datetime, List[str]]:
        """Return the next run time and the names of the jobs due then, in job order."""
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        next_time = min(job.next_occurrence(from_time) for job in self.jobs)
        due = [job.name for job in self.jobs if job.next_occurrence(from_time) <= next_time]
        return next_time, due

    def seconds_until_next_run(self, from_time: Optional[datetime] = None) -> float:
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        next_time, _ = self.get_next_run_event(from_time)
        return max(0.0, (next_time - from_time).total_seconds())

    def get_schedule_status(self) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        next_time, due = self.get_next_run_event(now)
        return {
            'current_time': now.isoformat(),
            'jobs': {
                job.name: {
                    'interval_minutes': int(job.interval.total_seconds() // 60),
                    'last_run': job.last_run.isoformat() if job.last_run else None,
                    'next_run': job.next_occurrence(now).isoformat(),
                }
                for job in self.jobs
            },
            'next_run_time': next_time.isoformat(),
            'next_jobs': due,
            'seconds_until_next_run': self.seconds_until_next_run(now),
        }

    def print_schedule_status(self):
        status = self.get_schedule_status()
        print("\n🕐 Scheduler Status")
        print(f"⏰ Current time: {status['current_time']}")
        for name, job in status['jobs'].items():
            print(f"🔁 {name}: every {job['interval_minutes']} minutes, next run {job['next_run']}")
        print(f"⏭️ Next: {', '.join(status['next_jobs'])} in {format_duration(status['seconds_until_next_run'])}")

    @trace_span("scheduler.main_loop", tracer_name="scheduler")
    async def run_scheduled_pipeline(self, orchestrator, max_cycles: Optional[int] = None):
        """Run jobs forever (or for ``max_cycles`` wake-ups).

        Args:
            orchestrator: object exposing async ``run_fetch()`` and ``run_tick()``
            max_cycles: stop after this many wake-ups (None runs until cancelled)
        """
        if not config.SCHEDULER_RUN_IMMEDIATELY:
            now = datetime.now(timezone.utc)
            for job in self.jobs:
                job.last_run = now
        logger.info(f"🚀 Starting scheduler with jobs: {self.jobs}")

        cycles = 0
        while True:
            try:
                now = datetime.now(timezone.utc)
                next_time, due = self.get_next_run_event(now)
                sleep_time = (next_time - now).total_seconds()
                if sleep_time > 0:
                    logger.info(f"😴 Sleeping {format_duration(sleep_time)} until next run of: {', '.join(due)}")
                    await self._sleep_until(next_time, sleep_time)

                for name in due:
                    await self._run_job_with_span(orchestrator, name)

                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    break
            except asyncio.CancelledError:
                logger.info("📶 Scheduler cancelled - shutting down")
                break
            except Exception as e:
                logger.error(f"💥 Error in scheduled run: {e}")
                await asyncio.sleep(60)

    @trace_span(
        "scheduler.sleep",
        tracer_name="scheduler",
        attr_from_args=lambda self, next_time, sleep_time: {
            "sleep.seconds": float(sleep_time),
            "scheduled.at": next_time.isoformat(),
        },
    )
    async def _sleep_until(self, next_time: datetime, sleep_time: float):
        await asyncio.sleep(sleep_time)

    @trace_span(
        "scheduler.job_run",
        tracer_name="scheduler",
        attr_from_args=lambda self, orchestrator, name: {"job.name": name},
    )
    async def _run_job_with_span(self, orchestrator, name: str) -> bool:
        job = next(job for job in self.jobs if job.name == name)
        start_time = datetime.now(timezone.utc)
        job.last_run = start_time
        if name == JOB_FETCH:
            success = await orchestrator.run_fetch()
        else:
            success = await orchestrator.run_tick()
        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        if success:
            logger.info(f"✅ Job {name} completed in {duration:.1f}s")
        else:
            logger.error(f"❌ Job {name} failed after {duration:.1f}s")
        return success


def create_scheduler() -> CampaignScheduler:
    return CampaignScheduler()
