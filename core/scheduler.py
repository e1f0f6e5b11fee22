"""
Scheduler: periodic triggers aligned to wall-clock boundaries.
Hourly jobs run at :00, five-minute jobs at :00/:05/..., daily jobs at
00:00 UTC. Each job runs in its own task; a failing run is logged and the
next one still happens.
"""

from __future__ import annotations
import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional
import logging

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[object]]


@dataclass
class ScheduledJob:
    name: str
    interval_sec: int
    func: JobFunc
    runs: int = 0
    failures: int = 0


def seconds_until_next(interval_sec: int, now: float) -> float:
    """Seconds from ``now`` (epoch seconds) to the next multiple of the interval."""
    remainder = now % interval_sec
    return interval_sec - remainder


class Scheduler:
    """Runs registered jobs independently of one another."""

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self._sleep = sleep
        self._clock = clock
        self._jobs: Dict[str, ScheduledJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False

    @property
    def jobs(self) -> Dict[str, ScheduledJob]:
        return self._jobs

    @property
    def running(self) -> bool:
        return self._running

    def add_job(self, name: str, interval_sec: int, func: JobFunc) -> ScheduledJob:
        if interval_sec <= 0:
            raise ValueError(f"Job {name}: interval must be positive")
        job = ScheduledJob(name=name, interval_sec=interval_sec, func=func)
        self._jobs[name] = job
        if self._running:
            self._tasks[name] = asyncio.create_task(self._loop(job), name=f"sched-{name}")
        return job

    def start(self):
        if self._running:
            return
        self._running = True
        for name, job in self._jobs.items():
            self._tasks[name] = asyncio.create_task(self._loop(job), name=f"sched-{name}")
        logger.info(f"[SCHED] Started {len(self._jobs)} jobs: {', '.join(self._jobs)}")

    async def stop(self):
        self._running = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def run_now(self, name: str) -> Optional[object]:
        """Run one job immediately, outside its schedule."""
        return await self._run_once(self._jobs[name])

    async def _loop(self, job: ScheduledJob):
        while self._running:
            await self._sleep(seconds_until_next(job.interval_sec, self._clock()))
            if not self._running:
                break
            await self._run_once(job)

    async def _run_once(self, job: ScheduledJob) -> Optional[object]:
        logger.info(f"[SCHED] Running {job.name}")
        job.runs += 1
        try:
            return await job.func()
        except Exception as e:
            job.failures += 1
            logger.error(f"[SCHED] {job.name} failed: {e}", exc_info=True)
            return None
