"""
Periodic scheduler
Runs fleet sweeps on internal timers, at most once per interval across all instances
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

from agentfleet.services.cache import FleetCache
from agentfleet.utils.metrics import record_sweep_duration

logger = logging.getLogger(__name__)

JobFn = Callable[[], Awaitable[object]]


class PeriodicJob:
    def __init__(self, name: str, interval: float, fn: JobFn, run_at_start: bool = False):
        self.name = name
        self.interval = interval
        self.fn = fn
        self.run_at_start = run_at_start
        self.runs = 0
        self.last_result: object = None


class PeriodicScheduler:
    """
    Owns one background loop per job.

    Before each run an instance claims a Redis tick window for the job; if
    another instance already claimed this interval, the run is skipped.
    """

    def __init__(self, cache: FleetCache):
        self.cache = cache
        self.jobs: Dict[str, PeriodicJob] = {}
        self._tasks: List[asyncio.Task] = []

    def add_job(self, name: str, interval: float, fn: JobFn, run_at_start: bool = False) -> None:
        if name in self.jobs:
            raise ValueError(f"Job {name} already registered")
        self.jobs[name] = PeriodicJob(name, interval, fn, run_at_start)

    async def start(self):
        """Start the background loops"""
        if self._tasks:
            return
        for job in self.jobs.values():
            self._tasks.append(asyncio.create_task(self._job_loop(job)))
        logger.info(f"[scheduler] started {len(self._tasks)} job(s)")

    async def stop(self):
        """Stop all loops"""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run_once(self, name: str) -> Optional[object]:
        """Run a job now if this instance wins the current tick"""
        job = self.jobs[name]
        # A window slightly shorter than the interval so the next tick can claim it
        window = max(1, int(job.interval * 0.9))
        if not await self.cache.claim_window(f"tick:{name}", window):
            logger.debug(f"[scheduler] {name} already ran this interval elsewhere")
            return None

        started = time.monotonic()
        result = await job.fn()
        job.runs += 1
        job.last_result = result
        record_sweep_duration(name, time.monotonic() - started)
        return result

    async def _job_loop(self, job: PeriodicJob):
        """Loop for a single job"""
        if not job.run_at_start:
            await asyncio.sleep(job.interval)
        while True:
            try:
                await self.run_once(job.name)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"[scheduler] job {job.name} failed; retrying next interval")
            await asyncio.sleep(job.interval)
