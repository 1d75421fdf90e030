"""
Background monitoring timers.

Runs periodic jobs (health checks, daily usage reports) on daemon threads.
Each job waits on a shared stop event, so ``stop`` cancels all of them
promptly instead of waiting out the interval.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeriodicJob:
    name: str
    interval: float
    func: Callable[[], object]

    def __post_init__(self):
        if self.interval <= 0:
            raise ValueError(f"interval for job '{self.name}' must be > 0")


class MonitoringScheduler:
    """Runs jobs every ``interval`` seconds until stopped."""

    def __init__(self, jobs: Optional[List[PeriodicJob]] = None):
        self._jobs: List[PeriodicJob] = list(jobs or [])
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def add_job(self, job: PeriodicJob) -> None:
        if self.running:
            raise RuntimeError("cannot add jobs while the scheduler is running")
        self._jobs.append(job)

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._run,
                args=(job,),
                name=f"monitor-{job.name}",
                daemon=True
            )
            for job in self._jobs
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Started %d monitoring job(s)", len(self._threads))

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Cancel every job and wait for the threads to exit."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def _run(self, job: PeriodicJob) -> None:
        while not self._stop.wait(job.interval):
            try:
                job.func()
            except Exception:
                logger.exception("Monitoring job %s failed", job.name)
