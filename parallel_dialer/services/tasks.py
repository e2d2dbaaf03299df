"""Background job queue for work deferred past a webhook acknowledgement."""
import asyncio
import logging
import traceback
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Deque, List, Optional

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[None]]


@dataclass
class Job:
    """A named unit of deferred work. The factory is called once per attempt."""

    name: str
    factory: JobFactory
    attempts: int = 0
    enqueued_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class JobFailure:
    """A job that exhausted its attempts."""

    name: str
    error: str
    attempts: int
    failed_at: datetime = field(default_factory=datetime.utcnow)
    trace: Optional[str] = None


class BackgroundJobQueue:
    """An asyncio queue drained by a fixed pool of worker tasks.

    Failed jobs are retried with linear backoff up to ``max_attempts``; the
    final failure is logged and kept in a bounded failure log.
    """

    def __init__(
        self,
        workers: int = 2,
        max_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        failure_log_size: int = 200,
    ):
        self.worker_count = workers
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self._queue: "asyncio.Queue[Job]" = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._failures: Deque[JobFailure] = deque(maxlen=failure_log_size)
        self.completed_count = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def failures(self) -> List[JobFailure]:
        return list(self._failures)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"dialer-job-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(f"[JOBS] Started {self.worker_count} worker(s)")

    async def stop(self, drain: bool = True) -> None:
        if not self._workers:
            return
        if drain:
            await self._queue.join()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("[JOBS] Workers stopped")

    def enqueue(self, name: str, factory: JobFactory) -> Job:
        job = Job(name=name, factory=factory)
        self._queue.put_nowait(job)
        logger.debug(f"[JOBS] Enqueued '{name}' (pending: {self._queue.qsize()})")
        return job

    async def join(self) -> None:
        """Wait until every enqueued job has finished or failed for good."""
        await self._queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run(job)
            finally:
                self._queue.task_done()

    async def _run(self, job: Job) -> None:
        while True:
            job.attempts += 1
            try:
                await job.factory()
                self.completed_count += 1
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if job.attempts >= self.max_attempts:
                    failure = JobFailure(
                        name=job.name,
                        error=f"{type(e).__name__}: {e}",
                        attempts=job.attempts,
                        trace=traceback.format_exc(),
                    )
                    self._failures.append(failure)
                    logger.error(
                        f"[JOBS] Job '{job.name}' failed after {job.attempts} attempt(s): "
                        f"{failure.error}",
                        exc_info=True,
                    )
                    return
                delay = self.retry_delay_seconds * job.attempts
                logger.warning(
                    f"[JOBS] Job '{job.name}' attempt {job.attempts} failed "
                    f"({type(e).__name__}: {e}), retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
