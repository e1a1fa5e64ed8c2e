"""Bounded background worker pool for out-of-band jobs."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

import structlog

logger = structlog.get_logger()


@dataclass
class BackgroundJob:
    """A queued unit of work."""

    name: str
    factory: Callable[[], Awaitable[Any]]


class BackgroundTaskRunner:
    """Runs submitted jobs on a fixed number of worker tasks.

    Submission never blocks: when ``max_pending`` jobs are already waiting,
    the new job is dropped and logged. Jobs that fail are logged and do not
    affect other jobs. Workers start lazily on first submit.
    """

    def __init__(self, workers: int = 2, max_pending: int = 100) -> None:
        self.worker_count = workers
        self.max_pending = max_pending
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._closed = False
        self.completed = 0
        self.failed = 0
        self.dropped = 0
        logger.info("task_runner_initialized", workers=workers, max_pending=max_pending)

    @property
    def running(self) -> bool:
        return any(not w.done() for w in self._workers)

    def start(self) -> None:
        """Start worker tasks on the running loop."""
        if self.running:
            return
        self._closed = False
        self._queue = asyncio.Queue(maxsize=self.max_pending)
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"background-worker-{index}")
            for index in range(self.worker_count)
        ]

    def submit(self, name: str, factory: Callable[[], Awaitable[Any]]) -> bool:
        """Queue a job. Returns False if it was dropped."""
        if self._closed:
            logger.warning("background_job_rejected", job=name, reason="shutting_down")
            self.dropped += 1
            return False
        self.start()
        try:
            self._queue.put_nowait(BackgroundJob(name=name, factory=factory))
        except asyncio.QueueFull:
            logger.warning("background_job_dropped", job=name, pending=self._queue.qsize())
            self.dropped += 1
            return False
        return True

    async def _worker(self, index: int) -> None:
        queue = self._queue
        while True:
            job = await queue.get()
            try:
                await job.factory()
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed += 1
                logger.error(
                    "background_job_failed",
                    job=job.name,
                    worker=index,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                queue.task_done()

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        if self._queue is not None and self.running:
            await self._queue.join()

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Stop accepting jobs, wait up to ``timeout`` for the queue, then cancel workers.

        Jobs still running or queued when the timeout expires are abandoned.
        """
        self._closed = True
        if self._queue is not None and self.running:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "background_jobs_abandoned",
                    pending=self._queue.qsize(),
                    timeout=timeout,
                )

        for worker in self._workers:
            if not worker.done():
                worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
        logger.info(
            "task_runner_stopped",
            completed=self.completed,
            failed=self.failed,
            dropped=self.dropped,
        )
