"""FIFO admission queue for job runs.

Jobs are admitted in submission order and at most ``concurrency`` of them run
their pipeline at the same time. The default of 1 serialises jobs so that the
number of upscaler subprocesses stays bounded by a single job's limit.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from ..logging import get_logger

logger = get_logger(__name__)

JobFn = Callable[..., Awaitable[Any]]


class AdmissionQueue:
    """asyncio worker pool draining a single FIFO queue.

    Features:
    - Non-blocking ``submit``: callers get control back immediately
    - Each item runs exactly once, in admission order, subject to the limit
    - A failing item is logged and never takes its worker down
    - Async context manager for graceful shutdown

    Example:
        >>> async with AdmissionQueue(concurrency=1) as queue:
        ...     queue.submit(orchestrator.run_job, job_id)
        ...     await queue.join()
    """

    def __init__(self, concurrency: int = 1):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self._queue: "asyncio.Queue[Tuple[JobFn, tuple]]" = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._active = 0

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, *args):
        await self.shutdown(wait=True)

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def depth(self) -> int:
        """Items admitted but not yet started."""
        return self._queue.qsize()

    @property
    def active(self) -> int:
        """Items currently running."""
        return self._active

    def start(self) -> None:
        """Spawn the worker tasks on the running event loop (idempotent)."""
        if self._workers:
            return
        self._workers = [
            asyncio.ensure_future(self._worker(n)) for n in range(self.concurrency)
        ]
        logger.info("admission_queue_started", concurrency=self.concurrency)

    def submit(self, fn: JobFn, *args: Any) -> None:
        """Enqueue ``fn(*args)`` for execution. Never blocks."""
        self._queue.put_nowait((fn, args))
        logger.debug("job_admitted", depth=self.depth)

    async def join(self) -> None:
        """Wait until every admitted item has finished."""
        await self._queue.join()

    async def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop the workers.

        Args:
            wait: If True, let queued items finish first
            timeout: Upper bound on the wait, after which workers are cancelled
        """
        if wait and self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("admission_queue_drain_timeout", pending=self.depth)

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def _worker(self, n: int) -> None:
        while True:
            fn, args = await self._queue.get()
            self._active += 1
            try:
                await fn(*args)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("admitted_job_crashed", worker=n)
            finally:
                self._active -= 1
                self._queue.task_done()
