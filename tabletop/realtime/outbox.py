"""Background queue for best-effort durable writes.

Commands enqueue a coroutine factory and return immediately; a single worker
runs the jobs in order and retries failures with exponential backoff. A job
that still fails after the last attempt is logged and dropped. Unexpected
errors are not retried; the job is dropped and the worker keeps going.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable

from .errors import SyncError

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[None]]

DROPPED_HISTORY = 50


@dataclass(frozen=True)
class OutboxJob:
    description: str
    run: JobFactory


class Outbox:
    def __init__(self, max_attempts: int = 3, base_delay: float = 0.5, history: int = DROPPED_HISTORY) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._queue: asyncio.Queue[OutboxJob] | None = None
        self._worker: asyncio.Task[None] | None = None
        # Most recent dropped jobs only; dropped_count keeps the total.
        self.dropped: deque[OutboxJob] = deque(maxlen=history)
        self.dropped_count = 0

    def enqueue(self, description: str, run: JobFactory) -> None:
        """Queue a job. Must be called from a running event loop."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._work(self._queue))
        self._queue.put_nowait(OutboxJob(description=description, run=run))

    async def drain(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def _work(self, queue: asyncio.Queue[OutboxJob]) -> None:
        while True:
            job = await queue.get()
            try:
                await self._run_with_retry(job)
            finally:
                queue.task_done()

    async def _run_with_retry(self, job: OutboxJob) -> None:
        for attempt in range(self.max_attempts):
            try:
                await job.run()
                return
            except (SyncError, OSError) as exc:
                if attempt < self.max_attempts - 1:
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                        job.description,
                        attempt + 1,
                        self.max_attempts,
                        delay,
                        exc,
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.warning("%s failed, giving up: %s", job.description, exc)
            except Exception:
                logger.exception("%s failed with an unexpected error, dropping it", job.description)
                break
        self.dropped.append(job)
        self.dropped_count += 1
