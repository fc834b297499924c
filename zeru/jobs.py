"""In-process background job queue for fire-and-forget work.

Jobs run on the event loop with bounded concurrency. A failed job is
rescheduled with exponential backoff (base * 4**attempt) until its retry
budget is spent, then dropped with a log entry. Nothing is persisted: a
process restart loses pending retries, so units of work must be safe to
lose.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, replace
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

# Unit of work: zero-arg coroutine factory, called once per attempt
JobFn = Callable[[], Awaitable[None]]

DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_CONCURRENCY = 3
DEFAULT_BASE_DELAY = 1.0


@dataclass(frozen=True)
class Job:
    """A queued unit of work and its retry bookkeeping."""

    name: str
    fn: JobFn
    max_retries: int
    attempt: int = 0
    scheduled_at: float = 0.0


class JobQueue:
    """Bounded-concurrency retrying executor.

    enqueue() never blocks and never raises for job failures. Two jobs
    with the same name are independent: names are for traceability only,
    there is no deduplication and no ordering guarantee between jobs.

    shutdown() stops retries (pending timers are cancelled, failures are
    no longer rescheduled) and waits for jobs that are already queued or
    running to finish. Running jobs are never cancelled.
    """

    def __init__(
        self,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
    ) -> None:
        self.max_concurrency = max_concurrency
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._queue: deque[Job] = deque()
        self._running = 0
        self._tasks: set[asyncio.Task] = set()
        self._timers: dict[int, asyncio.TimerHandle] = {}
        self._timer_ids = itertools.count()
        self._draining = False
        self._idle = asyncio.Event()
        self._idle.set()

    def enqueue(self, name: str, fn: JobFn, max_retries: int | None = None) -> None:
        """Submit a job. Returns immediately; ignored after shutdown."""
        if self._draining:
            logger.debug("[%s] rejected, queue is shutting down", name)
            return

        loop = asyncio.get_running_loop()
        self._queue.append(
            Job(
                name=name,
                fn=fn,
                max_retries=self.max_retries if max_retries is None else max_retries,
                scheduled_at=loop.time(),
            )
        )
        self._process_next()

    def retry_delay(self, attempt: int) -> float:
        """Delay before retrying a job whose attempt number ``attempt`` failed."""
        return self.base_delay * (4**attempt)

    async def join(self) -> None:
        """Wait until nothing is queued, running or scheduled for retry."""
        await self._idle.wait()

    async def shutdown(self) -> None:
        """Cancel pending retry timers and wait for accepted jobs to finish."""
        self._draining = True
        for handle in self._timers.values():
            handle.cancel()
        if self._timers:
            logger.info("Job queue shutdown: cancelled %d scheduled retries", len(self._timers))
        self._timers.clear()
        self._update_idle()
        await self._idle.wait()
        logger.info("Job queue stopped")

    @property
    def pending(self) -> int:
        """Jobs queued or currently running."""
        return len(self._queue) + self._running

    @property
    def scheduled(self) -> int:
        """Retries waiting on a timer."""
        return len(self._timers)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _process_next(self) -> None:
        loop = asyncio.get_running_loop()
        while self._running < self.max_concurrency and self._queue:
            job = self._queue.popleft()
            self._running += 1
            task = loop.create_task(self._execute(job), name=f"job:{job.name}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        self._update_idle()

    async def _execute(self, job: Job) -> None:
        try:
            await job.fn()
            logger.debug("[%s] completed (attempt %d)", job.name, job.attempt + 1)
        except Exception as e:
            if job.attempt < job.max_retries and not self._draining:
                delay = self.retry_delay(job.attempt)
                logger.warning(
                    "[%s] failed (attempt %d/%d), retrying in %.1fs: %s",
                    job.name,
                    job.attempt + 1,
                    job.max_retries + 1,
                    delay,
                    e,
                )
                self._schedule_retry(job, delay)
            elif job.attempt < job.max_retries:
                logger.error("[%s] failed during shutdown, not retrying: %s", job.name, e)
            else:
                logger.error(
                    "[%s] failed permanently after %d attempts: %s",
                    job.name,
                    job.attempt + 1,
                    e,
                )
        finally:
            self._running -= 1
            self._process_next()

    def _schedule_retry(self, job: Job, delay: float) -> None:
        loop = asyncio.get_running_loop()
        retry = replace(job, attempt=job.attempt + 1, scheduled_at=loop.time() + delay)
        timer_id = next(self._timer_ids)
        self._timers[timer_id] = loop.call_later(delay, self._fire_retry, timer_id, retry)

    def _fire_retry(self, timer_id: int, job: Job) -> None:
        self._timers.pop(timer_id, None)
        if self._draining:
            self._update_idle()
            return
        self._queue.append(job)
        self._process_next()

    def _update_idle(self) -> None:
        if not self._queue and not self._running and not self._timers:
            self._idle.set()
        else:
            self._idle.clear()
