"""Async worker pulling jobs from a :class:`JobQueue`."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict, deque
from typing import Any, Awaitable, Callable, DefaultDict, Deque, List, Optional

from invoice_pipeline.queues.job_queue import Job, JobQueue, QueueClosedError

logger = logging.getLogger(__name__)

Processor = Callable[[Job], Awaitable[Any]]
EventHandler = Callable[..., Any]

WORKER_EVENTS = ("completed", "failed", "error")

DEFAULT_STALLED_TIMEOUT_MS = 5 * 60 * 1000
DEFAULT_STALLED_CHECK_INTERVAL = 30.0


class RateLimiter:
    """Sliding window allowing at most ``max_jobs`` starts per ``duration_ms``."""

    def __init__(self, max_jobs: int, duration_ms: int, *, clock: Callable[[], float] = time.monotonic) -> None:
        if max_jobs < 1 or duration_ms <= 0:
            raise ValueError("max_jobs and duration_ms must be positive")
        self.max_jobs = max_jobs
        self.duration = duration_ms / 1000
        self._clock = clock
        self._starts: Deque[float] = deque()

    def wait_time(self) -> float:
        """Seconds until a new job may start (0 when a slot is free)."""

        now = self._clock()
        while self._starts and now - self._starts[0] >= self.duration:
            self._starts.popleft()
        if len(self._starts) < self.max_jobs:
            return 0.0
        return self.duration - (now - self._starts[0])

    def acquire(self) -> bool:
        if self.wait_time() > 0:
            return False
        self._starts.append(self._clock())
        return True


class Worker:
    """Consume jobs with bounded concurrency and report outcomes to the queue."""

    def __init__(
        self,
        queue: JobQueue,
        processor: Processor,
        *,
        concurrency: int = 1,
        limiter: Optional[RateLimiter] = None,
        poll_interval: float = 1.0,
        name: Optional[str] = None,
        stalled_timeout_ms: Optional[int] = DEFAULT_STALLED_TIMEOUT_MS,
        stalled_check_interval: float = DEFAULT_STALLED_CHECK_INTERVAL,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.processor = processor
        self.concurrency = concurrency
        self.limiter = limiter
        self.poll_interval = poll_interval
        self.name = name or f"{queue.name}-worker"
        self.stalled_timeout_ms = stalled_timeout_ms
        self.stalled_check_interval = stalled_check_interval
        self._handlers: DefaultDict[str, List[EventHandler]] = defaultdict(list)
        self._running = False
        self._closing = False
        self._in_flight: set[asyncio.Task] = set()

    def on(self, event: str, handler: EventHandler) -> None:
        if event not in WORKER_EVENTS:
            raise ValueError(f"Unknown worker event: {event}")
        self._handlers[event].append(handler)

    def _emit(self, event: str, *args: Any) -> None:
        for handler in self._handlers.get(event, []):
            try:
                handler(*args)
            except Exception:  # pragma: no cover - listener bugs must not stop the worker
                logger.exception("[%s] %s listener raised", self.name, event)

    async def process_next(self) -> Optional[Job]:
        """Fetch and process one job. Returns the job, or ``None`` if nothing was ready."""

        job = await asyncio.to_thread(self.queue.fetch_next)
        if job is None:
            return None
        await self._process(job)
        return job

    async def _process(self, job: Job) -> None:
        try:
            result = await self.processor(job)
        except Exception as exc:
            logger.error("[%s] Job %s failed: %s", self.name, job.id, exc)
            if await self._report(self.queue.fail, job, exc):
                self._emit("failed", job, exc)
            return
        if await self._report(self.queue.complete, job, result):
            logger.info("[%s] Job %s completed successfully", self.name, job.id)
            self._emit("completed", job, result)

    async def _report(self, outcome: Callable[[Job, Any], Job], job: Job, value: Any) -> bool:
        try:
            await asyncio.to_thread(outcome, job, value)
        except Exception as exc:
            # the job stays active until recover_stalled picks it up
            logger.exception("[%s] Could not record outcome of job %s", self.name, job.id)
            self._emit("error", exc)
            return False
        return True

    async def check_stalled(self) -> List[str]:
        """Hand jobs abandoned by a dead consumer back to the queue."""

        if self.stalled_timeout_ms is None:
            return []
        try:
            recovered = await asyncio.to_thread(self.queue.recover_stalled, self.stalled_timeout_ms)
        except Exception as exc:
            logger.exception("[%s] Stalled job check failed", self.name)
            self._emit("error", exc)
            return []
        if recovered:
            logger.warning("[%s] Recovered %s stalled job(s): %s", self.name, len(recovered), recovered)
        return recovered

    async def run(self) -> None:
        """Poll the queue until :meth:`close` is called or the queue is closed."""

        self._running = True
        logger.info("[%s] started (concurrency: %s)", self.name, self.concurrency)
        await self.check_stalled()
        last_stalled_check = time.monotonic()
        try:
            while not self._closing:
                if time.monotonic() - last_stalled_check >= self.stalled_check_interval:
                    await self.check_stalled()
                    last_stalled_check = time.monotonic()
                if len(self._in_flight) >= self.concurrency:
                    await asyncio.wait(self._in_flight, return_when=asyncio.FIRST_COMPLETED)
                    continue
                if self.limiter is not None:
                    delay = self.limiter.wait_time()
                    if delay > 0:
                        await asyncio.sleep(delay)
                        continue
                try:
                    job = await asyncio.to_thread(self.queue.fetch_next)
                except QueueClosedError:
                    break
                except Exception as exc:
                    logger.exception("[%s] Worker error", self.name)
                    self._emit("error", exc)
                    await asyncio.sleep(self.poll_interval)
                    continue
                if job is None:
                    await asyncio.sleep(self.poll_interval)
                    continue
                if self.limiter is not None:
                    self.limiter.acquire()
                task = asyncio.create_task(self._process(job))
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)
        finally:
            if self._in_flight:
                await asyncio.gather(*self._in_flight, return_exceptions=True)
            self._running = False
            logger.info("[%s] stopped", self.name)

    async def close(self) -> None:
        """Stop fetching new jobs and wait for in-flight jobs to finish."""

        logger.info("[%s] Shutting down worker...", self.name)
        self._closing = True
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    @property
    def running(self) -> bool:
        return self._running


__all__ = ["RateLimiter", "Worker", "WORKER_EVENTS"]
