"""Durable Redis-backed job queue with attempts, backoff and retention."""

from __future__ import annotations

import logging
import time
import traceback
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from redis import Redis

logger = logging.getLogger(__name__)

JobState = Literal["waiting", "delayed", "active", "completed", "failed"]
Clock = Callable[[], int]

MAX_STACKTRACE_ENTRIES = 10


def system_clock_ms() -> int:
    return int(time.time() * 1000)


class QueueClosedError(RuntimeError):
    """Raised when a job is pushed to (or pulled from) a closed queue."""


class UnrecoverableError(Exception):
    """Raised by processors to fail a job without consuming its remaining attempts."""


class BackoffPolicy(BaseModel):
    """Delay strategy applied between two attempts of a failed job."""

    type: Literal["fixed", "exponential"] = "fixed"
    delay_ms: int = Field(default=0, ge=0)

    def compute_delay(self, attempts_made: int) -> int:
        """Return the delay before the next attempt once ``attempts_made`` attempts failed."""

        if attempts_made < 1:
            return 0
        if self.type == "exponential":
            return self.delay_ms * 2 ** (attempts_made - 1)
        return self.delay_ms


class RetentionPolicy(BaseModel):
    """How many finished job records to keep, and for how long."""

    count: Optional[int] = Field(default=None, ge=0)
    age_seconds: Optional[int] = Field(default=None, ge=0)


class JobOptions(BaseModel):
    attempts: int = Field(default=1, ge=1)
    backoff: Optional[BackoffPolicy] = None
    delay_ms: int = Field(default=0, ge=0)
    remove_on_complete: Optional[RetentionPolicy] = None
    remove_on_fail: Optional[RetentionPolicy] = None


class Job(BaseModel):
    id: str
    name: str
    queue: str
    data: Dict[str, Any] = Field(default_factory=dict)
    opts: JobOptions = Field(default_factory=JobOptions)
    state: JobState = "waiting"
    attempts_made: int = 0
    timestamp: int
    ready_at: Optional[int] = None
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    failed_reason: Optional[str] = None
    stacktrace: List[str] = Field(default_factory=list)
    return_value: Any = None

    @property
    def attempts_remaining(self) -> int:
        return max(self.opts.attempts - self.attempts_made, 0)


class JobQueue:
    """Queue whose jobs live in Redis so that any process can consume them.

    Layout under ``{prefix}:{name}``: a counter for generated ids, one JSON
    record per job, a FIFO ``wait`` list, an ``active`` list, and sorted sets
    for ``delayed`` (scored by ready time) plus ``completed``/``failed``
    (scored by finish time). Every state change is written in a MULTI
    pipeline so a job id is only ever in one container.
    """

    def __init__(
        self,
        name: str,
        connection: Redis,
        *,
        default_job_options: Optional[JobOptions] = None,
        prefix: str = "costops",
        clock: Clock = system_clock_ms,
    ) -> None:
        self.name = name
        self.connection = connection
        self.default_job_options = default_job_options or JobOptions()
        self.prefix = prefix
        self._clock = clock
        self._closed = False

    # ------------------------------------------------------------------ keys
    def _key(self, suffix: str) -> str:
        return f"{self.prefix}:{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise QueueClosedError(f"Queue '{self.name}' is closed.")

    def _now(self) -> int:
        return int(self._clock())

    # -------------------------------------------------------------- producer
    def add(
        self,
        name: str,
        data: Dict[str, Any],
        *,
        job_id: Optional[str] = None,
        **overrides: Any,
    ) -> Job:
        """Persist a new job and schedule it according to its options."""

        self._ensure_open()
        if job_id is not None:
            existing = self.get_job(job_id)
            if existing is not None:
                logger.info("Job %s already present on %s, skipping add", job_id, self.name)
                return existing

        opts = JobOptions.model_validate({**self.default_job_options.model_dump(), **overrides})
        now = self._now()
        identifier = job_id or str(self.connection.incr(self._key("id")))
        job = Job(id=identifier, name=name, queue=self.name, data=dict(data), opts=opts, timestamp=now)

        pipe = self.connection.pipeline()
        if opts.delay_ms > 0:
            job.state = "delayed"
            job.ready_at = now + opts.delay_ms
            pipe.set(self._job_key(job.id), job.model_dump_json())
            pipe.zadd(self._key("delayed"), {job.id: job.ready_at})
        else:
            job.state = "waiting"
            pipe.set(self._job_key(job.id), job.model_dump_json())
            pipe.lpush(self._key("wait"), job.id)
        pipe.execute()
        logger.debug("Job %s (%s) added to %s as %s", job.id, name, self.name, job.state)
        return job

    # -------------------------------------------------------------- consumer
    def promote_delayed(self) -> List[str]:
        """Move every delayed job whose ready time has passed to the waiting list."""

        due = self.connection.zrangebyscore(self._key("delayed"), "-inf", self._now())
        promoted: List[str] = []
        for job_id in due:
            # zrem acts as the claim so two consumers never promote the same job
            if not self.connection.zrem(self._key("delayed"), job_id):
                continue
            job = self.get_job(job_id)
            if job is None:
                continue
            job.state = "waiting"
            pipe = self.connection.pipeline()
            pipe.set(self._job_key(job.id), job.model_dump_json())
            pipe.lpush(self._key("wait"), job.id)
            pipe.execute()
            promoted.append(job_id)
        return promoted

    def fetch_next(self) -> Optional[Job]:
        """Return the oldest ready job after marking it active, or ``None``."""

        self._ensure_open()
        self.promote_delayed()
        while True:
            job_id = self.connection.lmove(self._key("wait"), self._key("active"), "RIGHT", "LEFT")
            if job_id is None:
                return None
            job = self.get_job(job_id)
            if job is None:
                logger.warning("Dropping job %s from %s: record missing", job_id, self.name)
                self.connection.lrem(self._key("active"), 0, job_id)
                continue
            job.state = "active"
            job.processed_on = self._now()
            self.connection.set(self._job_key(job.id), job.model_dump_json())
            return job

    def recover_stalled(self, visibility_timeout_ms: int) -> List[str]:
        """Fail active jobs held longer than ``visibility_timeout_ms`` by a consumer that went away.

        A recovered job counts as a failed attempt: it is rescheduled with the
        queue's backoff while attempts remain, otherwise it lands in ``failed``.
        """

        cutoff = self._now() - visibility_timeout_ms
        recovered: List[str] = []
        for job_id in self.connection.lrange(self._key("active"), 0, -1):
            job = self.get_job(job_id)
            if job is None or job.state != "active":
                continue
            if job.processed_on is not None and job.processed_on > cutoff:
                continue
            # lrem acts as the claim so two consumers never recover the same job
            if not self.connection.lrem(self._key("active"), 0, job_id):
                continue
            logger.warning("Job %s on %s stalled since %s, recovering", job.id, self.name, job.processed_on)
            self.fail(job, f"Job stalled for more than {visibility_timeout_ms}ms")
            recovered.append(job.id)
        return recovered

    def complete(self, job: Job, return_value: Any = None) -> Job:
        """Mark an active job as completed and apply completed-job retention."""

        now = self._now()
        job.attempts_made += 1
        job.state = "completed"
        job.finished_on = now
        job.return_value = return_value
        pipe = self.connection.pipeline()
        pipe.lrem(self._key("active"), 0, job.id)
        pipe.set(self._job_key(job.id), job.model_dump_json())
        pipe.zadd(self._key("completed"), {job.id: now})
        pipe.execute()
        self._apply_retention("completed", job.opts.remove_on_complete)
        return job

    def fail(self, job: Job, error: BaseException | str) -> Job:
        """Record a failed attempt; reschedule with backoff while attempts remain."""

        now = self._now()
        job.attempts_made += 1
        job.failed_reason = _describe_error(error)
        if isinstance(error, BaseException):
            trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
            job.stacktrace = (job.stacktrace + [trace])[-MAX_STACKTRACE_ENTRIES:]

        retry = job.attempts_made < job.opts.attempts and not isinstance(error, UnrecoverableError)
        pipe = self.connection.pipeline()
        pipe.lrem(self._key("active"), 0, job.id)
        if retry:
            delay = job.opts.backoff.compute_delay(job.attempts_made) if job.opts.backoff else 0
            if delay > 0:
                job.state = "delayed"
                job.ready_at = now + delay
                pipe.set(self._job_key(job.id), job.model_dump_json())
                pipe.zadd(self._key("delayed"), {job.id: job.ready_at})
            else:
                job.state = "waiting"
                job.ready_at = None
                pipe.set(self._job_key(job.id), job.model_dump_json())
                pipe.lpush(self._key("wait"), job.id)
            pipe.execute()
            logger.info(
                "Job %s on %s failed (attempt %s/%s), retrying in %sms: %s",
                job.id,
                self.name,
                job.attempts_made,
                job.opts.attempts,
                delay,
                job.failed_reason,
            )
            return job

        job.state = "failed"
        job.finished_on = now
        pipe.set(self._job_key(job.id), job.model_dump_json())
        pipe.zadd(self._key("failed"), {job.id: now})
        pipe.execute()
        logger.error(
            "Job %s on %s failed permanently after %s attempt(s): %s",
            job.id,
            self.name,
            job.attempts_made,
            job.failed_reason,
        )
        self._apply_retention("failed", job.opts.remove_on_fail)
        return job

    # ------------------------------------------------------------- retention
    def _apply_retention(self, state: str, policy: Optional[RetentionPolicy]) -> List[str]:
        if policy is None:
            return []
        key = self._key(state)
        expired: List[str] = []
        if policy.age_seconds is not None:
            cutoff = self._now() - policy.age_seconds * 1000
            expired.extend(self.connection.zrangebyscore(key, "-inf", f"({cutoff}"))
        if policy.count is not None:
            total = self.connection.zcard(key)
            if total > policy.count:
                expired.extend(self.connection.zrange(key, 0, total - policy.count - 1))

        removed = list(dict.fromkeys(expired))
        if not removed:
            return []
        pipe = self.connection.pipeline()
        pipe.zrem(key, *removed)
        pipe.delete(*(self._job_key(job_id) for job_id in removed))
        pipe.execute()
        logger.debug("Removed %s %s job record(s) from %s", len(removed), state, self.name)
        return removed

    def clean(self) -> Dict[str, List[str]]:
        """Apply the queue's default retention policies to finished jobs."""

        return {
            "completed": self._apply_retention("completed", self.default_job_options.remove_on_complete),
            "failed": self._apply_retention("failed", self.default_job_options.remove_on_fail),
        }

    # ---------------------------------------------------------------- lookup
    def get_job(self, job_id: str) -> Optional[Job]:
        raw = self.connection.get(self._job_key(str(job_id)))
        if raw is None:
            return None
        return Job.model_validate_json(raw)

    def get_state(self, job_id: str) -> Optional[JobState]:
        job = self.get_job(job_id)
        return job.state if job else None

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        job = self.get_job(job_id)
        if job is None:
            return {"status": "not-found"}
        return {
            "id": job.id,
            "queue": self.name,
            "status": job.state,
            "attempts_made": job.attempts_made,
            "result": job.return_value,
            "error": job.failed_reason,
            "data": job.data,
        }

    def get_job_ids(self, state: JobState) -> List[str]:
        if state in ("waiting", "active"):
            key = "wait" if state == "waiting" else "active"
            return list(reversed(self.connection.lrange(self._key(key), 0, -1)))
        return list(self.connection.zrange(self._key(state), 0, -1))

    def get_counts(self) -> Dict[str, int]:
        pipe = self.connection.pipeline(transaction=False)
        pipe.llen(self._key("wait"))
        pipe.llen(self._key("active"))
        pipe.zcard(self._key("completed"))
        pipe.zcard(self._key("failed"))
        pipe.zcard(self._key("delayed"))
        waiting, active, completed, failed, delayed = (int(value) for value in pipe.execute())
        return {
            "waiting": waiting,
            "active": active,
            "completed": completed,
            "failed": failed,
            "delayed": delayed,
        }

    def get_metrics(self) -> Dict[str, Any]:
        counts = self.get_counts()
        return {
            "queue": self.name,
            **counts,
            "total": counts["waiting"] + counts["active"] + counts["delayed"],
        }

    def close(self) -> None:
        """Stop accepting jobs. The Redis connection is owned by the caller."""

        if self._closed:
            return
        self._closed = True
        logger.info("Queue %s closed", self.name)


def _describe_error(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        message = str(error)
        return message or error.__class__.__name__
    return str(error) or "Unknown error"


__all__ = [
    "BackoffPolicy",
    "Job",
    "JobOptions",
    "JobQueue",
    "JobState",
    "QueueClosedError",
    "RetentionPolicy",
    "UnrecoverableError",
    "system_clock_ms",
]
