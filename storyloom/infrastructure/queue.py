"""
Image job queue backed by Redis + RQ.

The queue is optional. When REDIS_URL is unset or Redis does not answer a
ping, get_redis_connection() returns None and image generation runs
synchronously inside the request instead.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Protocol

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue, Retry
from rq.exceptions import NoSuchJobError
from rq.job import Job

from storyloom.config import (
    JOB_BACKOFF_BASE_SECONDS,
    JOB_FAILURE_TTL_SECONDS,
    JOB_MAX_ATTEMPTS,
    JOB_QUEUE_NAME,
    JOB_RESULT_TTL_SECONDS,
    JOB_TIMEOUT_SECONDS,
)
from storyloom.errors import QueueUnavailableError
from storyloom.infrastructure.settings import redis_url
from storyloom.jobs.models import ImageJob, JobStatus, JobStatusResult
from storyloom.observability.logging import get_logger
from storyloom.observability.telemetry import counter, log_event

logger = get_logger(__name__)

JOB_FUNCTION = "storyloom.jobs.worker.process_image_generation"

_RQ_STATUS_MAP: dict[str, JobStatus] = {
    "queued": JobStatus.QUEUED,
    "scheduled": JobStatus.QUEUED,  # waiting out a retry backoff
    "deferred": JobStatus.QUEUED,
    "started": JobStatus.ACTIVE,
    "finished": JobStatus.COMPLETED,
    "failed": JobStatus.FAILED,
    "stopped": JobStatus.FAILED,
    "canceled": JobStatus.FAILED,
}


def backoff_intervals(
    max_attempts: int = JOB_MAX_ATTEMPTS, base: int = JOB_BACKOFF_BASE_SECONDS
) -> list[int]:
    """Exponential retry delays: 3 attempts from a 2s base -> [2, 4]."""
    return [base * (2**i) for i in range(max_attempts - 1)]


def map_rq_status(status: Any) -> JobStatus:
    value = getattr(status, "value", status)
    return _RQ_STATUS_MAP.get(str(value), JobStatus.QUEUED)


def failure_reason(job: Job) -> str | None:
    """The reason a job failed: worker-recorded meta first, else the traceback's last line."""
    reason = (job.meta or {}).get("error")
    if reason:
        return str(reason)
    exc_info = getattr(job, "exc_info", None)
    if exc_info:
        lines = [line for line in str(exc_info).strip().splitlines() if line.strip()]
        if lines:
            return lines[-1]
    return None


@lru_cache(maxsize=1)
def get_redis_connection() -> Redis | None:
    url = redis_url()
    if not url:
        logger.info("REDIS_URL not set; image generation runs synchronously")
        return None

    connection = Redis.from_url(url)
    try:
        connection.ping()
    except RedisError as e:
        counter("queue.redis_unavailable")
        logger.warning("Redis unreachable (%s); image generation runs synchronously", e)
        return None
    return connection


class JobQueue(Protocol):
    def enqueue(self, job: ImageJob) -> str: ...

    def fetch_status(self, job_id: str) -> JobStatusResult | None: ...


class RQJobQueue:
    """JobQueue over an RQ queue with retry, backoff and retention policy applied."""

    def __init__(self, queue: Queue) -> None:
        self.queue = queue

    @classmethod
    def from_connection(cls, connection: Redis, name: str = JOB_QUEUE_NAME) -> RQJobQueue:
        return cls(Queue(name, connection=connection))

    def enqueue(self, job: ImageJob) -> str:
        try:
            rq_job = self.queue.enqueue(
                JOB_FUNCTION,
                job.model_dump(),
                retry=Retry(max=JOB_MAX_ATTEMPTS - 1, interval=backoff_intervals()),
                job_timeout=JOB_TIMEOUT_SECONDS,
                result_ttl=JOB_RESULT_TTL_SECONDS,
                failure_ttl=JOB_FAILURE_TTL_SECONDS,
                meta={"node_id": job.node_id, "timeline_id": job.timeline_id},
                description=f"image-generation node={job.node_id}",
            )
        except RedisError as e:
            counter("queue.redis_error")
            logger.error("Failed to enqueue image job for node %s: %s", job.node_id, e)
            raise QueueUnavailableError(f"Redis error on enqueue: {e}") from e
        log_event("jobs.enqueued", job_id=rq_job.id, node_id=job.node_id)
        return rq_job.id

    def fetch_status(self, job_id: str) -> JobStatusResult | None:
        try:
            rq_job = Job.fetch(job_id, connection=self.queue.connection)
            status = map_rq_status(rq_job.get_status())
        except NoSuchJobError:
            return None
        except RedisError as e:
            counter("queue.redis_error")
            logger.error("Failed to fetch image job %s: %s", job_id, e)
            raise QueueUnavailableError(f"Redis error on status fetch: {e}") from e

        return JobStatusResult(
            job_id=job_id,
            node_id=(rq_job.meta or {}).get("node_id"),
            status=status,
            error=failure_reason(rq_job) if status is JobStatus.FAILED else None,
        )


def get_job_queue() -> RQJobQueue | None:
    connection = get_redis_connection()
    if connection is None:
        return None
    return RQJobQueue.from_connection(connection)
