"""
RQ worker entry points for image generation.

`storyloom-worker` starts a pool of JOB_WORKER_CONCURRENCY worker processes
on the image queue. Each process builds its own executor lazily on the first
job and shares the Redis throughput window with its siblings.
"""

from __future__ import annotations

import sys
from functools import lru_cache
from typing import Any

from dotenv import load_dotenv
from rq import get_current_job

from storyloom.config import JOB_QUEUE_NAME, JOB_WORKER_CONCURRENCY
from storyloom.errors import PersistenceError
from storyloom.governance.usage import UsageRecorder
from storyloom.infrastructure.database import init_database
from storyloom.infrastructure.queue import get_redis_connection
from storyloom.jobs.executor import ImageJobExecutor
from storyloom.jobs.models import ImageJob
from storyloom.jobs.throttle import ThroughputLimiter
from storyloom.llm.invoker import GeminiInvoker
from storyloom.observability.logging import get_logger, log_level_name
from storyloom.observability.telemetry import counter, log_event
from storyloom.storage.graph import SQLiteGraphStore

logger = get_logger(__name__)

_MAX_ERROR_CHARS = 500


def _error_reason(error: Exception) -> str:
    return f"{type(error).__name__}: {error}"[:_MAX_ERROR_CHARS]


@lru_cache(maxsize=1)
def get_worker_executor() -> ImageJobExecutor:
    return ImageJobExecutor(
        store=SQLiteGraphStore(),
        invoker=GeminiInvoker(),
        usage_recorder=UsageRecorder(),
        throughput=ThroughputLimiter(connection=get_redis_connection()),
    )


def process_image_generation(job_data: dict[str, Any]) -> dict[str, str]:
    """
    Run one queued image job.

    On failure the reason is written to the RQ job's meta before re-raising,
    so status polls can report it after retries are exhausted. A persistence
    failure comes after the image was already generated, so it fails the job
    outright instead of spending another provider call on a retry.
    """
    job = ImageJob.model_validate(job_data)
    rq_job = get_current_job()
    job_id = rq_job.id if rq_job is not None else None
    log_event("jobs.worker.started", job_id=job_id, node_id=job.node_id)

    try:
        get_worker_executor().execute(job)
    except PersistenceError as e:
        counter("jobs.worker.failed")
        counter("jobs.worker.persistence_failed")
        logger.error("Image job %s for node %s could not be saved: %s", job_id, job.node_id, e)
        if rq_job is not None:
            rq_job.meta["error"] = _error_reason(e)
            rq_job.retries_left = 0
            rq_job.save()
        raise
    except Exception as e:
        counter("jobs.worker.failed")
        logger.error("Image job %s for node %s failed: %s", job_id, job.node_id, e)
        if rq_job is not None:
            rq_job.meta["error"] = _error_reason(e)
            rq_job.save_meta()
        raise

    if rq_job is not None and "error" in rq_job.meta:
        # Cleared so a retry that succeeds doesn't report an earlier attempt's failure
        del rq_job.meta["error"]
        rq_job.save_meta()

    log_event("jobs.worker.completed", job_id=job_id, node_id=job.node_id)
    return {"node_id": job.node_id, "status": "completed"}


def main() -> int:
    """Console entry point: run the image worker pool until interrupted."""
    from rq.worker_pool import WorkerPool

    load_dotenv()
    connection = get_redis_connection()
    if connection is None:
        logger.error("REDIS_URL not set or Redis unreachable; nothing for workers to consume")
        return 1

    init_database()
    logger.info(
        "Starting image worker pool (queue=%s, concurrency=%d)",
        JOB_QUEUE_NAME,
        JOB_WORKER_CONCURRENCY,
    )
    pool = WorkerPool([JOB_QUEUE_NAME], connection=connection, num_workers=JOB_WORKER_CONCURRENCY)
    pool.start(logging_level=log_level_name())
    return 0


if __name__ == "__main__":
    sys.exit(main())
