"""
Image job orchestration: deduplicate, then queue or run inline.

The persisted "node already has an image" check is the cross-process source
of truth. On top of it a process-local in-flight map (node id -> job id)
stops a double-click from starting two generations before the first result
lands: a duplicate while queued gets the same job id back, a duplicate on the
synchronous path is rejected.

Without a queue backend image generation runs inside the request. That path
blocks the caller for the whole generation and has no retries.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from storyloom.errors import (
    GenerationInProgressError,
    JobNotFoundError,
    NodeNotFoundError,
    QueueUnavailableError,
)
from storyloom.jobs.models import ImageJob, JobStatus, JobStatusResult, SubmitResult
from storyloom.observability.logging import get_logger
from storyloom.observability.telemetry import counter, log_event

if TYPE_CHECKING:
    from storyloom.infrastructure.queue import JobQueue
    from storyloom.jobs.executor import ImageJobExecutor
    from storyloom.storage.graph import GraphStore

logger = get_logger(__name__)


class ImageJobOrchestrator:
    def __init__(
        self,
        store: GraphStore,
        executor: ImageJobExecutor,
        queue: JobQueue | None = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.queue = queue
        self._in_flight: dict[str, str | None] = {}
        self._lock = threading.Lock()

    @property
    def queue_available(self) -> bool:
        return self.queue is not None

    def in_flight(self, node_id: str) -> bool:
        with self._lock:
            return node_id in self._in_flight

    def _release(self, node_id: str, job_id: str | None = None) -> None:
        with self._lock:
            if job_id is None or self._in_flight.get(node_id) == job_id:
                self._in_flight.pop(node_id, None)

    def _pending_job(self, node_id: str) -> str | None:
        """Job id of a still-pending queued job for node_id, clearing stale entries."""
        with self._lock:
            job_id = self._in_flight.get(node_id)
        if job_id is None or self.queue is None:
            return None

        status = self.queue.fetch_status(job_id)
        if status is not None and not status.status.is_terminal:
            return job_id

        self._release(node_id, job_id)
        return None

    def submit(self, node_id: str, timeline_id: str, prompt: str, user_id: str) -> SubmitResult:
        """
        Request an image for a node.

        Returns already_exists (no provider calls) if the node has an image,
        queued with a job id when a queue is available, otherwise completed
        after generating inline.

        Raises:
            NodeNotFoundError: If the node is not in the timeline
            GenerationInProgressError: If a synchronous generation for the
                node is already running in this process
            QueueUnavailableError: If the queue backend cannot be reached
        """
        job = ImageJob(node_id=node_id, timeline_id=timeline_id, prompt=prompt, user_id=user_id)

        node = self.store.get_node(node_id, timeline_id)
        if node is None:
            raise NodeNotFoundError(node_id, timeline_id)

        if node.image_url:
            counter("jobs.submit.already_exists")
            log_event("jobs.submit.already_exists", node_id=node_id)
            return SubmitResult(status=JobStatus.ALREADY_EXISTS, node_id=node_id)

        pending = self._pending_job(node_id)
        if pending is not None:
            counter("jobs.submit.deduplicated")
            log_event("jobs.submit.deduplicated", node_id=node_id, job_id=pending)
            return SubmitResult(status=JobStatus.QUEUED, node_id=node_id, job_id=pending)

        with self._lock:
            if node_id in self._in_flight:
                counter("jobs.submit.rejected_in_progress")
                raise GenerationInProgressError()
            self._in_flight[node_id] = None

        if self.queue is not None:
            return self._enqueue(job)
        return self._run_inline(job)

    def _enqueue(self, job: ImageJob) -> SubmitResult:
        try:
            job_id = self.queue.enqueue(job)  # type: ignore[union-attr]
        except Exception:
            self._release(job.node_id)
            counter("jobs.submit.enqueue_failed")
            raise

        with self._lock:
            self._in_flight[job.node_id] = job_id

        counter("jobs.submit.queued")
        log_event("jobs.submit.queued", node_id=job.node_id, job_id=job_id)
        return SubmitResult(status=JobStatus.QUEUED, node_id=job.node_id, job_id=job_id)

    def _run_inline(self, job: ImageJob) -> SubmitResult:
        log_event("jobs.submit.sync", node_id=job.node_id)
        try:
            self.executor.execute(job)
        finally:
            self._release(job.node_id)

        counter("jobs.submit.completed_sync")
        return SubmitResult(status=JobStatus.COMPLETED, node_id=job.node_id)

    def get_status(self, job_id: str) -> JobStatusResult:
        """
        Current status of a queued job.

        Raises:
            QueueUnavailableError: If there is no queue backend
            JobNotFoundError: If the job is unknown or past retention
        """
        if self.queue is None:
            raise QueueUnavailableError()

        result = self.queue.fetch_status(job_id)
        if result is None:
            raise JobNotFoundError(f"Job {job_id} not found")

        if result.status.is_terminal and result.node_id:
            self._release(result.node_id, job_id)
        return result
