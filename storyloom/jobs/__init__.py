"""Image job orchestration, execution and worker entry points."""

from __future__ import annotations

from storyloom.jobs.models import ImageJob, JobStatus, JobStatusResult, SubmitResult

__all__ = ["ImageJob", "JobStatus", "JobStatusResult", "SubmitResult"]
