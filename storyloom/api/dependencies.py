"""
FastAPI dependencies wiring routes to the services held on app.state.

Services are built once in create_app() and injected here so tests can swap
any of them without patching module globals.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, Response, status

from storyloom.api.middleware.user_auth import AuthenticatedUser, get_current_user
from storyloom.config import MAX_AI_BODY_BYTES
from storyloom.errors import TimelineNotFoundError
from storyloom.governance.quota import UNLIMITED_QUOTA_HEADERS, QuotaService, QuotaStatus
from storyloom.governance.usage import UsageRecorder
from storyloom.jobs.orchestrator import ImageJobOrchestrator
from storyloom.llm.invoker import GeminiInvoker
from storyloom.observability.telemetry import counter
from storyloom.storage.graph import GraphStore


def get_graph_store(request: Request) -> GraphStore:
    return request.app.state.store


def get_invoker(request: Request) -> GeminiInvoker:
    return request.app.state.invoker


def get_orchestrator(request: Request) -> ImageJobOrchestrator:
    return request.app.state.orchestrator


def get_usage_recorder(request: Request) -> UsageRecorder:
    return request.app.state.usage_recorder


def get_quota_service(request: Request) -> QuotaService | None:
    """None when quotas are disabled."""
    return request.app.state.quota_service


async def enforce_quota(
    response: Response,
    user: AuthenticatedUser = Depends(get_current_user),
    quota: QuotaService | None = Depends(get_quota_service),
) -> QuotaStatus | None:
    """Reject callers over their daily or monthly ceiling; attach quota headers otherwise."""
    if quota is None:
        response.headers.update(UNLIMITED_QUOTA_HEADERS)
        return None
    quota_status = quota.check(user.id)
    response.headers.update(quota_status.headers())
    return quota_status


def ensure_timeline_access(store: GraphStore, timeline_id: str, user: AuthenticatedUser) -> None:
    """
    Raise TimelineNotFoundError unless the caller owns the timeline.

    Someone else's timeline is reported as missing so ids cannot be probed.
    """
    if not store.timeline_owned_by(timeline_id, user.id):
        counter("api.timeline_access_denied")
        raise TimelineNotFoundError(f"Timeline {timeline_id} not found for user {user.id}")


def get_owned_timeline(
    timeline_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    store: GraphStore = Depends(get_graph_store),
) -> str:
    """Path-parameter variant of ensure_timeline_access."""
    ensure_timeline_access(store, timeline_id, user)
    return timeline_id


async def limit_body_size(request: Request) -> None:
    """Reject AI request bodies larger than MAX_AI_BODY_BYTES."""
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > MAX_AI_BODY_BYTES:
        counter("api.body_too_large")
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Request body exceeds {MAX_AI_BODY_BYTES // 1024} KB",
        )

    body = await request.body()
    if len(body) > MAX_AI_BODY_BYTES:
        counter("api.body_too_large")
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Request body exceeds {MAX_AI_BODY_BYTES // 1024} KB",
        )
