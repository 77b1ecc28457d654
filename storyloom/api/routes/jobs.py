"""
Image job endpoints: submit, poll status, fetch the persisted image.

Submission goes through the media rate limit and the quota check. Submission
and image fetches are scoped to timelines the caller owns; status polls only
require an identity.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from storyloom.api.dependencies import (
    enforce_quota,
    ensure_timeline_access,
    get_graph_store,
    get_orchestrator,
    get_owned_timeline,
)
from storyloom.api.middleware.user_auth import AuthenticatedUser, get_current_user
from storyloom.api.models import ImageGenerateRequest, NodeImageResponse
from storyloom.errors import NodeNotFoundError
from storyloom.jobs.models import JobStatusResult, SubmitResult
from storyloom.jobs.orchestrator import ImageJobOrchestrator
from storyloom.observability.logging import get_logger
from storyloom.storage.graph import GraphStore

router = APIRouter(prefix="/api/jobs/images", tags=["jobs"])
logger = get_logger(__name__)


@router.post(
    "/generate",
    response_model=SubmitResult,
    response_model_exclude_none=True,
    dependencies=[Depends(enforce_quota)],
)
def generate_image(
    request: ImageGenerateRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    store: GraphStore = Depends(get_graph_store),
    orchestrator: ImageJobOrchestrator = Depends(get_orchestrator),
) -> SubmitResult:
    """
    Request a storyboard image for a node.

    Returns already_exists when the node has an image, queued with a job id
    when the queue is up, or completed after generating inline.
    """
    ensure_timeline_access(store, request.timeline_id, user)
    return orchestrator.submit(
        node_id=request.node_id,
        timeline_id=request.timeline_id,
        prompt=request.prompt,
        user_id=user.id,
    )


@router.get("/jobs/{job_id}", response_model=JobStatusResult, response_model_exclude_none=True)
def get_job_status(
    job_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    orchestrator: ImageJobOrchestrator = Depends(get_orchestrator),
) -> JobStatusResult:
    return orchestrator.get_status(job_id)


@router.get("/timelines/{timeline_id}/nodes/{node_id}", response_model=NodeImageResponse)
def get_node_image(
    node_id: str,
    timeline_id: str = Depends(get_owned_timeline),
    store: GraphStore = Depends(get_graph_store),
) -> NodeImageResponse:
    node = store.get_node(node_id, timeline_id)
    if node is None:
        raise NodeNotFoundError(node_id, timeline_id)
    return NodeImageResponse(node_id=node.id, timeline_id=timeline_id, image_url=node.image_url)
