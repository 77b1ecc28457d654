"""Character bible endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from storyloom.api.dependencies import (
    enforce_quota,
    get_graph_store,
    get_invoker,
    get_owned_timeline,
    get_usage_recorder,
)
from storyloom.api.middleware.user_auth import AuthenticatedUser, get_current_user
from storyloom.api.models import PortraitResponse
from storyloom.governance.usage import UsageRecorder
from storyloom.jobs.portraits import generate_portrait
from storyloom.llm.invoker import GeminiInvoker
from storyloom.storage.graph import GraphStore

router = APIRouter(prefix="/api/timelines", tags=["characters"])


@router.post(
    "/{timeline_id}/characters/{character_id}/generate-portrait",
    response_model=PortraitResponse,
    dependencies=[Depends(get_owned_timeline), Depends(enforce_quota)],
)
def generate_character_portrait(
    timeline_id: str,
    character_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    store: GraphStore = Depends(get_graph_store),
    invoker: GeminiInvoker = Depends(get_invoker),
    recorder: UsageRecorder = Depends(get_usage_recorder),
) -> PortraitResponse:
    character = generate_portrait(
        store, invoker, timeline_id, character_id, user.id, usage_recorder=recorder
    )
    return PortraitResponse(
        character_id=character.id,
        timeline_id=timeline_id,
        reference_image_url=character.reference_image_url or "",
    )
