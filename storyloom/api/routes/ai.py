"""
Narrative AI endpoints.

Every route composes a task, makes one structured call and records usage
best-effort. The *-from-timeline variants assemble the narrative path and
canon from the story graph instead of taking them in the body.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator

from storyloom.api.dependencies import (
    enforce_quota,
    ensure_timeline_access,
    get_graph_store,
    get_invoker,
    get_usage_recorder,
    limit_body_size,
)
from storyloom.api.middleware.user_auth import AuthenticatedUser, get_current_user
from storyloom.api.models import PathNodeIn, clamp_count, require_text, to_path
from storyloom.config import (
    MAX_STRUCTURE_NODES,
    MAX_SUGGESTIONS,
    MAX_SYSTEM_PROMPT_CHARS,
    MAX_VARIANTS,
)
from storyloom.context.assembler import build_context, load_creator_profile
from storyloom.context.models import AIContext, BranchCanon, CreatorProfile
from storyloom.errors import InvalidTaskParametersError
from storyloom.governance.usage import UsageRecorder
from storyloom.infrastructure.settings import GEMINI_EXTRACTION_MODEL
from storyloom.llm.invoker import GeminiInvoker, StructuredResult
from storyloom.observability.logging import get_logger
from storyloom.observability.telemetry import counter
from storyloom.prompts.narrative import ExpansionType
from storyloom.prompts.results import (
    CanonDiffResult,
    ExpansionResult,
    MergeProposalResult,
    StructureResult,
    SuggestionResult,
)
from storyloom.prompts.tasks import (
    BranchSnapshot,
    CanonDiffTask,
    ExpandTask,
    MergeProposalTask,
    StructureTask,
    SuggestTask,
)
from storyloom.storage.graph import GraphStore

router = APIRouter(
    prefix="/api/ai",
    tags=["ai"],
    dependencies=[Depends(limit_body_size), Depends(enforce_quota)],
)
logger = get_logger(__name__)


# ============================================================================
# Request Models
# ============================================================================


class _SystemPromptRequest(BaseModel):
    system_prompt: str
    creator_profile: CreatorProfile | None = None
    model: str | None = Field(default=None, max_length=100)

    @field_validator("system_prompt")
    @classmethod
    def validate_system_prompt(cls, v: str) -> str:
        return require_text(v, "system_prompt", MAX_SYSTEM_PROMPT_CHARS)


class SuggestRequest(_SystemPromptRequest):
    active_path: list[PathNodeIn] = Field(..., min_length=1)
    branch_canon: BranchCanon | None = None
    num_suggestions: int = 3

    @field_validator("num_suggestions", mode="before")
    @classmethod
    def clamp_suggestions(cls, v: Any) -> int:
        return clamp_count(v, 3, 1, MAX_SUGGESTIONS)


class ExpandRequest(_SystemPromptRequest):
    node: PathNodeIn
    expansion_type: ExpansionType
    context_path: list[PathNodeIn] = Field(default_factory=list)
    branch_canon: BranchCanon | None = None
    num_variants: int = 2

    @field_validator("num_variants", mode="before")
    @classmethod
    def clamp_variants(cls, v: Any) -> int:
        return clamp_count(v, 2, 1, MAX_VARIANTS)


class CanonDiffRequest(_SystemPromptRequest):
    current_canon: BranchCanon
    recent_nodes: list[PathNodeIn] = Field(..., min_length=1)


class BranchIn(BaseModel):
    path: list[PathNodeIn] = Field(..., min_length=1)
    canon: BranchCanon | None = None


class MergeProposalRequest(_SystemPromptRequest):
    merge_point_node_id: str = Field(..., min_length=1)
    branch_a: BranchIn
    branch_b: BranchIn


class StructureRequest(BaseModel):
    story_context: str
    num_nodes: int = 5

    @field_validator("story_context")
    @classmethod
    def validate_story_context(cls, v: str) -> str:
        return require_text(v, "story_context", MAX_SYSTEM_PROMPT_CHARS)

    @field_validator("num_nodes", mode="before")
    @classmethod
    def clamp_nodes(cls, v: Any) -> int:
        return clamp_count(v, 5, 1, MAX_STRUCTURE_NODES)


class _TimelineRequest(BaseModel):
    timeline_id: str = Field(..., min_length=1)
    node_id: str = Field(..., min_length=1)
    branch_id: str | None = None
    creator_profile: CreatorProfile | None = None
    model: str | None = Field(default=None, max_length=100)


class SuggestFromTimelineRequest(_TimelineRequest):
    num_suggestions: int = 3

    @field_validator("num_suggestions", mode="before")
    @classmethod
    def clamp_suggestions(cls, v: Any) -> int:
        return clamp_count(v, 3, 1, MAX_SUGGESTIONS)


class ExpandFromTimelineRequest(_TimelineRequest):
    expansion_type: ExpansionType
    num_variants: int = 2

    @field_validator("num_variants", mode="before")
    @classmethod
    def clamp_variants(cls, v: Any) -> int:
        return clamp_count(v, 2, 1, MAX_VARIANTS)


# ============================================================================
# Helpers
# ============================================================================


def _record(recorder: UsageRecorder, user: AuthenticatedUser, endpoint: str, result: StructuredResult) -> None:
    recorder.record(user.id, endpoint, tokens_in=result.tokens_in, tokens_out=result.tokens_out)


def _timeline_context(
    store: GraphStore, request: _TimelineRequest, user: AuthenticatedUser
) -> tuple[AIContext, CreatorProfile | None]:
    ensure_timeline_access(store, request.timeline_id, user)
    context = build_context(store, request.timeline_id, request.node_id, request.branch_id)
    if not context.system_prompt:
        counter("api.ai.missing_system_prompt")
        raise InvalidTaskParametersError("Timeline has no system_prompt configured")
    profile = request.creator_profile or load_creator_profile(store, user.id)
    return context, profile


def _suggestion_response(result: StructuredResult) -> dict[str, Any]:
    data: SuggestionResult = result.data
    return {**data.model_dump(), "model": result.model}


def _expansion_response(result: StructuredResult) -> dict[str, Any]:
    data: ExpansionResult = result.data
    return {**data.model_dump(), "model": result.model}


# ============================================================================
# Endpoints
# ============================================================================


@router.post("/suggest")
def suggest(
    request: SuggestRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    invoker: GeminiInvoker = Depends(get_invoker),
    recorder: UsageRecorder = Depends(get_usage_recorder),
) -> dict[str, Any]:
    """Ghost-node continuations and inline suggestions for a narrative path."""
    prompt = SuggestTask(
        system_prompt=request.system_prompt,
        active_path=to_path(request.active_path),
        branch_canon=request.branch_canon,
        creator_profile=request.creator_profile,
        num_suggestions=request.num_suggestions,
    ).compose()
    result = invoker.generate_structured(prompt, model=request.model, schema=SuggestionResult)
    _record(recorder, user, "/api/ai/suggest", result)
    return _suggestion_response(result)


@router.post("/expand")
def expand(
    request: ExpandRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    invoker: GeminiInvoker = Depends(get_invoker),
    recorder: UsageRecorder = Depends(get_usage_recorder),
) -> dict[str, Any]:
    prompt = ExpandTask(
        system_prompt=request.system_prompt,
        node=request.node.to_path_node(),
        expansion_type=request.expansion_type,
        context_path=to_path(request.context_path),
        branch_canon=request.branch_canon,
        creator_profile=request.creator_profile,
        num_variants=request.num_variants,
    ).compose()
    result = invoker.generate_structured(prompt, model=request.model, schema=ExpansionResult)
    _record(recorder, user, "/api/ai/expand", result)
    return _expansion_response(result)


@router.post("/canon-diff")
def canon_diff(
    request: CanonDiffRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    invoker: GeminiInvoker = Depends(get_invoker),
    recorder: UsageRecorder = Depends(get_usage_recorder),
) -> dict[str, Any]:
    prompt = CanonDiffTask(
        system_prompt=request.system_prompt,
        current_canon=request.current_canon,
        recent_nodes=to_path(request.recent_nodes),
        creator_profile=request.creator_profile,
    ).compose()
    result = invoker.generate_structured(prompt, model=request.model, schema=CanonDiffResult)
    _record(recorder, user, "/api/ai/canon-diff", result)
    return {**result.data.model_dump(), "model": result.model}


@router.post("/merge-propose")
def merge_propose(
    request: MergeProposalRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    invoker: GeminiInvoker = Depends(get_invoker),
    recorder: UsageRecorder = Depends(get_usage_recorder),
) -> dict[str, Any]:
    prompt = MergeProposalTask(
        system_prompt=request.system_prompt,
        branch_a=BranchSnapshot(path=to_path(request.branch_a.path), canon=request.branch_a.canon),
        branch_b=BranchSnapshot(path=to_path(request.branch_b.path), canon=request.branch_b.canon),
        merge_point_node_id=request.merge_point_node_id,
        creator_profile=request.creator_profile,
    ).compose()
    result = invoker.generate_structured(prompt, model=request.model, schema=MergeProposalResult)
    _record(recorder, user, "/api/ai/merge-propose", result)
    return {**result.data.model_dump(), "model": result.model}


@router.post("/generate-structure")
def generate_structure(
    request: StructureRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    store: GraphStore = Depends(get_graph_store),
    invoker: GeminiInvoker = Depends(get_invoker),
    recorder: UsageRecorder = Depends(get_usage_recorder),
) -> dict[str, Any]:
    """Act-based story beats from a creative brief, conditioned on the caller's profile."""
    prompt = StructureTask(
        story_brief=request.story_context,
        num_nodes=request.num_nodes,
        creator_profile=load_creator_profile(store, user.id),
    ).compose()
    result = invoker.generate_structured(
        prompt, model=GEMINI_EXTRACTION_MODEL, schema=StructureResult
    )
    _record(recorder, user, "/api/ai/generate-structure", result)
    return {**result.data.model_dump(), "model": result.model}


@router.post("/suggest-from-timeline")
def suggest_from_timeline(
    request: SuggestFromTimelineRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    store: GraphStore = Depends(get_graph_store),
    invoker: GeminiInvoker = Depends(get_invoker),
    recorder: UsageRecorder = Depends(get_usage_recorder),
) -> dict[str, Any]:
    context, profile = _timeline_context(store, request, user)
    prompt = SuggestTask(
        system_prompt=context.system_prompt,
        active_path=context.active_path,
        branch_canon=context.branch_canon,
        creator_profile=profile,
        num_suggestions=request.num_suggestions,
    ).compose()
    result = invoker.generate_structured(prompt, model=request.model, schema=SuggestionResult)
    _record(recorder, user, "/api/ai/suggest-from-timeline", result)
    return _suggestion_response(result)


@router.post("/expand-from-timeline")
def expand_from_timeline(
    request: ExpandFromTimelineRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    store: GraphStore = Depends(get_graph_store),
    invoker: GeminiInvoker = Depends(get_invoker),
    recorder: UsageRecorder = Depends(get_usage_recorder),
) -> dict[str, Any]:
    """Expand the target node, using its ancestors as the context path."""
    context, profile = _timeline_context(store, request, user)
    prompt = ExpandTask(
        system_prompt=context.system_prompt,
        node=context.target,
        expansion_type=request.expansion_type,
        context_path=context.active_path[:-1],
        branch_canon=context.branch_canon,
        creator_profile=profile,
        num_variants=request.num_variants,
    ).compose()
    result = invoker.generate_structured(prompt, model=request.model, schema=ExpansionResult)
    _record(recorder, user, "/api/ai/expand-from-timeline", result)
    return _expansion_response(result)
