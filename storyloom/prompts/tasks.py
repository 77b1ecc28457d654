"""
Generation tasks.

A GenerationTask is a tagged union over every kind of request the pipeline
can compose a prompt for. Each variant carries exactly the parameters its
prompt needs, validated by pydantic, and knows how to compose itself.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from storyloom.config import MAX_STRUCTURE_NODES, MAX_SUGGESTIONS, MAX_VARIANTS
from storyloom.context.models import (
    BranchCanon,
    CharacterReference,
    CreatorProfile,
    PathNode,
    StoryContext,
)
from storyloom.prompts.images import build_image_generation_prompt, build_portrait_prompt
from storyloom.prompts.narrative import (
    ExpansionType,
    build_canon_diff_prompt,
    build_expansion_prompt,
    build_merge_proposal_prompt,
    build_structure_prompt,
    build_suggestion_prompt,
)


class SuggestTask(BaseModel):
    kind: Literal["suggest"] = "suggest"
    system_prompt: str
    active_path: list[PathNode] = Field(min_length=1)
    branch_canon: BranchCanon | None = None
    creator_profile: CreatorProfile | None = None
    num_suggestions: int = Field(default=3, ge=1, le=MAX_SUGGESTIONS)

    def compose(self) -> str:
        return build_suggestion_prompt(
            system_prompt=self.system_prompt,
            active_path=self.active_path,
            branch_canon=self.branch_canon,
            creator_profile=self.creator_profile,
            num_suggestions=self.num_suggestions,
        )


class ExpandTask(BaseModel):
    kind: Literal["expand"] = "expand"
    system_prompt: str
    node: PathNode
    expansion_type: ExpansionType
    context_path: list[PathNode] = Field(default_factory=list)
    branch_canon: BranchCanon | None = None
    creator_profile: CreatorProfile | None = None
    num_variants: int = Field(default=2, ge=1, le=MAX_VARIANTS)

    def compose(self) -> str:
        return build_expansion_prompt(
            system_prompt=self.system_prompt,
            node=self.node,
            expansion_type=self.expansion_type,
            context_path=self.context_path,
            branch_canon=self.branch_canon,
            creator_profile=self.creator_profile,
            num_variants=self.num_variants,
        )


class CanonDiffTask(BaseModel):
    kind: Literal["canon_diff"] = "canon_diff"
    system_prompt: str
    current_canon: BranchCanon
    recent_nodes: list[PathNode] = Field(min_length=1)
    creator_profile: CreatorProfile | None = None

    def compose(self) -> str:
        return build_canon_diff_prompt(
            system_prompt=self.system_prompt,
            current_canon=self.current_canon,
            recent_nodes=self.recent_nodes,
            creator_profile=self.creator_profile,
        )


class BranchSnapshot(BaseModel):
    path: list[PathNode] = Field(min_length=1)
    canon: BranchCanon | None = None


class MergeProposalTask(BaseModel):
    kind: Literal["merge_proposal"] = "merge_proposal"
    system_prompt: str
    branch_a: BranchSnapshot
    branch_b: BranchSnapshot
    merge_point_node_id: str
    creator_profile: CreatorProfile | None = None

    def compose(self) -> str:
        return build_merge_proposal_prompt(
            system_prompt=self.system_prompt,
            branch_a_path=self.branch_a.path,
            branch_b_path=self.branch_b.path,
            merge_point_node_id=self.merge_point_node_id,
            branch_a_canon=self.branch_a.canon,
            branch_b_canon=self.branch_b.canon,
            creator_profile=self.creator_profile,
        )


class StructureTask(BaseModel):
    kind: Literal["structure"] = "structure"
    story_brief: str
    num_nodes: int = Field(default=5, ge=1, le=MAX_STRUCTURE_NODES)
    creator_profile: CreatorProfile | None = None

    def compose(self) -> str:
        return build_structure_prompt(
            story_brief=self.story_brief,
            num_nodes=self.num_nodes,
            creator_profile=self.creator_profile,
        )


class SceneImageTask(BaseModel):
    kind: Literal["scene_image"] = "scene_image"
    scene_text: str
    story: StoryContext = Field(default_factory=StoryContext)
    setting: str | None = None
    characters: list[str] = Field(default_factory=list)
    references: list[CharacterReference] = Field(default_factory=list)

    def compose(self) -> str:
        return build_image_generation_prompt(
            scene_text=self.scene_text,
            story=self.story,
            setting=self.setting,
            characters=self.characters,
            references=self.references,
        )


class PortraitImageTask(BaseModel):
    kind: Literal["portrait_image"] = "portrait_image"
    character: CharacterReference
    story: StoryContext = Field(default_factory=StoryContext)

    def compose(self) -> str:
        return build_portrait_prompt(self.character, self.story)


GenerationTask = Annotated[
    Union[
        SuggestTask,
        ExpandTask,
        CanonDiffTask,
        MergeProposalTask,
        StructureTask,
        SceneImageTask,
        PortraitImageTask,
    ],
    Field(discriminator="kind"),
]

_task_adapter: TypeAdapter[GenerationTask] = TypeAdapter(GenerationTask)


def parse_task(data: dict) -> GenerationTask:
    """Validate a raw dict into the matching task variant by its "kind"."""
    return _task_adapter.validate_python(data)


def compose(task: GenerationTask) -> str:
    """Compose the prompt text for any task variant."""
    return task.compose()
