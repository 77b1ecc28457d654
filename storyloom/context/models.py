"""
Story graph domain models consumed by the generation pipeline.

These are read-side shapes: the pipeline never creates timelines or nodes, it
only reads ancestry, canon and profiles and writes generated image references
back onto existing nodes and characters.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from storyloom.config import DEFAULT_EXPLORATION_RATIO


class PathNode(BaseModel):
    """One node on the root-to-target path of a timeline."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    title: str = ""
    content: str = ""
    label: str | None = None


class StoryNode(BaseModel):
    """A stored timeline node as the pipeline sees it."""

    id: str
    timeline_id: str
    parent_id: str | None = None
    branch_id: str | None = None
    title: str = ""
    content: str = ""
    label: str | None = None
    image_url: str | None = None

    def to_path_node(self) -> PathNode:
        return PathNode(node_id=self.id, title=self.title, content=self.content, label=self.label)


class BranchCanon(BaseModel):
    """World rules established for one branch."""

    setting: str | None = None
    characters: list[str] | None = None
    tone: str | None = None
    themes: list[str] | None = None
    rules: list[str] | None = None

    def is_empty(self) -> bool:
        return not any(self.model_dump(exclude_none=True).values())


class CreatorProfile(BaseModel):
    """Per-user stylistic preferences.

    exploration_ratio is a scalar weight: round(N * ratio) of N suggestions
    are exploratory, the rest aligned with the creator's usual style.
    """

    preferred_genres: list[str] = Field(default_factory=list)
    writing_style: str | None = None
    favorite_themes: list[str] = Field(default_factory=list)
    disliked_elements: list[str] = Field(default_factory=list)
    exploration_ratio: float = Field(default=DEFAULT_EXPLORATION_RATIO, ge=0.0, le=1.0)


class AIContext(BaseModel):
    """Everything a narrative prompt needs about the target node."""

    model_config = ConfigDict(frozen=True)

    system_prompt: str | None = None
    branch_canon: BranchCanon | None = None
    active_path: list[PathNode]

    @property
    def target(self) -> PathNode:
        return self.active_path[-1]


class StoryContext(BaseModel):
    """Timeline-level visual grounding for image and extraction prompts."""

    visual_theme: str | None = None
    system_prompt: str | None = None
    vision_blurb: str | None = None


class CharacterReference(BaseModel):
    """A character bible entry."""

    id: str
    timeline_id: str
    name: str
    aliases: list[str] = Field(default_factory=list)
    description: str | None = None
    appearance_guide: str | None = None
    reference_image_url: str | None = None
