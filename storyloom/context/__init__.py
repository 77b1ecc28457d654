"""Context assembly: story graph reads that feed prompt composition."""

from __future__ import annotations

from storyloom.context.assembler import (
    build_context,
    get_ancestor_path,
    load_creator_profile,
    load_story_context,
)
from storyloom.context.models import (
    AIContext,
    BranchCanon,
    CharacterReference,
    CreatorProfile,
    PathNode,
    StoryContext,
    StoryNode,
)

__all__ = [
    "AIContext",
    "BranchCanon",
    "CharacterReference",
    "CreatorProfile",
    "PathNode",
    "StoryContext",
    "StoryNode",
    "build_context",
    "get_ancestor_path",
    "load_creator_profile",
    "load_story_context",
]
