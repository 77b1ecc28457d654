"""Prompt composition for narrative and image generation."""

from __future__ import annotations

from storyloom.prompts.characters import match_characters
from storyloom.prompts.images import (
    build_character_extraction_prompt,
    build_image_generation_prompt,
    build_portrait_prompt,
    build_setting_extraction_prompt,
)
from storyloom.prompts.narrative import exploration_split, round_half_up
from storyloom.prompts.tasks import (
    BranchSnapshot,
    CanonDiffTask,
    ExpandTask,
    GenerationTask,
    MergeProposalTask,
    PortraitImageTask,
    SceneImageTask,
    StructureTask,
    SuggestTask,
    compose,
    parse_task,
)

__all__ = [
    "BranchSnapshot",
    "CanonDiffTask",
    "ExpandTask",
    "GenerationTask",
    "MergeProposalTask",
    "PortraitImageTask",
    "SceneImageTask",
    "StructureTask",
    "SuggestTask",
    "build_character_extraction_prompt",
    "build_image_generation_prompt",
    "build_portrait_prompt",
    "build_setting_extraction_prompt",
    "compose",
    "exploration_split",
    "match_characters",
    "parse_task",
    "round_half_up",
]
