"""
Narrative prompt builders (suggest, expand, canon diff, merge, structure).

Each prompt is a sequence of labeled sections separated by a horizontal rule.
Optional sections (canon, creator profile, context path) are left out
entirely when there is nothing to say; the TASK section with its JSON schema
is always last.
"""

from __future__ import annotations

import json
import math
from collections.abc import Sequence
from typing import Literal

from storyloom.config import DEFAULT_EXPLORATION_RATIO
from storyloom.context.models import BranchCanon, CreatorProfile, PathNode

SECTION_SEPARATOR = "\n\n---\n\n"

ExpansionType = Literal["expand", "rewrite", "alternatives"]

EXPANSION_INSTRUCTIONS: dict[str, str] = {
    "expand": (
        "Expand and elaborate on the node content, adding depth and detail while "
        "preserving the core narrative."
    ),
    "rewrite": (
        "Rewrite the node content with different phrasing and structure while "
        "preserving the core meaning."
    ),
    "alternatives": (
        "Provide alternative versions that take the same narrative beat in "
        "different directions."
    ),
}


def round_half_up(value: float) -> int:
    # Python's round() is banker's rounding; 2.5 must become 3 here
    return math.floor(value + 0.5)


def exploration_split(num_suggestions: int, ratio: float) -> tuple[int, int]:
    """Return (aligned, exploratory) counts for num_suggestions at ratio."""
    ratio = min(max(ratio, 0.0), 1.0)
    exploratory = min(round_half_up(num_suggestions * ratio), num_suggestions)
    return num_suggestions - exploratory, exploratory


def _require(value: str | None, name: str) -> str:
    if value is None or not value.strip():
        raise ValueError(f"{name} is required")
    return value


def _canon_json(canon: BranchCanon) -> str:
    return json.dumps(canon.model_dump(exclude_none=True), indent=2)


def _format_path(path: Sequence[PathNode], with_titles: bool = False) -> str:
    lines = []
    for i, node in enumerate(path, start=1):
        title = f' "{node.title}"' if with_titles and node.title else ""
        lines.append(f"[{i}] ({node.node_id}){title}: {node.content}")
    return "\n\n".join(lines)


def _overused_line(profile: CreatorProfile) -> str | None:
    if not profile.disliked_elements:
        return None
    return (
        "Fresh territory preferred; reach for original choices in place of: "
        + ", ".join(profile.disliked_elements)
    )


def _profile_lines(profile: CreatorProfile, include_genres: bool = False) -> list[str]:
    lines = []
    if include_genres and profile.preferred_genres:
        lines.append(f"Preferred genres: {', '.join(profile.preferred_genres)}")
    if profile.writing_style:
        lines.append(f"Writing style: {profile.writing_style}")
    if profile.favorite_themes:
        lines.append(f"Favorite themes: {', '.join(profile.favorite_themes)}")
    overused = _overused_line(profile)
    if overused:
        lines.append(overused)
    return lines


def build_suggestion_prompt(
    system_prompt: str,
    active_path: Sequence[PathNode],
    branch_canon: BranchCanon | None = None,
    creator_profile: CreatorProfile | None = None,
    num_suggestions: int = 3,
) -> str:
    """Prompt for ghost-node continuations plus inline improvement suggestions.

    The aligned/exploratory mix is always stated; without a profile the
    default exploration ratio applies.
    """
    _require(system_prompt, "system_prompt")
    if not active_path:
        raise ValueError("active_path must contain at least one node")

    ratio = creator_profile.exploration_ratio if creator_profile else DEFAULT_EXPLORATION_RATIO
    aligned, exploratory = exploration_split(num_suggestions, ratio)

    sections = [f"SYSTEM CONTEXT:\n{system_prompt}"]

    if branch_canon is not None:
        sections.append(f"WORLD RULES / CANON:\n{_canon_json(branch_canon)}")

    if creator_profile is not None:
        lines = _profile_lines(creator_profile, include_genres=True)
        if lines:
            sections.append("CREATOR STYLE PROFILE:\n" + "\n".join(lines))

    sections.append(
        "NARRATIVE PATH (root → current):\n" + _format_path(active_path, with_titles=True)
    )

    sections.append(f"""TASK:
Generate exactly {num_suggestions} ghost node suggestion(s) for continuing this narrative, plus any inline suggestions for improving existing nodes.

Generate {aligned} aligned suggestion(s) and {exploratory} exploratory suggestion(s). Aligned suggestions continue in the creator's established style and direction; exploratory suggestions take the story somewhere unexpected while staying true to the canon.

Respond with valid JSON matching this schema exactly:
{{
  "ghost_nodes": [
    {{
      "title": "short title",
      "summary": "1-3 sentence summary of this narrative direction",
      "tone": "emotional tone (e.g. suspenseful, hopeful, dark)",
      "direction_type": "aligned | exploratory"
    }}
  ],
  "inline_suggestions": [
    {{
      "target_node_id": "id of the node to improve",
      "suggestion_type": "clarity | pacing | style | continuity",
      "original_snippet": "the text to replace",
      "suggested_snippet": "the improved text",
      "reasoning": "why this change improves the narrative"
    }}
  ]
}}""")

    return SECTION_SEPARATOR.join(sections)


def build_expansion_prompt(
    system_prompt: str,
    node: PathNode,
    expansion_type: ExpansionType,
    context_path: Sequence[PathNode] | None = None,
    branch_canon: BranchCanon | None = None,
    creator_profile: CreatorProfile | None = None,
    num_variants: int = 2,
) -> str:
    _require(system_prompt, "system_prompt")
    if expansion_type not in EXPANSION_INSTRUCTIONS:
        raise ValueError("expansion_type must be one of: expand, rewrite, alternatives")

    sections = [f"SYSTEM CONTEXT:\n{system_prompt}"]

    if branch_canon is not None:
        sections.append(f"WORLD RULES / CANON:\n{_canon_json(branch_canon)}")

    if creator_profile is not None:
        lines = _profile_lines(creator_profile)
        if lines:
            sections.append("CREATOR STYLE PROFILE:\n" + "\n".join(lines))

    if context_path:
        sections.append(f"CONTEXT PATH:\n{_format_path(context_path)}")

    title = f' "{node.title}"' if node.title else ""
    sections.append(f"TARGET NODE ({node.node_id}){title}:\n{node.content}")

    sections.append(f"""TASK:
{EXPANSION_INSTRUCTIONS[expansion_type]}

Generate exactly {num_variants} variant(s).

Respond with valid JSON matching this schema exactly:
{{
  "expansions": [
    {{
      "content": "the expanded/rewritten content",
      "approach": "brief description of the approach taken",
      "tone": "emotional tone of this variant"
    }}
  ]
}}""")

    return SECTION_SEPARATOR.join(sections)


def build_canon_diff_prompt(
    system_prompt: str,
    current_canon: BranchCanon,
    recent_nodes: Sequence[PathNode],
    creator_profile: CreatorProfile | None = None,
) -> str:
    _require(system_prompt, "system_prompt")
    if not recent_nodes:
        raise ValueError("recent_nodes must contain at least one node")

    sections = [
        f"SYSTEM CONTEXT:\n{system_prompt}",
        f"CURRENT CANON:\n{_canon_json(current_canon)}",
    ]

    if creator_profile is not None:
        lines = []
        if creator_profile.writing_style:
            lines.append(f"Writing style: {creator_profile.writing_style}")
        if creator_profile.favorite_themes:
            lines.append(f"Themes: {', '.join(creator_profile.favorite_themes)}")
        if lines:
            sections.append("CREATOR STYLE PROFILE:\n" + "\n".join(lines))

    sections.append(f"RECENT NODES:\n{_format_path(recent_nodes)}")

    sections.append("""TASK:
Analyze the recent nodes against the current canon. Identify any setting, character, tone, or thematic changes that suggest the canon should be updated.

Respond with valid JSON matching this schema exactly:
{
  "suggested_updates": [
    {
      "field": "canon field name (e.g. setting, characters, tone)",
      "current_value": "current value from canon",
      "suggested_value": "proposed new value",
      "reasoning": "why this update is warranted"
    }
  ],
  "reasoning": "overall analysis of canon drift",
  "confidence": 0.0 to 1.0
}""")

    return SECTION_SEPARATOR.join(sections)


def build_merge_proposal_prompt(
    system_prompt: str,
    branch_a_path: Sequence[PathNode],
    branch_b_path: Sequence[PathNode],
    merge_point_node_id: str,
    branch_a_canon: BranchCanon | None = None,
    branch_b_canon: BranchCanon | None = None,
    creator_profile: CreatorProfile | None = None,
) -> str:
    _require(system_prompt, "system_prompt")
    _require(merge_point_node_id, "merge_point_node_id")
    if not branch_a_path or not branch_b_path:
        raise ValueError("both branch paths must contain at least one node")

    sections = [f"SYSTEM CONTEXT:\n{system_prompt}"]

    canon_parts = []
    if branch_a_canon is not None:
        canon_parts.append(f"Branch A canon:\n{_canon_json(branch_a_canon)}")
    if branch_b_canon is not None:
        canon_parts.append(f"Branch B canon:\n{_canon_json(branch_b_canon)}")
    if canon_parts:
        sections.append("WORLD RULES / CANON:\n" + "\n\n".join(canon_parts))

    if creator_profile is not None:
        lines = _profile_lines(creator_profile)
        if lines:
            sections.append("CREATOR STYLE PROFILE:\n" + "\n".join(lines))

    sections.append(f"MERGE POINT NODE ID: {merge_point_node_id}")
    sections.append(f"BRANCH A PATH:\n{_format_path(branch_a_path)}")
    sections.append(f"BRANCH B PATH:\n{_format_path(branch_b_path)}")

    sections.append("""TASK:
Propose a merged narrative node that reconciles both branches from the merge point. Identify conflicts and suggest resolutions. Reconcile the canon from both branches.

Respond with valid JSON matching this schema exactly:
{
  "merged_content": "the proposed merged narrative content",
  "reconciled_canon": { ... reconciled canon object ... },
  "conflicts": [
    {
      "field": "area of conflict (e.g. plot, character, tone)",
      "branch_a_value": "what branch A established",
      "branch_b_value": "what branch B established",
      "resolution": "how this conflict was resolved in the merge"
    }
  ],
  "confidence": 0.0 to 1.0
}""")

    return SECTION_SEPARATOR.join(sections)


def build_structure_prompt(
    story_brief: str,
    num_nodes: int = 5,
    creator_profile: CreatorProfile | None = None,
) -> str:
    """Prompt for an act-based skeleton of story beats from a creative brief."""
    _require(story_brief, "story_context")

    sections = [
        "You are a story architect. Based on the following creative brief, generate "
        f"exactly {num_nodes} story beats that form a compelling narrative arc.",
        f"CREATIVE BRIEF:\n{story_brief}",
    ]

    if creator_profile is not None:
        lines = _profile_lines(creator_profile, include_genres=True)
        if lines:
            sections.append(
                "CREATOR STYLE PROFILE:\n"
                + "\n".join(lines)
                + "\n\nIncorporate these preferences into the narrative structure."
            )

    sections.append(f"""TASK:
Return a JSON object with a "nodes" array containing exactly {num_nodes} objects, each with:
- "title": A short, evocative act/beat title (e.g. "The Awakening", "Descent into Shadow")
- "summary": A 1-2 sentence description of what happens in this beat

Structure them as a coherent act-based narrative with rising action, climax, and resolution. Make titles specific to this story.

Respond with valid JSON: {{"nodes": [{{"title": "...", "summary": "..."}}]}}""")

    return SECTION_SEPARATOR.join(sections)
