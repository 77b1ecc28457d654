"""
Structured result schemas for the narrative tasks.

These mirror the JSON each prompt asks for. Models are lenient: a missing
field becomes its empty default and unknown fields are ignored, so a response
that is valid JSON but slightly off-schema still yields a usable result.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class GhostNode(_Lenient):
    title: str = ""
    summary: str = ""
    tone: str = ""
    direction_type: str = "aligned"


class InlineSuggestion(_Lenient):
    target_node_id: str = ""
    suggestion_type: str = ""
    original_snippet: str = ""
    suggested_snippet: str = ""
    reasoning: str = ""


class SuggestionResult(_Lenient):
    ghost_nodes: list[GhostNode] = Field(default_factory=list)
    inline_suggestions: list[InlineSuggestion] = Field(default_factory=list)


class Expansion(_Lenient):
    content: str = ""
    approach: str = ""
    tone: str = ""


class ExpansionResult(_Lenient):
    expansions: list[Expansion] = Field(default_factory=list)


class CanonUpdate(_Lenient):
    field: str = ""
    current_value: Any = None
    suggested_value: Any = None
    reasoning: str = ""


class CanonDiffResult(_Lenient):
    suggested_updates: list[CanonUpdate] = Field(default_factory=list)
    reasoning: str = ""
    confidence: float = 0.0


class MergeConflict(_Lenient):
    field: str = ""
    branch_a_value: Any = None
    branch_b_value: Any = None
    resolution: str = ""


class MergeProposalResult(_Lenient):
    merged_content: str = ""
    reconciled_canon: dict[str, Any] = Field(default_factory=dict)
    conflicts: list[MergeConflict] = Field(default_factory=list)
    confidence: float = 0.0


class StructureBeat(_Lenient):
    title: str = ""
    summary: str = ""


class StructureResult(_Lenient):
    nodes: list[StructureBeat] = Field(default_factory=list)
