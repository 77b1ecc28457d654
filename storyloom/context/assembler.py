"""
Context assembly for narrative generation.

Turns a (timeline, node, branch) reference into the AIContext a prompt is built
from: the timeline's system prompt, the bounded root-first ancestor path, and
the branch canon when one exists. Read-only.
"""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

from storyloom.config import CONTEXT_MAX_DEPTH
from storyloom.context.models import AIContext, CreatorProfile, PathNode, StoryContext
from storyloom.errors import NodeNotFoundError
from storyloom.observability.logging import get_logger
from storyloom.observability.telemetry import counter

if TYPE_CHECKING:
    from storyloom.storage.graph import GraphStore

logger = get_logger(__name__)


def get_ancestor_path(
    store: GraphStore, node_id: str, max_depth: int = CONTEXT_MAX_DEPTH
) -> list[PathNode]:
    """
    Root-first path ending at node_id, at most max_depth hops above it.

    A parent link that points back into the path (a cycle in corrupted data)
    ends the walk at the last node before the repeat. Empty when the node
    does not exist.
    """
    nodes = store.get_ancestry(node_id, max_depth)
    if not nodes:
        return []

    # Storage returns root-first; de-duplicate walking from the target upward
    seen: set[str] = set()
    upward: list[PathNode] = []
    for node in reversed(nodes):
        if node.id in seen:
            counter("context.ancestry_cycle")
            logger.warning("Cycle detected in ancestry of node %s at %s", node_id, node.id)
            break
        seen.add(node.id)
        upward.append(node.to_path_node())

    upward.reverse()
    return upward


def build_context(
    store: GraphStore,
    timeline_id: str,
    node_id: str,
    branch_id: str | None = None,
) -> AIContext:
    """
    Assemble the AIContext for a node.

    Raises:
        NodeNotFoundError: If node_id does not exist in timeline_id
    """
    node = store.get_node(node_id, timeline_id)
    if node is None:
        raise NodeNotFoundError(node_id, timeline_id)

    active_path = get_ancestor_path(store, node_id)
    if not active_path:
        raise NodeNotFoundError(node_id, timeline_id)

    story = store.get_story_context(timeline_id)

    canon = None
    if branch_id:
        canon = store.get_branch_canon(branch_id)
        if canon is not None and canon.is_empty():
            canon = None

    return AIContext(
        system_prompt=story.system_prompt if story else None,
        branch_canon=canon,
        active_path=active_path,
    )


def load_creator_profile(store: GraphStore, user_id: str) -> CreatorProfile | None:
    """Creator profile for user_id; None when absent or unreadable.

    A missing profile must never block generation, so storage errors are
    logged and treated as "no profile".
    """
    try:
        return store.get_creator_profile(user_id)
    except (sqlite3.Error, ValueError) as e:
        counter("context.profile_load_failed")
        logger.warning("Failed to load creator profile for %s: %s", user_id, e)
        return None


def load_story_context(store: GraphStore, timeline_id: str) -> StoryContext:
    """Timeline visual grounding; empty when the timeline row is missing."""
    try:
        story = store.get_story_context(timeline_id)
    except sqlite3.Error as e:
        counter("context.story_context_failed")
        logger.warning("Failed to load story context for %s: %s", timeline_id, e)
        return StoryContext()
    return story or StoryContext()
