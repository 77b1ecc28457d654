"""
Story graph storage.

GraphStore is the narrow interface the pipeline consumes; SQLiteGraphStore is
the implementation over the shared connection pool. Graph CRUD lives outside
this service, so the only writes here are generated image references.
"""

from __future__ import annotations

import json
import sqlite3
from typing import Any, Protocol

from storyloom.context.models import (
    BranchCanon,
    CharacterReference,
    CreatorProfile,
    StoryContext,
    StoryNode,
)
from storyloom.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from storyloom.observability.logging import get_logger

logger = get_logger(__name__)


class GraphStore(Protocol):
    def get_node(self, node_id: str, timeline_id: str | None = None) -> StoryNode | None: ...

    def get_ancestry(self, node_id: str, max_depth: int) -> list[StoryNode]: ...

    def set_node_image(self, timeline_id: str, node_id: str, image_url: str) -> bool: ...

    def get_branch_canon(self, branch_id: str) -> BranchCanon | None: ...

    def get_creator_profile(self, user_id: str) -> CreatorProfile | None: ...

    def timeline_owned_by(self, timeline_id: str, user_id: str) -> bool: ...

    def get_story_context(self, timeline_id: str) -> StoryContext | None: ...

    def list_characters(self, timeline_id: str) -> list[CharacterReference]: ...

    def get_character(self, timeline_id: str, character_id: str) -> CharacterReference | None: ...

    def set_character_portrait(self, timeline_id: str, character_id: str, image_url: str) -> bool: ...


def _json_list(value: str | None) -> list[str] | None:
    if value is None:
        return None
    try:
        decoded = json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed JSON list column: %.40s", value)
        return None
    if not isinstance(decoded, list):
        return None
    return [str(item) for item in decoded]


def _row_to_node(row: sqlite3.Row) -> StoryNode:
    return StoryNode(
        id=row["id"],
        timeline_id=row["timeline_id"],
        parent_id=row["parent_id"],
        branch_id=row["branch_id"],
        title=row["title"] or "",
        content=row["content"] or "",
        label=row["label"],
        image_url=row["image_url"],
    )


def _row_to_character(row: sqlite3.Row) -> CharacterReference:
    return CharacterReference(
        id=row["id"],
        timeline_id=row["timeline_id"],
        name=row["name"],
        aliases=_json_list(row["aliases"]) or [],
        description=row["description"],
        appearance_guide=row["appearance_guide"],
        reference_image_url=row["reference_image_url"],
    )


_NODE_COLUMNS = "id, timeline_id, parent_id, branch_id, title, content, label, image_url"


class SQLiteGraphStore:
    """GraphStore backed by the Storyloom SQLite database."""

    def get_node(self, node_id: str, timeline_id: str | None = None) -> StoryNode | None:
        query = f"SELECT {_NODE_COLUMNS} FROM timeline_nodes WHERE id = ?"
        params: tuple[Any, ...] = (node_id,)
        if timeline_id is not None:
            query += " AND timeline_id = ?"
            params = (node_id, timeline_id)

        with get_db_connection() as conn:
            row = conn.execute(query, params).fetchone()
        return _row_to_node(row) if row else None

    def get_ancestry(self, node_id: str, max_depth: int) -> list[StoryNode]:
        """
        Walk parent links from node_id upward with a recursive CTE.

        Returns at most max_depth + 1 nodes in root-first order; an empty list
        when node_id does not exist.
        """
        with get_db_connection() as conn:
            rows = conn.execute(
                f"""
                WITH RECURSIVE ancestors AS (
                    SELECT {_NODE_COLUMNS}, 0 AS depth
                    FROM timeline_nodes
                    WHERE id = ?
                    UNION ALL
                    SELECT tn.id, tn.timeline_id, tn.parent_id, tn.branch_id, tn.title,
                           tn.content, tn.label, tn.image_url, a.depth + 1
                    FROM timeline_nodes tn
                    JOIN ancestors a ON tn.id = a.parent_id
                    WHERE a.depth < ?
                )
                SELECT {_NODE_COLUMNS}
                FROM ancestors
                ORDER BY depth DESC
                """,
                (node_id, max_depth),
            ).fetchall()
        return [_row_to_node(row) for row in rows]

    @retry_on_db_lock()
    def set_node_image(self, timeline_id: str, node_id: str, image_url: str) -> bool:
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE timeline_nodes
                SET image_url = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND timeline_id = ?
                """,
                (image_url, node_id, timeline_id),
            )
            return cursor.rowcount > 0

    def get_branch_canon(self, branch_id: str) -> BranchCanon | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT setting, characters, tone, themes, rules FROM branch_canon WHERE branch_id = ?",
                (branch_id,),
            ).fetchone()
        if not row:
            return None
        return BranchCanon(
            setting=row["setting"],
            characters=_json_list(row["characters"]),
            tone=row["tone"],
            themes=_json_list(row["themes"]),
            rules=_json_list(row["rules"]),
        )

    def get_creator_profile(self, user_id: str) -> CreatorProfile | None:
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT preferred_genres, writing_style, favorite_themes,
                       disliked_elements, exploration_ratio
                FROM creator_profiles WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        if not row:
            return None

        fields: dict[str, Any] = {
            "preferred_genres": _json_list(row["preferred_genres"]) or [],
            "writing_style": row["writing_style"],
            "favorite_themes": _json_list(row["favorite_themes"]) or [],
            "disliked_elements": _json_list(row["disliked_elements"]) or [],
        }
        if row["exploration_ratio"] is not None:
            fields["exploration_ratio"] = row["exploration_ratio"]
        return CreatorProfile(**fields)

    def timeline_owned_by(self, timeline_id: str, user_id: str) -> bool:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM timelines WHERE id = ? AND user_id = ?",
                (timeline_id, user_id),
            ).fetchone()
        return row is not None

    def get_story_context(self, timeline_id: str) -> StoryContext | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT visual_theme, system_prompt, vision_blurb FROM timelines WHERE id = ?",
                (timeline_id,),
            ).fetchone()
        if not row:
            return None
        return StoryContext(
            visual_theme=row["visual_theme"],
            system_prompt=row["system_prompt"],
            vision_blurb=row["vision_blurb"],
        )

    def list_characters(self, timeline_id: str) -> list[CharacterReference]:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM character_bible WHERE timeline_id = ? ORDER BY created_at, name",
                (timeline_id,),
            ).fetchall()
        return [_row_to_character(row) for row in rows]

    def get_character(self, timeline_id: str, character_id: str) -> CharacterReference | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM character_bible WHERE id = ? AND timeline_id = ?",
                (character_id, timeline_id),
            ).fetchone()
        return _row_to_character(row) if row else None

    @retry_on_db_lock()
    def set_character_portrait(self, timeline_id: str, character_id: str, image_url: str) -> bool:
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE character_bible
                SET reference_image_url = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND timeline_id = ?
                """,
                (image_url, character_id, timeline_id),
            )
            return cursor.rowcount > 0
